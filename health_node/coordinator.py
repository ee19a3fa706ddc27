from __future__ import annotations

import contextlib
import logging
import os
import shutil
import signal
import socket
import sys
import threading
import time
from contextlib import closing
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import load_config
from .errors import (CheckFailedError, ConfigurationError, CoreNotReadyError, HarnessError,
                     HealthNodeError, OperationCancelled, ReadinessTimeoutError)
from .harness import probe_http, speed_http
from .installer import install_core
from .models import InboundProtocol, InstallResult, ProbeResult, SpeedResult
from .provider import Provider, parse_uri
from .readiness import wait_for_endpoint
from .relay import RelaySession, TrafficCounters, TrafficReporter
from .supervisor import LISTEN_HOST, CoreRunner, SupervisedProcess, follow_log

CORE_BINARY_NAMES = ("xray", "v2ray")
DEFAULT_SOCKS_LOCAL_PORT = 1080
DEFAULT_HTTP_LOCAL_PORT = 8080
CORE_WATCH_INTERVAL = 1.0
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_LOG_BYTES = 2 * 1024 * 1024
DEFAULT_LOG_BACKUPS = 5
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_core_path(explicit: Optional[str] = None) -> str:
    """Locate the core binary.

    An explicit path always wins. Otherwise look for ``xray``/``v2ray``
    beside the entry script (or in its ``core/`` directory), then on PATH.
    """
    if explicit and explicit.strip():
        return explicit

    base_dirs = []
    if sys.argv and sys.argv[0]:
        base_dirs.append(Path(sys.argv[0]).resolve().parent)
    base_dirs.append(Path.cwd())
    for base_dir in base_dirs:
        for sub_dir in (base_dir, base_dir / "core"):
            for name in CORE_BINARY_NAMES:
                for candidate in (sub_dir / name, sub_dir / f"{name}.exe"):
                    if _is_executable_file(candidate):
                        return str(candidate)

    for name in CORE_BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return found

    raise ConfigurationError(
        "core binary not found: place xray/v2ray next to health-node (or in ./core), or pass --core"
    )


def _is_console_handler(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)


def _log_file_path(settings: Dict[str, Any]) -> Optional[str]:
    directory = settings.get("directory")
    if not directory:
        return None
    log_dir = Path(directory)
    log_dir.mkdir(parents=True, exist_ok=True)
    return os.path.abspath(log_dir / settings.get("filename", "health-node.log"))


def pick_free_port(host: str = LISTEN_HOST) -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


class Coordinator:
    """Drives one command: start the core, wait for it, run the check, stop everything."""

    def __init__(
        self,
        config_overrides: Optional[Dict[str, Any]] = None,
        command_line: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = load_config(config_overrides, command_line)
        self.shutdown_event = threading.Event()
        self._termination_reason: Optional[str] = None
        self._configure_logging()
        self.logger = logging.getLogger(__name__ + ".Coordinator")

    def _configure_logging(self) -> None:
        settings = self.config.get("logging", {})
        level = logging.getLevelName(str(settings.get("level", "INFO")).upper())
        if not isinstance(level, int):
            level = logging.INFO
        root = logging.getLogger()
        root.setLevel(level)

        new_handlers: List[logging.Handler] = []
        if not any(_is_console_handler(handler) for handler in root.handlers):
            new_handlers.append(logging.StreamHandler())
        log_file = _log_file_path(settings)
        if log_file and not any(getattr(handler, "baseFilename", None) == log_file for handler in root.handlers):
            new_handlers.append(
                RotatingFileHandler(
                    log_file,
                    maxBytes=int(settings.get("max_bytes", DEFAULT_LOG_BYTES)),
                    backupCount=int(settings.get("backup_count", DEFAULT_LOG_BACKUPS)),
                )
            )

        formatter = logging.Formatter(LOG_FORMAT)
        for handler in new_handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
            root.addHandler(handler)

    def _request_shutdown(self, reason: str) -> None:
        if not self.shutdown_event.is_set():
            self._termination_reason = reason
            self.shutdown_event.set()

    @contextlib.contextmanager
    def _termination_signals(self):
        """Route SIGINT/SIGTERM to ``shutdown_event`` while the block runs (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def on_signal(signum, _frame) -> None:
            name = signal.Signals(signum).name
            self.logger.warning("Received %s, stopping core and relays", name)
            self._request_shutdown(name)

        previous = {sig: signal.signal(sig, on_signal) for sig in TERMINATION_SIGNALS}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _prepare(self, uri: str) -> Tuple[str, Provider, Dict[str, Any]]:
        if not uri:
            raise ConfigurationError("--uri is required")
        core_path = resolve_core_path(self.config["core"].get("path"))
        provider = parse_uri(uri)
        return core_path, provider, provider.outbound()

    def _wait_ready(self, core: SupervisedProcess, address: str, timeout: float) -> None:
        readiness_cfg = self.config["readiness"]
        try:
            wait_for_endpoint(
                address,
                timeout,
                interval=readiness_cfg["interval"],
                attempt_timeout=readiness_cfg["attempt_timeout"],
                cancel_event=self.shutdown_event,
            )
        except (ReadinessTimeoutError, OperationCancelled) as exc:
            raise CoreNotReadyError(f"core did not become ready: {exc}", core.read_log_tail()) from exc

    def _check_port(self) -> int:
        port = self.config["core"].get("socks_port") or pick_free_port()
        return int(port)

    def _run_check(self, uri: str, section: str, check: Callable[[str, float], Any]) -> Tuple[str, Any]:
        timeout = float(self.config[section]["timeout"])
        deadline = time.monotonic() + timeout
        core_path, provider, outbound = self._prepare(uri)
        port = self._check_port()
        runner = CoreRunner(core_path, port, log_level=self.config["core"].get("log_level") or "")

        self.shutdown_event.clear()
        with self._termination_signals():
            with runner.start(outbound) as core:
                socks_address = f"{LISTEN_HOST}:{port}"
                self._wait_ready(core, socks_address, max(0.0, deadline - time.monotonic()))
                remaining = max(0.1, deadline - time.monotonic())
                try:
                    result = check(socks_address, remaining)
                except (HarnessError, OperationCancelled) as exc:
                    raise CheckFailedError(f"{section} request failed: {exc}", core.read_log_tail()) from exc
        return provider.name, result

    def probe(self, uri: str) -> Tuple[str, ProbeResult]:
        url = self.config["probe"]["url"]
        self.logger.info("Probing %s through the core", url)
        return self._run_check(
            uri,
            "probe",
            lambda address, remaining: probe_http(address, url, remaining, self.shutdown_event),
        )

    def speed(self, uri: str) -> Tuple[str, SpeedResult]:
        speed_cfg = self.config["speed"]
        url = speed_cfg["url"]
        max_bytes = int(speed_cfg["max_bytes"])
        self.logger.info("Measuring download speed from %s (max_bytes=%d)", url, max_bytes)
        return self._run_check(
            uri,
            "speed",
            lambda address, remaining: speed_http(address, url, max_bytes, remaining, self.shutdown_event),
        )

    def serve_proxy(self, uri: str, emit: Callable[[str], None] = print) -> None:
        proxy_cfg = self.config["proxy"]
        inbound = proxy_cfg["inbound"]
        if inbound not in {member.value for member in InboundProtocol}:
            raise ConfigurationError("--inbound must be socks or http")
        local_port = int(proxy_cfg.get("local_port") or 0)
        if not local_port:
            local_port = DEFAULT_HTTP_LOCAL_PORT if inbound == InboundProtocol.HTTP.value else DEFAULT_SOCKS_LOCAL_PORT
        if not 1 <= local_port <= 65535:
            raise ConfigurationError("--local-port must be in range 1..65535")

        core_path, provider, outbound = self._prepare(uri)
        show_traffic = bool(proxy_cfg.get("show_traffic", True))
        print_requests = bool(proxy_cfg.get("print_requests", False))
        core_port = pick_free_port() if show_traffic else local_port
        log_level = "info" if print_requests else (self.config["core"].get("log_level") or "")
        runner = CoreRunner(core_path, core_port, inbound_protocol=inbound, log_level=log_level)

        core_address = f"{LISTEN_HOST}:{core_port}"
        listen_address = f"{LISTEN_HOST}:{local_port}"
        self.shutdown_event.clear()
        with self._termination_signals():
            with runner.start(outbound) as core:
                self._wait_ready(core, core_address, float(proxy_cfg["timeout"]))
                self._serve(core, provider, inbound, listen_address, core_address, emit)

    def _serve(
        self,
        core: SupervisedProcess,
        provider: Provider,
        inbound: str,
        listen_address: str,
        core_address: str,
        emit: Callable[[str], None],
    ) -> None:
        proxy_cfg = self.config["proxy"]
        show_traffic = bool(proxy_cfg.get("show_traffic", True))
        print_requests = bool(proxy_cfg.get("print_requests", False))
        relay: Optional[RelaySession] = None
        reporter: Optional[TrafficReporter] = None
        follower: Optional[threading.Thread] = None
        stop_follow = threading.Event()

        try:
            if show_traffic:
                counters = TrafficCounters()
                try:
                    relay = RelaySession(listen_address, core_address, counters).start()
                except OSError as exc:
                    raise HealthNodeError(f"start local relay: {exc}") from exc

            emit(f"status=ok mode=proxy inbound={inbound} protocol={provider.name} listen={listen_address}")
            emit("running until interrupted (Ctrl+C)")
            if print_requests:
                emit(f"log={core.access_log_path}")
                follower = threading.Thread(
                    target=follow_log,
                    args=(core.access_log_path, stop_follow, emit),
                    kwargs={"interval": proxy_cfg["log_poll_interval"]},
                    name="core-log-follower",
                    daemon=True,
                )
                follower.start()
            if relay is not None:
                emit("traffic meter enabled (uplink/downlink)")
                reporter = TrafficReporter(relay.counters, proxy_cfg["report_interval"], sink=emit).start()

            while not self.shutdown_event.wait(CORE_WATCH_INTERVAL):
                if not core.running:
                    raise CheckFailedError("core exited unexpectedly", core.read_log_tail())
        finally:
            stop_follow.set()
            if follower is not None:
                follower.join()
            if reporter is not None:
                reporter.stop()
            if relay is not None:
                relay.stop()
            self.logger.info("Proxy stopped (%s)", self._termination_reason or "shutdown requested")

    def install_core(self) -> InstallResult:
        installer_cfg = self.config["installer"]
        return install_core(
            repo=installer_cfg["repo"],
            version=installer_cfg["version"],
            dest_dir=installer_cfg["dest"],
            force=bool(installer_cfg["force"]),
            timeout=float(installer_cfg["timeout"]),
            token=installer_cfg.get("token"),
        )


__all__ = [
    "Coordinator",
    "pick_free_port",
    "resolve_core_path",
]
