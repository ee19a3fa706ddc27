from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ConfigurationError, CoreLaunchError
from .models import InboundProtocol

LISTEN_HOST = "127.0.0.1"
DEFAULT_LOG_LEVEL = "warning"
LOG_TAIL_BYTES = 4000
TEMP_DIR_PREFIX = "health-node-"
CONFIG_FILENAME = "config.json"
ERROR_LOG_FILENAME = "core.log"
ACCESS_LOG_FILENAME = "access.log"
DIRECT_OUTBOUND: Dict[str, Any] = {"tag": "direct", "protocol": "freedom"}
STOP_WAIT_SECONDS = 10.0


def core_args(core_path: str, config_path: str) -> List[str]:
    base = Path(core_path).name.lower()
    if "xray" in base:
        return ["run", "-c", config_path]
    return ["-config", config_path]


def build_runtime_config(
    port: int,
    outbound: Mapping[str, Any],
    *,
    inbound_protocol: str,
    log_level: str,
    access_log: str,
    error_log: str,
) -> Dict[str, Any]:
    inbound: Dict[str, Any] = {
        "listen": LISTEN_HOST,
        "port": port,
        "protocol": inbound_protocol,
    }
    if inbound_protocol == InboundProtocol.SOCKS.value:
        inbound["settings"] = {"udp": False}

    return {
        "log": {
            "loglevel": log_level,
            "access": access_log,
            "error": error_log,
        },
        "inbounds": [inbound],
        "outbounds": [dict(outbound), dict(DIRECT_OUTBOUND)],
    }


class SupervisedProcess:
    """One running core instance and the scratch directory it writes into.

    ``stop()`` is the single release operation: it kills the child, waits
    for it and removes the scratch directory. It is safe to call any number
    of times, also from ``__exit__``.
    """

    def __init__(
        self,
        process: Optional[subprocess.Popen],
        *,
        work_dir: str,
        config_path: str,
        log_path: str,
        access_log_path: str,
    ) -> None:
        self.process = process
        self.work_dir = work_dir
        self.config_path = config_path
        self.log_path = log_path
        self.access_log_path = access_log_path
        self._stop_lock = threading.Lock()
        self._stopped = False
        self.logger = logging.getLogger(__name__ + ".SupervisedProcess")

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        process = self.process
        if process is not None:
            if process.poll() is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            try:
                process.wait(timeout=STOP_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                self.logger.warning("Core process %s did not exit %.0fs after kill", process.pid, STOP_WAIT_SECONDS)
            else:
                self.logger.debug("Core process %s exited with %s", process.pid, process.returncode)

        if self.work_dir:
            shutil.rmtree(self.work_dir, ignore_errors=True)

    def read_log_tail(self, max_bytes: int = LOG_TAIL_BYTES) -> str:
        if not self.log_path:
            return ""
        try:
            with open(self.log_path, "rb") as handle:
                handle.seek(0, os.SEEK_END)
                size = handle.tell()
                handle.seek(max(0, size - max(0, max_bytes)))
                data = handle.read()
        except OSError:
            return ""
        return data.decode("utf-8", errors="replace")

    def __enter__(self) -> "SupervisedProcess":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


@dataclass
class CoreRunner:
    core_path: str
    port: int
    inbound_protocol: str = InboundProtocol.SOCKS.value
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        self.logger = logging.getLogger(__name__ + ".CoreRunner")

    def _validated(self, outbound: Mapping[str, Any]) -> Dict[str, Any]:
        if not self.core_path or not str(self.core_path).strip():
            raise ConfigurationError("core path is required")
        if not self.port:
            raise ConfigurationError("local socks port is required")
        if not 1 <= int(self.port) <= 65535:
            raise ConfigurationError(f"local port {self.port} is out of range 1..65535")

        protocol = (self.inbound_protocol or "").strip().lower() or InboundProtocol.SOCKS.value
        if protocol not in {member.value for member in InboundProtocol}:
            raise ConfigurationError(f"unsupported inbound protocol {self.inbound_protocol!r}")
        log_level = (self.log_level or "").strip() or DEFAULT_LOG_LEVEL

        if not isinstance(outbound, Mapping) or not outbound:
            raise ConfigurationError("outbound descriptor must be a non-empty mapping")
        try:
            json.dumps(outbound)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"outbound descriptor is not JSON serialisable: {exc}") from exc

        return {"protocol": protocol, "log_level": log_level}

    def start(self, outbound: Mapping[str, Any]) -> SupervisedProcess:
        settings = self._validated(outbound)

        work_dir = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX)
        config_path = os.path.join(work_dir, CONFIG_FILENAME)
        log_path = os.path.join(work_dir, ERROR_LOG_FILENAME)
        access_log_path = os.path.join(work_dir, ACCESS_LOG_FILENAME)

        config = build_runtime_config(
            int(self.port),
            outbound,
            inbound_protocol=settings["protocol"],
            log_level=settings["log_level"],
            access_log=access_log_path,
            error_log=log_path,
        )
        try:
            fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(config, handle, indent=2)
            log_handle = open(log_path, "wb")
        except OSError as exc:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise CoreLaunchError(f"write core config: {exc}") from exc

        args = [str(self.core_path)] + core_args(str(self.core_path), config_path)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=log_handle,
            )
        except OSError as exc:
            log_handle.close()
            shutil.rmtree(work_dir, ignore_errors=True)
            raise CoreLaunchError(f"start core: {exc}") from exc
        finally:
            log_handle.close()

        self.logger.info(
            "Started core %s (pid=%s) with %s inbound on %s:%s",
            self.core_path,
            process.pid,
            settings["protocol"],
            LISTEN_HOST,
            self.port,
        )
        return SupervisedProcess(
            process,
            work_dir=work_dir,
            config_path=config_path,
            log_path=log_path,
            access_log_path=access_log_path,
        )


def follow_log(
    path: str,
    stop_event: threading.Event,
    sink: Callable[[str], None],
    *,
    interval: float = 0.5,
) -> None:
    """Emit lines appended to ``path`` until ``stop_event`` is set.

    A missing file is retried on the next tick; a file that shrank is read
    again from the start.
    """
    offset = 0
    while not stop_event.wait(interval):
        try:
            with open(path, "rb") as handle:
                size = os.fstat(handle.fileno()).st_size
                if size < offset:
                    offset = 0
                if size == offset:
                    continue
                handle.seek(offset)
                data = handle.read(size - offset)
        except OSError:
            continue
        complete, _, _partial = data.rpartition(b"\n")
        if not complete and not data.endswith(b"\n"):
            continue
        offset += len(complete) + 1
        for line in complete.decode("utf-8", errors="replace").splitlines():
            sink(f"[core] {line}")


__all__ = [
    "CoreRunner",
    "SupervisedProcess",
    "build_runtime_config",
    "core_args",
    "follow_log",
]
