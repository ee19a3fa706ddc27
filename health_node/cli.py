from __future__ import annotations

import argparse
import functools
import json
import logging
import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .coordinator import Coordinator
from .errors import HealthNodeError

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ns|us|ms|s|m|h))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse ``20s``, ``500ms``, ``1m30s`` or a plain number of seconds."""
    text = (value or "").strip().lower()
    try:
        seconds = float(text)
    except ValueError:
        if not _DURATION_RE.fullmatch(text):
            raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
        seconds = sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION_PART_RE.findall(text))
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: {value!r}")
    return seconds


def _common_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("--config", type=Path, help="Path to a JSON configuration file overriding defaults")
    parent.add_argument("--timeout", type=parse_duration, help="Timeout such as 20s or 500ms")
    return parent


def _core_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("--uri", help="VLESS/VMess URI")
    parent.add_argument("--core", help="Core binary path (auto-detected if empty)")
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="health-node",
        description="v2ray/xray outbound health checker",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    common = _common_parent()
    core = _core_parent()

    probe = subparsers.add_parser(
        "probe",
        parents=[common, core],
        help="Start the core and run an HTTP probe through its SOCKS5 inbound",
    )
    probe.add_argument("--url", help="Probe URL (default: https://www.gstatic.com/generate_204)")
    probe.add_argument("--local-socks", type=int, help="Local SOCKS port (default: a free port)")
    probe.set_defaults(handler=_run_probe, section="probe")

    speed = subparsers.add_parser(
        "speed",
        parents=[common, core],
        help="Start the core and measure download speed through SOCKS5",
    )
    speed.add_argument("--url", help="Download URL (default: https://speed.hetzner.de/10MB.bin)")
    speed.add_argument("--max-bytes", type=int, help="Stop after N bytes (0 means full response)")
    speed.add_argument("--local-socks", type=int, help="Local SOCKS port (default: a free port)")
    speed.set_defaults(handler=_run_speed, section="speed")

    for name, help_text in (
        ("proxy", "Start the core and keep a local SOCKS5/HTTP port open until interrupted"),
        ("socks", "Alias of proxy --inbound socks"),
    ):
        proxy = subparsers.add_parser(name, parents=[common, core], help=help_text)
        proxy.add_argument("--inbound", choices=("socks", "http"), type=str.lower, help="Inbound protocol (default: socks)")
        proxy.add_argument("--local-port", type=int, help="Listen port (default: 1080 for socks, 8080 for http)")
        proxy.add_argument("--print-requests", action="store_true", default=None, help="Stream core access log lines")
        proxy.add_argument("--no-traffic", action="store_true", help="Disable the live uplink/downlink meter")
        proxy.set_defaults(handler=_run_proxy, section="proxy")

    install = subparsers.add_parser(
        "install-core",
        parents=[common],
        help="Download and install the Xray/V2Ray core from a GitHub release",
    )
    install.add_argument("--repo", help="GitHub repo owner/name (default: XTLS/Xray-core)")
    install.add_argument("--version", help='Release tag or "latest"')
    install.add_argument("--dest", help="Install directory (default: current dir)")
    install.add_argument("--force", action="store_true", default=None, help="Overwrite an existing binary")
    install.set_defaults(handler=_run_install, section="installer")

    return parser


def load_overrides(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    """Read the --config JSON file; a missing or unreadable file falls back to defaults."""
    if path is None:
        return None
    if not path.is_file():
        logging.error("Config file not found: %s", path)
        return None
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        logging.error("Ignoring malformed config file %s: %s", path, exc)
        return None
    if not isinstance(document, dict):
        logging.error("Ignoring config file %s: top level must be an object", path)
        return None
    return document


def command_line_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map the flags that were actually given onto config sections."""
    overrides: Dict[str, Dict[str, Any]] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    section = args.section
    put(section, "timeout", getattr(args, "timeout", None))
    put("core", "path", getattr(args, "core", None))
    put("core", "socks_port", getattr(args, "local_socks", None))
    put(section, "url", getattr(args, "url", None))
    put("speed", "max_bytes", getattr(args, "max_bytes", None))

    if section == "proxy":
        inbound = args.inbound
        if inbound is None and args.command == "socks":
            inbound = "socks"
        put("proxy", "inbound", inbound)
        put("proxy", "local_port", args.local_port)
        put("proxy", "print_requests", args.print_requests)
        if args.no_traffic:
            put("proxy", "show_traffic", False)

    if section == "installer":
        put("installer", "repo", args.repo)
        put("installer", "version", args.version)
        put("installer", "dest", args.dest)
        put("installer", "force", args.force)

    return overrides


def _run_probe(coordinator: Coordinator, args: argparse.Namespace, emit: Callable[[str], None]) -> int:
    protocol, result = coordinator.probe(args.uri)
    emit(
        f"status=ok protocol={protocol} code={result.code} "
        f"latency_ms={result.latency_ms} bytes={result.bytes_read}"
    )
    return 0


def _run_speed(coordinator: Coordinator, args: argparse.Namespace, emit: Callable[[str], None]) -> int:
    protocol, result = coordinator.speed(args.uri)
    emit(
        f"status=ok protocol={protocol} bytes={result.bytes_read} "
        f"elapsed_ms={result.elapsed_ms} mbps={result.mbps:.2f}"
    )
    return 0


def _run_proxy(coordinator: Coordinator, args: argparse.Namespace, emit: Callable[[str], None]) -> int:
    coordinator.serve_proxy(args.uri, emit=emit)
    return 0


def _run_install(coordinator: Coordinator, args: argparse.Namespace, emit: Callable[[str], None]) -> int:
    result = coordinator.install_core()
    emit(f"status=ok repo={result.repo} version={result.tag} installed={result.path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help(sys.stderr)
        return 2

    emit = functools.partial(print, flush=True)
    overrides = load_overrides(args.config)
    try:
        coordinator = Coordinator(config_overrides=overrides, command_line=command_line_overrides(args))
        return args.handler(coordinator, args, emit)
    except (HealthNodeError, OSError) as exc:
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"{args.command} interrupted", file=sys.stderr)
        return 130


__all__ = [
    "build_parser",
    "command_line_overrides",
    "load_overrides",
    "main",
    "parse_duration",
]
