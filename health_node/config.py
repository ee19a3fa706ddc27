import os
from copy import deepcopy
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


DEFAULT_CONFIG: Dict[str, Any] = {
    "core": {
        "path": None,
        "log_level": "warning",
        "socks_port": None,
    },
    "probe": {
        "url": "https://www.gstatic.com/generate_204",
        "timeout": 20.0,
    },
    "speed": {
        "url": "https://speed.hetzner.de/10MB.bin",
        "max_bytes": 10 * 1024 * 1024,
        "timeout": 45.0,
    },
    "proxy": {
        "inbound": "socks",
        "local_port": None,
        "print_requests": False,
        "show_traffic": True,
        "timeout": 20.0,
        "report_interval": 1.0,
        "log_poll_interval": 0.5,
    },
    "readiness": {
        "interval": 0.2,
        "attempt_timeout": 0.5,
    },
    "installer": {
        "repo": "XTLS/Xray-core",
        "version": "latest",
        "dest": ".",
        "force": False,
        "timeout": 120.0,
        "token": None,
    },
    "logging": {
        "level": "INFO",
        "directory": "logs",
        "filename": "health-node.log",
        "max_bytes": 2 * 1024 * 1024,
        "backup_count": 5,
    },
}


EnvParser = Callable[[str], Optional[Any]]


def _merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _set_path(config: Dict[str, Any], path: Sequence[str], value: Any) -> None:
    *parents, leaf = path
    section = config
    for key in parents:
        section = section.setdefault(key, {})
    section[leaf] = value


def _read_env(name: str) -> Optional[str]:
    raw = os.environ.get(name, "").strip()
    return raw or None


def _env_text(name: str) -> Optional[str]:
    return _read_env(name)


def _env_number(cast: Callable[[str], Any], minimum: Any) -> EnvParser:
    def parse(name: str) -> Optional[Any]:
        raw = _read_env(name)
        if raw is None:
            return None
        try:
            return max(minimum, cast(raw))
        except ValueError:
            return None

    return parse


# (environment variables in priority order, config path, parser)
ENV_OVERRIDES: List[Tuple[Tuple[str, ...], Tuple[str, str], EnvParser]] = [
    (("HEALTH_NODE_CORE", "XRAY_CORE"), ("core", "path"), _env_text),
    (("HEALTH_NODE_CORE_LOG_LEVEL",), ("core", "log_level"), _env_text),
    (("HEALTH_NODE_PROBE_URL",), ("probe", "url"), _env_text),
    (("HEALTH_NODE_SPEED_URL",), ("speed", "url"), _env_text),
    (("HEALTH_NODE_MAX_BYTES",), ("speed", "max_bytes"), _env_number(int, 0)),
    (("HEALTH_NODE_PROBE_TIMEOUT", "HEALTH_NODE_TIMEOUT"), ("probe", "timeout"), _env_number(float, 0.1)),
    (("HEALTH_NODE_SPEED_TIMEOUT", "HEALTH_NODE_TIMEOUT"), ("speed", "timeout"), _env_number(float, 0.1)),
    (("HEALTH_NODE_PROXY_TIMEOUT", "HEALTH_NODE_TIMEOUT"), ("proxy", "timeout"), _env_number(float, 0.1)),
    (("HEALTH_NODE_LOG_LEVEL", "LOG_LEVEL"), ("logging", "level"), _env_text),
    (("HEALTH_NODE_LOG_DIR",), ("logging", "directory"), _env_text),
    (("GITHUB_TOKEN",), ("installer", "token"), _env_text),
]


def _apply_environment(config: Dict[str, Any]) -> None:
    for names, path, parse in ENV_OVERRIDES:
        value = next((parsed for parsed in map(parse, names) if parsed is not None), None)
        if value is not None:
            _set_path(config, path, value)


def _clamp(config: Dict[str, Any]) -> None:
    config["speed"]["max_bytes"] = max(0, int(config["speed"]["max_bytes"] or 0))
    readiness = config["readiness"]
    readiness["interval"] = max(0.01, float(readiness["interval"]))
    readiness["attempt_timeout"] = max(0.05, float(readiness["attempt_timeout"]))
    proxy = config["proxy"]
    proxy["report_interval"] = max(0.1, float(proxy["report_interval"]))
    proxy["inbound"] = str(proxy.get("inbound") or "socks").strip().lower()


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    command_line: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Defaults, then the JSON override file, then the environment, then flags."""
    config = deepcopy(DEFAULT_CONFIG)
    if overrides:
        config = _merge(config, overrides)
    _apply_environment(config)
    if command_line:
        config = _merge(config, command_line)
    _clamp(config)
    return config
