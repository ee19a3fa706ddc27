from .config import DEFAULT_CONFIG, load_config
from .coordinator import Coordinator, resolve_core_path
from .errors import CheckFailedError, ConfigurationError, CoreNotReadyError, HealthNodeError, Socks5Error
from .harness import probe_http, speed_http
from .models import AddressType, InboundProtocol, InstallResult, ProbeResult, SpeedResult
from .provider import VLESSProvider, VMessProvider, parse_uri
from .readiness import wait_for_endpoint
from .relay import RelaySession, TrafficCounters, TrafficReporter, start_relay
from .socks5_client import dial_socks5
from .supervisor import CoreRunner, SupervisedProcess

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "load_config",
    "Coordinator",
    "resolve_core_path",
    "CheckFailedError",
    "ConfigurationError",
    "CoreNotReadyError",
    "HealthNodeError",
    "Socks5Error",
    "probe_http",
    "speed_http",
    "AddressType",
    "InboundProtocol",
    "InstallResult",
    "ProbeResult",
    "SpeedResult",
    "VLESSProvider",
    "VMessProvider",
    "parse_uri",
    "wait_for_endpoint",
    "RelaySession",
    "TrafficCounters",
    "TrafficReporter",
    "start_relay",
    "dial_socks5",
    "CoreRunner",
    "SupervisedProcess",
]
