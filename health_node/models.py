from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class InboundProtocol(str, Enum):
    SOCKS = "socks"
    HTTP = "http"


@dataclass(frozen=True)
class ProbeResult:
    code: int
    latency: float
    bytes_read: int

    @property
    def latency_ms(self) -> int:
        return int(self.latency * 1000)


@dataclass(frozen=True)
class SpeedResult:
    bytes_read: int
    elapsed: float

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed * 1000)

    @property
    def mbps(self) -> float:
        if self.elapsed <= 0:
            return 0.0
        return (self.bytes_read * 8) / self.elapsed / 1_000_000


@dataclass(frozen=True)
class InstallResult:
    repo: str
    tag: str
    path: str
