from __future__ import annotations

from typing import Optional


class HealthNodeError(Exception):
    """Base class for every failure raised by health-node."""


class ConfigurationError(HealthNodeError):
    pass


class ProviderError(ConfigurationError):
    pass


class CoreLaunchError(HealthNodeError):
    pass


class ReadinessTimeoutError(HealthNodeError, TimeoutError):
    pass


class OperationCancelled(HealthNodeError):
    pass


class HarnessError(HealthNodeError):
    pass


class InstallError(HealthNodeError):
    pass


class Socks5Error(HealthNodeError):
    """A SOCKS5 handshake failure; ``stage`` names the step that failed."""

    stage = "handshake"

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class Socks5DialError(Socks5Error):
    stage = "dial"


class Socks5NegotiationError(Socks5Error):
    stage = "negotiation"


class Socks5AddressError(Socks5Error):
    stage = "address"


class Socks5IOError(Socks5Error):
    pass


class Socks5ReplyError(Socks5Error):
    stage = "connect_reply"

    def __init__(self, code: int, reason: str = "") -> None:
        message = f"socks connect failed, code=0x{code:02x}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.code = code
        self.reason = reason


class Socks5AddressTypeError(Socks5Error):
    stage = "bound_address"

    def __init__(self, address_type: int) -> None:
        super().__init__(f"socks reply had unknown address type 0x{address_type:02x}")
        self.address_type = address_type


class _LogTailError(HealthNodeError):
    def __init__(self, message: str, log_tail: str = "") -> None:
        self.log_tail = log_tail or ""
        if self.log_tail:
            message = f"{message}\ncore log tail:\n{self.log_tail}"
        super().__init__(message)


class CoreNotReadyError(_LogTailError):
    pass


class CheckFailedError(_LogTailError):
    pass


__all__ = [
    "HealthNodeError",
    "ConfigurationError",
    "ProviderError",
    "CoreLaunchError",
    "ReadinessTimeoutError",
    "OperationCancelled",
    "HarnessError",
    "InstallError",
    "Socks5Error",
    "Socks5DialError",
    "Socks5NegotiationError",
    "Socks5AddressError",
    "Socks5IOError",
    "Socks5ReplyError",
    "Socks5AddressTypeError",
    "CoreNotReadyError",
    "CheckFailedError",
]
