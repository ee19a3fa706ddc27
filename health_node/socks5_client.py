from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import time
from typing import Optional, Tuple

from .errors import (Socks5AddressError, Socks5AddressTypeError, Socks5DialError,
                     Socks5IOError, Socks5NegotiationError, Socks5ReplyError)
from .models import AddressType

SOCKS_VERSION = 0x05
METHOD_NO_AUTH = 0x00
CMD_CONNECT = 0x01
RESERVED = 0x00
REPLY_SUCCEEDED = 0x00
MAX_DOMAIN_LENGTH = 255

GREETING = bytes((SOCKS_VERSION, 0x01, METHOD_NO_AUTH))

REPLY_REASONS = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}

BOUND_ADDRESS_LENGTHS = {
    AddressType.IPV4: 4,
    AddressType.IPV6: 16,
}

logger = logging.getLogger(__name__)


def split_host_port(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6 literals) into its parts.

    Raises ``ValueError`` when the string is malformed or the port is not a
    decimal number.
    """
    value = (address or "").strip()
    if value.startswith("["):
        end = value.find("]")
        if end == -1 or value[end + 1:end + 2] != ":":
            raise ValueError(f"address {address!r}: missing port in address")
        host, port_text = value[1:end], value[end + 2:]
    else:
        host, separator, port_text = value.rpartition(":")
        if not separator:
            raise ValueError(f"address {address!r}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {address!r}: too many colons in address")
    if not port_text.isdigit():
        raise ValueError(f"address {address!r}: invalid port {port_text!r}")
    return host, int(port_text)


def encode_address(host: str) -> Tuple[AddressType, bytes]:
    try:
        ip_obj = ipaddress.ip_address(host)
    except ValueError:
        ip_obj = None

    if isinstance(ip_obj, ipaddress.IPv4Address):
        return AddressType.IPV4, ip_obj.packed
    if isinstance(ip_obj, ipaddress.IPv6Address):
        if ip_obj.ipv4_mapped is not None:
            return AddressType.IPV4, ip_obj.ipv4_mapped.packed
        return AddressType.IPV6, ip_obj.packed

    name = (host or "").strip().encode("utf-8")
    if not name or len(name) > MAX_DOMAIN_LENGTH:
        raise Socks5AddressError("target host is invalid")
    return AddressType.DOMAIN, bytes((len(name),)) + name


def build_connect_request(target_address: str) -> bytes:
    try:
        host, port = split_host_port(target_address)
    except ValueError as exc:
        raise Socks5AddressError(f"target addr parse: {exc}") from exc
    if not 1 <= port <= 65535:
        raise Socks5AddressError("target port is invalid")

    address_type, address_bytes = encode_address(host)
    header = struct.pack("!BBBB", SOCKS_VERSION, CMD_CONNECT, RESERVED, address_type)
    return header + address_bytes + struct.pack("!H", port)


def dial_socks5(proxy_address: str, target_address: str, timeout: Optional[float]) -> socket.socket:
    """Open a tunnel to ``target_address`` through the SOCKS5 server at ``proxy_address``.

    ``timeout`` bounds the dial and, as one deadline, the whole handshake.
    The returned socket is in blocking mode with no timeout; it belongs to
    the caller. Every failure closes the socket before raising a
    ``Socks5Error`` subclass.
    """
    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    try:
        proxy_host, proxy_port = split_host_port(proxy_address)
    except ValueError as exc:
        raise Socks5DialError(f"dial socks server: {exc}") from exc

    try:
        sock = socket.create_connection((proxy_host, proxy_port), timeout=_remaining(deadline))
    except OSError as exc:
        raise Socks5DialError(f"dial socks server: {exc}") from exc

    try:
        _handshake(sock, target_address, deadline)
    except BaseException:
        sock.close()
        raise

    sock.settimeout(None)
    logger.debug("SOCKS5 tunnel to %s established via %s", target_address, proxy_address)
    return sock


def _handshake(sock: socket.socket, target_address: str, deadline: Optional[float]) -> None:
    _send(sock, GREETING, deadline, "socks greeting write")
    reply = _recv_exact(sock, 2, deadline, "socks greeting read")
    if reply[0] != SOCKS_VERSION or reply[1] != METHOD_NO_AUTH:
        raise Socks5NegotiationError(
            f"socks auth negotiation failed (reply {reply.hex()})"
        )

    request = build_connect_request(target_address)
    _send(sock, request, deadline, "socks connect write")

    version, status, _reserved, address_type = _recv_exact(sock, 4, deadline, "socks connect read")
    if version != SOCKS_VERSION:
        raise Socks5NegotiationError(f"invalid socks version in reply: 0x{version:02x}", stage="connect_reply")
    if status != REPLY_SUCCEEDED:
        raise Socks5ReplyError(status, REPLY_REASONS.get(status, ""))

    if address_type == AddressType.DOMAIN:
        (skip,) = _recv_exact(sock, 1, deadline, "socks reply domain len read")
    elif address_type in BOUND_ADDRESS_LENGTHS:
        skip = BOUND_ADDRESS_LENGTHS[AddressType(address_type)]
    else:
        raise Socks5AddressTypeError(address_type)
    _recv_exact(sock, skip + 2, deadline, "socks reply tail read")


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise socket.timeout("socks handshake deadline exceeded")
    return remaining


def _send(sock: socket.socket, data: bytes, deadline: Optional[float], step: str) -> None:
    try:
        sock.settimeout(_remaining(deadline))
        sock.sendall(data)
    except OSError as exc:
        raise Socks5IOError(f"{step}: {exc}", stage=step) from exc


def _recv_exact(sock: socket.socket, size: int, deadline: Optional[float], step: str) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        try:
            sock.settimeout(_remaining(deadline))
            chunk = sock.recv(size - len(buffer))
        except OSError as exc:
            raise Socks5IOError(f"{step}: {exc}", stage=step) from exc
        if not chunk:
            raise Socks5IOError(f"{step}: unexpected EOF", stage=step)
        buffer.extend(chunk)
    return bytes(buffer)


__all__ = [
    "dial_socks5",
    "build_connect_request",
    "encode_address",
    "split_host_port",
]
