from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs, unquote, urlsplit

from .errors import ProviderError

OUTBOUND_TAG = "proxy"


def _value_or_default(value: Optional[str], default: str) -> str:
    return value if value else default


def _first_non_empty(*values: Optional[str]) -> str:
    for value in values:
        if value:
            return value
    return ""


def _split_csv(value: Optional[str]) -> List[str]:
    if not value or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _stream_settings(
    *,
    network: str,
    security: str,
    address: str,
    host: str = "",
    path: str = "",
    header_type: str = "",
    service_name: str = "",
    sni: str = "",
    alpn: str = "",
    fingerprint: str = "",
    public_key: str = "",
    short_id: str = "",
    spider_x: str = "",
    pqv: str = "",
) -> Dict[str, Any]:
    stream: Dict[str, Any] = {"network": network, "security": security}

    if network == "ws":
        stream["wsSettings"] = {
            "path": _value_or_default(path, "/"),
            "headers": {"Host": host},
        }
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": service_name}
    elif network == "tcp" and header_type == "http":
        request: Dict[str, Any] = {"path": [_value_or_default(path, "/")]}
        hosts = _split_csv(host)
        if hosts:
            request["headers"] = {"Host": hosts}
        stream["tcpSettings"] = {"header": {"type": "http", "request": request}}

    if security == "tls":
        tls: Dict[str, Any] = {"serverName": _first_non_empty(sni, host, address)}
        alpn_list = _split_csv(alpn)
        if alpn_list:
            tls["alpn"] = alpn_list
        if fingerprint:
            tls["fingerprint"] = fingerprint
        stream["tlsSettings"] = tls
    elif security == "reality":
        reality: Dict[str, Any] = {
            "serverName": _first_non_empty(sni, host, address),
            "fingerprint": _value_or_default(fingerprint, "chrome"),
            "password": public_key,
            "shortId": short_id,
        }
        if spider_x:
            reality["spiderX"] = spider_x
        if pqv:
            reality["mldsa65Verify"] = pqv
        stream["realitySettings"] = reality
    return stream


@dataclass
class VLESSProvider:
    address: str
    port: int
    id: str
    encryption: str = "none"
    flow: str = ""
    network: str = "tcp"
    security: str = "none"
    header_type: str = ""
    host: str = ""
    path: str = ""
    sni: str = ""
    alpn: str = ""
    service_name: str = ""
    fingerprint: str = ""
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""
    pqv: str = ""

    name = "vless"

    def outbound(self) -> Dict[str, Any]:
        user: Dict[str, Any] = {"id": self.id, "encryption": _value_or_default(self.encryption, "none")}
        if self.flow:
            user["flow"] = self.flow
        return {
            "tag": OUTBOUND_TAG,
            "protocol": "vless",
            "settings": {
                "vnext": [{"address": self.address, "port": self.port, "users": [user]}],
            },
            "streamSettings": _stream_settings(
                network=self.network,
                security=self.security,
                address=self.address,
                host=self.host,
                path=self.path,
                header_type=self.header_type,
                service_name=self.service_name,
                sni=self.sni,
                alpn=self.alpn,
                fingerprint=self.fingerprint,
                public_key=self.public_key,
                short_id=self.short_id,
                spider_x=self.spider_x,
                pqv=self.pqv,
            ),
        }


@dataclass
class VMessProvider:
    address: str
    port: int
    id: str
    alter_id: int = 0
    network: str = "tcp"
    header_type: str = ""
    host: str = ""
    path: str = ""
    tls: str = ""
    sni: str = ""
    alpn: str = ""
    security: str = "auto"

    name = "vmess"

    def outbound(self) -> Dict[str, Any]:
        security = "tls" if self.tls.lower() == "tls" else "none"
        return {
            "tag": OUTBOUND_TAG,
            "protocol": "vmess",
            "settings": {
                "vnext": [
                    {
                        "address": self.address,
                        "port": self.port,
                        "users": [
                            {
                                "id": self.id,
                                "alterId": self.alter_id,
                                "security": _value_or_default(self.security, "auto"),
                            }
                        ],
                    }
                ],
            },
            "streamSettings": _stream_settings(
                network=_value_or_default(self.network, "tcp"),
                security=security,
                address=self.address,
                host=self.host,
                path=self.path,
                header_type=self.header_type,
                sni=self.sni,
                alpn=self.alpn,
            ),
        }


Provider = Union[VLESSProvider, VMessProvider]


def _query_value(query: Dict[str, List[str]], key: str) -> str:
    values = query.get(key)
    return values[0] if values else ""


def _parse_port(value: Any, label: str) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"invalid {label} port: {value!r}") from exc
    if not 1 <= port <= 65535:
        raise ProviderError(f"invalid {label} port: {port}")
    return port


def _parse_vless(raw: str) -> VLESSProvider:
    parts = urlsplit(raw)
    user_id = unquote(parts.username or "")
    if not user_id:
        raise ProviderError("vless URI missing user id")
    try:
        host = parts.hostname
        port_value = parts.port
    except ValueError as exc:
        raise ProviderError(f"vless host/port parse failed: {exc}") from exc
    if not host or port_value is None:
        raise ProviderError("vless URI missing host or port")

    query = parse_qs(parts.query, keep_blank_values=True)

    def get(key: str) -> str:
        return _query_value(query, key)

    return VLESSProvider(
        address=host,
        port=_parse_port(port_value, "vless"),
        id=user_id,
        encryption=_value_or_default(get("encryption"), "none"),
        flow=get("flow"),
        network=_value_or_default(get("type"), "tcp"),
        security=_value_or_default(get("security"), "none"),
        header_type=get("headerType"),
        host=get("host"),
        path=get("path"),
        sni=get("sni"),
        alpn=get("alpn"),
        service_name=get("serviceName"),
        fingerprint=get("fp"),
        public_key=get("pbk"),
        short_id=get("sid"),
        spider_x=get("spx"),
        pqv=get("pqv"),
    )


def _decode_base64_any(payload: str) -> bytes:
    text = "".join(payload.split())
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except binascii.Error:
        pass
    try:
        return base64.urlsafe_b64decode(padded)
    except binascii.Error as exc:
        raise ProviderError(f"vmess base64 decode failed: {exc}") from exc


def _parse_vmess(raw: str) -> VMessProvider:
    payload = raw[len("vmess://"):]
    decoded = _decode_base64_any(payload)
    try:
        data = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProviderError(f"vmess JSON decode failed: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderError("vmess JSON must be an object")

    def text(key: str) -> str:
        value = data.get(key)
        return "" if value is None else str(value).strip()

    if not text("add") or not text("port") or not text("id"):
        raise ProviderError("vmess JSON missing add/port/id")

    alter_id = 0
    if text("aid"):
        try:
            alter_id = int(text("aid"))
        except ValueError:
            alter_id = 0

    return VMessProvider(
        address=text("add"),
        port=_parse_port(text("port"), "vmess"),
        id=text("id"),
        alter_id=alter_id,
        network=_value_or_default(text("net"), "tcp"),
        header_type=text("type"),
        host=text("host"),
        path=text("path"),
        tls=text("tls"),
        sni=text("sni"),
        alpn=text("alpn"),
        security=_value_or_default(text("scy"), "auto"),
    )


def parse_uri(raw: str) -> Provider:
    """Turn a ``vless://`` or ``vmess://`` share link into a provider."""
    value = (raw or "").strip()
    scheme, separator, _ = value.partition("://")
    if not separator:
        raise ProviderError(f"invalid URI: {raw!r}")
    scheme = scheme.lower()
    if scheme == "vless":
        return _parse_vless(value)
    if scheme == "vmess":
        return _parse_vmess(value)
    raise ProviderError(f"unsupported scheme {scheme!r} (supported: vless, vmess)")


__all__ = [
    "Provider",
    "VLESSProvider",
    "VMessProvider",
    "parse_uri",
]
