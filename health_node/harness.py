from __future__ import annotations

import logging
import socket
import threading
import time
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NewConnectionError
from urllib3.poolmanager import PoolManager

from .errors import HarnessError, OperationCancelled, Socks5Error
from .models import ProbeResult, SpeedResult
from .socks5_client import dial_socks5

MAX_HOPS = 5
PROBE_BODY_LIMIT = 2048
READ_CHUNK_SIZE = 64 * 1024
USER_AGENT = "health-node/1.0"
WATCHDOG_INTERVAL = 0.05

logger = logging.getLogger(__name__)


class Socks5Connection(HTTPConnection):
    """HTTP connection whose socket is a tunnel opened by ``dial_socks5``."""

    def __init__(self, *args, **kwargs) -> None:
        self._socks_options = kwargs.pop("_socks_options")
        super().__init__(*args, **kwargs)

    def _new_conn(self) -> socket.socket:
        host = self.host
        target = f"[{host}]:{self.port}" if ":" in host else f"{host}:{self.port}"
        timeout = self.timeout if isinstance(self.timeout, (int, float)) else self._socks_options["dial_timeout"]
        try:
            sock = dial_socks5(self._socks_options["proxy_address"], target, timeout)
        except Socks5Error as exc:
            if isinstance(exc.__cause__, socket.timeout):
                raise ConnectTimeoutError(
                    self, f"Connection to {target} timed out. (connect timeout={timeout})"
                ) from exc
            raise NewConnectionError(self, f"Failed to establish a new connection: {exc}") from exc
        registry = self._socks_options.get("sockets")
        if registry is not None:
            registry.register(sock)
        return sock


class Socks5HTTPSConnection(Socks5Connection, HTTPSConnection):
    pass


class Socks5HTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = Socks5Connection


class Socks5HTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = Socks5HTTPSConnection


class Socks5PoolManager(PoolManager):
    def __init__(
        self,
        proxy_address: str,
        dial_timeout: float,
        sockets: Optional[SocketRegistry] = None,
        num_pools: int = 10,
        headers=None,
        **connection_pool_kw,
    ) -> None:
        connection_pool_kw["_socks_options"] = {
            "proxy_address": proxy_address,
            "dial_timeout": dial_timeout,
            "sockets": sockets,
        }
        super().__init__(num_pools, headers, **connection_pool_kw)
        self.pool_classes_by_scheme = {
            "http": Socks5HTTPConnectionPool,
            "https": Socks5HTTPSConnectionPool,
        }


class Socks5Adapter(HTTPAdapter):
    """Transport adapter that sends every request through one local SOCKS5 endpoint."""

    def __init__(
        self,
        socks_address: str,
        dial_timeout: float,
        sockets: Optional[SocketRegistry] = None,
        **kwargs,
    ) -> None:
        self.socks_address = socks_address
        self.dial_timeout = dial_timeout
        self.sockets = sockets
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs) -> None:
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = Socks5PoolManager(
            self.socks_address,
            self.dial_timeout,
            self.sockets,
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            **pool_kwargs,
        )


class SocketRegistry:
    """Tunnel sockets opened by one session, so a watchdog can abort blocked reads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sockets: List[socket.socket] = []
        self._aborted = False

    def register(self, sock: socket.socket) -> None:
        with self._lock:
            self._sockets.append(sock)
            aborted = self._aborted
        if aborted:
            _shutdown_socket(sock)

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            sockets = list(self._sockets)
        for sock in sockets:
            _shutdown_socket(sock)


def _shutdown_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class RequestWatchdog:
    """Aborts an in-flight request once its deadline passes or ``cancel_event`` is set.

    The requests ``timeout`` bounds each socket read, not the whole request,
    so a peer trickling bytes would otherwise hold a read open indefinitely.
    The watchdog shuts down every registered tunnel socket, which unblocks the
    reader; ``check()`` then turns the aborted read into ``OperationCancelled``.
    """

    def __init__(self, timeout: float, cancel_event: Optional[threading.Event] = None) -> None:
        self.deadline = time.monotonic() + timeout
        self.cancel_event = cancel_event
        self.sockets = SocketRegistry()
        self.reason: Optional[str] = None
        self._finished = threading.Event()
        self._thread = threading.Thread(target=self._watch, name="harness-watchdog", daemon=True)

    def remaining(self) -> float:
        return max(0.01, self.deadline - time.monotonic())

    def _pending_reason(self) -> Optional[str]:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return "request cancelled"
        if time.monotonic() >= self.deadline:
            return "request deadline exceeded"
        return None

    def _watch(self) -> None:
        while not self._finished.wait(WATCHDOG_INTERVAL):
            reason = self._pending_reason()
            if reason:
                self.reason = reason
                logger.debug("Aborting request: %s", reason)
                self.sockets.abort()
                return

    def check(self) -> None:
        reason = self.reason or self._pending_reason()
        if reason:
            raise OperationCancelled(reason)

    def __enter__(self) -> "RequestWatchdog":
        self.check()
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._finished.set()
        self._thread.join()


def build_session(socks_address: str, timeout: float, sockets: Optional[SocketRegistry] = None) -> requests.Session:
    session = requests.Session()
    session.trust_env = False
    # The first request counts as a hop, so a fifth redirect is an error.
    session.max_redirects = MAX_HOPS - 1
    session.headers["User-Agent"] = USER_AGENT
    adapter = Socks5Adapter(socks_address, timeout, sockets=sockets)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _read_body(response: requests.Response, limit: int, watchdog: RequestWatchdog, partial_ok: bool = False) -> int:
    """Consume the body, counting at most ``limit`` bytes (``0`` means no limit).

    With ``partial_ok`` a broken body ends the read and the bytes seen so far
    are reported; cancellation still wins.
    """
    total = 0
    chunk_size = min(READ_CHUNK_SIZE, limit) if limit > 0 else READ_CHUNK_SIZE
    try:
        for chunk in response.iter_content(chunk_size=chunk_size):
            if limit > 0:
                chunk = chunk[: limit - total]
            total += len(chunk)
            if limit > 0 and total >= limit:
                break
            watchdog.check()
    except RequestException as exc:
        watchdog.check()
        if not partial_ok:
            raise
        logger.debug("Body read stopped after %d bytes: %s", total, exc)
    return total


def probe_http(
    socks_address: str,
    url: str,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
) -> ProbeResult:
    with RequestWatchdog(timeout, cancel_event) as watchdog:
        with build_session(socks_address, timeout, watchdog.sockets) as session:
            start = time.perf_counter()
            try:
                with session.get(url, stream=True, timeout=watchdog.remaining()) as response:
                    code = response.status_code
                    bytes_read = _read_body(response, PROBE_BODY_LIMIT, watchdog, partial_ok=True)
                    latency = time.perf_counter() - start
            except RequestException as exc:
                watchdog.check()
                raise HarnessError(f"probe request failed: {exc}") from exc
        watchdog.check()
    logger.debug("Probe %s -> %s in %.3fs (%d bytes)", url, code, latency, bytes_read)
    return ProbeResult(code=code, latency=latency, bytes_read=bytes_read)


def speed_http(
    socks_address: str,
    url: str,
    max_bytes: int,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
) -> SpeedResult:
    headers = {"Accept-Encoding": "identity"}
    with RequestWatchdog(timeout, cancel_event) as watchdog:
        with build_session(socks_address, timeout, watchdog.sockets) as session:
            start = time.perf_counter()
            try:
                with session.get(url, stream=True, timeout=watchdog.remaining(), headers=headers) as response:
                    if response.status_code >= 400:
                        raise HarnessError(f"unexpected HTTP status {response.status_code}")
                    bytes_read = _read_body(response, max(0, int(max_bytes)), watchdog)
            except RequestException as exc:
                watchdog.check()
                raise HarnessError(f"speed request failed: {exc}") from exc
            elapsed = time.perf_counter() - start
        watchdog.check()
    logger.debug("Speed test %s read %d bytes in %.3fs", url, bytes_read, elapsed)
    return SpeedResult(bytes_read=bytes_read, elapsed=elapsed)


__all__ = [
    "RequestWatchdog",
    "Socks5Adapter",
    "build_session",
    "probe_http",
    "speed_http",
]
