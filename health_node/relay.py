from __future__ import annotations

import logging
import socket
import socketserver
import threading
from contextlib import closing
from typing import Callable, Optional, Set, Tuple

from .socks5_client import split_host_port

BUFFER_SIZE = 32 * 1024
DIAL_TIMEOUT = 10.0
SERVE_POLL_INTERVAL = 0.1
DEFAULT_REPORT_INTERVAL = 1.0

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

logger = logging.getLogger(__name__)


def human_bytes(value: int) -> str:
    if value >= GB:
        return f"{value / GB:.2f}GB"
    if value >= MB:
        return f"{value / MB:.2f}MB"
    if value >= KB:
        return f"{value / KB:.2f}KB"
    return f"{value}B"


class TrafficCounters:
    """Cumulative uplink/downlink byte totals shared by every relayed connection.

    Writers only ever add. CPython has no atomic integer add, so a lock
    guards the single increment and is never held across I/O. Readers
    take a consistent ``snapshot()``.
    """

    def __init__(self) -> None:
        self._uplink = 0
        self._downlink = 0
        self._lock = threading.Lock()

    def add_uplink(self, count: int) -> None:
        if count > 0:
            with self._lock:
                self._uplink += count

    def add_downlink(self, count: int) -> None:
        if count > 0:
            with self._lock:
                self._downlink += count

    @property
    def uplink(self) -> int:
        return self._uplink

    @property
    def downlink(self) -> int:
        return self._downlink

    def snapshot(self) -> Tuple[int, int]:
        with self._lock:
            return self._uplink, self._downlink


def _pump(source: socket.socket, destination: socket.socket, account: Callable[[int], None]) -> None:
    try:
        while True:
            chunk = source.recv(BUFFER_SIZE)
            if not chunk:
                break
            destination.sendall(chunk)
            account(len(chunk))
    except OSError as exc:
        logger.debug("Relay copy ended: %s", exc)
    finally:
        try:
            destination.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class _RelayHandler(socketserver.BaseRequestHandler):
    server: "_RelayServer"

    def handle(self) -> None:
        client = self.request
        try:
            target = socket.create_connection(self.server.target, timeout=DIAL_TIMEOUT)
        except OSError as exc:
            logger.debug("Relay dial to %s:%s failed for %s: %s", *self.server.target, self.client_address, exc)
            return

        with closing(target):
            target.settimeout(None)
            if not self.server.track(client, target):
                return
            try:
                uplink = threading.Thread(
                    target=_pump,
                    args=(client, target, self.server.counters.add_uplink),
                    name="relay-uplink",
                    daemon=True,
                )
                uplink.start()
                _pump(target, client, self.server.counters.add_downlink)
                uplink.join()
            finally:
                self.server.untrack(client, target)


class _RelayServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True
    block_on_close = True

    def __init__(self, listen: Tuple[str, int], target: Tuple[str, int], counters: TrafficCounters) -> None:
        self.target = target
        self.counters = counters
        self._active: Set[socket.socket] = set()
        self._active_lock = threading.Lock()
        self._closing = False
        super().__init__(listen, _RelayHandler)

    def track(self, *sockets: socket.socket) -> bool:
        with self._active_lock:
            if self._closing:
                return False
            self._active.update(sockets)
            return True

    def untrack(self, *sockets: socket.socket) -> None:
        with self._active_lock:
            self._active.difference_update(sockets)

    def abort_active(self) -> None:
        with self._active_lock:
            self._closing = True
            active = list(self._active)
        for sock in active:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass


class RelaySession:
    """A local TCP listener forwarding every connection to one target.

    ``stop()`` returns only after the accept loop and every connection
    handler have finished, so the counters are quiescent afterwards.
    """

    def __init__(self, listen_address: str, target_address: str, counters: Optional[TrafficCounters] = None) -> None:
        self.listen_address = listen_address
        self.target_address = target_address
        self.counters = counters if counters is not None else TrafficCounters()
        self._server: Optional[_RelayServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_lock = threading.Lock()
        self.logger = logging.getLogger(__name__ + ".RelaySession")

    @property
    def address(self) -> Tuple[str, int]:
        if self._server is None:
            raise RuntimeError("relay session is not started")
        host, port = self._server.server_address[:2]
        return host, port

    def start(self) -> "RelaySession":
        if self._server is not None:
            raise RuntimeError("relay session already started")
        self._server = _RelayServer(
            split_host_port(self.listen_address),
            split_host_port(self.target_address),
            self.counters,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": SERVE_POLL_INTERVAL},
            name="relay-accept",
            daemon=True,
        )
        self._thread.start()
        self.logger.info("Relaying %s:%s -> %s", *self.address, self.target_address)
        return self

    def stop(self) -> None:
        with self._stop_lock:
            server, thread = self._server, self._thread
            if server is None or thread is None:
                return
            self._thread = None
            server.shutdown()
            thread.join()
            server.abort_active()
            server.server_close()
            self.logger.info("Relay on %s stopped", self.listen_address)

    def __enter__(self) -> "RelaySession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def start_relay(listen_address: str, target_address: str, counters: TrafficCounters) -> Callable[[], None]:
    return RelaySession(listen_address, target_address, counters).start().stop


class TrafficReporter:
    def __init__(
        self,
        counters: TrafficCounters,
        interval: float = DEFAULT_REPORT_INTERVAL,
        sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.counters = counters
        self.interval = max(0.05, float(interval))
        self.logger = logging.getLogger(__name__ + ".TrafficReporter")
        self.sink = sink or self.logger.info
        self._previous = (0, 0)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sample(self) -> str:
        up, down = self.counters.snapshot()
        prev_up, prev_down = self._previous
        self._previous = (up, down)
        up_rate = int((up - prev_up) / self.interval)
        down_rate = int((down - prev_down) / self.interval)
        return (
            f"[traffic] up={human_bytes(up_rate)}/s down={human_bytes(down_rate)}/s "
            f"total_up={human_bytes(up)} total_down={human_bytes(down)}"
        )

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.sink(self.sample())

    def start(self) -> "TrafficReporter":
        self._stop_event.clear()
        self._previous = self.counters.snapshot()
        self._thread = threading.Thread(target=self._run, name="traffic-reporter", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None


__all__ = [
    "RelaySession",
    "TrafficCounters",
    "TrafficReporter",
    "human_bytes",
    "start_relay",
]
