from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Optional

from .errors import OperationCancelled, ReadinessTimeoutError
from .socks5_client import split_host_port

DEFAULT_POLL_INTERVAL = 0.2
DEFAULT_ATTEMPT_TIMEOUT = 0.5

logger = logging.getLogger(__name__)


def wait_for_endpoint(
    address: str,
    timeout: float,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
    cancel_event: Optional[threading.Event] = None,
) -> None:
    """Block until a TCP connect to ``address`` succeeds.

    The endpoint usually is not listening yet right after the core starts,
    so this polls: one short connect attempt per cycle, ``interval`` seconds
    apart, until ``timeout`` elapses (``ReadinessTimeoutError``) or
    ``cancel_event`` is set (``OperationCancelled``).
    """
    host, port = split_host_port(address)
    deadline = time.monotonic() + max(0.0, timeout)
    attempts = 0
    waiter = cancel_event or threading.Event()

    while True:
        if time.monotonic() > deadline:
            raise ReadinessTimeoutError(
                f"timeout: {address} not accepting connections after {timeout:.1f}s ({attempts} attempts)"
            )
        attempts += 1
        try:
            budget = min(attempt_timeout, max(0.01, deadline - time.monotonic()))
            probe = socket.create_connection((host, port), timeout=budget)
        except OSError as exc:
            logger.debug("Readiness attempt %d for %s failed: %s", attempts, address, exc)
        else:
            probe.close()
            logger.debug("Endpoint %s ready after %d attempt(s)", address, attempts)
            return

        if waiter.wait(interval):
            raise OperationCancelled(f"waiting for {address} cancelled")


__all__ = [
    "wait_for_endpoint",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_ATTEMPT_TIMEOUT",
]
