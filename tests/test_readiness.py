from __future__ import annotations

import socket
import threading
import time
import unittest
from unittest.mock import patch

from socks_fixtures import free_port

from health_node.errors import OperationCancelled, ReadinessTimeoutError
from health_node.readiness import wait_for_endpoint


class WaitForEndpointTest(unittest.TestCase):
    def test_times_out_when_nothing_listens(self) -> None:
        address = f"127.0.0.1:{free_port()}"
        start = time.monotonic()
        with self.assertRaises(ReadinessTimeoutError) as ctx:
            wait_for_endpoint(address, 0.5, interval=0.1, attempt_timeout=0.1)
        elapsed = time.monotonic() - start
        self.assertGreaterEqual(elapsed, 0.5)
        self.assertLess(elapsed, 3.0)
        self.assertIsInstance(ctx.exception, TimeoutError)
        self.assertIn(address, str(ctx.exception))

    def test_short_deadline_still_waits_one_interval(self) -> None:
        address = f"127.0.0.1:{free_port()}"
        start = time.monotonic()
        with self.assertRaises(ReadinessTimeoutError):
            wait_for_endpoint(address, 0.01, interval=0.3, attempt_timeout=0.1)
        self.assertGreaterEqual(time.monotonic() - start, 0.3)

    def test_returns_once_listener_appears(self) -> None:
        port = free_port()
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        def open_later() -> None:
            time.sleep(0.3)
            listener.bind(("127.0.0.1", port))
            listener.listen(4)

        opener = threading.Thread(target=open_later)
        opener.start()
        try:
            wait_for_endpoint(f"127.0.0.1:{port}", 5, interval=0.05, attempt_timeout=0.2)
        finally:
            opener.join()
            listener.close()

    def test_listening_endpoint_is_ready_immediately(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            start = time.monotonic()
            wait_for_endpoint("127.0.0.1:%d" % listener.getsockname()[1], 5, interval=1.0)
            self.assertLess(time.monotonic() - start, 1.0)

    def test_attempt_timeout_never_outlasts_deadline(self) -> None:
        budgets = []

        def refuse(address, timeout):
            budgets.append(timeout)
            raise ConnectionRefusedError(address)

        with patch("health_node.readiness.socket.create_connection", side_effect=refuse):
            with self.assertRaises(ReadinessTimeoutError):
                wait_for_endpoint("127.0.0.1:9", 0.3, interval=0.05, attempt_timeout=5.0)
        self.assertTrue(budgets)
        self.assertLessEqual(max(budgets), 0.3)
        self.assertGreaterEqual(min(budgets), 0.01)

    def test_cancel_event_stops_polling(self) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            with self.assertRaises(OperationCancelled):
                wait_for_endpoint(f"127.0.0.1:{free_port()}", 30, interval=0.1, attempt_timeout=0.1, cancel_event=cancel)
        finally:
            timer.cancel()
        self.assertLess(time.monotonic() - start, 5.0)


if __name__ == "__main__":
    unittest.main()
