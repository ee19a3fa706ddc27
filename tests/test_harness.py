from __future__ import annotations

import threading
import time
import unittest

from socks_fixtures import HTTPFixtureServer, Socks5TestServer, free_port

from health_node.errors import HarnessError, OperationCancelled
from health_node.harness import build_session, probe_http, speed_http


class HarnessThroughSocksTest(unittest.TestCase):
    def setUp(self) -> None:
        self.http = HTTPFixtureServer().__enter__()
        self.socks = Socks5TestServer().__enter__()

    def tearDown(self) -> None:
        self.socks.__exit__(None, None, None)
        self.http.__exit__(None, None, None)

    def test_probe_generate_204(self) -> None:
        result = probe_http(self.socks.address, self.http.url("/generate_204"), 5)
        self.assertEqual(result.code, 204)
        self.assertEqual(result.bytes_read, 0)
        self.assertGreaterEqual(result.latency, 0)
        self.assertGreaterEqual(result.latency_ms, 0)

    def test_probe_reads_at_most_2048_bytes(self) -> None:
        result = probe_http(self.socks.address, self.http.url("/bytes/10000"), 5)
        self.assertEqual(result.code, 200)
        self.assertEqual(result.bytes_read, 2048)

    def test_probe_reports_error_status_without_failing(self) -> None:
        result = probe_http(self.socks.address, self.http.url("/status/503"), 5)
        self.assertEqual(result.code, 503)

    def test_speed_caps_at_max_bytes(self) -> None:
        result = speed_http(self.socks.address, self.http.url("/bytes/5000"), 100, 5)
        self.assertEqual(result.bytes_read, 100)
        self.assertGreater(result.elapsed, 0)
        self.assertGreater(result.mbps, 0)

    def test_speed_zero_means_whole_body(self) -> None:
        result = speed_http(self.socks.address, self.http.url("/bytes/50"), 0, 5)
        self.assertEqual(result.bytes_read, 50)

    def test_speed_short_body_is_success(self) -> None:
        result = speed_http(self.socks.address, self.http.url("/bytes/50"), 1000, 5)
        self.assertEqual(result.bytes_read, 50)

    def test_speed_error_status_fails(self) -> None:
        with self.assertRaises(HarnessError) as ctx:
            speed_http(self.socks.address, self.http.url("/status/500"), 100, 5)
        self.assertIn("500", str(ctx.exception))

    def test_cancelled_before_request(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(OperationCancelled):
            probe_http(self.socks.address, self.http.url("/generate_204"), 5, cancel_event=cancel)

    def test_speed_deadline_cuts_off_trickling_body(self) -> None:
        start = time.monotonic()
        with self.assertRaises(OperationCancelled) as ctx:
            speed_http(self.socks.address, self.http.url("/trickle/20"), 0, 1.0)
        self.assertLess(time.monotonic() - start, 2.0)
        self.assertIn("deadline", str(ctx.exception))

    def test_probe_deadline_cuts_off_trickling_body(self) -> None:
        start = time.monotonic()
        with self.assertRaises(OperationCancelled):
            probe_http(self.socks.address, self.http.url("/trickle/20"), 1.0)
        self.assertLess(time.monotonic() - start, 2.0)

    def test_cancel_during_body_returns_promptly(self) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            with self.assertRaises(OperationCancelled) as ctx:
                speed_http(self.socks.address, self.http.url("/trickle/20"), 0, 30, cancel_event=cancel)
        finally:
            timer.cancel()
        self.assertLess(time.monotonic() - start, 1.5)
        self.assertIn("cancelled", str(ctx.exception))

    def test_follows_four_redirects(self) -> None:
        result = probe_http(self.socks.address, self.http.url("/redirect/4"), 5)
        self.assertEqual(result.code, 204)

    def test_fifth_redirect_fails(self) -> None:
        with self.assertRaises(HarnessError) as ctx:
            probe_http(self.socks.address, self.http.url("/redirect/5"), 5)
        self.assertIn("redirects", str(ctx.exception))

    def test_probe_reports_partial_body(self) -> None:
        result = probe_http(self.socks.address, self.http.url("/truncated/100"), 5)
        self.assertEqual(result.code, 200)
        self.assertLessEqual(result.bytes_read, 100)


class HarnessTransportFailureTest(unittest.TestCase):
    def test_unreachable_socks_endpoint(self) -> None:
        with self.assertRaises(HarnessError) as ctx:
            probe_http(f"127.0.0.1:{free_port()}", "http://example.invalid/", 2)
        self.assertIsNotNone(ctx.exception.__cause__)

    def test_unreachable_target_through_proxy(self) -> None:
        with Socks5TestServer() as socks:
            with self.assertRaises(HarnessError):
                speed_http(socks.address, f"http://127.0.0.1:{free_port()}/", 0, 2)

    def test_session_ignores_environment_proxies(self) -> None:
        with build_session("127.0.0.1:1080", 5) as session:
            self.assertFalse(session.trust_env)
            self.assertEqual(session.max_redirects, 4)


if __name__ == "__main__":
    unittest.main()
