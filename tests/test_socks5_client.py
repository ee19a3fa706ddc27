from __future__ import annotations

import socket
import unittest

from socks_fixtures import ScriptedSocksPeer, free_port

from health_node.errors import (Socks5AddressError, Socks5AddressTypeError, Socks5DialError, Socks5Error,
                                Socks5IOError, Socks5NegotiationError, Socks5ReplyError)
from health_node.models import AddressType
from health_node.socks5_client import build_connect_request, dial_socks5, encode_address, split_host_port


class ConnectRequestWireTest(unittest.TestCase):
    def _dial(self, target: str) -> bytes:
        peer = ScriptedSocksPeer()
        try:
            sock = dial_socks5(peer.address, target, 5)
            self.assertIsNone(sock.gettimeout())
            sock.close()
        finally:
            peer.close()
        self.assertEqual(peer.greeting, bytes.fromhex("050100"))
        return peer.request

    def test_ipv4_target_request_bytes(self) -> None:
        request = self._dial("93.184.216.34:443")
        self.assertEqual(request, bytes.fromhex("05010001 5DB8D822 01BB"))

    def test_domain_target_request_bytes(self) -> None:
        request = self._dial("example.com:80")
        self.assertEqual(request, bytes.fromhex("050100030B6578616D706C652E636F6D0050"))

    def test_ipv6_target_request_bytes(self) -> None:
        request = self._dial("[2001:db8::1]:8443")
        expected = bytes.fromhex("05010004") + socket.inet_pton(socket.AF_INET6, "2001:db8::1") + bytes.fromhex("20FB")
        self.assertEqual(request, expected)

    def test_tunnel_carries_payload_after_handshake(self) -> None:
        peer = ScriptedSocksPeer()
        try:
            sock = dial_socks5(peer.address, "example.com:80", 5)
            with sock:
                sock.sendall(b"GET / HTTP/1.0\r\n\r\n")
        finally:
            peer.close()
        self.assertEqual(peer.extra, b"GET / HTTP/1.0\r\n\r\n")


class HandshakeFailureTest(unittest.TestCase):
    def test_method_rejection_fails_before_connect(self) -> None:
        peer = ScriptedSocksPeer(method_reply=b"\x05\x01")
        try:
            with self.assertRaises(Socks5NegotiationError) as ctx:
                dial_socks5(peer.address, "93.184.216.34:443", 5)
        finally:
            peer.close()
        self.assertEqual(ctx.exception.stage, "negotiation")
        self.assertEqual(peer.greeting, bytes.fromhex("050100"))
        self.assertEqual(peer.request, b"")
        self.assertEqual(peer.extra, b"")

    def test_connect_refused_reports_code(self) -> None:
        reply = b"\x05\x05\x00\x01" + bytes(6)
        peer = ScriptedSocksPeer(connect_reply=reply)
        try:
            with self.assertRaises(Socks5ReplyError) as ctx:
                dial_socks5(peer.address, "example.com:80", 5)
        finally:
            peer.close()
        self.assertEqual(ctx.exception.code, 0x05)
        self.assertIn("0x05", str(ctx.exception))
        self.assertIn("connection refused", str(ctx.exception))

    def test_bad_reply_version(self) -> None:
        peer = ScriptedSocksPeer(connect_reply=b"\x04\x00\x00\x01" + bytes(6))
        try:
            with self.assertRaises(Socks5NegotiationError) as ctx:
                dial_socks5(peer.address, "example.com:80", 5)
        finally:
            peer.close()
        self.assertEqual(ctx.exception.stage, "connect_reply")

    def test_unknown_bound_address_type(self) -> None:
        peer = ScriptedSocksPeer(connect_reply=b"\x05\x00\x00\x07" + bytes(6))
        try:
            with self.assertRaises(Socks5AddressTypeError) as ctx:
                dial_socks5(peer.address, "example.com:80", 5)
        finally:
            peer.close()
        self.assertEqual(ctx.exception.address_type, 0x07)

    def test_domain_bound_address_is_consumed(self) -> None:
        reply = b"\x05\x00\x00\x03\x04host\x00\x50"
        peer = ScriptedSocksPeer(connect_reply=reply)
        try:
            sock = dial_socks5(peer.address, "example.com:80", 5)
            sock.close()
        finally:
            peer.close()

    def test_truncated_reply_is_io_error(self) -> None:
        peer = ScriptedSocksPeer(connect_reply=b"\x05\x00", close_after_reply=True)
        try:
            with self.assertRaises(Socks5IOError) as ctx:
                dial_socks5(peer.address, "example.com:80", 5)
        finally:
            peer.close()
        self.assertEqual(ctx.exception.stage, "socks connect read")

    def test_dial_failure(self) -> None:
        with self.assertRaises(Socks5DialError) as ctx:
            dial_socks5(f"127.0.0.1:{free_port()}", "example.com:80", 1)
        self.assertIsInstance(ctx.exception, Socks5Error)
        self.assertIsInstance(ctx.exception.__cause__, OSError)


class AddressEncodingTest(unittest.TestCase):
    def test_split_host_port(self) -> None:
        self.assertEqual(split_host_port("example.com:80"), ("example.com", 80))
        self.assertEqual(split_host_port("[::1]:1080"), ("::1", 1080))
        for bad in ("example.com", "::1:80", "[::1]80", "host:http", ""):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    split_host_port(bad)

    def test_ipv4_mapped_address_is_sent_as_ipv4(self) -> None:
        address_type, payload = encode_address("::ffff:10.0.0.1")
        self.assertEqual(address_type, AddressType.IPV4)
        self.assertEqual(payload, bytes((10, 0, 0, 1)))

    def test_domain_length_limits(self) -> None:
        address_type, payload = encode_address("a" * 255)
        self.assertEqual(address_type, AddressType.DOMAIN)
        self.assertEqual(payload[0], 255)
        with self.assertRaises(Socks5AddressError):
            encode_address("a" * 256)
        with self.assertRaises(Socks5AddressError):
            encode_address("")

    def test_invalid_target_port(self) -> None:
        for target in ("example.com:0", "example.com:70000", "example.com"):
            with self.subTest(target=target):
                with self.assertRaises(Socks5AddressError):
                    build_connect_request(target)


if __name__ == "__main__":
    unittest.main()
