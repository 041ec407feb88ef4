# Devbox
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the host-side policy resolver."""

import ipaddress
import socket
import struct
import threading

import pytest

from devbox.network.policy import build_dns_rules, merge
from devbox.network.profiles import load_profile
from devbox.network.resolver import (
    PolicyResolver,
    ResolverStats,
    answer_addresses,
    build_nxdomain_response,
    build_servfail_response,
    parse_dns_name,
    parse_upstream,
)
from devbox.network.rules import CustomRule, CustomRuleSet, RuleKind


def _build_dns_query(domain: str, qtype: int = 1, txid: int = 0x1234) -> bytes:
    """Build a minimal DNS query packet for testing."""
    header = struct.pack("!HHHHHH", txid, 0x0100, 1, 0, 0, 0)
    question = b""
    for label in domain.split("."):
        question += struct.pack("B", len(label)) + label.encode("ascii")
    question += b"\x00" + struct.pack("!HH", qtype, 1)
    return header + question


def _rcode(response: bytes) -> int:
    return struct.unpack("!H", response[2:4])[0] & 0x000F


class FakeUpstream:
    """UDP server answering every query with a NOERROR reply.

    Names in ``answers`` get one A or AAAA record with the mapped address.
    """

    def __init__(self):
        self.answers = {}
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.queries = []
        self._running = True
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while self._running:
            try:
                data, addr = self.sock.recvfrom(512)
            except socket.timeout:
                continue
            except OSError:
                break
            name, _ = parse_dns_name(data, 12)
            self.queries.append(name)
            self.sock.sendto(self._reply(data, name), addr)

    def _reply(self, data, name):
        address = self.answers.get(name)
        # QR=1, RD=1, RA=1, RCODE=0
        if address is None:
            return data[:2] + struct.pack("!H", 0x8180) + data[4:]
        ip = ipaddress.ip_address(address)
        rtype = 1 if ip.version == 4 else 28
        # owner name is a pointer to the question name at offset 12
        record = b"\xc0\x0c" + struct.pack("!HHIH", rtype, 1, 60, len(ip.packed)) + ip.packed
        return data[:2] + struct.pack("!HHH", 0x8180, 1, 1) + data[8:] + record

    def close(self):
        self._running = False
        self._thread.join(timeout=2)
        self.sock.close()


@pytest.fixture
def upstream():
    server = FakeUpstream()
    yield server
    server.close()


def _table(profile, upstreams, *pairs):
    rules = CustomRuleSet("web", tuple(CustomRule(RuleKind(k), v) for k, v in pairs))
    return build_dns_rules(merge(load_profile(profile), rules), upstreams)


class TestParsing:
    def test_simple_domain(self):
        name, _ = parse_dns_name(_build_dns_query("api.github.com"), 12)
        assert name == "api.github.com"

    def test_compression_pointer(self):
        query = _build_dns_query("github.com")
        # name at offset 12, then a pointer back to it
        data = query + b"\xc0\x0c"
        name, offset = parse_dns_name(data, len(query))
        assert name == "github.com"
        assert offset == len(query) + 2

    def test_compression_loop_rejected(self):
        data = b"\x00" * 12 + b"\xc0\x0c"
        with pytest.raises(IndexError):
            parse_dns_name(data, 12)

    def test_parse_upstream(self):
        assert parse_upstream("8.8.8.8") == ("8.8.8.8", 53)
        assert parse_upstream("127.0.0.1:5300") == ("127.0.0.1", 5300)


class TestResponses:
    def test_nxdomain(self):
        query = _build_dns_query("pastebin.com")
        response = build_nxdomain_response(query)
        assert response[:2] == query[:2]
        assert struct.unpack("!H", response[2:4])[0] & 0x8000
        assert _rcode(response) == 3

    def test_servfail(self):
        assert _rcode(build_servfail_response(_build_dns_query("x.com"))) == 2

    def test_short_query(self):
        assert build_nxdomain_response(b"short") == b""

    def test_answer_addresses(self):
        query = _build_dns_query("example.com")
        a = b"\xc0\x0c" + struct.pack("!HHIH", 1, 1, 60, 4) + bytes([10, 0, 0, 7])
        cname = b"\xc0\x0c" + struct.pack("!HHIH", 5, 1, 60, 2) + b"\xc0\x0c"
        response = query[:2] + struct.pack("!HHH", 0x8180, 1, 2) + query[8:] + cname + a
        assert answer_addresses(response) == ["10.0.0.7"]

    def test_answer_addresses_none(self):
        assert answer_addresses(_build_dns_query("example.com")) == []


class TestHandleQuery:
    """Decisions without sockets on the client side."""

    def test_blocked_name_nxdomain(self):
        resolver = PolicyResolver(_table("strict", ["127.0.0.1:9"]))
        response = resolver.handle_query(_build_dns_query("random.example.com"))
        assert _rcode(response) == 3
        assert resolver.stats.blocked_queries == 1
        assert "random.example.com" in resolver.stats.blocked_domains

    def test_block_wins_over_allow(self):
        resolver = PolicyResolver(_table("strict", ["127.0.0.1:9"]))
        assert _rcode(resolver.handle_query(_build_dns_query("gist.github.com"))) == 3

    def test_allowed_name_forwarded(self, upstream):
        resolver = PolicyResolver(_table("strict", [f"127.0.0.1:{upstream.port}"]))
        query = _build_dns_query("api.github.com", txid=0xBEEF)
        response = resolver.handle_query(query)
        assert response[:2] == query[:2]
        assert _rcode(response) == 0
        assert upstream.queries == ["api.github.com"]
        assert resolver.stats.allowed_queries == 1

    def test_answer_in_blocked_range_nxdomain(self, upstream):
        upstream.answers["metadata.example.com"] = "169.254.169.254"
        resolver = PolicyResolver(_table("standard", [f"127.0.0.1:{upstream.port}"]))
        response = resolver.handle_query(_build_dns_query("metadata.example.com"))
        assert _rcode(response) == 3
        assert struct.unpack("!H", response[6:8])[0] == 0
        assert resolver.stats.blocked_queries == 1
        assert resolver.stats.allowed_queries == 0

    def test_answer_outside_blocked_range_passes(self, upstream):
        upstream.answers["example.com"] = "93.184.216.34"
        resolver = PolicyResolver(_table("standard", [f"127.0.0.1:{upstream.port}"]))
        response = resolver.handle_query(_build_dns_query("example.com"))
        assert _rcode(response) == 0
        assert response[-4:] == bytes([93, 184, 216, 34])
        assert resolver.stats.allowed_queries == 1

    def test_custom_ipv6_block(self, upstream):
        upstream.answers["v6.example.com"] = "2001:db8::1"
        table = _table("permissive", [f"127.0.0.1:{upstream.port}"], ("block-ip", "2001:db8::/32"))
        response = PolicyResolver(table).handle_query(_build_dns_query("v6.example.com", qtype=28))
        assert _rcode(response) == 3

    def test_upstream_failure_servfail(self, monkeypatch):
        monkeypatch.setattr("devbox.network.resolver.UPSTREAM_TIMEOUT_S", 0.2)
        resolver = PolicyResolver(_table("standard", ["127.0.0.1:9"]))
        # nothing listens on the discard port: timeout or connection refused
        response = resolver.handle_query(_build_dns_query("example.com"))
        assert _rcode(response) == 2
        assert resolver.stats.failed_queries == 1

    def test_garbage_ignored(self):
        resolver = PolicyResolver(_table("standard", ["127.0.0.1:9"]))
        assert resolver.handle_query(b"\x00\x01") == b""

    def test_reload_changes_decisions(self, upstream):
        resolver = PolicyResolver(_table("strict", [f"127.0.0.1:{upstream.port}"]))
        assert _rcode(resolver.handle_query(_build_dns_query("httpbin.org"))) == 3
        resolver.reload(_table("strict", [f"127.0.0.1:{upstream.port}"], ("allow-domain", "httpbin.org")))
        assert _rcode(resolver.handle_query(_build_dns_query("httpbin.org"))) == 0


class TestServer:
    """End to end over UDP."""

    def test_serve_and_stop(self, upstream):
        resolver = PolicyResolver(
            _table("strict", [f"127.0.0.1:{upstream.port}"], ("allow-domain", "httpbin.org")),
            listen_port=0,
        )
        resolver.start()
        try:
            host, port = resolver.address
            assert port != 0
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
                client.settimeout(3)
                client.sendto(_build_dns_query("httpbin.org"), (host, port))
                allowed, _ = client.recvfrom(512)
                client.sendto(_build_dns_query("random.example.com"), (host, port))
                blocked, _ = client.recvfrom(512)
            assert _rcode(allowed) == 0
            assert _rcode(blocked) == 3
            status = resolver.get_status()
            assert status["running"]
            assert status["mode"] == "allowlist"
        finally:
            resolver.stop()
        assert not resolver.is_running

    def test_stats_to_dict(self):
        stats = ResolverStats(total_queries=3, blocked_queries=1)
        stats.blocked_domains.add("pastebin.com")
        data = stats.to_dict()
        assert data["total_queries"] == 3
        assert data["top_blocked"] == ["pastebin.com"]
