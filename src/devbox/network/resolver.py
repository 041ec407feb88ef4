# Devbox
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Devbox.
#
# Devbox is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Host-side policy resolver.

A small UDP DNS server that applies a ``DnsRuleTable`` the way the dnsmasq
sidecar does: blocked names get NXDOMAIN, forwarded names are relayed to
the rule's upstream resolvers, and upstream answers pointing into a blocked
IP range are turned into NXDOMAIN (dnsmasq ``bogus-nxdomain``).  ``devbox network serve`` runs
it with a container's effective policy so rules can be tried from the host
with ``dig @127.0.0.1 -p 5353 <name>`` before they are applied.

Architecture:
  Client --UDP--> PolicyResolver (Host) ---> Upstream DNS (filtered)
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import threading
from dataclasses import dataclass, field

from .policy import DnsAction, DnsRuleTable

logger = logging.getLogger("devbox.network.resolver")

# DNS constants
DNS_PORT = 53
DNS_HEADER_SIZE = 12
DNS_MAX_PACKET = 512
DNS_RCODE_NOERROR = 0
DNS_RCODE_SERVFAIL = 2
DNS_RCODE_NXDOMAIN = 3
DNS_TYPE_A = 1
DNS_TYPE_AAAA = 28
UPSTREAM_TIMEOUT_S = 3.0


@dataclass
class ResolverStats:
    """Statistics for resolver operations."""

    total_queries: int = 0
    allowed_queries: int = 0
    blocked_queries: int = 0
    failed_queries: int = 0
    unique_domains: set = field(default_factory=set)
    blocked_domains: set = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "allowed_queries": self.allowed_queries,
            "blocked_queries": self.blocked_queries,
            "failed_queries": self.failed_queries,
            "unique_domains": len(self.unique_domains),
            "blocked_domains_count": len(self.blocked_domains),
            "top_blocked": sorted(self.blocked_domains)[:20],
        }


def parse_dns_name(data: bytes, offset: int) -> tuple[str, int]:
    """Parse a DNS domain name from a packet, handling compression pointers.

    Returns:
        Tuple of (domain_name, new_offset).
    """
    labels: list[str] = []
    jumped = False
    jump_offset = 0
    hops = 0

    while offset < len(data):
        length = data[offset]

        # Compression pointer (top 2 bits set)
        if (length & 0xC0) == 0xC0:
            hops += 1
            if hops > 32:
                raise IndexError("DNS compression loop")
            if not jumped:
                jump_offset = offset + 2
            offset = struct.unpack("!H", data[offset : offset + 2])[0] & 0x3FFF
            jumped = True
            continue

        # End of name
        if length == 0:
            offset += 1
            break

        offset += 1
        labels.append(data[offset : offset + length].decode("ascii", errors="replace"))
        offset += length

    return ".".join(labels), (jump_offset if jumped else offset)


def answer_addresses(response: bytes) -> list[str]:
    """IPv4/IPv6 addresses from the A and AAAA records of a response's answer section."""
    qdcount, ancount = struct.unpack("!HH", response[4:8])
    offset = DNS_HEADER_SIZE
    for _ in range(qdcount):
        _, offset = parse_dns_name(response, offset)
        offset += 4  # QTYPE, QCLASS

    addresses: list[str] = []
    for _ in range(ancount):
        _, offset = parse_dns_name(response, offset)
        rtype, _rclass, _ttl, rdlength = struct.unpack("!HHIH", response[offset : offset + 10])
        offset += 10
        rdata = response[offset : offset + rdlength]
        offset += rdlength
        if rtype == DNS_TYPE_A and len(rdata) == 4:
            addresses.append(str(ipaddress.IPv4Address(rdata)))
        elif rtype == DNS_TYPE_AAAA and len(rdata) == 16:
            addresses.append(str(ipaddress.IPv6Address(rdata)))
    return addresses


def _build_error_response(query_data: bytes, flags: int) -> bytes:
    if len(query_data) < DNS_HEADER_SIZE:
        return b""
    # ID, flags, QDCOUNT from the query, then AN/NS/AR = 0, then the question
    return (
        query_data[:2]
        + struct.pack("!H", flags)
        + query_data[4:6]
        + struct.pack("!HHH", 0, 0, 0)
        + query_data[DNS_HEADER_SIZE:]
    )


def build_nxdomain_response(query_data: bytes) -> bytes:
    """NXDOMAIN reply: QR=1, AA=1, RD=1, RA=1, RCODE=3."""
    return _build_error_response(query_data, 0x8583)


def build_servfail_response(query_data: bytes) -> bytes:
    """SERVFAIL reply for upstream failures: RCODE=2."""
    return _build_error_response(query_data, 0x8582)


def parse_upstream(upstream: str) -> tuple[str, int]:
    """``8.8.8.8`` -> (``8.8.8.8``, 53); ``127.0.0.1:5300`` -> (``127.0.0.1``, 5300)."""
    host, sep, port = upstream.rpartition(":")
    if sep and host and port.isdigit() and ":" not in host:
        return host, int(port)
    return upstream, DNS_PORT


def _networks(cidrs) -> tuple:
    return tuple(ipaddress.ip_network(cidr, strict=False) for cidr in cidrs)


class PolicyResolver:
    """UDP DNS server enforcing a rule table.

    Usage:
        table = build_dns_rules(policy, ["8.8.8.8"])
        resolver = PolicyResolver(table, listen_port=5353)
        resolver.start()
        ...
        resolver.stop()
    """

    def __init__(
        self,
        table: DnsRuleTable,
        listen_host: str = "127.0.0.1",
        listen_port: int = DNS_PORT,
    ) -> None:
        self._table = table
        self._blocked_networks = _networks(table.blocked_ips)
        self._listen_host = listen_host
        self._listen_port = listen_port

        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._stats = ResolverStats()
        self._lock = threading.Lock()

    @property
    def stats(self) -> ResolverStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); the port is real even when started with port 0."""
        if self._sock is not None:
            return self._sock.getsockname()[:2]
        return self._listen_host, self._listen_port

    def reload(self, table: DnsRuleTable) -> None:
        self._table = table
        self._blocked_networks = _networks(table.blocked_ips)
        logger.info("Policy resolver rules reloaded (%d rules)", len(table.rules))

    def _forward_to_upstream(self, query_data: bytes, upstreams: tuple[str, ...]) -> bytes | None:
        for upstream in upstreams:
            host, port = parse_upstream(upstream)
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                    sock.settimeout(UPSTREAM_TIMEOUT_S)
                    sock.sendto(query_data, (host, port))
                    response, _ = sock.recvfrom(DNS_MAX_PACKET)
                    return response
            except OSError as exc:
                logger.debug("Upstream DNS %s failed: %s", upstream, exc)
                continue
        return None

    def handle_query(self, query_data: bytes) -> bytes:
        """Compute the reply for one query packet (empty bytes = no reply)."""
        if len(query_data) < DNS_HEADER_SIZE:
            return b""

        with self._lock:
            self._stats.total_queries += 1

        try:
            domain, _ = parse_dns_name(query_data, DNS_HEADER_SIZE)
        except (IndexError, struct.error):
            with self._lock:
                self._stats.failed_queries += 1
            return b""

        domain = domain.rstrip(".").lower()
        with self._lock:
            self._stats.unique_domains.add(domain)

        if self._table.decide(domain) is DnsAction.BLOCK:
            logger.debug("DNS BLOCKED: %s", domain)
            with self._lock:
                self._stats.blocked_queries += 1
                self._stats.blocked_domains.add(domain)
            return build_nxdomain_response(query_data)

        logger.debug("DNS ALLOWED: %s", domain)
        response = self._forward_to_upstream(query_data, self._table.upstreams_for(domain))
        if response is None:
            logger.warning("Upstream DNS failed for allowed domain %s", domain)
            with self._lock:
                self._stats.failed_queries += 1
            return build_servfail_response(query_data)

        blocked = self._blocked_address(response)
        if blocked:
            logger.debug("DNS BLOCKED: %s resolves to blocked address %s", domain, blocked)
            with self._lock:
                self._stats.blocked_queries += 1
                self._stats.blocked_domains.add(domain)
            return build_nxdomain_response(query_data)

        with self._lock:
            self._stats.allowed_queries += 1
        return response

    def _blocked_address(self, response: bytes) -> str | None:
        if not self._blocked_networks:
            return None
        try:
            addresses = answer_addresses(response)
        except (IndexError, struct.error):
            logger.debug("Unparseable upstream answer; passed through")
            return None
        for address in addresses:
            ip = ipaddress.ip_address(address)
            if any(ip.version == net.version and ip in net for net in self._blocked_networks):
                return address
        return None

    def _handle(self, query_data: bytes, client_addr: tuple) -> None:
        response = self.handle_query(query_data)
        if response and self._sock:
            try:
                self._sock.sendto(response, client_addr)
            except OSError as exc:
                logger.debug("Reply to %s failed: %s", client_addr[0], exc)

    def start(self) -> None:
        """Start serving in a background thread."""
        if self._running:
            logger.warning("Policy resolver already running")
            return

        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self._sock.bind((self._listen_host, self._listen_port))
        except OSError:
            self._sock.close()
            self._sock = None
            raise
        self._sock.settimeout(1.0)  # periodic check of _running

        self._running = True
        self._thread = threading.Thread(target=self._serve, name="policy-resolver", daemon=True)
        self._thread.start()

        host, port = self.address
        logger.info(
            "Policy resolver started on %s:%d (%s mode, upstream: %s)",
            host,
            port,
            "allowlist" if self._table.is_allowlist else "blocklist",
            ", ".join(self._table.upstreams),
        )

    def stop(self) -> None:
        self._running = False
        if self._sock:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Policy resolver stopped")

    def _serve(self) -> None:
        while self._running:
            sock = self._sock
            if sock is None:
                break
            try:
                data, addr = sock.recvfrom(DNS_MAX_PACKET)
            except socket.timeout:
                continue
            except OSError:
                if self._running:
                    logger.error("Policy resolver socket error")
                break
            threading.Thread(target=self._handle, args=(data, addr), daemon=True).start()

    def get_status(self) -> dict:
        host, port = self.address
        return {
            "running": self._running,
            "listen_host": host,
            "listen_port": port,
            "mode": "allowlist" if self._table.is_allowlist else "blocklist",
            "upstream_dns": list(self._table.upstreams),
            "stats": self._stats.to_dict(),
        }
