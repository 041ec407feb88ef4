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
"""dnsmasq renderer for the DNS sidecar.

Turns a ``DnsRuleTable`` into a dnsmasq configuration file:

  allowlist:  address=/#/               every name -> NXDOMAIN
              server=/github.com/8.8.8.8   ...except forwarded patterns
              address=/gist.github.com/    explicit blocks (more specific)
  blocklist:  server=8.8.8.8            everything forwarded
              address=/pastebin.com/       ...except blocked patterns

``address=/<domain>/`` with no address answers NXDOMAIN for the domain and
all its subdomains.  ``bogus-nxdomain=<cidr>`` turns upstream answers that
point into a blocked IP range into NXDOMAIN.

The config reaches the sidecar through an environment variable and is
written to disk by the sidecar's entry command, so no shell quoting of
the rules is ever needed.
"""

from __future__ import annotations

from .policy import DnsRuleTable

CONFIG_ENV = "DEVBOX_DNSMASQ_CONF"
CONFIG_PATH = "/etc/dnsmasq.d/devbox.conf"


def upstream_to_dnsmasq(upstream: str) -> str:
    """Convert ``host`` or ``host:port`` to dnsmasq's ``host#port`` syntax."""
    host, sep, port = upstream.rpartition(":")
    if sep and host and port.isdigit() and host.count(":") == 0:
        return f"{host}#{port}"
    return upstream


def render_config(table: DnsRuleTable, profile_name: str = "") -> str:
    """Render a dnsmasq config for a rule table."""
    lines = [
        f"# Generated by devbox{f' for egress profile {profile_name}' if profile_name else ''}",
        "no-resolv",
        "domain-needed",
        "cache-size=1000",
    ]
    if table.log_queries:
        lines.append("log-queries")

    if table.is_allowlist:
        lines += ["", "# Allowlist mode: names not listed below answer NXDOMAIN", "address=/#/"]
        forward = table.forward_rules
        if forward:
            lines += ["", "# Allowed domains - forwarded to upstream DNS"]
        for rule in forward:
            for upstream in rule.upstreams or table.upstreams:
                lines.append(f"server=/{rule.pattern}/{upstream_to_dnsmasq(upstream)}")
    else:
        lines += ["", "# Blocklist mode: forward everything except blocked domains"]
        for upstream in table.upstreams:
            lines.append(f"server={upstream_to_dnsmasq(upstream)}")

    block = table.block_rules
    if block:
        lines += ["", "# Blocked domains - always NXDOMAIN, even under a broader allow"]
        lines += [f"address=/{rule.pattern}/" for rule in block]

    if table.blocked_ips:
        lines += ["", "# Answers pointing into blocked IP ranges become NXDOMAIN"]
        lines += [f"bogus-nxdomain={cidr}" for cidr in table.blocked_ips]

    return "\n".join(lines) + "\n"


def sidecar_command() -> list[str]:
    """Entry command for the sidecar container (alpine based)."""
    script = (
        "apk add --no-cache dnsmasq >/dev/null 2>&1"
        " && mkdir -p /etc/dnsmasq.d"
        f' && printf "%s" "${CONFIG_ENV}" > {CONFIG_PATH}'
        f" && exec dnsmasq -k --conf-file={CONFIG_PATH} --log-facility=-"
    )
    return ["sh", "-c", script]
