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
"""Effective egress policy and DNS rule table.

    EgressProfile + CustomRuleSet --merge()--> EffectivePolicy
    EffectivePolicy --build_dns_rules()--> DnsRuleTable --render--> resolver config

The rule table is resolver-independent: ``DnsRuleTable.decide(name)``
answers the same question dnsmasq (or the host-side ``PolicyResolver``)
answers, so the policy can be tested without a container runtime.

Matching is suffix based, never glob based: ``example.com`` matches
``example.com`` and every name below it, but not ``badexample.com``.
``*.example.com`` is therefore stored as ``example.com``.

Precedence: an explicit block always wins.  A blocked pattern blocks
every name at or below it even when a broader (or identical) allow
pattern exists.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable

from .profiles import DefaultAction, EgressProfile, NetworkMode
from .rules import CustomRuleSet, RuleKind


def normalize_domain(pattern: str) -> str:
    """Reduce a domain pattern to the bare suffix form used for matching."""
    domain = pattern.strip().lower().rstrip(".")
    while domain.startswith("*."):
        domain = domain[2:]
    return domain


def domain_matches(name: str, pattern: str) -> bool:
    """True if ``name`` equals ``pattern`` or is a subdomain of it."""
    name = name.strip().lower().rstrip(".")
    pattern = normalize_domain(pattern)
    if not pattern:
        return False
    return name == pattern or name.endswith("." + pattern)


# ---------------------------------------------------------------------------
# EffectivePolicy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectivePolicy:
    """A profile with a container's custom rules unioned in."""

    profile_name: str
    network_mode: NetworkMode
    default_action: DefaultAction
    log_blocked: bool = False
    log_all: bool = False
    allowed_ports: frozenset[int] = field(default_factory=frozenset)
    allowed_domains: frozenset[str] = field(default_factory=frozenset)
    blocked_domains: frozenset[str] = field(default_factory=frozenset)
    allowed_ips: frozenset[str] = field(default_factory=frozenset)
    blocked_ips: frozenset[str] = field(default_factory=frozenset)
    has_custom_rules: bool = False

    @property
    def is_allowlist(self) -> bool:
        return self.default_action is DefaultAction.DROP

    @property
    def needs_sidecar(self) -> bool:
        return self.network_mode is not NetworkMode.NONE

    @property
    def log_queries(self) -> bool:
        return self.log_blocked or self.log_all

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile_name,
            "network_mode": self.network_mode.value,
            "default_action": self.default_action.value,
            "log_blocked": self.log_blocked,
            "log_all": self.log_all,
            "allowed_ports": sorted(self.allowed_ports),
            "allowed_domains": sorted(self.allowed_domains),
            "blocked_domains": sorted(self.blocked_domains),
            "allowed_ips": sorted(self.allowed_ips),
            "blocked_ips": sorted(self.blocked_ips),
            "custom_rules": self.has_custom_rules,
        }


def merge(base: EgressProfile, overrides: CustomRuleSet | None = None) -> EffectivePolicy:
    """Union a container's custom rules into its profile.

    Overrides only ever add: ``allow-domain`` extends ``allowed_domains``,
    ``block-ip`` extends ``blocked_ips`` and so on.  Domain patterns from
    both sides are normalized to bare-suffix form.
    """
    overrides = overrides or CustomRuleSet(container="")

    def domains(existing: Iterable[str], kind: RuleKind) -> frozenset[str]:
        merged = {normalize_domain(d) for d in existing}
        merged.update(normalize_domain(d) for d in overrides.values(kind))
        merged.discard("")
        return frozenset(merged)

    return EffectivePolicy(
        profile_name=base.name,
        network_mode=base.network_mode,
        default_action=base.default_action,
        log_blocked=base.log_blocked,
        log_all=base.log_all,
        allowed_ports=base.allowed_ports | {int(p) for p in overrides.values(RuleKind.ALLOW_PORT)},
        allowed_domains=domains(base.allowed_domains, RuleKind.ALLOW_DOMAIN),
        blocked_domains=domains(base.blocked_domains, RuleKind.BLOCK_DOMAIN),
        allowed_ips=base.allowed_ips | frozenset(overrides.values(RuleKind.ALLOW_IP)),
        blocked_ips=base.blocked_ips | frozenset(overrides.values(RuleKind.BLOCK_IP)),
        has_custom_rules=not overrides.is_empty,
    )


def egress_label(profile_name: str, custom_rules: Iterable[Any] = ()) -> str:
    """Display label for a container: ``profile`` or ``profile+custom``."""
    return f"{profile_name}+custom" if any(True for _ in custom_rules) else profile_name


# ---------------------------------------------------------------------------
# DNS rule table
# ---------------------------------------------------------------------------


class DnsAction(str, enum.Enum):
    FORWARD = "forward"
    BLOCK = "block"


@dataclass(frozen=True)
class DnsRule:
    """One resolver rule: names at or below ``pattern`` get ``action``."""

    pattern: str
    action: DnsAction
    upstreams: tuple[str, ...] = ()

    def matches(self, name: str) -> bool:
        return domain_matches(name, self.pattern)


@dataclass(frozen=True)
class DnsRuleTable:
    """Ordered DNS rules plus the action for names no rule matches."""

    default_action: DnsAction
    upstreams: tuple[str, ...]
    rules: tuple[DnsRule, ...] = ()
    blocked_ips: tuple[str, ...] = ()
    log_queries: bool = False

    @property
    def is_allowlist(self) -> bool:
        return self.default_action is DnsAction.BLOCK

    def match(self, name: str) -> DnsRule | None:
        """Return the rule deciding ``name``, or None if the default applies.

        Any matching block rule wins; otherwise the most specific forward
        rule.
        """
        forward: DnsRule | None = None
        for rule in self.rules:
            if not rule.matches(name):
                continue
            if rule.action is DnsAction.BLOCK:
                return rule
            if forward is None or len(rule.pattern) > len(forward.pattern):
                forward = rule
        return forward

    def decide(self, name: str) -> DnsAction:
        rule = self.match(name)
        return rule.action if rule else self.default_action

    def upstreams_for(self, name: str) -> tuple[str, ...]:
        """Upstream resolvers for a forwarded name (empty when blocked)."""
        rule = self.match(name)
        if rule is None:
            return self.upstreams if self.default_action is DnsAction.FORWARD else ()
        if rule.action is DnsAction.BLOCK:
            return ()
        return rule.upstreams or self.upstreams

    @property
    def forward_rules(self) -> list[DnsRule]:
        return [r for r in self.rules if r.action is DnsAction.FORWARD]

    @property
    def block_rules(self) -> list[DnsRule]:
        return [r for r in self.rules if r.action is DnsAction.BLOCK]


def build_dns_rules(policy: EffectivePolicy, upstreams: Iterable[str]) -> DnsRuleTable:
    """Build the resolver rule table for a policy.

    Allowlist mode (``drop``): one forward rule per allowed pattern that is
    not shadowed by a blocked pattern, then one block rule per blocked
    pattern; unmatched names are blocked.

    Blocklist mode (``accept``): one block rule per blocked pattern;
    unmatched names are forwarded to the default upstreams.
    """
    upstreams = tuple(upstreams)
    blocked = sorted(policy.blocked_domains)
    rules: list[DnsRule] = []

    if policy.is_allowlist:
        for pattern in sorted(policy.allowed_domains):
            if any(domain_matches(pattern, b) for b in blocked):
                continue
            rules.append(DnsRule(pattern, DnsAction.FORWARD, upstreams))

    rules.extend(DnsRule(pattern, DnsAction.BLOCK) for pattern in blocked)

    return DnsRuleTable(
        default_action=DnsAction.BLOCK if policy.is_allowlist else DnsAction.FORWARD,
        upstreams=upstreams,
        rules=tuple(rules),
        blocked_ips=tuple(sorted(policy.blocked_ips)),
        log_queries=policy.log_queries,
    )
