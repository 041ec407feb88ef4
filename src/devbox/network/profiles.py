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
"""Egress profile loader.

Profiles are named, static policy documents:

1. **Bundled defaults** -- ``devbox/profiles/<name>.yaml`` shipped with the package.
2. **Host overrides** -- a ``profiles_dir`` from settings replaces the lookup dir.
3. **Runtime query** -- ``load_profile(name)`` parses the document into an
   immutable ``EgressProfile`` every time it is called.

Only the four names in ``VALID_EGRESS_PROFILES`` are accepted; any other
name is rejected before the filesystem is touched.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ProfileFormatError, ProfileNotFoundError

logger = logging.getLogger("devbox.network.profiles")

VALID_EGRESS_PROFILES: tuple[str, ...] = ("permissive", "standard", "strict", "airgapped")
DEFAULT_EGRESS_PROFILE = "standard"

BUNDLED_PROFILES_DIR = Path(__file__).resolve().parent.parent / "profiles"


class NetworkMode(str, enum.Enum):
    """How the container is attached to the network."""

    BRIDGE = "bridge"
    NONE = "none"


class DefaultAction(str, enum.Enum):
    """What happens to names no rule matches."""

    ACCEPT = "accept"  # blocklist mode
    DROP = "drop"  # allowlist mode


# ---------------------------------------------------------------------------
# EgressProfile dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EgressProfile:
    """Parsed egress profile.  Never mutated after load.

    ``name`` is the identifier the profile was loaded under; ``title`` is the
    free-text ``PROFILE_NAME`` from the document and is for display only.
    """

    name: str
    title: str = ""
    description: str = ""
    network_mode: NetworkMode = NetworkMode.BRIDGE
    default_action: DefaultAction = DefaultAction.ACCEPT
    log_blocked: bool = False
    log_all: bool = False
    allowed_ports: frozenset[int] = field(default_factory=frozenset)
    allowed_domains: frozenset[str] = field(default_factory=frozenset)
    blocked_domains: frozenset[str] = field(default_factory=frozenset)
    allowed_ips: frozenset[str] = field(default_factory=frozenset)
    blocked_ips: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_airgapped(self) -> bool:
        return self.network_mode is NetworkMode.NONE

    @property
    def is_allowlist(self) -> bool:
        return self.default_action is DefaultAction.DROP

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "network_mode": self.network_mode.value,
            "default_action": self.default_action.value,
            "log_blocked": self.log_blocked,
            "log_all": self.log_all,
            "allowed_ports": sorted(self.allowed_ports),
            "allowed_domains": sorted(self.allowed_domains),
            "blocked_domains": sorted(self.blocked_domains),
            "allowed_ips": sorted(self.allowed_ips),
            "blocked_ips": sorted(self.blocked_ips),
        }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_profile_name(name: str) -> bool:
    """Return True if ``name`` is one of the known egress profiles."""
    return name in VALID_EGRESS_PROFILES


def load_profile(name: str, profiles_dir: Path | str | None = None) -> EgressProfile:
    """Load and parse the named egress profile.

    Args:
        name: Profile name -- ``permissive``, ``standard``, ``strict`` or ``airgapped``.
        profiles_dir: Directory holding ``<name>.yaml``; defaults to the bundled profiles.

    Returns:
        A fresh, immutable EgressProfile.

    Raises:
        ProfileNotFoundError: Unknown name or missing document.
        ProfileFormatError: The document has an invalid value.
    """
    if not validate_profile_name(name):
        raise ProfileNotFoundError(name, VALID_EGRESS_PROFILES)

    directory = Path(profiles_dir) if profiles_dir else BUNDLED_PROFILES_DIR
    path = directory / f"{name}.yaml"
    if not path.is_file():
        logger.error("Egress profile document missing: %s", path)
        raise ProfileNotFoundError(name, VALID_EGRESS_PROFILES)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ProfileFormatError(f"Profile '{name}' is not valid YAML: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ProfileFormatError(f"Profile '{name}' must be a mapping of fields")

    profile = parse_profile(name, raw)
    logger.debug(
        "Loaded egress profile %s (mode=%s, default=%s, %d allowed / %d blocked domains)",
        profile.name,
        profile.network_mode.value,
        profile.default_action.value,
        len(profile.allowed_domains),
        len(profile.blocked_domains),
    )
    return profile


def list_profiles(profiles_dir: Path | str | None = None) -> list[EgressProfile]:
    """Return all known profiles, in canonical order."""
    return [load_profile(name, profiles_dir) for name in VALID_EGRESS_PROFILES]


def parse_profile(name: str, raw: dict[str, Any]) -> EgressProfile:
    """Parse a raw profile mapping into an EgressProfile.

    Missing fields take the documented defaults: bridge networking,
    ``accept`` as the default action, logging off, no rules.
    """
    try:
        network_mode = NetworkMode(str(raw.get("NETWORK_MODE") or "bridge").strip().lower())
    except ValueError:
        raise ProfileFormatError(
            f"Profile '{name}': NETWORK_MODE must be 'bridge' or 'none', got {raw.get('NETWORK_MODE')!r}"
        ) from None

    try:
        default_action = DefaultAction(str(raw.get("DEFAULT_ACTION") or "accept").strip().lower())
    except ValueError:
        raise ProfileFormatError(
            f"Profile '{name}': DEFAULT_ACTION must be 'accept' or 'drop', got {raw.get('DEFAULT_ACTION')!r}"
        ) from None

    return EgressProfile(
        name=name,
        title=str(raw.get("PROFILE_NAME") or name).strip(),
        description=str(raw.get("PROFILE_DESCRIPTION") or "").strip(),
        network_mode=network_mode,
        default_action=default_action,
        log_blocked=_parse_bool(raw.get("LOG_BLOCKED")),
        log_all=_parse_bool(raw.get("LOG_ALL")),
        allowed_ports=frozenset(_parse_port(v, name) for v in split_entries(raw.get("ALLOWED_PORTS"))),
        allowed_domains=frozenset(v.lower() for v in split_entries(raw.get("ALLOWED_DOMAINS"))),
        blocked_domains=frozenset(v.lower() for v in split_entries(raw.get("BLOCKED_DOMAINS"))),
        allowed_ips=frozenset(_parse_cidr(v, name) for v in split_entries(raw.get("ALLOWED_IPS"))),
        blocked_ips=frozenset(_parse_cidr(v, name) for v in split_entries(raw.get("BLOCKED_IPS"))),
    )


def split_entries(value: Any) -> list[str]:
    """Split a list field into entries.

    Accepts a YAML list or a block string with one or more entries per
    line.  Anything after ``#`` on a line is a comment.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        lines = [str(v) for v in value]
    else:
        lines = str(value).splitlines()

    entries: list[str] = []
    for line in lines:
        line = line.split("#", 1)[0]
        entries.extend(token for token in line.split() if token)
    return entries


# ---------------------------------------------------------------------------
# Internal: field parsers
# ---------------------------------------------------------------------------


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_port(value: str, profile: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ProfileFormatError(f"Profile '{profile}': invalid port {value!r}") from None
    if not 1 <= port <= 65535:
        raise ProfileFormatError(f"Profile '{profile}': port {port} out of range")
    return port


def _parse_cidr(value: str, profile: str) -> str:
    try:
        return str(ipaddress.ip_network(value, strict=False))
    except ValueError:
        raise ProfileFormatError(f"Profile '{profile}': invalid CIDR {value!r}") from None
