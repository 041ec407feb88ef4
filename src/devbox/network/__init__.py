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
"""Devbox Network Egress Control.

Every dev container gets its own bridge network and a DNS filtering
sidecar.  The container's resolver points at the sidecar, which answers
from a rule table computed from an egress profile plus the container's
custom rules.

Architecture:
  Dev container --DNS--> <name>-dns (dnsmasq sidecar) --> Upstream DNS (filtered)
        |                         |
        +------ <name>-net (bridge, ICC disabled when supported) ------+

Profiles:
  - permissive: allow everything
  - standard:   allow everything except known exfiltration endpoints
  - strict:     deny everything except an allowlist of dev services
  - airgapped:  no network at all (no sidecar, no network)

Precedence: an explicit block always wins over an allow.
"""

from .errors import (
    EgressError,
    NetworkCreateError,
    ProfileNotFoundError,
    SidecarStartTimeoutError,
)
from .policy import EffectivePolicy, merge
from .profiles import EgressProfile, load_profile
from .rules import CustomRuleSet, RuleKind

__all__ = [
    "CustomRuleSet",
    "EffectivePolicy",
    "EgressError",
    "EgressProfile",
    "NetworkCreateError",
    "ProfileNotFoundError",
    "RuleKind",
    "SidecarStartTimeoutError",
    "load_profile",
    "merge",
]
