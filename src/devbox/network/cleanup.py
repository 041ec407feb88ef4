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
"""Container networking teardown.

Teardown order: sidecar -> network -> custom rule store.  The network can
only be removed once nothing is attached to it, and the rules go last so a
failed teardown can be retried with the rules still in place.

Every step tolerates an already-absent resource, and a step that fails
for another reason does not stop the steps after it, so a half-finished
create never blocks removal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import EgressError
from .provisioner import NetworkProvisioner
from .rules import RuleStore
from .sidecar import SidecarManager

logger = logging.getLogger("devbox.network.cleanup")


@dataclass
class CleanupReport:
    """What teardown removed, and which steps failed."""

    container: str
    sidecar_removed: bool = False
    network_removed: bool = False
    rules_removed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "container": self.container,
            "sidecar_removed": self.sidecar_removed,
            "network_removed": self.network_removed,
            "rules_removed": self.rules_removed,
            "errors": list(self.errors),
        }


def remove_container_networking(
    container: str,
    sidecars: SidecarManager,
    provisioner: NetworkProvisioner,
    rule_store: RuleStore,
) -> CleanupReport:
    """Remove the sidecar, network and rule store of ``container``."""
    report = CleanupReport(container=container)

    try:
        report.sidecar_removed = sidecars.remove_sidecar(container)
    except EgressError as exc:
        logger.warning("DNS sidecar removal failed for %s: %s", container, exc)
        report.errors.append(f"sidecar: {exc}")

    try:
        report.network_removed = provisioner.destroy_network(container)
    except EgressError as exc:
        logger.warning("Network removal failed for %s: %s", container, exc)
        report.errors.append(f"network: {exc}")

    try:
        report.rules_removed = rule_store.remove_all(container)
    except EgressError as exc:
        logger.warning("Egress rule removal failed for %s: %s", container, exc)
        report.errors.append(f"rules: {exc}")

    logger.info(
        "Networking for %s torn down (sidecar=%s, network=%s, rules=%s, errors=%d)",
        container,
        report.sidecar_removed,
        report.network_removed,
        report.rules_removed,
        len(report.errors),
    )
    return report
