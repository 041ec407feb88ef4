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
"""Per-container network provisioning.

Each container gets a dedicated bridge network ``<container>-net``.

Isolation is capability-probed:
  1. ISOLATED -- bridge with inter-container communication (ICC) disabled.
  2. DEGRADED -- plain bridge, used when the host cannot disable ICC
     (typically ``br_netfilter`` is not loaded).  Logged as a warning and
     recorded on the network as ``devbox.isolation=degraded``.

Networks get an explicit /24 from the subnet pool.  Docker only honours
``docker run --ip`` on networks with a user-configured subnet, and the DNS
sidecar must keep its address across restarts.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass

from .docker import DockerClient
from .errors import NetworkCreateError

logger = logging.getLogger("devbox.network.provisioner")

ICC_OPTION = "com.docker.network.bridge.enable_icc"
NETWORK_TYPE = "egress-network"
MAX_SUBNET_CANDIDATES = 16


class IsolationLevel(str, enum.Enum):
    ISOLATED = "isolated"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"  # network predates isolation labels


@dataclass(frozen=True)
class NetworkHandle:
    """A provisioned container network."""

    name: str
    network_id: str
    isolation: IsolationLevel
    subnet: str | None = None
    created: bool = True

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "id": self.network_id,
            "isolation": self.isolation.value,
            "subnet": self.subnet,
            "created": self.created,
        }


def network_name(container: str) -> str:
    return f"{container}-net"


def _is_overlap_error(stderr: str | None) -> bool:
    text = (stderr or "").lower()
    return "overlap" in text or "address already in use" in text


class NetworkProvisioner:
    """Creates and destroys per-container networks."""

    def __init__(
        self,
        docker: DockerClient,
        subnet_pool: str | None = None,
        subnet_prefix: int = 24,
    ) -> None:
        self._docker = docker
        self._pool = ipaddress.ip_network(subnet_pool) if subnet_pool else None
        self._prefix = subnet_prefix

    def network_name(self, container: str) -> str:
        return network_name(container)

    def network_exists(self, container: str) -> bool:
        return self._docker.network_exists(network_name(container))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create_network(self, container: str) -> NetworkHandle:
        """Create ``<container>-net``, or return it if it already exists.

        Raises:
            NetworkCreateError: Neither the isolated nor the fallback network
                could be created.
        """
        name = network_name(container)

        existing = self._existing(name)
        if existing is not None:
            logger.debug("Network %s already exists (%s)", name, existing.network_id[:12])
            return existing

        labels = {"devbox.container": container, "devbox.type": NETWORK_TYPE}
        icc_supported = True
        last_error = ""

        for subnet in self._subnet_candidates():
            # Capability probe: strongest isolation first
            if icc_supported:
                result = self._docker.create_network(
                    name,
                    labels={**labels, "devbox.isolation": IsolationLevel.ISOLATED.value},
                    options={ICC_OPTION: "false"},
                    subnet=subnet,
                )
                if result.returncode == 0:
                    return self._created(name, IsolationLevel.ISOLATED, subnet, result.stdout)
                if self._lost_race(name):
                    return self._existing(name)
                last_error = (result.stderr or "").strip()
                if _is_overlap_error(last_error):
                    logger.debug("Subnet %s in use, trying next candidate", subnet)
                    continue
                icc_supported = False
                logger.warning(
                    "ICC isolation unavailable for %s (%s) -- falling back to a plain bridge network",
                    name,
                    last_error[:200] or "no output",
                )

            result = self._docker.create_network(
                name,
                labels={**labels, "devbox.isolation": IsolationLevel.DEGRADED.value},
                subnet=subnet,
            )
            if result.returncode == 0:
                logger.warning(
                    "Network %s created with DEGRADED isolation: containers on it can reach each other",
                    name,
                )
                return self._created(name, IsolationLevel.DEGRADED, subnet, result.stdout)
            if self._lost_race(name):
                return self._existing(name)
            last_error = (result.stderr or "").strip()
            if not _is_overlap_error(last_error):
                break

        raise NetworkCreateError(f"Failed to create network {name}: {last_error[:500] or 'unknown error'}")

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------
    def destroy_network(self, container: str) -> bool:
        """Remove ``<container>-net``.  Returns False if it was already gone."""
        name = network_name(container)
        removed = self._docker.remove_network(name)
        if removed:
            logger.info("Egress network %s removed", name)
        else:
            logger.debug("Egress network %s already absent", name)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _existing(self, name: str) -> NetworkHandle | None:
        net_id = self._docker.network_id(name)
        if net_id is None:
            return None
        labels = self._docker.network_labels(name)
        try:
            isolation = IsolationLevel(labels.get("devbox.isolation", "unknown"))
        except ValueError:
            isolation = IsolationLevel.UNKNOWN
        return NetworkHandle(name=name, network_id=net_id, isolation=isolation, created=False)

    def _lost_race(self, name: str) -> bool:
        # Another invocation may have created the network between our checks
        return self._docker.network_exists(name)

    def _created(self, name: str, isolation: IsolationLevel, subnet: str | None, stdout: str) -> NetworkHandle:
        net_id = (stdout or "").strip() or (self._docker.network_id(name) or "")
        logger.info(
            "Egress network %s created (isolation=%s, subnet=%s)",
            name,
            isolation.value,
            subnet or "auto",
        )
        return NetworkHandle(name=name, network_id=net_id, isolation=isolation, subnet=subnet)

    def _subnet_candidates(self) -> list[str | None]:
        """Free /24s from the pool, or ``[None]`` to let Docker choose."""
        if self._pool is None:
            return [None]

        used = []
        for subnet in self._docker.network_subnets(f"devbox.type={NETWORK_TYPE}"):
            try:
                used.append(ipaddress.ip_network(subnet, strict=False))
            except ValueError:
                continue

        candidates: list[str | None] = []
        for candidate in self._pool.subnets(new_prefix=self._prefix):
            if any(candidate.overlaps(u) for u in used):
                continue
            candidates.append(str(candidate))
            if len(candidates) >= MAX_SUBNET_CANDIDATES:
                break

        if not candidates:
            raise NetworkCreateError(f"Subnet pool {self._pool} is exhausted")
        return candidates
