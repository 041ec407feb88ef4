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
"""DNS filtering sidecar manager.

The sidecar ``<container>-dns`` is a dnsmasq container attached to the
container's network.  The dev container is started with ``--dns`` pointing
at the sidecar, so the sidecar address must stay stable across restarts.

Lifecycle:
  start   -- remove any old sidecar, run a new one, poll for its address
  restart -- reload profile + custom rules, start again at the same address
  remove  -- force-remove; absent sidecars are not an error

Invariants:
  - At most one sidecar per container (old one removed before the new one runs)
  - A requested static address is bound exactly or the start fails
  - A sidecar that never reports an address is removed before the error surfaces
  - Supervision (restart on crash) is Docker's ``unless-stopped`` policy
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .dnsmasq import CONFIG_ENV, render_config, sidecar_command
from .docker import DockerClient
from .errors import (
    DockerCommandError,
    SidecarAddressError,
    SidecarStartError,
    SidecarStartTimeoutError,
)
from .policy import EffectivePolicy, build_dns_rules, merge
from .profiles import load_profile
from .provisioner import network_name
from .rules import RuleStore

logger = logging.getLogger("devbox.network.sidecar")

SIDECAR_TYPE = "dns-proxy"
DEFAULT_READY_ATTEMPTS = 30
DEFAULT_READY_INTERVAL_S = 1.0

# dnsmasq answers from its own config with "config <name> is NXDOMAIN"
# (or a null address for address=/x/# style blocks)
_BLOCKED_LINE = re.compile(r"\bconfig \S+ is (NXDOMAIN|0\.0\.0\.0|::|NODATA)")
_QUERY_LINE = re.compile(r"\b(query\[|forwarded |reply |config |cached )")


def sidecar_name(container: str) -> str:
    return f"{container}-dns"


def is_blocked_log_line(line: str) -> bool:
    return bool(_BLOCKED_LINE.search(line))


@dataclass(frozen=True)
class SidecarInfo:
    container: str
    name: str
    address: str
    mode: str


class SidecarManager:
    """Starts, restarts and removes DNS sidecars.

    Usage:
        manager = SidecarManager(docker, store)
        address = manager.start_sidecar("web", policy)
        manager.restart_sidecar("web", "strict")   # same address, new rules
        manager.remove_sidecar("web")
    """

    def __init__(
        self,
        docker: DockerClient,
        rule_store: RuleStore,
        upstream_dns: list[str] | None = None,
        image: str = "alpine:latest",
        profiles_dir: Path | str | None = None,
        ready_attempts: int = DEFAULT_READY_ATTEMPTS,
        ready_interval_s: float = DEFAULT_READY_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._docker = docker
        self._store = rule_store
        self._upstreams = list(upstream_dns or ["8.8.8.8", "1.1.1.1"])
        self._image = image
        self._profiles_dir = profiles_dir
        self._attempts = ready_attempts
        self._interval = ready_interval_s
        self._sleep = sleep

    @property
    def upstreams(self) -> list[str]:
        return list(self._upstreams)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start_sidecar(
        self,
        container: str,
        policy: EffectivePolicy,
        static_address: str | None = None,
    ) -> str:
        """Replace the container's sidecar with one configured from ``policy``.

        Args:
            container: Dev container name.
            policy: Effective policy to enforce.
            static_address: Address the new sidecar must bind.

        Returns:
            The sidecar's address on the container network.

        Raises:
            SidecarAddressError: ``static_address`` could not be bound.
            SidecarStartTimeoutError: No address reported in time.
            SidecarStartError: ``docker run`` failed.
        """
        if not policy.needs_sidecar:
            raise ValueError(f"Profile {policy.profile_name} uses network mode none; no sidecar applies")

        name = sidecar_name(container)
        table = build_dns_rules(policy, self._upstreams)
        config = render_config(table, policy.profile_name)

        # Remove-then-create: never two sidecars for one container
        if self._docker.remove_container(name):
            logger.debug("Removed previous DNS sidecar %s", name)

        try:
            self._docker.run_container(
                name,
                self._image,
                sidecar_command(),
                network=network_name(container),
                ip=static_address,
                labels={
                    "devbox.container": container,
                    "devbox.type": SIDECAR_TYPE,
                    "devbox.dns.mode": policy.default_action.value,
                    "devbox.egress.profile": policy.profile_name,
                },
                env={CONFIG_ENV: config},
                restart="unless-stopped",
            )
        except DockerCommandError as exc:
            self._discard(name)
            if static_address:
                raise SidecarAddressError(
                    f"DNS sidecar {name} could not bind {static_address}: {exc.stderr.strip()[:300]}"
                ) from exc
            raise SidecarStartError(f"Failed to start DNS sidecar {name}: {exc.stderr.strip()[:300]}") from exc

        address = self._wait_for_address(name)
        if address is None:
            self._discard(name)
            waited = self._attempts * self._interval
            raise SidecarStartTimeoutError(f"DNS sidecar {name} reported no address within {waited:.0f}s")

        if static_address and address != static_address:
            self._discard(name)
            raise SidecarAddressError(f"DNS sidecar {name} came up at {address}, expected {static_address}")

        logger.info(
            "DNS sidecar %s started at %s (profile=%s, mode=%s, %d rules)",
            name,
            address,
            policy.profile_name,
            "allowlist" if policy.is_allowlist else "blocklist",
            len(table.rules),
        )
        return address

    # ------------------------------------------------------------------
    # Query / restart / remove
    # ------------------------------------------------------------------
    def get_sidecar_address(self, container: str) -> str | None:
        return self._docker.container_address(sidecar_name(container))

    def sidecar_info(self, container: str) -> SidecarInfo | None:
        name = sidecar_name(container)
        address = self._docker.container_address(name)
        if address is None:
            return None
        labels = self._docker.container_labels(name)
        return SidecarInfo(container, name, address, labels.get("devbox.dns.mode", ""))

    def restart_sidecar(
        self,
        container: str,
        profile_name: str,
        preserve_address: bool = True,
    ) -> str | None:
        """Recompute the policy and start a fresh sidecar.

        Reloads ``profile_name``, re-reads the container's custom rules and
        restarts the sidecar at its previous address when
        ``preserve_address`` is set.  Profiles with network mode ``none``
        get no sidecar; any existing one is removed and None is returned.
        """
        profile = load_profile(profile_name, self._profiles_dir)
        policy = merge(profile, self._store.load(container))

        if not policy.needs_sidecar:
            self.remove_sidecar(container)
            logger.info("Profile %s is airgapped -- no DNS sidecar for %s", profile_name, container)
            return None

        previous = self.get_sidecar_address(container) if preserve_address else None
        address = self.start_sidecar(container, policy, static_address=previous)
        if previous:
            logger.info("DNS sidecar for %s restarted, address %s preserved", container, address)
        return address

    def remove_sidecar(self, container: str) -> bool:
        """Remove the container's sidecar.  Returns False if it was already gone."""
        removed = self._docker.remove_container(sidecar_name(container))
        if removed:
            logger.info("DNS sidecar %s removed", sidecar_name(container))
        return removed

    def sidecar_logs(
        self,
        container: str,
        blocked_only: bool = False,
        tail: int | None = None,
    ) -> list[str]:
        """Query log lines from the sidecar.

        With ``blocked_only`` only lines where the sidecar refused a name
        are returned.
        """
        output = self._docker.container_logs(sidecar_name(container), tail=tail)
        lines = [line for line in output.splitlines() if _QUERY_LINE.search(line)]
        if blocked_only:
            lines = [line for line in lines if is_blocked_log_line(line)]
        return lines

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _wait_for_address(self, name: str) -> str | None:
        for _ in range(self._attempts):
            self._sleep(self._interval)
            address = self._docker.container_address(name)
            if address:
                return address
        return None

    def _discard(self, name: str) -> None:
        try:
            self._docker.remove_container(name)
        except DockerCommandError as exc:
            logger.warning("Could not remove failed DNS sidecar %s: %s", name, exc)
