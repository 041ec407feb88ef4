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
"""Egress controller -- the hooks container commands call.

  create  -> provision()   profile + create-time rules -> network + sidecar
  start   -> on_start()    re-apply profile + custom rules, same sidecar address
  network allow/block      persist a rule, re-apply immediately
  network reset            drop custom rules, optionally switch profile
  rm      -> remove()      sidecar -> network -> rules

Per-container state machine:

  none --provision--> provisioned(network, sidecar)
       provisioned --start / allow / block / reset--> provisioned(network, sidecar')
       any --remove--> removed

Airgapped profiles skip the network and sidecar entirely: the container
runs with ``--network none``.

No locking: two invocations against the same container at the same time
are not safe.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from devbox.config import DevboxSettings, load_settings

from .cleanup import CleanupReport, remove_container_networking
from .docker import DockerClient
from .errors import EgressError, InvalidRuleError
from .policy import DnsAction, DnsRule, EffectivePolicy, build_dns_rules, egress_label, merge
from .profiles import DEFAULT_EGRESS_PROFILE, EgressProfile, NetworkMode, load_profile, validate_profile_name
from .provisioner import NetworkProvisioner, network_name
from .resolver import PolicyResolver
from .rules import CustomRule, FileRuleStore, RuleKind, validate_rule
from .sidecar import SidecarManager

logger = logging.getLogger("devbox.network.controller")

EGRESS_LABEL = "devbox.egress"

ALLOW_KINDS = (RuleKind.ALLOW_DOMAIN, RuleKind.ALLOW_IP, RuleKind.ALLOW_PORT)
BLOCK_KINDS = (RuleKind.BLOCK_DOMAIN, RuleKind.BLOCK_IP)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EgressAttachment:
    """How a new container attaches to its egress controls."""

    container: str
    profile: str
    network_mode: str
    label: str
    network: str | None = None
    dns_address: str | None = None
    isolation: str | None = None
    custom_rules: tuple[CustomRule, ...] = ()
    dry_run: bool = False

    def docker_args(self) -> list[str]:
        """``docker run`` flags that attach the container."""
        if self.network_mode == NetworkMode.NONE.value:
            return ["--network", "none"]
        args = ["--network", self.network or network_name(self.container)]
        if self.dns_address:
            args += ["--dns", self.dns_address]
        return args

    def label_args(self) -> list[str]:
        return ["--label", f"{EGRESS_LABEL}={self.label}"]

    def describe(self) -> list[str]:
        """Human-readable summary (also used for ``--dry-run``)."""
        lines = [f"Egress profile: {self.profile}", f"Network mode: {self.network_mode}"]
        if self.network_mode != NetworkMode.NONE.value:
            lines.append(f"Custom network: {self.network or network_name(self.container)}")
            if self.isolation:
                lines.append(f"Isolation: {self.isolation}")
            if self.dns_address:
                lines.append(f"DNS proxy: {self.dns_address}")
            else:
                lines.append("DNS proxy: will be started on the custom network")
        for rule in self.custom_rules:
            lines.append(f"Custom rule: {rule}")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "profile": self.profile,
            "network_mode": self.network_mode,
            "label": self.label,
            "network": self.network,
            "dns_address": self.dns_address,
            "isolation": self.isolation,
            "custom_rules": [str(r) for r in self.custom_rules],
            "docker_args": self.docker_args(),
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class RuleApplyResult:
    """Outcome of ``network allow`` / ``network block``."""

    rule: CustomRule
    added: bool
    applied: bool
    dns_address: str | None = None


@dataclass
class NetworkStatus:
    """Current egress state of a container, for ``network show``."""

    container: str
    profile: EgressProfile
    label: str | None
    policy: EffectivePolicy
    custom_rules: list[CustomRule] = field(default_factory=list)
    network_exists: bool = False
    isolation: str | None = None
    sidecar_address: str | None = None
    sidecar_mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "profile": self.profile.name,
            "description": self.profile.description,
            "label": self.label,
            "network_mode": self.profile.network_mode.value,
            "default_action": self.profile.default_action.value,
            "network": network_name(self.container) if self.network_exists else None,
            "isolation": self.isolation,
            "dns_sidecar": self.sidecar_address,
            "dns_mode": self.sidecar_mode,
            "custom_rules": [str(r) for r in self.custom_rules],
            "policy": self.policy.to_dict(),
        }


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class EgressController:
    """Egress lifecycle for dev containers.

    Usage:
        egress = EgressController()
        attachment = egress.provision("web", "strict", [("allow-domain", "httpbin.org")])
        docker_run_args += attachment.docker_args() + attachment.label_args()
        ...
        egress.on_start("web")
        egress.remove("web")
    """

    def __init__(
        self,
        settings: DevboxSettings | None = None,
        docker: DockerClient | None = None,
        rule_store: FileRuleStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or load_settings()
        self.docker = docker or DockerClient(
            binary=self.settings.docker_binary,
            timeout=self.settings.docker_timeout_s,
        )
        self.rules = rule_store or FileRuleStore(self.settings.rules_dir)
        self.provisioner = NetworkProvisioner(self.docker, subnet_pool=self.settings.subnet_pool)
        self.sidecars = SidecarManager(
            self.docker,
            self.rules,
            upstream_dns=self.settings.upstream_dns,
            image=self.settings.sidecar_image,
            profiles_dir=self.settings.profiles_dir,
            ready_attempts=self.settings.sidecar_ready_attempts,
            ready_interval_s=self.settings.sidecar_ready_interval_s,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def load_profile(self, name: str) -> EgressProfile:
        return load_profile(name, self.settings.profiles_dir)

    def active_profile(self, container: str) -> str:
        """Profile currently applied to ``container``.

        The record written at create/reset wins; the display label set at
        create time is only a fallback for containers created without it.
        """
        name = self.rules.read_active_profile(container)
        if name:
            return name
        label = self.docker.container_labels(container).get(EGRESS_LABEL, "")
        candidate = label.split("+", 1)[0]
        if validate_profile_name(candidate):
            return candidate
        return DEFAULT_EGRESS_PROFILE

    def effective_policy(self, container: str) -> EffectivePolicy:
        profile = self.load_profile(self.active_profile(container))
        return merge(profile, self.rules.load(container))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def provision(
        self,
        container: str,
        profile_name: str = DEFAULT_EGRESS_PROFILE,
        custom_rules: Iterable[tuple[RuleKind | str, str]] = (),
        dry_run: bool = False,
    ) -> EgressAttachment:
        """Set up egress controls for a new container.

        Raises:
            ProfileNotFoundError: Unknown profile (nothing is touched).
            InvalidRuleError: A create-time rule is malformed (nothing is touched).
            NetworkCreateError, SidecarStartError: Provisioning failed; every
                resource created so far has been removed again.
        """
        profile = self.load_profile(profile_name)
        rules = tuple(CustomRule(RuleKind(kind), validate_rule(kind, value)) for kind, value in custom_rules)
        label = egress_label(profile.name, rules)
        airgapped = profile.network_mode is NetworkMode.NONE

        if dry_run:
            return EgressAttachment(
                container=container,
                profile=profile.name,
                network_mode=profile.network_mode.value,
                label=label,
                network=None if airgapped else network_name(container),
                custom_rules=rules,
                dry_run=True,
            )

        try:
            # A stale store from an earlier container with this name must not leak in
            self.rules.remove_all(container)
            self.rules.initialize(container)
            self.rules.write_active_profile(container, profile.name)
            self.rules.add_many(container, ((r.kind, r.value) for r in rules))

            if airgapped:
                logger.info("Container %s is airgapped -- no network or DNS sidecar", container)
                return EgressAttachment(
                    container=container,
                    profile=profile.name,
                    network_mode=profile.network_mode.value,
                    label=label,
                    custom_rules=rules,
                )

            handle = self.provisioner.create_network(container)
            policy = merge(profile, self.rules.load(container))
            address = self.sidecars.start_sidecar(container, policy)
        except EgressError as exc:
            logger.error("Egress provisioning failed for %s: %s -- rolling back", container, exc)
            self.remove(container)
            raise

        return EgressAttachment(
            container=container,
            profile=profile.name,
            network_mode=profile.network_mode.value,
            label=label,
            network=handle.name,
            dns_address=address,
            isolation=handle.isolation.value,
            custom_rules=rules,
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def on_start(self, container: str) -> str | None:
        """Re-apply the profile and custom rules before a container starts.

        Returns the sidecar address (unchanged from before), or None for
        airgapped containers.

        Raises:
            EgressError: ``container`` was never provisioned.
        """
        self._require_managed(container)
        profile_name = self.active_profile(container)
        profile = self.load_profile(profile_name)
        if profile.network_mode is NetworkMode.NONE:
            return None
        self.provisioner.create_network(container)
        return self.sidecars.restart_sidecar(container, profile_name, preserve_address=True)

    # ------------------------------------------------------------------
    # Runtime rules
    # ------------------------------------------------------------------
    def allow(self, container: str, kind: RuleKind | str, value: str) -> RuleApplyResult:
        kind = RuleKind(kind)
        if kind not in ALLOW_KINDS:
            raise InvalidRuleError(f"'{kind.value}' is not an allow rule")
        return self._add_and_apply(container, kind, value)

    def block(self, container: str, kind: RuleKind | str, value: str) -> RuleApplyResult:
        kind = RuleKind(kind)
        if kind not in BLOCK_KINDS:
            raise InvalidRuleError(f"'{kind.value}' is not a block rule")
        return self._add_and_apply(container, kind, value)

    def _add_and_apply(self, container: str, kind: RuleKind, value: str) -> RuleApplyResult:
        self._require_managed(container)

        value = validate_rule(kind, value)
        added = self.rules.append(container, kind, value)
        rule = CustomRule(kind, value)

        profile_name = self.active_profile(container)
        if self.load_profile(profile_name).network_mode is NetworkMode.NONE:
            logger.info("Rule %s stored for airgapped %s; it has no effect without a network", rule, container)
            return RuleApplyResult(rule=rule, added=added, applied=False)

        if not added:
            current = self.sidecars.get_sidecar_address(container)
            if current:
                return RuleApplyResult(rule=rule, added=False, applied=False, dns_address=current)

        self.provisioner.create_network(container)
        address = self.sidecars.restart_sidecar(container, profile_name, preserve_address=True)
        return RuleApplyResult(rule=rule, added=added, applied=True, dns_address=address)

    def reset(self, container: str, profile_name: str | None = None) -> str | None:
        """Drop custom rules and re-apply profile defaults.

        Args:
            profile_name: Switch to this profile; defaults to the current one.

        Raises:
            EgressError: The switch would change network mode (bridge <-> none),
                which is fixed when the container is created.
        """
        current_name = self.active_profile(container)
        target_name = profile_name or current_name
        target = self.load_profile(target_name)
        current = self.load_profile(current_name)

        if target.network_mode is not current.network_mode:
            raise EgressError(
                f"Cannot switch '{container}' from {current.name} ({current.network_mode.value}) "
                f"to {target.name} ({target.network_mode.value}): network mode is fixed at create. "
                "Recreate the container to change it."
            )

        removed = self.rules.clear_rules(container)
        self.rules.write_active_profile(container, target.name)
        logger.info(
            "Egress rules for %s reset to profile %s (%d rule files cleared)",
            container,
            target.name,
            removed,
        )

        if target.network_mode is NetworkMode.NONE:
            return None
        self.provisioner.create_network(container)
        return self.sidecars.restart_sidecar(container, target.name, preserve_address=True)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def is_managed(self, container: str) -> bool:
        return self.rules.exists(container) or self.provisioner.network_exists(container)

    def _require_managed(self, container: str) -> None:
        if not self.is_managed(container):
            raise EgressError(f"No egress configuration found for container '{container}'")

    def show(self, container: str) -> NetworkStatus:
        profile = self.load_profile(self.active_profile(container))
        rules = self.rules.load(container)
        label = self.docker.container_labels(container).get(EGRESS_LABEL)

        status = NetworkStatus(
            container=container,
            profile=profile,
            label=label,
            policy=merge(profile, rules),
            custom_rules=list(rules.rules),
        )
        if profile.network_mode is not NetworkMode.NONE:
            name = network_name(container)
            status.network_exists = self.docker.network_exists(name)
            if status.network_exists:
                status.isolation = self.docker.network_labels(name).get("devbox.isolation")
            info = self.sidecars.sidecar_info(container)
            if info is not None:
                status.sidecar_address = info.address
                status.sidecar_mode = info.mode
        return status

    def logs(self, container: str, blocked_only: bool = False, tail: int | None = None) -> list[str]:
        return self.sidecars.sidecar_logs(container, blocked_only=blocked_only, tail=tail)

    def check(self, container: str, name: str) -> tuple[DnsAction, DnsRule | None]:
        """Would ``name`` resolve inside ``container``?  Returns the action and deciding rule."""
        policy = self.effective_policy(container)
        if not policy.needs_sidecar:
            return DnsAction.BLOCK, None
        table = build_dns_rules(policy, self.settings.upstream_dns)
        return table.decide(name), table.match(name)

    def resolver(self, container: str, listen_host: str = "127.0.0.1", listen_port: int = 5353) -> PolicyResolver:
        """Host-side resolver enforcing ``container``'s effective policy."""
        policy = self.effective_policy(container)
        if not policy.needs_sidecar:
            raise EgressError(f"Container '{container}' is airgapped; there is nothing to resolve")
        return PolicyResolver(
            build_dns_rules(policy, self.settings.upstream_dns),
            listen_host=listen_host,
            listen_port=listen_port,
        )

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------
    def remove(self, container: str) -> CleanupReport:
        return remove_container_networking(container, self.sidecars, self.provisioner, self.rules)
