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
"""Network CLI commands -- user-facing egress control.

Commands:
    devbox network show <container>            Profile, sidecar and custom rules
    devbox network allow <container> --domain  Allow a domain / IP / port
    devbox network block <container> --domain  Block a domain / IP
    devbox network reset <container>           Drop custom rules, optionally switch profile
    devbox network logs <container>            DNS sidecar query log
    devbox network check <container> <name>    Would <name> resolve?
    devbox network profiles                    List egress profiles
    devbox network provision|apply|teardown    Lifecycle hooks for create/start/rm
    devbox network serve <container>           Host-side filtering resolver

Each command returns a ``CommandResult``; ``EgressError`` propagates to the
entry point, which turns it into exit status 1.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from devbox.network.controller import EgressController
from devbox.network.policy import DnsAction
from devbox.network.profiles import list_profiles
from devbox.network.rules import RuleKind

logger = logging.getLogger("devbox.cli.network")


@dataclass
class CommandResult:
    """Result of a CLI command execution."""

    success: bool
    message: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }


def _tty_confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _single_value(**options: str | None) -> tuple[str, str] | None:
    given = [(name, value) for name, value in options.items() if value is not None]
    if len(given) != 1:
        return None
    return given[0]


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def cmd_network_show(controller: EgressController, container: str) -> CommandResult:
    """Show the current profile, sidecar and custom rules of a container."""
    if not controller.is_managed(container):
        return CommandResult(
            success=False,
            message=f"No egress configuration found for container '{container}'.",
        )

    status = controller.show(container)
    profile = status.profile
    lines = [
        f"Container: {container}",
        f"Egress profile: {profile.name}" + (f" -- {profile.description}" if profile.description else ""),
        f"Network mode: {profile.network_mode.value}  Default action: {profile.default_action.value}",
    ]
    if profile.is_airgapped:
        lines.append("Network: none (airgapped)")
    else:
        if status.network_exists:
            lines.append(f"Network: {container}-net ({status.isolation or 'unknown'} isolation)")
        else:
            lines.append("Network: not provisioned")
        if status.sidecar_address:
            lines.append(f"DNS sidecar: {status.sidecar_address} ({status.sidecar_mode or 'unknown'})")
        else:
            lines.append("DNS sidecar: not running")

    lines.append("Custom rules:")
    if status.custom_rules:
        lines.extend(f"  {rule}" for rule in status.custom_rules)
    else:
        lines.append("  (none)")

    return CommandResult(success=True, message="\n".join(lines), data=status.to_dict())


def cmd_network_logs(
    controller: EgressController,
    container: str,
    blocked_only: bool = False,
    tail: int | None = None,
) -> CommandResult:
    """Show DNS query log lines from the container's sidecar."""
    lines = controller.logs(container, blocked_only=blocked_only, tail=tail)
    if not lines:
        what = "blocked queries" if blocked_only else "DNS queries"
        return CommandResult(success=True, message=f"No {what} logged for {container}.", data={"lines": []})
    return CommandResult(success=True, message="\n".join(lines), data={"lines": lines})


def cmd_network_check(controller: EgressController, container: str, name: str) -> CommandResult:
    """Report whether ``name`` resolves under the container's effective policy."""
    action, rule = controller.check(container, name)
    verdict = "resolves" if action is DnsAction.FORWARD else "is blocked (NXDOMAIN)"
    if rule is not None:
        reason = f"{rule.action.value} rule for {rule.pattern}"
    elif action is DnsAction.FORWARD:
        reason = "default: forward"
    else:
        reason = "default: block"
    return CommandResult(
        success=True,
        message=f"{name} {verdict} in {container} ({reason})",
        data={
            "container": container,
            "name": name,
            "action": action.value,
            "rule": rule.pattern if rule else None,
        },
    )


def cmd_network_profiles(profiles_dir: Path | str | None = None) -> CommandResult:
    """List the available egress profiles."""
    rows = [profile.to_dict() for profile in list_profiles(profiles_dir)]
    lines = [f"  {row['name']:<12} {row['description']}" for row in rows]
    return CommandResult(
        success=True,
        message="Egress profiles:\n" + "\n".join(lines),
        data={"profiles": rows},
    )


# ---------------------------------------------------------------------------
# Runtime rules
# ---------------------------------------------------------------------------


def cmd_network_allow(
    controller: EgressController,
    container: str,
    domain: str | None = None,
    ip: str | None = None,
    port: str | None = None,
) -> CommandResult:
    """Persist an allow rule and re-apply it immediately."""
    picked = _single_value(domain=domain, ip=ip, port=port)
    if picked is None:
        return CommandResult(success=False, message="Specify exactly one of --domain, --ip or --port.")
    option, value = picked
    kind = {"domain": RuleKind.ALLOW_DOMAIN, "ip": RuleKind.ALLOW_IP, "port": RuleKind.ALLOW_PORT}[option]
    return _rule_result(controller.allow(container, kind, value), container)


def cmd_network_block(
    controller: EgressController,
    container: str,
    domain: str | None = None,
    ip: str | None = None,
) -> CommandResult:
    """Persist a block rule and re-apply it immediately."""
    picked = _single_value(domain=domain, ip=ip)
    if picked is None:
        return CommandResult(success=False, message="Specify exactly one of --domain or --ip.")
    option, value = picked
    kind = RuleKind.BLOCK_DOMAIN if option == "domain" else RuleKind.BLOCK_IP
    return _rule_result(controller.block(container, kind, value), container)


def _rule_result(result, container: str) -> CommandResult:
    if not result.added:
        message = f"Rule {result.rule} already present for {container}."
    elif result.applied:
        message = f"Added {result.rule} for {container}; DNS sidecar reloaded at {result.dns_address}."
    else:
        message = f"Added {result.rule} for {container}; it has no effect on an airgapped container."
    return CommandResult(
        success=True,
        message=message,
        data={
            "rule": str(result.rule),
            "added": result.added,
            "applied": result.applied,
            "dns_address": result.dns_address,
        },
    )


def cmd_network_reset(
    controller: EgressController,
    container: str,
    profile: str | None = None,
    force: bool = False,
    confirm: Callable[[str], bool] | None = None,
) -> CommandResult:
    """Drop custom rules and recreate the sidecar (optionally with a new profile).

    Without ``force`` the user is asked to confirm on a terminal; a
    non-interactive invocation without ``force`` is refused.
    """
    if not controller.is_managed(container):
        return CommandResult(
            success=False,
            message=f"No egress configuration found for container '{container}'.",
        )

    target = profile or controller.active_profile(container)
    controller.load_profile(target)
    if not force:
        confirm = confirm or _tty_confirm
        prompt = f"Reset egress rules for {container} to profile '{target}'? Custom rules will be removed."
        if not confirm(prompt):
            return CommandResult(success=False, message="Reset cancelled (use --force to skip confirmation).")

    address = controller.reset(container, profile)
    if address:
        message = f"Egress for {container} reset to profile '{target}'; DNS sidecar at {address}."
    else:
        message = f"Egress for {container} reset to profile '{target}'."
    return CommandResult(success=True, message=message, data={"profile": target, "dns_address": address})


# ---------------------------------------------------------------------------
# Lifecycle hooks
# ---------------------------------------------------------------------------


def cmd_network_provision(
    controller: EgressController,
    container: str,
    profile: str,
    custom_rules: Iterable[tuple[RuleKind | str, str]] = (),
    dry_run: bool = False,
) -> CommandResult:
    """Provision network and DNS sidecar for a container being created."""
    attachment = controller.provision(container, profile, custom_rules, dry_run=dry_run)
    lines = attachment.describe()
    lines.append("Docker run flags: " + " ".join(attachment.docker_args() + attachment.label_args()))
    if dry_run:
        lines.insert(0, f"[dry-run] Egress plan for {container}:")
    return CommandResult(success=True, message="\n".join(lines), data=attachment.to_dict())


def cmd_network_apply(controller: EgressController, container: str) -> CommandResult:
    """Re-apply profile and custom rules before a container starts."""
    if not controller.is_managed(container):
        return CommandResult(
            success=False,
            message=f"No egress configuration found for container '{container}'.",
        )

    address = controller.on_start(container)
    if address is None:
        return CommandResult(success=True, message=f"{container} is airgapped; nothing to apply.")
    return CommandResult(
        success=True,
        message=f"Egress rules applied for {container}; DNS sidecar at {address}.",
        data={"dns_address": address},
    )


def cmd_network_teardown(controller: EgressController, container: str) -> CommandResult:
    """Remove a container's sidecar, network and custom rules."""
    report = controller.remove(container)
    if not report.ok:
        return CommandResult(
            success=False,
            message=f"Teardown of {container} incomplete: " + "; ".join(report.errors),
            data=report.to_dict(),
        )
    return CommandResult(success=True, message=f"Networking for {container} removed.", data=report.to_dict())
