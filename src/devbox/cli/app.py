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
"""Devbox CLI entry point.

Usage:
    devbox network show web
    devbox network allow web --domain httpbin.org
    devbox network provision web --egress strict --allow-domain httpbin.org
    devbox network serve web --port 5353
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Callable

from devbox.cli.network import (
    CommandResult,
    cmd_network_allow,
    cmd_network_apply,
    cmd_network_block,
    cmd_network_check,
    cmd_network_logs,
    cmd_network_profiles,
    cmd_network_provision,
    cmd_network_reset,
    cmd_network_show,
    cmd_network_teardown,
)
from devbox.config import load_settings
from devbox.logging import setup_logging
from devbox.network.controller import EgressController
from devbox.network.errors import EgressError
from devbox.network.profiles import DEFAULT_EGRESS_PROFILE, VALID_EGRESS_PROFILES
from devbox.network.rules import RuleKind

logger = logging.getLogger("devbox.cli.app")

EXIT_OK = 0
EXIT_FAILURE = 1

# create-time flag -> rule kind
_EGRESS_RULE_FLAGS = (
    ("allow_domain", RuleKind.ALLOW_DOMAIN),
    ("block_domain", RuleKind.BLOCK_DOMAIN),
    ("allow_ip", RuleKind.ALLOW_IP),
    ("block_ip", RuleKind.BLOCK_IP),
    ("allow_port", RuleKind.ALLOW_PORT),
)


def add_egress_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the create-time egress flags to a ``create``-style parser."""
    group = parser.add_argument_group("egress control")
    group.add_argument(
        "--egress",
        default=DEFAULT_EGRESS_PROFILE,
        metavar="PROFILE",
        help=f"Egress profile ({', '.join(VALID_EGRESS_PROFILES)}; default: {DEFAULT_EGRESS_PROFILE})",
    )
    group.add_argument("--allow-domain", action="append", default=[], metavar="DOMAIN", help="Allow a domain (repeatable)")
    group.add_argument("--block-domain", action="append", default=[], metavar="DOMAIN", help="Block a domain (repeatable)")
    group.add_argument("--allow-ip", action="append", default=[], metavar="CIDR", help="Allow an IP or CIDR (repeatable)")
    group.add_argument("--block-ip", action="append", default=[], metavar="CIDR", help="Block an IP or CIDR (repeatable)")
    group.add_argument("--allow-port", action="append", default=[], metavar="PORT", help="Allow a TCP port (repeatable)")


def egress_rules_from_args(args: argparse.Namespace) -> list[tuple[RuleKind, str]]:
    rules: list[tuple[RuleKind, str]] = []
    for attr, kind in _EGRESS_RULE_FLAGS:
        rules.extend((kind, value) for value in getattr(args, attr, None) or [])
    return rules


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devbox",
        description="Devbox -- per-container network egress control",
    )
    parser.add_argument("--config", default=None, help="Path to config.yaml (default: ~/.devbox/config.yaml)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console logging level (default: WARNING; the log file uses log_level from config.yaml)",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    sub = parser.add_subparsers(dest="command", required=True)
    network = sub.add_parser("network", help="Egress control for dev containers")
    net = network.add_subparsers(dest="network_command", required=True)

    p = net.add_parser("show", help="Show profile, DNS sidecar and custom rules")
    p.add_argument("container")

    p = net.add_parser("allow", help="Allow a domain, IP or port and re-apply")
    p.add_argument("container")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--domain")
    target.add_argument("--ip")
    target.add_argument("--port")

    p = net.add_parser("block", help="Block a domain or IP and re-apply")
    p.add_argument("container")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--domain")
    target.add_argument("--ip")

    p = net.add_parser("reset", help="Drop custom rules and recreate the DNS sidecar")
    p.add_argument("container")
    p.add_argument("--profile", default=None, help="Switch to this profile")
    p.add_argument("--force", action="store_true", help="Do not ask for confirmation")

    p = net.add_parser("logs", help="Show DNS sidecar query logs")
    p.add_argument("container")
    p.add_argument("--blocked-only", action="store_true", help="Only show refused queries")
    p.add_argument("--tail", type=int, default=None, help="Only read the last N log lines")

    p = net.add_parser("check", help="Check whether a name resolves under the current policy")
    p.add_argument("container")
    p.add_argument("name")

    net.add_parser("profiles", help="List egress profiles")

    p = net.add_parser("provision", help="Create network and DNS sidecar for a new container")
    p.add_argument("container")
    add_egress_arguments(p)
    p.add_argument("--dry-run", action="store_true", help="Print the plan without touching Docker")

    p = net.add_parser("apply", help="Re-apply egress rules before a container starts")
    p.add_argument("container")

    p = net.add_parser("teardown", help="Remove DNS sidecar, network and custom rules")
    p.add_argument("container")

    p = net.add_parser("serve", help="Run a host-side resolver with a container's policy")
    p.add_argument("container")
    p.add_argument("--host", default="127.0.0.1", help="Listen address (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=5353, help="Listen port (default: 5353)")

    return parser


def _dispatch(args: argparse.Namespace, controller: EgressController) -> CommandResult:
    command = args.network_command
    if command == "show":
        return cmd_network_show(controller, args.container)
    if command == "allow":
        return cmd_network_allow(controller, args.container, domain=args.domain, ip=args.ip, port=args.port)
    if command == "block":
        return cmd_network_block(controller, args.container, domain=args.domain, ip=args.ip)
    if command == "reset":
        return cmd_network_reset(controller, args.container, profile=args.profile, force=args.force)
    if command == "logs":
        return cmd_network_logs(controller, args.container, blocked_only=args.blocked_only, tail=args.tail)
    if command == "check":
        return cmd_network_check(controller, args.container, args.name)
    if command == "profiles":
        return cmd_network_profiles(controller.settings.profiles_dir)
    if command == "provision":
        return cmd_network_provision(
            controller,
            args.container,
            args.egress,
            egress_rules_from_args(args),
            dry_run=args.dry_run,
        )
    if command == "apply":
        return cmd_network_apply(controller, args.container)
    if command == "teardown":
        return cmd_network_teardown(controller, args.container)
    raise ValueError(f"Unknown network command: {command}")


def serve(
    controller: EgressController,
    container: str,
    host: str,
    port: int,
    stop: threading.Event | None = None,
) -> CommandResult:
    """Run the policy resolver until SIGINT/SIGTERM (or ``stop`` is set)."""
    resolver = controller.resolver(container, listen_host=host, listen_port=port)
    stop = stop or threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        stop.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    try:
        resolver.start()
    except OSError as exc:
        logger.error("Policy resolver could not bind %s:%d: %s", host, port, exc)
        return CommandResult(success=False, message=f"Cannot listen on {host}:{port}: {exc.strerror or exc}")
    bound_host, bound_port = resolver.address
    print(f"Resolving with {container}'s egress policy on {bound_host}:{bound_port} (Ctrl+C to stop)")
    try:
        stop.wait()
    finally:
        resolver.stop()
    return CommandResult(success=True, message="Policy resolver stopped.", data=resolver.get_status())


def _print_result(result: CommandResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.success:
        print(result.message)
    else:
        print(result.message, file=sys.stderr)


def main(
    argv: list[str] | None = None,
    controller_factory: Callable[..., EgressController] = EgressController,
) -> int:
    """Entry point for the ``devbox`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    setup_logging(
        args.log_level or "WARNING",
        log_file=settings.log_dir / "devbox.log",
        file_level=settings.log_level,
    )
    logger.debug("devbox %s", " ".join(argv if argv is not None else sys.argv[1:]))

    try:
        controller = controller_factory(settings)
        if args.network_command == "serve":
            result = serve(controller, args.container, args.host, args.port)
        else:
            result = _dispatch(args, controller)
    except EgressError as exc:
        logger.debug("Command failed", exc_info=True)
        if args.json:
            _print_result(CommandResult(success=False, message=str(exc)), as_json=True)
        else:
            print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    _print_result(result, args.json)
    return EXIT_OK if result.success else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
