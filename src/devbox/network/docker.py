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
"""Thin wrapper over the Docker CLI.

All runtime state (networks, sidecar containers, labels) lives in Docker;
this module is the only place that builds ``docker`` argv lists.  Every
removal is idempotent: removing an absent network or container returns
False instead of raising.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from typing import Callable

from .errors import DockerCommandError, DockerUnavailableError

logger = logging.getLogger("devbox.network.docker")

Runner = Callable[..., subprocess.CompletedProcess]

_ABSENT_MARKERS = ("no such", "not found")
ADDRESS_FORMAT = "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}"


def is_absent_error(stderr: str | None) -> bool:
    """True if Docker's stderr says the target object does not exist."""
    text = (stderr or "").lower()
    return any(marker in text for marker in _ABSENT_MARKERS)


def label_args(labels: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in labels.items():
        args += ["--label", f"{key}={value}"]
    return args


class DockerClient:
    """Runs Docker CLI commands with a timeout.

    Usage:
        docker = DockerClient()
        if docker.network_exists("web-net"):
            ...
    """

    def __init__(
        self,
        binary: str = "docker",
        timeout: int = 60,
        runner: Runner | None = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self._runner = runner or subprocess.run

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------
    def is_available(self) -> bool:
        """Check if the Docker CLI exists and the daemon is responsive."""
        if not shutil.which(self.binary):
            logger.info("Docker CLI not found in PATH")
            return False
        try:
            result = self.run(["info"], timeout=10)
        except DockerUnavailableError as exc:
            logger.info("Docker check failed: %s", exc)
            return False
        return result.returncode == 0

    def run(self, args: list[str], timeout: int | None = None) -> subprocess.CompletedProcess:
        """Run ``docker <args>`` and return the completed process.

        A non-zero exit status is returned, not raised.

        Raises:
            DockerUnavailableError: The binary is missing or the command timed out.
        """
        cmd = [self.binary, *args]
        limit = timeout or self.timeout
        try:
            result = self._runner(cmd, capture_output=True, text=True, timeout=limit)
        except subprocess.TimeoutExpired:
            raise DockerUnavailableError(cmd, f"timed out after {limit}s") from None
        except (FileNotFoundError, PermissionError) as exc:
            raise DockerUnavailableError(cmd, str(exc)) from exc
        logger.debug("docker %s -> %d", " ".join(args[:3]), result.returncode)
        return result

    def check(self, args: list[str], timeout: int | None = None) -> str:
        """Run ``docker <args>`` and return stdout, raising on failure."""
        result = self.run(args, timeout=timeout)
        if result.returncode != 0:
            raise DockerCommandError([self.binary, *args], result.returncode, result.stderr or "")
        return result.stdout or ""

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    def network_exists(self, name: str) -> bool:
        return self.run(["network", "inspect", name]).returncode == 0

    def network_id(self, name: str) -> str | None:
        result = self.run(["network", "inspect", "-f", "{{.Id}}", name])
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    def network_labels(self, name: str) -> dict[str, str]:
        result = self.run(["network", "inspect", "-f", "{{json .Labels}}", name])
        if result.returncode != 0:
            return {}
        return _parse_labels(result.stdout)

    def create_network(
        self,
        name: str,
        labels: dict[str, str] | None = None,
        options: dict[str, str] | None = None,
        subnet: str | None = None,
    ) -> subprocess.CompletedProcess:
        """Run ``docker network create``; the caller interprets failures."""
        args = ["network", "create", "--driver", "bridge"]
        for key, value in (options or {}).items():
            args += ["--opt", f"{key}={value}"]
        if subnet:
            args += ["--subnet", subnet]
        args += label_args(labels or {})
        args.append(name)
        return self.run(args)

    def remove_network(self, name: str) -> bool:
        """Remove a network.  Returns False if it did not exist."""
        result = self.run(["network", "rm", name])
        if result.returncode == 0:
            return True
        if is_absent_error(result.stderr):
            return False
        raise DockerCommandError([self.binary, "network", "rm", name], result.returncode, result.stderr or "")

    def network_subnets(self, label: str) -> list[str]:
        """Subnets of every network carrying ``label`` (``key`` or ``key=value``)."""
        listing = self.run(["network", "ls", "-q", "--filter", f"label={label}"])
        if listing.returncode != 0:
            return []
        subnets: list[str] = []
        for net_id in (listing.stdout or "").split():
            result = self.run(["network", "inspect", "-f", "{{range .IPAM.Config}}{{.Subnet}} {{end}}", net_id])
            if result.returncode == 0:
                subnets.extend((result.stdout or "").split())
        return subnets

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def container_exists(self, name: str) -> bool:
        return self.run(["container", "inspect", name]).returncode == 0

    def run_container(
        self,
        name: str,
        image: str,
        command: list[str],
        network: str | None = None,
        ip: str | None = None,
        labels: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
        restart: str | None = None,
    ) -> str:
        """``docker run -d``; returns the new container id."""
        args = ["run", "-d", "--name", name]
        if network:
            args += ["--network", network]
        if ip:
            args += ["--ip", ip]
        args += label_args(labels or {})
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        if restart:
            args += ["--restart", restart]
        args.append(image)
        args += command
        return self.check(args, timeout=max(self.timeout, 120)).strip()

    def remove_container(self, name: str) -> bool:
        """Force-remove a container.  Returns False if it did not exist."""
        result = self.run(["rm", "-f", name])
        if result.returncode == 0:
            return True
        if is_absent_error(result.stderr):
            return False
        raise DockerCommandError([self.binary, "rm", "-f", name], result.returncode, result.stderr or "")

    def container_address(self, name: str) -> str | None:
        """First IP address of a container, or None if it has none (yet)."""
        result = self.run(["inspect", "-f", ADDRESS_FORMAT, name])
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    def container_labels(self, name: str) -> dict[str, str]:
        result = self.run(["inspect", "-f", "{{json .Config.Labels}}", name])
        if result.returncode != 0:
            return {}
        return _parse_labels(result.stdout)

    def container_logs(self, name: str, tail: int | None = None) -> str:
        """Combined stdout/stderr of a container (dnsmasq logs to stderr)."""
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(name)
        result = self.run(args)
        if result.returncode != 0:
            raise DockerCommandError([self.binary, *args], result.returncode, result.stderr or "")
        return (result.stdout or "") + (result.stderr or "")


def _parse_labels(output: str | None) -> dict[str, str]:
    text = (output or "").strip()
    if not text or text == "null":
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}
