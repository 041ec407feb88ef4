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
"""Egress control error types.

Every failure the egress layer can report is a distinct exception type so
the CLI can map it to a message and exit code without string matching.
"""

from __future__ import annotations


class EgressError(Exception):
    """Base exception for all egress control failures."""


class ProfileNotFoundError(EgressError, LookupError):
    """Raised when an egress profile name is unknown or its document is missing."""

    def __init__(self, name: str, valid: list[str] | tuple[str, ...] = ()) -> None:
        self.name = name
        self.valid = tuple(valid)
        message = f"Invalid egress profile: '{name}'"
        if self.valid:
            message += f" (valid profiles: {', '.join(self.valid)})"
        super().__init__(message)


class ProfileFormatError(EgressError, ValueError):
    """Raised when a profile document has an invalid field value."""


class InvalidRuleError(EgressError, ValueError):
    """Raised when a custom rule value does not fit its rule kind."""


class RuleStoreError(EgressError):
    """Raised when the custom rule store cannot be read or written."""


class NetworkCreateError(EgressError):
    """Raised when neither the isolated nor the fallback network could be created."""


class SidecarStartError(EgressError):
    """Raised when the DNS sidecar container could not be started."""


class SidecarStartTimeoutError(SidecarStartError):
    """Raised when the DNS sidecar never reported an address in time."""


class SidecarAddressError(SidecarStartError):
    """Raised when the DNS sidecar could not bind the requested static address."""


class DockerCommandError(EgressError):
    """Raised when a Docker CLI command fails."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip()[:500] if stderr else "no output"
        super().__init__(f"Docker command failed ({returncode}): {' '.join(cmd)}\n{detail}")


class DockerUnavailableError(DockerCommandError):
    """Raised when the Docker CLI is missing or the command timed out."""

    def __init__(self, cmd: list[str], reason: str) -> None:
        super().__init__(cmd, -1, reason)
