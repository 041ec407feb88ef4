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
"""Per-container custom egress rules.

Rules added with ``--allow-domain`` at create time or ``devbox network
allow/block`` later are stored on the host, one directory per container:

    ~/.devbox/egress-rules/<container>/
        allow-domains.txt
        block-domains.txt
        allow-ips.txt
        block-ips.txt
        allow-ports.txt
        active-profile

Files are newline-delimited and append-only.  Adding a value that is
already present is a no-op.  Each append is a single ``write()`` of one
complete line, so a failed append never damages committed rules.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .errors import InvalidRuleError, RuleStoreError

logger = logging.getLogger("devbox.network.rules")

ACTIVE_PROFILE_FILE = "active-profile"

_DOMAIN_LABEL = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")
_SAFE_CONTAINER_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class RuleKind(str, enum.Enum):
    """The five kinds of custom rule, in display order."""

    ALLOW_DOMAIN = "allow-domain"
    BLOCK_DOMAIN = "block-domain"
    ALLOW_IP = "allow-ip"
    BLOCK_IP = "block-ip"
    ALLOW_PORT = "allow-port"

    @property
    def filename(self) -> str:
        return f"{self.value}s.txt"

    @property
    def tag(self) -> str:
        """Display tag, e.g. ``ALLOW_DOMAIN``."""
        return self.name


@dataclass(frozen=True)
class CustomRule:
    kind: RuleKind
    value: str

    def __str__(self) -> str:
        return f"{self.kind.tag} {self.value}"


@dataclass(frozen=True)
class CustomRuleSet:
    """Custom rules for one container, in stored order."""

    container: str
    rules: tuple[CustomRule, ...] = field(default_factory=tuple)

    def values(self, kind: RuleKind) -> tuple[str, ...]:
        return tuple(rule.value for rule in self.rules if rule.kind is kind)

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_rule(kind: RuleKind | str, value: str) -> str:
    """Validate and canonicalize a rule value for its kind.

    Domains are lower-cased (a leading ``*.`` wildcard is kept as written),
    IP rules are canonical CIDR strings, ports are decimal strings.

    Raises:
        InvalidRuleError: The value does not fit the rule kind.
    """
    kind = RuleKind(kind)
    value = (value or "").strip()
    if not value:
        raise InvalidRuleError(f"Empty value for {kind.value} rule")

    if kind in (RuleKind.ALLOW_DOMAIN, RuleKind.BLOCK_DOMAIN):
        return _validate_domain(value)
    if kind in (RuleKind.ALLOW_IP, RuleKind.BLOCK_IP):
        try:
            return str(ipaddress.ip_network(value, strict=False))
        except ValueError:
            raise InvalidRuleError(f"Invalid IP or CIDR for {kind.value}: {value!r}") from None
    try:
        port = int(value)
    except ValueError:
        raise InvalidRuleError(f"Invalid port for {kind.value}: {value!r}") from None
    if not 1 <= port <= 65535:
        raise InvalidRuleError(f"Port out of range for {kind.value}: {port}")
    return str(port)


def _validate_domain(value: str) -> str:
    domain = value.lower().rstrip(".")
    bare = domain[2:] if domain.startswith("*.") else domain
    labels = bare.split(".")
    if len(bare) > 253 or not all(_DOMAIN_LABEL.match(label) for label in labels):
        raise InvalidRuleError(f"Invalid domain pattern: {value!r}")
    return domain


def _check_container_name(container: str) -> str:
    if not container or not _SAFE_CONTAINER_NAME.match(container):
        raise InvalidRuleError(f"Invalid container name: {container!r}")
    return container


# ---------------------------------------------------------------------------
# Repository interface
# ---------------------------------------------------------------------------


class RuleStore(ABC):
    """Storage for custom rules, keyed by container name."""

    @abstractmethod
    def load(self, container: str) -> CustomRuleSet:
        """Return all stored rules for ``container`` (empty if none)."""

    @abstractmethod
    def append(self, container: str, kind: RuleKind | str, value: str) -> bool:
        """Store a rule.  Returns False if the exact value was already present."""

    @abstractmethod
    def clear(self, container: str) -> bool:
        """Delete every rule for ``container``.  Returns False if nothing was stored."""

    @abstractmethod
    def read_active_profile(self, container: str) -> str | None:
        """Return the profile most recently applied to ``container``."""

    @abstractmethod
    def write_active_profile(self, container: str, profile: str) -> None:
        """Record the profile applied to ``container``."""

    # Convenience names used by the CLI layer

    def add_rule(self, container: str, kind: RuleKind | str, value: str) -> bool:
        return self.append(container, kind, value)

    def list_rules(self, container: str) -> list[CustomRule]:
        return list(self.load(container).rules)

    def remove_all(self, container: str) -> bool:
        return self.clear(container)


# ---------------------------------------------------------------------------
# Flat-file implementation
# ---------------------------------------------------------------------------


class FileRuleStore(RuleStore):
    """Rule store backed by one directory of text files per container."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def container_dir(self, container: str) -> Path:
        return self.root / _check_container_name(container)

    def exists(self, container: str) -> bool:
        return self.container_dir(container).is_dir()

    def initialize(self, container: str) -> Path:
        """Create the (empty) rule directory for a new container."""
        path = self.container_dir(container)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RuleStoreError(f"Cannot create rule directory {path}: {exc}") from exc
        return path

    def load(self, container: str) -> CustomRuleSet:
        path = self.container_dir(container)
        if not path.is_dir():
            return CustomRuleSet(container=container)

        rules: list[CustomRule] = []
        for kind in RuleKind:
            rules.extend(CustomRule(kind, value) for value in self._read_values(path / kind.filename))
        return CustomRuleSet(container=container, rules=tuple(rules))

    def append(self, container: str, kind: RuleKind | str, value: str) -> bool:
        kind = RuleKind(kind)
        value = validate_rule(kind, value)
        path = self.initialize(container) / kind.filename

        if value in self._read_values(path):
            logger.debug("Rule %s %s already stored for %s", kind.tag, value, container)
            return False

        try:
            needs_newline = path.exists() and path.stat().st_size > 0 and not _ends_with_newline(path)
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(("\n" if needs_newline else "") + value + "\n")
        except OSError as exc:
            raise RuleStoreError(f"Cannot write rule to {path}: {exc}") from exc

        logger.info("Stored egress rule %s %s for %s", kind.tag, value, container)
        return True

    def clear(self, container: str) -> bool:
        path = self.container_dir(container)
        if not path.exists():
            logger.debug("No egress rules stored for %s", container)
            return False
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise RuleStoreError(f"Cannot remove rule directory {path}: {exc}") from exc
        logger.info("Removed egress rules for %s", container)
        return True

    def clear_rules(self, container: str) -> int:
        """Delete the rule files but keep the directory and active profile.

        Returns the number of rule files removed.
        """
        path = self.container_dir(container)
        removed = 0
        for kind in RuleKind:
            try:
                (path / kind.filename).unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise RuleStoreError(f"Cannot remove {kind.filename} for {container}: {exc}") from exc
        return removed

    def read_active_profile(self, container: str) -> str | None:
        path = self.container_dir(container) / ACTIVE_PROFILE_FILE
        try:
            name = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RuleStoreError(f"Cannot read {path}: {exc}") from exc
        return name or None

    def write_active_profile(self, container: str, profile: str) -> None:
        path = self.initialize(container) / ACTIVE_PROFILE_FILE
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(profile + "\n", encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise RuleStoreError(f"Cannot write {path}: {exc}") from exc

    def add_many(self, container: str, rules: Iterable[tuple[RuleKind | str, str]]) -> int:
        """Append several rules; returns how many were new."""
        return sum(1 for kind, value in rules if self.append(container, kind, value))

    @staticmethod
    def _read_values(path: Path) -> list[str]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise RuleStoreError(f"Cannot read {path}: {exc}") from exc
        values = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            values.append(line)
        return values


def _ends_with_newline(path: Path) -> bool:
    with open(path, "rb") as fh:
        fh.seek(-1, 2)
        return fh.read(1) == b"\n"
