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
"""Devbox host settings.

Settings live on the HOST filesystem, next to the rest of Devbox's state.
Dev containers never see this file.

Config location: ~/.devbox/config.yaml  (override with DEVBOX_HOME)
Data location:   ~/.devbox               (override with DEVBOX_DATA_DIR)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("devbox.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
DEFAULT_UPSTREAM_DNS = ["8.8.8.8", "1.1.1.1"]
DEFAULT_SUBNET_POOL = "172.30.0.0/16"
DEFAULT_SIDECAR_IMAGE = "alpine:latest"


def devbox_home() -> Path:
    """Return the Devbox home directory (``DEVBOX_HOME`` or ``~/.devbox``)."""
    return Path(os.environ.get("DEVBOX_HOME", Path.home() / ".devbox"))


def default_config_path() -> Path:
    return devbox_home() / "config.yaml"


def default_data_dir() -> Path:
    """Return the data directory (``DEVBOX_DATA_DIR`` or the Devbox home)."""
    env = os.environ.get("DEVBOX_DATA_DIR")
    return Path(env) if env else devbox_home()


@dataclass
class DevboxSettings:
    """Host-side settings for the egress control layer."""

    # Root for per-container state (egress-rules/<container>/...)
    data_dir: Path = field(default_factory=default_data_dir)

    # Directory with <profile>.yaml documents; None uses the bundled profiles
    profiles_dir: Path | None = None

    # Upstream resolvers the sidecar forwards allowed queries to
    upstream_dns: list[str] = field(default_factory=lambda: list(DEFAULT_UPSTREAM_DNS))

    sidecar_image: str = DEFAULT_SIDECAR_IMAGE

    # Readiness polling: attempts x interval bounds the wait for an address
    sidecar_ready_attempts: int = 30
    sidecar_ready_interval_s: float = 1.0

    # /24 networks are carved from this pool; None lets Docker pick
    subnet_pool: str | None = DEFAULT_SUBNET_POOL

    docker_binary: str = "docker"
    docker_timeout_s: int = 60

    log_level: str = "INFO"

    @property
    def rules_dir(self) -> Path:
        return Path(self.data_dir) / "egress-rules"

    @property
    def log_dir(self) -> Path:
        return devbox_home() / "logs"

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "profiles_dir": str(self.profiles_dir) if self.profiles_dir else None,
            "upstream_dns": list(self.upstream_dns),
            "sidecar_image": self.sidecar_image,
            "sidecar_ready_attempts": self.sidecar_ready_attempts,
            "sidecar_ready_interval_s": self.sidecar_ready_interval_s,
            "subnet_pool": self.subnet_pool,
            "docker_binary": self.docker_binary,
            "docker_timeout_s": self.docker_timeout_s,
            "log_level": self.log_level,
        }


def load_settings(path: Path | str | None = None) -> DevboxSettings:
    """Load settings from YAML.

    If the file does not exist, returns the defaults.  An unreadable or
    malformed file is logged and also yields the defaults, so a broken
    config never blocks container teardown.
    """
    config_path = Path(path) if path else default_config_path()

    if not config_path.exists():
        logger.debug("No devbox config at %s -- using defaults", config_path)
        return DevboxSettings()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load devbox config %s: %s -- using defaults", config_path, exc)
        return DevboxSettings()

    if raw is None:
        return DevboxSettings()
    if not isinstance(raw, dict):
        logger.warning("Invalid devbox config (not a mapping) -- using defaults")
        return DevboxSettings()
    return _parse_settings(raw)


def save_settings(settings: DevboxSettings, path: Path | str | None = None) -> None:
    """Save settings to YAML."""
    config_path = Path(path) if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.dump(settings.to_dict(), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.info("Saved devbox config to %s", config_path)


def _parse_settings(raw: dict) -> DevboxSettings:
    """Parse a raw YAML mapping into DevboxSettings."""
    defaults = DevboxSettings()

    upstream = raw.get("upstream_dns", defaults.upstream_dns)
    if isinstance(upstream, str):
        upstream = upstream.split()
    if not isinstance(upstream, list) or not upstream:
        logger.warning("Invalid upstream_dns in config -- using defaults")
        upstream = defaults.upstream_dns
    upstream = [str(u).strip() for u in upstream if str(u).strip()]

    profiles_dir = raw.get("profiles_dir")
    data_dir = raw.get("data_dir")

    attempts = _positive_int(raw.get("sidecar_ready_attempts"), defaults.sidecar_ready_attempts)
    timeout = _positive_int(raw.get("docker_timeout_s"), defaults.docker_timeout_s)

    try:
        interval = float(raw.get("sidecar_ready_interval_s", defaults.sidecar_ready_interval_s))
    except (TypeError, ValueError):
        interval = defaults.sidecar_ready_interval_s
    if interval < 0:
        interval = defaults.sidecar_ready_interval_s

    return DevboxSettings(
        data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
        profiles_dir=Path(profiles_dir).expanduser() if profiles_dir else None,
        upstream_dns=upstream,
        sidecar_image=str(raw.get("sidecar_image", defaults.sidecar_image)),
        sidecar_ready_attempts=attempts,
        sidecar_ready_interval_s=interval,
        subnet_pool=raw.get("subnet_pool", defaults.subnet_pool),
        docker_binary=str(raw.get("docker_binary", defaults.docker_binary)),
        docker_timeout_s=timeout,
        log_level=str(raw.get("log_level", defaults.log_level)).upper(),
    )


def _positive_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        result = int(value)
    except (TypeError, ValueError):
        return default
    return result if result > 0 else default
