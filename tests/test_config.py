# Devbox
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for devbox host settings."""

from pathlib import Path

import yaml

from devbox.config import (
    DEFAULT_SUBNET_POOL,
    DEFAULT_UPSTREAM_DNS,
    DevboxSettings,
    default_data_dir,
    load_settings,
    save_settings,
)


class TestDefaults:
    def test_missing_file(self, tmp_path):
        settings = load_settings(tmp_path / "nope.yaml")
        assert settings.upstream_dns == DEFAULT_UPSTREAM_DNS
        assert settings.subnet_pool == DEFAULT_SUBNET_POOL
        assert settings.sidecar_ready_attempts == 30
        assert settings.sidecar_ready_interval_s == 1.0
        assert settings.sidecar_image == "alpine:latest"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DEVBOX_HOME", str(tmp_path / "home"))
        monkeypatch.delenv("DEVBOX_DATA_DIR", raising=False)
        assert default_data_dir() == tmp_path / "home"
        monkeypatch.setenv("DEVBOX_DATA_DIR", str(tmp_path / "data"))
        settings = DevboxSettings()
        assert settings.rules_dir == tmp_path / "data" / "egress-rules"
        assert settings.log_dir == tmp_path / "home" / "logs"

    def test_default_lists_not_shared(self):
        a = DevboxSettings()
        a.upstream_dns.append("9.9.9.9")
        assert DevboxSettings().upstream_dns == DEFAULT_UPSTREAM_DNS


class TestLoad:
    def test_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump(
                {
                    "data_dir": str(tmp_path / "d"),
                    "upstream_dns": "9.9.9.9 127.0.0.1:5300",
                    "sidecar_ready_attempts": 10,
                    "sidecar_ready_interval_s": 0.25,
                    "subnet_pool": "10.99.0.0/16",
                    "log_level": "debug",
                }
            )
        )
        settings = load_settings(path)
        assert settings.data_dir == tmp_path / "d"
        assert settings.upstream_dns == ["9.9.9.9", "127.0.0.1:5300"]
        assert settings.sidecar_ready_attempts == 10
        assert settings.sidecar_ready_interval_s == 0.25
        assert settings.subnet_pool == "10.99.0.0/16"
        assert settings.log_level == "DEBUG"

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sidecar_ready_attempts: -3\ndocker_timeout_s: soon\nupstream_dns: []\n")
        settings = load_settings(path)
        assert settings.sidecar_ready_attempts == 30
        assert settings.docker_timeout_s == 60
        assert settings.upstream_dns == DEFAULT_UPSTREAM_DNS

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("upstream_dns: [unclosed\n")
        assert load_settings(path).upstream_dns == DEFAULT_UPSTREAM_DNS

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        assert load_settings(path).subnet_pool == DEFAULT_SUBNET_POOL

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_settings(path).docker_binary == "docker"


class TestSave:
    def test_roundtrip(self, tmp_path):
        path = tmp_path / "sub" / "config.yaml"
        original = DevboxSettings(data_dir=tmp_path, upstream_dns=["9.9.9.9"], subnet_pool=None)
        save_settings(original, path)
        loaded = load_settings(path)
        assert loaded.upstream_dns == ["9.9.9.9"]
        assert Path(loaded.data_dir) == tmp_path
        assert loaded.subnet_pool is None
