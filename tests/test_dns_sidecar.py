# Devbox
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the DNS filtering sidecar manager."""

import pytest

from devbox.network.dnsmasq import CONFIG_ENV
from devbox.network.errors import (
    SidecarAddressError,
    SidecarStartError,
    SidecarStartTimeoutError,
)
from devbox.network.policy import merge
from devbox.network.profiles import load_profile
from devbox.network.provisioner import NetworkProvisioner
from devbox.network.rules import RuleKind
from devbox.network.sidecar import SidecarManager, is_blocked_log_line, sidecar_name


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def manager(fake_docker, rule_store, sleeper):
    NetworkProvisioner(fake_docker, subnet_pool="172.30.0.0/16").create_network("web")
    return SidecarManager(
        fake_docker,
        rule_store,
        upstream_dns=["8.8.8.8", "1.1.1.1"],
        ready_attempts=5,
        ready_interval_s=0.5,
        sleep=sleeper,
    )


def _policy(name="strict"):
    return merge(load_profile(name))


def test_sidecar_name():
    assert sidecar_name("web") == "web-dns"


class TestStartSidecar:
    def test_start_returns_address(self, manager, fake_docker):
        address = manager.start_sidecar("web", _policy())
        assert address == "172.30.0.2"
        info = fake_docker.containers["web-dns"]
        assert info["network"] == "web-net"
        assert info["restart"] == "unless-stopped"
        assert info["labels"]["devbox.container"] == "web"
        assert info["labels"]["devbox.type"] == "dns-proxy"
        assert info["labels"]["devbox.dns.mode"] == "drop"

    def test_config_passed_through_env(self, manager, fake_docker):
        manager.start_sidecar("web", _policy())
        config = fake_docker.containers["web-dns"]["env"][CONFIG_ENV]
        assert "address=/#/" in config
        assert "server=/github.com/8.8.8.8" in config
        assert "address=/gist.github.com/" in config

    def test_old_sidecar_removed_first(self, manager, fake_docker):
        manager.start_sidecar("web", _policy())
        manager.start_sidecar("web", _policy("standard"))
        sidecars = [n for n, c in fake_docker.containers.items() if c["labels"].get("devbox.type") == "dns-proxy"]
        assert sidecars == ["web-dns"]
        ops = [c[0] for c in fake_docker.calls if c[0] in ("rm", "run")]
        assert ops == ["rm", "run", "rm", "run"]

    def test_static_address_honoured(self, manager, fake_docker):
        address = manager.start_sidecar("web", _policy(), static_address="172.30.0.53")
        assert address == "172.30.0.53"
        assert fake_docker.ops("run")[-1][3] == "172.30.0.53"

    def test_static_address_conflict(self, manager, fake_docker):
        fake_docker.add_container("squatter")
        fake_docker.containers["squatter"].update(network="web-net", address="172.30.0.53")
        with pytest.raises(SidecarAddressError):
            manager.start_sidecar("web", _policy(), static_address="172.30.0.53")
        assert "web-dns" not in fake_docker.containers

    def test_static_address_mismatch(self, manager, fake_docker):
        fake_docker.ignore_static_ip = True
        with pytest.raises(SidecarAddressError, match="expected 172.30.0.53"):
            manager.start_sidecar("web", _policy(), static_address="172.30.0.53")
        assert "web-dns" not in fake_docker.containers

    def test_run_failure(self, manager, fake_docker):
        fake_docker.run_error = "image not found"
        with pytest.raises(SidecarStartError) as exc_info:
            manager.start_sidecar("web", _policy())
        assert not isinstance(exc_info.value, SidecarStartTimeoutError)

    def test_timeout_removes_partial_sidecar(self, manager, fake_docker, sleeper):
        fake_docker.sidecar_never_ready = True
        with pytest.raises(SidecarStartTimeoutError):
            manager.start_sidecar("web", _policy())
        assert "web-dns" not in fake_docker.containers
        assert sleeper.calls == [0.5] * 5

    def test_airgapped_policy_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.start_sidecar("web", _policy("airgapped"))


class TestRestartSidecar:
    def test_address_preserved(self, manager, fake_docker):
        first = manager.start_sidecar("web", _policy(), static_address="172.30.0.53")
        second = manager.restart_sidecar("web", "strict")
        assert second == first == "172.30.0.53"
        assert fake_docker.ops("run")[-1][3] == first

    def test_restart_picks_up_custom_rules(self, manager, fake_docker, rule_store):
        manager.start_sidecar("web", _policy())
        rule_store.append("web", RuleKind.ALLOW_DOMAIN, "httpbin.org")
        manager.restart_sidecar("web", "strict")
        assert "server=/httpbin.org/8.8.8.8" in fake_docker.sidecar_config("web-dns")

    def test_restart_without_preserve(self, manager, fake_docker):
        manager.start_sidecar("web", _policy())
        manager.restart_sidecar("web", "strict", preserve_address=False)
        assert fake_docker.ops("run")[-1][3] is None

    def test_restart_with_no_previous_sidecar(self, manager, fake_docker):
        address = manager.restart_sidecar("web", "standard")
        assert address == "172.30.0.2"

    def test_airgapped_removes_sidecar(self, manager, fake_docker):
        manager.start_sidecar("web", _policy())
        assert manager.restart_sidecar("web", "airgapped") is None
        assert "web-dns" not in fake_docker.containers


class TestQueryAndRemove:
    def test_info(self, manager):
        assert manager.sidecar_info("web") is None
        manager.start_sidecar("web", _policy("standard"))
        info = manager.sidecar_info("web")
        assert info.name == "web-dns"
        assert info.address == "172.30.0.2"
        assert info.mode == "accept"

    def test_remove_is_idempotent(self, manager):
        manager.start_sidecar("web", _policy())
        assert manager.remove_sidecar("web") is True
        assert manager.remove_sidecar("web") is False

    def test_logs_filter(self, manager, fake_docker):
        manager.start_sidecar("web", _policy())
        fake_docker.logs["web-dns"] = "\n".join(
            [
                "dnsmasq: started, version 2.90 cachesize 1000",
                "dnsmasq: query[A] github.com from 172.30.0.3",
                "dnsmasq: forwarded github.com to 8.8.8.8",
                "dnsmasq: query[A] random.example.com from 172.30.0.3",
                "dnsmasq: config random.example.com is NXDOMAIN",
            ]
        )
        assert len(manager.sidecar_logs("web")) == 4
        assert manager.sidecar_logs("web", blocked_only=True) == [
            "dnsmasq: config random.example.com is NXDOMAIN"
        ]
        assert manager.sidecar_logs("web", tail=1) == ["dnsmasq: config random.example.com is NXDOMAIN"]

    def test_blocked_line_detection(self):
        assert is_blocked_log_line("dnsmasq[1]: config pastebin.com is NXDOMAIN")
        assert not is_blocked_log_line("dnsmasq[1]: reply github.com is 140.82.112.3")
