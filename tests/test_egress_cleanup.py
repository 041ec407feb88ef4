# Devbox
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for container networking teardown."""

from devbox.network.cleanup import remove_container_networking
from devbox.network.errors import DockerCommandError
from devbox.network.policy import merge
from devbox.network.profiles import load_profile
from devbox.network.provisioner import NetworkProvisioner
from devbox.network.rules import RuleKind
from devbox.network.sidecar import SidecarManager


def _setup(fake_docker, rule_store):
    provisioner = NetworkProvisioner(fake_docker, subnet_pool="172.30.0.0/16")
    sidecars = SidecarManager(fake_docker, rule_store, ready_attempts=2, ready_interval_s=0, sleep=lambda s: None)
    return provisioner, sidecars


class TestRemoveContainerNetworking:
    def test_full_teardown_in_order(self, fake_docker, rule_store):
        provisioner, sidecars = _setup(fake_docker, rule_store)
        provisioner.create_network("web")
        sidecars.start_sidecar("web", merge(load_profile("standard")))
        rule_store.append("web", RuleKind.ALLOW_DOMAIN, "httpbin.org")

        report = remove_container_networking("web", sidecars, provisioner, rule_store)

        assert report.ok
        assert report.sidecar_removed and report.network_removed and report.rules_removed
        assert fake_docker.networks == {}
        assert fake_docker.containers == {}
        assert not rule_store.exists("web")
        removal = [c for c in fake_docker.calls if c[0] in ("rm", "network_rm")]
        assert removal[-2:] == [("rm", "web-dns"), ("network_rm", "web-net")]

    def test_nothing_to_remove(self, fake_docker, rule_store):
        provisioner, sidecars = _setup(fake_docker, rule_store)
        report = remove_container_networking("web", sidecars, provisioner, rule_store)
        assert report.ok
        assert not (report.sidecar_removed or report.network_removed or report.rules_removed)

    def test_partial_state(self, fake_docker, rule_store):
        provisioner, sidecars = _setup(fake_docker, rule_store)
        provisioner.create_network("web")
        report = remove_container_networking("web", sidecars, provisioner, rule_store)
        assert report.ok
        assert report.network_removed
        assert not report.sidecar_removed

    def test_failed_step_does_not_stop_later_steps(self, fake_docker, rule_store, monkeypatch):
        provisioner, sidecars = _setup(fake_docker, rule_store)
        provisioner.create_network("web")
        rule_store.append("web", RuleKind.BLOCK_DOMAIN, "evil.io")

        def broken_remove(name):
            raise DockerCommandError(["docker", "rm", "-f", name], 1, "daemon error")

        monkeypatch.setattr(fake_docker, "remove_container", broken_remove)
        report = remove_container_networking("web", sidecars, provisioner, rule_store)

        assert not report.ok
        assert report.errors[0].startswith("sidecar:")
        assert report.network_removed
        assert report.rules_removed

    def test_report_to_dict(self, fake_docker, rule_store):
        provisioner, sidecars = _setup(fake_docker, rule_store)
        data = remove_container_networking("web", sidecars, provisioner, rule_store).to_dict()
        assert data["container"] == "web"
        assert data["errors"] == []
