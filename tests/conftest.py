"""Pytest configuration for devbox tests."""

import ipaddress
import logging
import subprocess
import sys
from pathlib import Path

import pytest

# Ensure src/devbox is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from devbox.config import DevboxSettings  # noqa: E402
from devbox.network.controller import EgressController  # noqa: E402
from devbox.network.errors import DockerCommandError  # noqa: E402
from devbox.network.rules import FileRuleStore  # noqa: E402


class FakeDocker:
    """In-memory stand-in for DockerClient.

    Networks and containers live in dicts; every call is recorded in
    ``calls`` so tests can assert on ordering.  Knobs:

      icc_supported        -- False makes ICC-disabled network creation fail
      network_create_error -- stderr for every network create (all fail)
      overlapping_subnets  -- subnets Docker reports as already in use
      run_error            -- stderr for sidecar ``docker run`` (fails)
      sidecar_never_ready  -- sidecars never report an address
      ignore_static_ip     -- sidecars get the next free address, not ``--ip``
    """

    binary = "docker"

    def __init__(self):
        self.networks = {}
        self.containers = {}
        self.logs = {}
        self.calls = []
        self.icc_supported = True
        self.network_create_error = None
        self.overlapping_subnets = set()
        self.run_error = None
        self.sidecar_never_ready = False
        self.ignore_static_ip = False
        self._ids = 0

    def _next_id(self):
        self._ids += 1
        return f"{self._ids:064x}"

    @staticmethod
    def _proc(returncode=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(["docker"], returncode, stdout, stderr)

    # -- helpers for tests ------------------------------------------------
    def add_container(self, name, labels=None):
        self.containers[name] = {
            "id": self._next_id(),
            "image": "devbox:latest",
            "network": None,
            "address": None,
            "labels": dict(labels or {}),
            "env": {},
            "command": [],
        }

    def sidecar_config(self, name):
        return self.containers[name]["env"].get("DEVBOX_DNSMASQ_CONF", "")

    def ops(self, prefix=None):
        return [c for c in self.calls if prefix is None or c[0] == prefix]

    # -- DockerClient surface ---------------------------------------------
    def is_available(self):
        return True

    def network_exists(self, name):
        return name in self.networks

    def network_id(self, name):
        net = self.networks.get(name)
        return net["id"] if net else None

    def network_labels(self, name):
        net = self.networks.get(name)
        return dict(net["labels"]) if net else {}

    def create_network(self, name, labels=None, options=None, subnet=None):
        self.calls.append(("network_create", name, dict(options or {}), subnet))
        if name in self.networks:
            return self._proc(1, stderr=f"network with name {name} already exists")
        if self.network_create_error:
            return self._proc(1, stderr=self.network_create_error)
        if options and not self.icc_supported:
            return self._proc(1, stderr="failed to set com.docker.network.bridge.enable_icc: br_netfilter not loaded")
        if subnet in self.overlapping_subnets:
            return self._proc(1, stderr="Pool overlaps with other one on this address space")
        net_id = self._next_id()
        self.networks[name] = {
            "id": net_id,
            "labels": dict(labels or {}),
            "options": dict(options or {}),
            "subnet": subnet or "172.18.0.0/24",
        }
        return self._proc(0, stdout=net_id + "\n")

    def remove_network(self, name):
        self.calls.append(("network_rm", name))
        if name not in self.networks:
            return False
        attached = [c for c, info in self.containers.items() if info["network"] == name]
        if attached:
            raise DockerCommandError(["docker", "network", "rm", name], 1, "error: network has active endpoints")
        del self.networks[name]
        return True

    def network_subnets(self, label):
        key, _, value = label.partition("=")
        return [
            net["subnet"]
            for net in self.networks.values()
            if key in net["labels"] and (not value or net["labels"][key] == value)
        ]

    def container_exists(self, name):
        return name in self.containers

    def run_container(self, name, image, command, network=None, ip=None, labels=None, env=None, restart=None):
        self.calls.append(("run", name, network, ip))
        if name in self.containers:
            raise DockerCommandError(["docker", "run", name], 125, f'Conflict. The container name "/{name}" is already in use')
        if self.run_error:
            raise DockerCommandError(["docker", "run", name], 125, self.run_error)
        if network and network not in self.networks:
            raise DockerCommandError(["docker", "run", name], 125, f"network {network} not found")

        address = None
        if network:
            if ip and not self.ignore_static_ip:
                if ip in self._used_addresses(network):
                    raise DockerCommandError(["docker", "run", name], 125, f"Address already in use: {ip}")
                address = ip
            else:
                address = self._free_address(network)

        self.containers[name] = {
            "id": self._next_id(),
            "image": image,
            "network": network,
            "address": address,
            "labels": dict(labels or {}),
            "env": dict(env or {}),
            "command": list(command),
            "restart": restart,
        }
        return self.containers[name]["id"]

    def remove_container(self, name):
        self.calls.append(("rm", name))
        return self.containers.pop(name, None) is not None

    def container_address(self, name):
        info = self.containers.get(name)
        if info is None:
            return None
        if self.sidecar_never_ready and info["labels"].get("devbox.type") == "dns-proxy":
            return None
        return info["address"]

    def container_labels(self, name):
        info = self.containers.get(name)
        return dict(info["labels"]) if info else {}

    def container_logs(self, name, tail=None):
        if name not in self.containers:
            raise DockerCommandError(["docker", "logs", name], 1, f"Error: No such container: {name}")
        lines = self.logs.get(name, "").splitlines()
        if tail is not None:
            lines = lines[-tail:]
        return "\n".join(lines) + ("\n" if lines else "")

    def _used_addresses(self, network):
        return {info["address"] for info in self.containers.values() if info["network"] == network}

    def _free_address(self, network):
        subnet = ipaddress.ip_network(self.networks[network]["subnet"])
        used = self._used_addresses(network)
        hosts = list(subnet.hosts())[1:]  # .1 is the gateway
        for host in hosts:
            if str(host) not in used:
                return str(host)
        raise DockerCommandError(["docker", "run"], 125, "no available IPv4 addresses")


def no_sleep(seconds):
    return None


@pytest.fixture(autouse=True)
def _reset_devbox_logger():
    """Undo setup_logging() so caplog sees devbox records in every test."""
    yield
    root = logging.getLogger("devbox")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def settings(tmp_path):
    return DevboxSettings(
        data_dir=tmp_path / "data",
        sidecar_ready_attempts=3,
        sidecar_ready_interval_s=0.0,
    )


@pytest.fixture
def rule_store(settings):
    return FileRuleStore(settings.rules_dir)


@pytest.fixture
def controller(settings, fake_docker, rule_store):
    return EgressController(settings, docker=fake_docker, rule_store=rule_store, sleep=no_sleep)
