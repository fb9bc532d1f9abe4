"""Pytest configuration and shared fixtures."""

import threading
from unittest.mock import MagicMock

import pytest
from hypothesis import Verbosity, settings

from kubefleet.container_runtime import InstallInfo
from kubefleet.distributor import Distributor
from kubefleet.exceptions import RemoteExecutionError
from kubefleet.infradriver import InfraDriver
from kubefleet.installer import Installer, RuntimeConfig
from kubefleet.kube_runtime import KubeRuntimeInstaller
from kubefleet.models.cluster import MASTER, NODE, Cluster, ClusterSpec, Host
from kubefleet.models.registry import Registry

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

TEST_IMAGE = "docker.io/kubefleet/kubernetes:v1.22.15"


class FakeInfraDriver(InfraDriver):
    """In-memory transport recording every command and copy."""

    def __init__(self, cluster: Cluster, journal: list | None = None):
        super().__init__(cluster)
        self.journal = journal if journal is not None else []
        self.commands: list[tuple[str, str]] = []
        self.copies: list[tuple[str, str, str]] = []
        self.outputs: dict[str, str] = {}
        self.failing_hosts: set[str] = set()
        self.unreachable: set[str] = set()
        self._lock = threading.Lock()

    def _check(self, host: str) -> None:
        if host in self.unreachable:
            raise RemoteExecutionError(host, "host is unreachable")
        if host in self.failing_hosts:
            raise RemoteExecutionError(host, "command exited with status 1")

    def cmd_async(self, host, env, *cmds):
        self._check(host)
        with self._lock:
            for command in cmds:
                self.commands.append((host, command))
                self.journal.append(("cmd", host, command))

    def cmd(self, host, env, cmd):
        self._check(host)
        with self._lock:
            self.commands.append((host, cmd))
        for needle, output in self.outputs.items():
            if needle in cmd:
                return output
        return ""

    def copy(self, host, src, dst):
        self._check(host)
        with self._lock:
            self.copies.append((host, src, dst))
            self.journal.append(("copy", host, dst))

    def is_file_exist(self, host, path):
        return any(h == host and dst == path for h, _, dst in self.copies)

    def ping(self, host):
        if host in self.unreachable:
            raise RemoteExecutionError(host, "host is unreachable")

    def commands_on(self, host: str) -> list[str]:
        return [c for h, c in self.commands if h == host]

    def hosts_running(self, needle: str) -> set[str]:
        """Hosts that ran at least one command containing ``needle``."""
        return {h for h, c in self.commands if needle in c}


class FakeDistributor(Distributor):
    def __init__(self, journal: list):
        self.journal = journal
        self.calls: list[tuple] = []

    def distribute(self, hosts, dest):
        self.calls.append(("distribute", list(hosts), dest))
        self.journal.append(("distribute", tuple(hosts)))

    def distribute_registry(self, hosts, data_dir):
        self.calls.append(("distribute_registry", list(hosts), data_dir))
        self.journal.append(("distribute_registry", tuple(hosts)))

    def restore(self, target_dir, hosts):
        self.calls.append(("restore", target_dir, list(hosts)))
        self.journal.append(("restore", tuple(hosts)))


class FakeKubeRuntime(KubeRuntimeInstaller):
    """Records lifecycle calls and hands out a mock API driver."""

    def __init__(self, journal: list):
        self.journal = journal
        self.calls: list[tuple] = []
        self.kube_driver = MagicMock(name="KubeDriver")
        self.registry_info = None

    def factory(self, runtime_type, driver, runtime_info, registry_info, kubeadm_config, kubeconfig_path):
        self.registry_info = registry_info
        return self

    def _record(self, *call):
        self.calls.append(call)
        self.journal.append(("kube", call[0]))

    def install(self):
        self._record("install")

    def upgrade(self):
        self._record("upgrade")

    def reset(self):
        self._record("reset")

    def scale_up(self, masters, nodes):
        self._record("scale_up", list(masters), list(nodes))

    def scale_down(self, masters, nodes, unreachable=None):
        self._record("scale_down", list(masters), list(nodes), list(unreachable or []))

    def get_current_runtime_driver(self):
        return self.kube_driver


def build_cluster(masters=("192.168.0.2",), nodes=(), name="test-cluster", registry=None, **spec) -> Cluster:
    """Cluster with one master group and an optional node group."""
    hosts = []
    if masters:
        hosts.append(Host(ips=list(masters), roles=[MASTER]))
    if nodes:
        hosts.append(Host(ips=list(nodes), roles=[NODE]))
    return Cluster(
        name=name,
        spec=ClusterSpec(image=TEST_IMAGE, hosts=hosts, registry=registry or Registry(), **spec),
    )


@pytest.fixture
def journal():
    """Ordered record of side effects across all fakes."""
    return []


@pytest.fixture
def make_cluster():
    return build_cluster


@pytest.fixture
def kube_runtime(journal):
    return FakeKubeRuntime(journal)


@pytest.fixture
def make_installer(tmp_path, journal, kube_runtime):
    """Build an Installer wired to in-memory fakes."""

    def _make(cluster, hooks=None, options=None, cluster_file=None, container_runtime="docker"):
        driver = FakeInfraDriver(cluster, journal)
        runtime_config = RuntimeConfig(
            distributor=FakeDistributor(journal),
            kubeconfig_path=tmp_path / "admin.conf",
            local_rootfs=tmp_path / "rootfs",
        )
        return Installer(
            driver,
            runtime_config,
            InstallInfo(container_runtime_type=container_runtime, cluster_runtime_type="kubernetes"),
            hooks=hooks,
            cluster_file=cluster_file,
            options=options,
            kube_runtime_factory=kube_runtime.factory,
        )

    return _make
