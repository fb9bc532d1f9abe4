"""Unit tests for rootfs distribution."""

import pytest

from conftest import FakeInfraDriver
from kubefleet.distributor import ScpDistributor
from kubefleet.exceptions import ConfigurationError

HOSTS = ["192.168.0.2", "192.168.0.10"]


@pytest.fixture
def mount_dir(tmp_path):
    rootfs = tmp_path / "mount"
    for name in ("scripts", "etc", "registry"):
        (rootfs / name).mkdir(parents=True)
    (rootfs / "Kubefile").write_text("FROM scratch\n")
    return rootfs


@pytest.fixture
def driver(make_cluster):
    return FakeInfraDriver(make_cluster(masters=HOSTS[:1], nodes=HOSTS[1:]))


def test_distribute_skips_registry_data(mount_dir, driver):
    ScpDistributor(mount_dir, driver).distribute(HOSTS, "/var/lib/kubefleet/data/c/rootfs")

    for host in HOSTS:
        destinations = [dst for h, _, dst in driver.copies if h == host]
        assert destinations == [
            "/var/lib/kubefleet/data/c/rootfs/Kubefile",
            "/var/lib/kubefleet/data/c/rootfs/etc",
            "/var/lib/kubefleet/data/c/rootfs/scripts",
        ]


def test_distribute_without_mount(tmp_path, driver):
    with pytest.raises(ConfigurationError, match="Mounted rootfs not found"):
        ScpDistributor(tmp_path / "missing", driver).distribute(HOSTS, "/rootfs")

    assert driver.copies == []


def test_distribute_registry(mount_dir, driver):
    ScpDistributor(mount_dir, driver).distribute_registry(HOSTS[:1], "/data/registry")

    assert driver.copies == [(HOSTS[0], str(mount_dir / "registry"), "/data/registry")]


def test_distribute_registry_without_data(tmp_path, driver):
    (tmp_path / "bare").mkdir()

    ScpDistributor(tmp_path / "bare", driver).distribute_registry(HOSTS, "/data/registry")

    assert driver.copies == []


def test_restore_removes_target(mount_dir, driver):
    ScpDistributor(mount_dir, driver).restore("/var/lib/kubefleet/data/c", HOSTS)

    assert driver.hosts_running("rm -rf /var/lib/kubefleet/data/c") == set(HOSTS)
