"""Unit tests for Clusterfile persistence."""

import pytest

from kubefleet.clusterfile import CLUSTERFILE_NAME, ClusterFile
from kubefleet.exceptions import ClusterFileError
from kubefleet.infradriver import AnsibleInfraDriver
from kubefleet.models.cluster import NODE, SSHConfig
from kubefleet.models.registry import LocalRegistry, Registry


@pytest.fixture
def cluster_file(tmp_path):
    return ClusterFile(tmp_path / "demo" / CLUSTERFILE_NAME)


def test_save_and_load(cluster_file, make_cluster):
    registry = Registry(local_registry=LocalRegistry(deploy_hosts=["10.0.0.1"], username="admin", password="secret"))
    cluster = make_cluster(masters=["10.0.0.1", "10.0.0.2"], nodes=["10.0.0.10"], registry=registry, env={"A": "1"})

    cluster_file.save(cluster)
    loaded = cluster_file.load()

    assert loaded == cluster
    assert loaded.spec.registry.local_registry.deploy_hosts == ["10.0.0.1"]


def test_save_creates_work_dir(cluster_file, make_cluster):
    cluster_file.save(make_cluster())

    assert cluster_file.exists()
    assert cluster_file.kubeconfig_path == cluster_file.work_dir / "admin.conf"


def test_save_keeps_backup_of_previous_version(cluster_file, make_cluster):
    cluster_file.save(make_cluster(masters=["10.0.0.1"]))
    first = cluster_file.path.read_text()

    cluster_file.save(make_cluster(masters=["10.0.0.1"], nodes=["10.0.0.10"]))

    backup = cluster_file.path.with_name(f"{CLUSTERFILE_NAME}.backup")
    assert backup.read_text() == first
    assert "10.0.0.10" in cluster_file.path.read_text()


def test_load_missing_file(cluster_file):
    with pytest.raises(ClusterFileError, match="not found"):
        cluster_file.load()


def test_load_empty_file(cluster_file):
    cluster_file.path.parent.mkdir(parents=True)
    cluster_file.path.write_text("")

    with pytest.raises(ClusterFileError, match="empty"):
        cluster_file.load()


def test_load_invalid_yaml(cluster_file):
    cluster_file.path.parent.mkdir(parents=True)
    cluster_file.path.write_text("name: demo\nspec: [unclosed\n")

    with pytest.raises(ClusterFileError, match="Failed to read"):
        cluster_file.load()


def test_load_invalid_cluster(cluster_file):
    cluster_file.path.parent.mkdir(parents=True)
    cluster_file.path.write_text("name: Not_A_Valid_Name\nspec:\n  image: kubefleet/kubernetes:v1.22.15\n")

    with pytest.raises(ClusterFileError, match="Invalid Clusterfile") as exc_info:
        cluster_file.load()

    assert exc_info.value.details


def test_hand_written_clusterfile(cluster_file):
    cluster_file.path.parent.mkdir(parents=True)
    cluster_file.path.write_text(
        "# production cluster\n"
        "name: prod\n"
        "spec:\n"
        "  image: docker.io/kubefleet/kubernetes:v1.22.15\n"
        "  env:\n"
        "    - HTTP_PROXY=http://proxy:3128\n"
        "  hosts:\n"
        "    - ips: [10.0.0.1]\n"
        "      roles: [master]\n"
        "    - ips: [10.0.0.10, 10.0.0.11]\n"
        "      roles: [node]\n"
        "      labels:\n"
        "        zone: b\n"
    )

    cluster = cluster_file.load()

    assert cluster.master0 == "10.0.0.1"
    assert cluster.node_ips == ["10.0.0.10", "10.0.0.11"]
    assert cluster.spec.env == {"HTTP_PROXY": "http://proxy:3128"}
    assert cluster.host_for("10.0.0.11").labels == {"zone": "b"}


def test_remove_deletes_work_dir(cluster_file, make_cluster):
    cluster_file.save(make_cluster())
    cluster_file.kubeconfig_path.write_text("apiVersion: v1\n")

    cluster_file.remove()

    assert not cluster_file.work_dir.exists()


def test_remove_keeps_unrelated_files(cluster_file, make_cluster):
    cluster_file.save(make_cluster())
    cluster_file.save(make_cluster())
    cluster_file.kubeconfig_path.write_text("apiVersion: v1\n")
    notes = cluster_file.work_dir / "notes.txt"
    notes.write_text("keep me\n")

    cluster_file.remove()

    assert notes.read_text() == "keep me\n"
    assert not cluster_file.path.exists()
    assert not cluster_file.backup_path.exists()
    assert not cluster_file.kubeconfig_path.exists()


def test_remove_without_work_dir_is_a_no_op(cluster_file):
    cluster_file.remove()

    assert not cluster_file.exists()


def test_default_path(tmp_path):
    assert ClusterFile.default_path("demo", tmp_path) == tmp_path / "demo" / CLUSTERFILE_NAME


def test_host_ssh_override_stays_partial(cluster_file, make_cluster):
    cluster = make_cluster(masters=["10.0.0.1"], ssh=SSHConfig(user="ops", password="pw"))
    cluster.add_hosts(["10.0.0.10"], NODE, ssh=SSHConfig(port=2222))

    cluster_file.save(cluster)
    driver = AnsibleInfraDriver(cluster_file.load())

    ssh = driver.get_host_ssh("10.0.0.10")
    assert (ssh.user, ssh.password, ssh.port) == ("ops", "pw", 2222)
