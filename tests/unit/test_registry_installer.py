"""Unit tests for local registry reconciliation."""

import pytest

from conftest import FakeDistributor, FakeInfraDriver
from kubefleet.exceptions import FanoutError, RegistryError
from kubefleet.models.registry import LocalRegistry, Registry, SubjectAltName, TLSCert
from kubefleet.registry import LocalRegistryInstaller
from kubefleet.registry.installer import REGISTRY_CONTAINER_NAME

H1, H2, H3 = "192.168.0.1", "192.168.0.2", "192.168.0.3"


@pytest.fixture
def registry_env(make_cluster, journal, tmp_path):
    """Build a registry installer over a three-master cluster."""

    def _make(current=None, **registry_settings):
        local = LocalRegistry(**registry_settings)
        cluster = make_cluster(masters=[H1, H2, H3], registry=Registry(local_registry=local))
        driver = FakeInfraDriver(cluster, journal)
        distributor = FakeDistributor(journal)
        installer = LocalRegistryInstaller(
            local, driver, distributor, current_deploy_hosts=current, local_rootfs=tmp_path / "rootfs"
        )
        return installer, driver, distributor

    return _make


def test_first_install_installs_on_exactly_desired(registry_env):
    """Empty current set: install once on the desired hosts and return them."""
    installer, driver, distributor = registry_env(current=[])

    actual = installer.reconcile([H1, H2])

    assert actual == [H1, H2]
    assert installer.current_deploy_hosts == [H1, H2]
    assert driver.hosts_running("init-registry.sh") == {H1, H2}
    assert distributor.calls.count(("distribute_registry", [H1, H2], installer.data_dir)) == 1


def test_first_install_with_nothing_desired_is_a_no_op(registry_env):
    installer, driver, distributor = registry_env(current=[])

    assert installer.reconcile([]) == []
    assert driver.commands == []
    assert distributor.calls == []


def test_grow_and_shrink_only_adds_in_one_call(registry_env):
    """Current {H1,H2}, desired {H2,H3}: the first call only installs H3."""
    installer, driver, _ = registry_env(current=[H1, H2])

    actual = installer.reconcile([H2, H3])

    assert actual == [H1, H2, H3]
    assert driver.hosts_running("init-registry.sh") == {H3}
    assert driver.hosts_running(REGISTRY_CONTAINER_NAME) == set()

    # The second call with the same desired set removes H1
    driver.commands.clear()
    actual = installer.reconcile([H2, H3])

    assert actual == [H2, H3]
    assert driver.hosts_running(REGISTRY_CONTAINER_NAME) == {H1}
    assert driver.hosts_running("init-registry.sh") == set()


def test_repeated_reconcile_is_a_no_op(registry_env):
    installer, driver, distributor = registry_env(current=[])
    first = installer.reconcile([H1, H2])
    driver.commands.clear()
    driver.copies.clear()
    distributor.calls.clear()

    second = installer.reconcile([H2, H1])

    assert second == first
    assert driver.commands == []
    assert driver.copies == []
    assert distributor.calls == []


def test_shrink_cleans_departed_hosts(registry_env):
    installer, driver, _ = registry_env(current=[H1, H2, H3])

    actual = installer.reconcile([H1])

    assert actual == [H1]
    assert driver.hosts_running(REGISTRY_CONTAINER_NAME) == {H2, H3}


def test_current_defaults_to_persisted_deploy_hosts(registry_env):
    installer, _, _ = registry_env(deploy_hosts=[H2])

    assert installer.current_deploy_hosts == [H2]


def test_install_generates_certificate_pair_once(registry_env, tmp_path):
    installer, driver, _ = registry_env(current=[])

    installer.reconcile([H1])

    cert_dir = tmp_path / "rootfs" / "certs"
    cert = (cert_dir / "sea.hub.crt").read_bytes()
    assert (cert_dir / "sea.hub.key").exists()
    assert (H1, str(cert_dir), f"{installer.remote_rootfs}/certs") in driver.copies

    installer.reconcile([H1, H2])

    assert (cert_dir / "sea.hub.crt").read_bytes() == cert


@pytest.mark.parametrize("present", ["sea.hub.crt", "sea.hub.key"])
def test_half_certificate_pair_fails_fast(registry_env, tmp_path, present):
    installer, driver, distributor = registry_env(current=[])
    cert_dir = tmp_path / "rootfs" / "certs"
    cert_dir.mkdir(parents=True)
    (cert_dir / present).write_text("existing")

    with pytest.raises(RegistryError, match="incomplete"):
        installer.reconcile([H1])

    assert (cert_dir / present).read_text() == "existing"
    assert len(list(cert_dir.iterdir())) == 1
    assert driver.hosts_running("init-registry.sh") == set()
    assert installer.current_deploy_hosts == []


def test_insecure_registry_skips_certificates(registry_env, tmp_path):
    installer, driver, _ = registry_env(current=[], insecure=True)

    installer.reconcile([H1])

    assert not (tmp_path / "rootfs" / "certs").exists()
    assert driver.hosts_running("init-registry.sh") == {H1}


def test_certificate_includes_configured_names(registry_env, tmp_path):
    from cryptography import x509

    san = SubjectAltName(dns_names=["registry.internal"], ips=["10.1.1.1"])
    installer, _, _ = registry_env(current=[], cert=TLSCert(subject_alt_name=san))

    installer.reconcile([H1])

    cert = x509.load_pem_x509_certificate((tmp_path / "rootfs" / "certs" / "sea.hub.crt").read_bytes())
    names = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert names.get_values_for_type(x509.DNSName) == ["sea.hub", "registry.internal"]
    assert [str(ip) for ip in names.get_values_for_type(x509.IPAddress)] == ["10.1.1.1"]


def test_basic_auth_file_is_created_once(registry_env, tmp_path):
    installer, driver, _ = registry_env(current=[], username="admin", password="secret")

    installer.reconcile([H1])

    htpasswd = tmp_path / "rootfs" / "etc" / "registry_htpasswd"
    content = htpasswd.read_text()
    assert content.startswith("admin:$2y$")
    assert (H1, str(htpasswd), f"{installer.remote_rootfs}/etc/registry_htpasswd") in driver.copies

    installer.reconcile([H1, H2])
    assert htpasswd.read_text() == content


def test_registry_launch_passes_port_data_dir_and_domain(registry_env):
    installer, driver, _ = registry_env(current=[], domain="hub.example.com", port=5443, data_dir="/data/registry")

    installer.reconcile([H1])

    launch = [c for c in driver.commands_on(H1) if "init-registry.sh" in c]
    assert launch == [f"cd {installer.remote_rootfs}/scripts && bash init-registry.sh 5443 /data/registry hub.example.com"]


def test_failed_host_leaves_current_set_unchanged(registry_env):
    installer, driver, _ = registry_env(current=[H1])
    driver.failing_hosts.add(H3)

    with pytest.raises(FanoutError) as exc_info:
        installer.reconcile([H1, H2, H3])

    assert H3 in exc_info.value.hosts
    assert installer.current_deploy_hosts == [H1]


def test_clean_removes_registry_everywhere(registry_env):
    installer, driver, _ = registry_env(current=[H1, H2])

    installer.clean()

    assert driver.hosts_running(REGISTRY_CONTAINER_NAME) == {H1, H2}
    assert installer.current_deploy_hosts == []


def test_forget_drops_hosts_without_contacting_them(registry_env):
    installer, driver, _ = registry_env(current=[H1, H2])

    assert installer.forget([H2, H3]) == [H1]
    assert driver.commands == []
