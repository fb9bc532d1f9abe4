"""Unit tests for the infra driver accessors and the ansible-runner transport."""

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeInfraDriver
from kubefleet.exceptions import FanoutError, RemoteExecutionError
from kubefleet.infradriver import AnsibleInfraDriver
from kubefleet.models.cluster import NODE, HostAlias, SSHConfig
from kubefleet.models.registry import ExternalRegistry, Registry

M1, N1 = "192.168.0.1", "192.168.0.10"


class TestClusterAccessors:
    def test_paths(self, make_cluster):
        driver = FakeInfraDriver(make_cluster(name="demo"))

        assert driver.get_cluster_base_path() == "/var/lib/kubefleet/data/demo"
        assert driver.get_cluster_rootfs_path() == "/var/lib/kubefleet/data/demo/rootfs"

    def test_local_registry_env(self, make_cluster):
        driver = FakeInfraDriver(make_cluster(env={"HTTP_PROXY": "http://proxy"}))

        env = driver.get_cluster_env()

        assert env["HTTP_PROXY"] == "http://proxy"
        assert env["LocalRegistryDomain"] == "sea.hub"
        assert env["LocalRegistryPort"] == "5000"
        assert env["LocalRegistryURL"] == "sea.hub:5000"
        assert env["RegistryURL"] == "sea.hub:5000"

    def test_external_registry_env(self, make_cluster):
        registry = Registry(external_registry=ExternalRegistry(domain="registry.example.com"))
        driver = FakeInfraDriver(make_cluster(registry=registry))

        env = driver.get_cluster_env()

        assert env["ExternalRegistryDomain"] == "registry.example.com"
        assert env["RegistryPort"] == ""
        assert "LocalRegistryDomain" not in env

    def test_registry_env_overrides_user_values(self, make_cluster):
        driver = FakeInfraDriver(make_cluster(env={"RegistryURL": "elsewhere:5000"}))

        assert driver.get_cluster_env()["RegistryURL"] == "sea.hub:5000"

    def test_host_env_overlays_cluster_env(self, make_cluster):
        cluster = make_cluster(masters=[M1], env={"ZONE": "a", "HTTP_PROXY": "http://proxy"})
        cluster.add_hosts([N1], NODE, env={"ZONE": "b"})
        driver = FakeInfraDriver(cluster)

        assert driver.get_host_env(M1)["ZONE"] == "a"
        assert driver.get_host_env(N1)["ZONE"] == "b"
        assert driver.get_host_env(N1)["HTTP_PROXY"] == "http://proxy"

    def test_host_ssh_overrides_only_what_is_set(self, make_cluster):
        cluster = make_cluster(masters=[M1], ssh=SSHConfig(user="ops", password="pw"))
        cluster.add_hosts([N1], NODE, ssh=SSHConfig(port=2222))
        driver = FakeInfraDriver(cluster)

        assert driver.get_host_ssh(M1) == SSHConfig(user="ops", password="pw")
        node_ssh = driver.get_host_ssh(N1)
        assert (node_ssh.user, node_ssh.password, node_ssh.port) == ("ops", "pw", 2222)

    def test_host_aliases(self, make_cluster):
        aliases = [HostAlias(ip="10.0.0.100", hostnames=["db.internal", "db"])]
        driver = FakeInfraDriver(make_cluster(masters=[M1], nodes=[N1], host_aliases=aliases))

        driver.set_cluster_host_aliases([M1, N1])
        driver.delete_cluster_host_aliases([N1])

        assert len(driver.commands_on(M1)) == 2
        assert any("echo '10.0.0.100 db.internal #kubefleet'" in c for c in driver.commands_on(M1))
        assert driver.commands_on(N1)[-1] == r"sed -i '/ db #kubefleet$/d' /etc/hosts"

    def test_no_aliases_means_no_commands(self, make_cluster):
        driver = FakeInfraDriver(make_cluster(masters=[M1]))

        driver.set_cluster_host_aliases([M1])

        assert driver.commands == []

    def test_execute_collects_failures(self, make_cluster):
        driver = FakeInfraDriver(make_cluster(masters=[M1], nodes=[N1]))
        driver.failing_hosts.add(N1)

        with pytest.raises(FanoutError) as exc_info:
            driver.execute([M1, N1], lambda h: driver.cmd_async(h, None, "true"), "touch")

        assert exc_info.value.hosts == [N1]
        assert driver.commands_on(M1) == ["true"]


def runner_result(rc=0, status="successful", events=()):
    runner = MagicMock(rc=rc, status=status)
    runner.events = list(events)
    return runner


def ok(**res):
    return {"event": "runner_on_ok", "event_data": {"res": res}}


@pytest.fixture
def ansible(make_cluster):
    cluster = make_cluster(masters=[M1], ssh=SSHConfig(user="ops", password="pw", pk="/keys/id_rsa", port=2200))
    driver = AnsibleInfraDriver(cluster, timeout=30)
    with patch("kubefleet.infradriver.ansible_runner.run") as run:
        run.return_value = runner_result(events=[ok(stdout="hello\n")])
        yield driver, run


class TestAnsibleInfraDriver:
    def test_cmd_returns_stdout(self, ansible):
        driver, run = ansible

        assert driver.cmd(M1, {"A": "1"}, "echo hello") == "hello\n"

        kwargs = run.call_args.kwargs
        assert kwargs["module"] == "shell"
        assert kwargs["module_args"] == "export A=1; echo hello"
        assert kwargs["host_pattern"] == M1
        assert kwargs["timeout"] == 30

    def test_inventory_uses_ssh_settings(self, ansible):
        driver, run = ansible

        driver.ping(M1)

        host_vars = run.call_args.kwargs["inventory"]["all"]["hosts"][M1]
        assert host_vars["ansible_user"] == "ops"
        assert host_vars["ansible_port"] == 2200
        assert host_vars["ansible_password"] == "pw"
        assert host_vars["ansible_ssh_private_key_file"] == "/keys/id_rsa"
        assert run.call_args.kwargs["module"] == "ping"

    def test_each_run_gets_its_own_private_dir(self, ansible):
        driver, run = ansible

        driver.cmd_async(M1, None, "true", "", "false")

        assert run.call_count == 2
        dirs = {c.kwargs["private_data_dir"] for c in run.call_args_list}
        assert len(dirs) == 2

    def test_failed_module_raises(self, ansible):
        driver, run = ansible
        run.return_value = runner_result(
            rc=2,
            status="failed",
            events=[{"event": "runner_on_failed", "event_data": {"res": {"stderr": "no such file"}}}],
        )

        with pytest.raises(RemoteExecutionError) as exc_info:
            driver.cmd_async(M1, None, "cat /missing")

        assert exc_info.value.host == M1
        assert "status=failed" in exc_info.value.message
        assert exc_info.value.details == "no such file"

    def test_unreachable_host_raises(self, ansible):
        driver, run = ansible
        run.return_value = runner_result(
            rc=4,
            status="failed",
            events=[{"event": "runner_on_unreachable", "event_data": {"res": {"msg": "timed out"}}}],
        )

        with pytest.raises(RemoteExecutionError, match="ping failed"):
            driver.ping(M1)

    def test_copy_directory_copies_contents(self, ansible, tmp_path):
        driver, run = ansible
        (tmp_path / "certs").mkdir()

        driver.copy(M1, str(tmp_path / "certs"), "/remote/certs")

        assert run.call_args.kwargs["module"] == "copy"
        assert run.call_args.kwargs["module_args"] == f"src={tmp_path / 'certs'}/ dest=/remote/certs/"

    def test_copy_file_creates_parent(self, ansible, tmp_path):
        driver, run = ansible
        source = tmp_path / "daemon.json"
        source.write_text("{}")

        driver.copy(M1, str(source), "/etc/docker/daemon.json")

        first, second = run.call_args_list
        assert first.kwargs["module_args"] == "mkdir -p /etc/docker"
        assert second.kwargs["module_args"] == f"src={source} dest=/etc/docker/daemon.json"

    def test_copy_missing_source(self, ansible, tmp_path):
        driver, run = ansible

        with pytest.raises(RemoteExecutionError, match="does not exist"):
            driver.copy(M1, str(tmp_path / "missing"), "/remote")

        run.assert_not_called()

    @pytest.mark.parametrize("stdout, expected", [("yes\n", True), ("no\n", False)])
    def test_is_file_exist(self, ansible, stdout, expected):
        driver, run = ansible
        run.return_value = runner_result(events=[ok(stdout=stdout)])

        assert driver.is_file_exist(M1, "/etc/hosts") is expected

    def test_is_file_exist_quotes_path(self, ansible):
        driver, run = ansible
        run.return_value = runner_result(events=[ok(stdout="no\n")])

        assert driver.is_file_exist(M1, "/data/my dir; rm -rf /") is False

        assert run.call_args.kwargs["module_args"] == (
            "if [ -e '/data/my dir; rm -rf /' ]; then echo yes; else echo no; fi"
        )
