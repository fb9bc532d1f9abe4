"""Access to the cluster hosts.

:class:`InfraDriver` answers questions about the declared cluster (which hosts,
which roles, which environment) and defines the narrow transport every other
component uses to reach a host. :class:`AnsibleInfraDriver` implements the
transport with ad-hoc ansible-runner modules over SSH.
"""

import shlex
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path

import ansible_runner

from kubefleet import shell
from kubefleet.exceptions import RemoteExecutionError
from kubefleet.fanout import run_on_hosts
from kubefleet.hostset import normalize
from kubefleet.logging_config import get_logger
from kubefleet.models.cluster import Cluster, SSHConfig, Taint
from kubefleet.models.registry import Registry

logger = get_logger(__name__)

DEFAULT_DATA_ROOT = "/var/lib/kubefleet/data"


class InfraDriver(ABC):
    """Cluster description accessors plus an abstract host transport."""

    def __init__(self, cluster: Cluster, data_root: str = DEFAULT_DATA_ROOT):
        self.cluster = cluster
        self.data_root = data_root

    # Cluster description

    def get_host_ip_list(self) -> list[str]:
        return self.cluster.all_ips

    def get_host_ip_list_by_role(self, role: str) -> list[str]:
        return self.cluster.ips_by_role(role)

    def get_role_list_by_host_ip(self, ip: str) -> list[str]:
        return self.cluster.roles_for(ip)

    def get_master0(self) -> str:
        return self.cluster.master0

    def get_cluster_name(self) -> str:
        return self.cluster.name

    def get_cluster_image_name(self) -> str:
        return self.cluster.spec.image

    def get_cluster_launch_cmds(self) -> list[str]:
        return list(self.cluster.spec.cmds)

    def get_cluster_registry(self) -> Registry:
        return self.cluster.spec.registry

    def get_cluster_base_path(self) -> str:
        return f"{self.data_root}/{self.cluster.name}"

    def get_cluster_rootfs_path(self) -> str:
        return f"{self.get_cluster_base_path()}/rootfs"

    def get_cluster_env(self) -> dict[str, str]:
        """Cluster environment with the registry endpoint variables added.

        Rootfs scripts read the registry location from these variables, so they
        always reflect the current registry configuration and override any
        user-supplied value of the same name.
        """
        env = dict(self.cluster.spec.env)
        registry = self.get_cluster_registry()
        config = registry.config
        prefix = "LocalRegistry" if registry.local_registry else "ExternalRegistry"
        for name in (prefix, "Registry"):
            env[f"{name}Domain"] = config.domain
            env[f"{name}Port"] = str(config.port or "")
            env[f"{name}URL"] = config.url
        return env

    def get_host_env(self, ip: str) -> dict[str, str]:
        """Cluster environment overlaid with the host group's own environment."""
        env = self.get_cluster_env()
        host = self.cluster.host_for(ip)
        if host:
            env.update(host.env)
        return env

    def get_host_labels(self, ip: str) -> dict[str, str]:
        host = self.cluster.host_for(ip)
        return dict(host.labels) if host else {}

    def get_host_taints(self, ip: str) -> list[Taint]:
        host = self.cluster.host_for(ip)
        return [Taint.parse(t) for t in host.taints] if host else []

    def get_host_ssh(self, ip: str) -> SSHConfig:
        """SSH settings for a host: group overrides merged over the cluster's."""
        base = self.cluster.spec.ssh
        host = self.cluster.host_for(ip)
        if not host or not host.ssh:
            return base
        overrides = host.ssh.model_dump(exclude_unset=True)
        return base.model_copy(update=overrides)

    # Host aliases

    def set_cluster_host_aliases(self, hosts: Iterable[str]) -> None:
        """Write every declared host alias to the hosts file of ``hosts``."""
        aliases = self.cluster.spec.host_aliases
        if not aliases:
            return
        cmds = [shell.set_host_alias(name, a.ip) for a in aliases for name in a.hostnames]
        self.execute(hosts, lambda h: self.cmd_async(h, None, *cmds), "set-host-aliases")

    def delete_cluster_host_aliases(self, hosts: Iterable[str]) -> None:
        aliases = self.cluster.spec.host_aliases
        if not aliases:
            return
        cmds = [shell.delete_host_alias(name) for a in aliases for name in a.hostnames]
        self.execute(hosts, lambda h: self.cmd_async(h, None, *cmds), "delete-host-aliases")

    def execute(self, hosts: Iterable[str], fn: Callable[[str], object], step: str = "execute") -> dict:
        """Run ``fn`` on every host in parallel, see :func:`kubefleet.fanout.run_on_hosts`."""
        return run_on_hosts(hosts, fn, step)

    # Transport

    @abstractmethod
    def cmd_async(self, host: str, env: dict[str, str] | None, *cmds: str) -> None:
        """Run commands on a host, raising RemoteExecutionError on failure."""

    @abstractmethod
    def cmd(self, host: str, env: dict[str, str] | None, cmd: str) -> str:
        """Run a command on a host and return its standard output."""

    @abstractmethod
    def copy(self, host: str, src: str, dst: str) -> None:
        """Copy a local file or directory to ``dst`` on a host."""

    @abstractmethod
    def is_file_exist(self, host: str, path: str) -> bool:
        """Check whether a path exists on a host."""

    @abstractmethod
    def ping(self, host: str) -> None:
        """Raise if the host cannot be reached."""


class AnsibleInfraDriver(InfraDriver):
    """Host transport built on ansible-runner ad-hoc modules."""

    def __init__(
        self,
        cluster: Cluster,
        data_root: str = DEFAULT_DATA_ROOT,
        timeout: int | None = None,
    ):
        super().__init__(cluster, data_root)
        self.timeout = timeout

    def _inventory(self, host: str) -> dict:
        ssh = self.get_host_ssh(host)
        host_vars = {
            "ansible_host": host,
            "ansible_user": ssh.user,
            "ansible_port": ssh.port,
            "ansible_ssh_common_args": "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null",
        }
        if ssh.password:
            host_vars["ansible_password"] = ssh.password
        if ssh.pk:
            host_vars["ansible_ssh_private_key_file"] = ssh.pk
        return {"all": {"hosts": {host: host_vars}}}

    def _run(self, host: str, module: str, module_args: str = "") -> list[dict]:
        """Run one module on one host and return its result payloads.

        Raises:
            RemoteExecutionError: If the module failed or the host was unreachable
        """
        host = normalize(host)
        # Each call gets its own private data dir; runs happen concurrently
        with tempfile.TemporaryDirectory(prefix="kubefleet-runner-") as private_data_dir:
            runner = ansible_runner.run(
                private_data_dir=private_data_dir,
                inventory=self._inventory(host),
                host_pattern=host,
                module=module,
                module_args=module_args,
                quiet=True,
                timeout=self.timeout,
            )
            results = []
            errors = []
            for event in runner.events:
                res = event.get("event_data", {}).get("res", {})
                if event.get("event") == "runner_on_ok":
                    results.append(res)
                elif event.get("event") in ("runner_on_failed", "runner_on_unreachable"):
                    errors.append(res.get("stderr") or res.get("msg") or str(res))

        if runner.rc != 0 or errors:
            raise RemoteExecutionError(
                host,
                f"{module} failed (status={runner.status}, rc={runner.rc})",
                "\n".join(errors) or None,
            )
        return results

    def cmd_async(self, host: str, env: dict[str, str] | None, *cmds: str) -> None:
        prefix = shell.export_env(env)
        for command in cmds:
            if not command:
                continue
            logger.debug(f"[{host}] exec: {command}")
            self._run(host, "shell", prefix + command)

    def cmd(self, host: str, env: dict[str, str] | None, cmd: str) -> str:
        logger.debug(f"[{host}] exec: {cmd}")
        results = self._run(host, "shell", shell.export_env(env) + cmd)
        return "".join(r.get("stdout", "") for r in results)

    def copy(self, host: str, src: str, dst: str) -> None:
        source = Path(src)
        if not source.exists():
            raise RemoteExecutionError(host, f"copy source does not exist: {src}")
        logger.debug(f"[{host}] copy {src} -> {dst}")
        if source.is_dir():
            # Trailing slash copies the directory contents into dst
            self._run(host, "copy", f"src={source}/ dest={dst}/")
        else:
            self._run(host, "shell", f"mkdir -p {shlex.quote(str(Path(dst).parent))}")
            self._run(host, "copy", f"src={source} dest={dst}")

    def is_file_exist(self, host: str, path: str) -> bool:
        out = self.cmd(host, None, shell.path_exists(path))
        return out.strip() == "yes"

    def ping(self, host: str) -> None:
        self._run(host, "ping")
