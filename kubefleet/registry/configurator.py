"""Point cluster hosts at the registry.

A configurator makes every cluster host able to pull from the registry: name
resolution, trust of the registry certificate, container engine mirror
settings and login credentials. The variant is picked once by
:func:`new_configurator` from the registry policy.
"""

import base64
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from kubefleet import shell
from kubefleet.container_runtime import ContainerRuntimeInfo
from kubefleet.distributor import Distributor
from kubefleet.exceptions import ConfigurationError, RegistryError
from kubefleet.hostset import remove_hosts, unique
from kubefleet.infradriver import InfraDriver
from kubefleet.logging_config import get_logger
from kubefleet.models.cluster import NODE
from kubefleet.models.registry import (
    DEFAULT_REGISTRY_DOMAIN,
    DEFAULT_REGISTRY_PORT,
    ExternalRegistry,
    LocalRegistry,
    Registry,
    RegistryConfig,
    RegistryInfo,
)
from kubefleet.models.runtime import DOCKER
from kubefleet.registry import lvs

logger = get_logger(__name__)

DEFAULT_REGISTRY_URL = f"{DEFAULT_REGISTRY_DOMAIN}:{DEFAULT_REGISTRY_PORT}"
KUBELET_AUTH_FILE = "/var/lib/kubelet/config.json"
DOCKER_DAEMON_FILE = "/etc/docker/daemon.json"
CONTAINERD_CERTS_DIR = "/etc/containerd/certs.d"


class RegistryDriver(ABC):
    """Handle on an installed registry for later image uploads."""

    def __init__(self, info: RegistryInfo):
        self.info = info

    def get_info(self) -> RegistryInfo:
        return self.info

    @abstractmethod
    def upload_container_images(self) -> None:
        """Push the cluster image's container images into the registry."""


class LocalRegistryDriver(RegistryDriver):
    def __init__(self, info: RegistryInfo, data_dir: str, distributor: Distributor):
        super().__init__(info)
        self.data_dir = data_dir
        self.distributor = distributor

    def upload_container_images(self) -> None:
        if not self.info.deploy_hosts:
            raise RegistryError(
                f"Local registry {self.info.url} is not deployed on any host",
                "Install the cluster before loading images into its registry",
            )
        logger.info(f"Uploading container images from {self.data_dir} to {self.info.deploy_hosts}")
        self.distributor.distribute_registry(self.info.deploy_hosts, self.data_dir)


class ExternalRegistryDriver(RegistryDriver):
    def upload_container_images(self) -> None:
        logger.info(f"External registry {self.info.url} is managed outside the cluster, skipping upload")


def _auth_config(endpoint: str, username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("utf-8")
    return json.dumps({"auths": {endpoint: {"auth": token}}}, indent=2)


class Configurator(ABC):
    """Installs and removes registry client configuration on hosts."""

    def __init__(self, config: RegistryConfig, runtime_info: ContainerRuntimeInfo, driver: InfraDriver):
        self.config = config
        self.runtime_info = runtime_info
        self.driver = driver

    @property
    def endpoint(self) -> str:
        return self.config.url

    @abstractmethod
    def install_on(self, masters: list[str], nodes: list[str]) -> None:
        """Configure registry access on the given hosts."""

    @abstractmethod
    def uninstall_from(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        """Remove registry access configuration from departing hosts.

        Hosts in ``unreachable`` are not contacted, but still count as departed.
        """

    @abstractmethod
    def get_registry_info(self) -> RegistryInfo:
        """Describe the registry for downstream consumers."""

    @abstractmethod
    def get_driver(self) -> RegistryDriver:
        """Return a driver for the configured registry."""

    def _logout_cmd(self) -> str:
        if not self.config.has_credentials:
            return ""
        tool = "docker" if self.runtime_info.type == DOCKER else "nerdctl"
        return f"{tool} logout {self.endpoint}"

    def _copy_to_hosts(self, src: str, dest: str, hosts: list[str], step: str) -> None:
        self.driver.execute(hosts, lambda h: self.driver.copy(h, src, dest), step)

    def configure_access_credential(self, hosts: list[str]) -> None:
        """Distribute a registry login to the engine and the kubelet."""
        if not self.config.has_credentials or not hosts:
            return

        fd, tmp_path = tempfile.mkstemp(prefix="kubefleet-auth-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(_auth_config(self.endpoint, self.config.username, self.config.password))
            self._copy_to_hosts(tmp_path, self.runtime_info.config_file_path, hosts, "registry-auth")
            self._copy_to_hosts(tmp_path, KUBELET_AUTH_FILE, hosts, "kubelet-registry-auth")
        finally:
            try:
                os.remove(tmp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temporary registry auth file {tmp_path}: {e}")


class _LocalConfigurator(Configurator):
    """Behavior shared by both local registry topologies."""

    def __init__(
        self,
        registry: LocalRegistry,
        deploy_hosts: list[str],
        runtime_info: ContainerRuntimeInfo,
        driver: InfraDriver,
        distributor: Distributor,
        local_rootfs: str | Path | None = None,
    ):
        super().__init__(registry, runtime_info, driver)
        self.registry = registry
        self.deploy_hosts = unique(deploy_hosts)
        self.distributor = distributor
        self.local_rootfs = Path(local_rootfs or driver.get_cluster_rootfs_path())

    def install_on(self, masters: list[str], nodes: list[str]) -> None:
        hosts = unique([*masters, *nodes])
        if not hosts:
            return
        logger.info(f"Configuring registry access on {hosts}")
        self.configure_registry_network(masters, nodes)
        self.configure_registry_cert(hosts)
        self.configure_daemon_service(hosts)
        self.configure_access_credential(hosts)

    @abstractmethod
    def configure_registry_network(self, masters: list[str], nodes: list[str]) -> None:
        """Make the registry domain resolve on the given hosts."""

    def remove_registry_config(self, hosts: list[str]) -> None:
        cmds = [c for c in (self._logout_cmd(), shell.delete_host_alias(self.registry.domain)) if c]
        command = " && ".join(cmds)
        self.driver.execute(hosts, lambda h: self.driver.cmd_async(h, None, command), "remove-registry-config")

    def configure_registry_cert(self, hosts: list[str]) -> None:
        """Trust the registry certificate in the engine's certs directory."""
        if self.registry.insecure:
            return
        ca_file = f"{self.registry.domain}.crt"
        src = self.local_rootfs / "certs" / ca_file
        dest = f"{self.runtime_info.certs_dir}/{self.endpoint}/{ca_file}"
        self._copy_to_hosts(str(src), dest, hosts, "registry-cert")

    def configure_daemon_service(self, hosts: list[str]) -> None:
        """Register the registry with the container engine."""
        if self.endpoint == DEFAULT_REGISTRY_URL:
            return

        if self.runtime_info.type == DOCKER:
            src = self._render_docker_daemon()
            dest = DOCKER_DAEMON_FILE
        else:
            src = self._render_containerd_hosts()
            dest = f"{CONTAINERD_CERTS_DIR}/{self.endpoint}/hosts.toml"

        def configure(host: str) -> None:
            self.driver.copy(host, str(src), dest)
            self.driver.cmd_async(host, None, "systemctl daemon-reload")

        self.driver.execute(hosts, configure, "registry-daemon-config")

    def _render_docker_daemon(self) -> Path:
        daemon_file = self.local_rootfs / "etc" / "daemon.json"
        config = {}
        if daemon_file.exists() and daemon_file.read_text().strip():
            try:
                config = json.loads(daemon_file.read_text())
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Failed to parse {daemon_file}: {e}") from e

        mirror = f"https://{self.endpoint}"
        mirrors = config.setdefault("registry-mirrors", [])
        if mirror not in mirrors:
            mirrors.append(mirror)

        daemon_file.parent.mkdir(parents=True, exist_ok=True)
        daemon_file.write_text(json.dumps(config, indent=2))
        return daemon_file

    def _render_containerd_hosts(self) -> Path:
        url = f"https://{self.endpoint}"
        ca_path = f"{self.runtime_info.certs_dir}/{self.endpoint}/{self.registry.domain}.crt"
        hosts_file = self.local_rootfs / "etc" / "hosts.toml"
        hosts_file.parent.mkdir(parents=True, exist_ok=True)
        hosts_file.write_text(f'server = "{url}"\n\n[host."{url}"]\n  ca = "{ca_path}"\n')
        return hosts_file

    def get_driver(self) -> RegistryDriver:
        data_dir = self.registry.data_dir or f"{self.driver.get_cluster_rootfs_path()}/registry"
        return LocalRegistryDriver(self.get_registry_info(), data_dir, self.distributor)


class LocalSingletonConfigurator(_LocalConfigurator):
    """Registry on one host; every host resolves the domain to it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if not self.deploy_hosts:
            raise ConfigurationError("Singleton registry has no deploy host")

    def configure_registry_network(self, masters: list[str], nodes: list[str]) -> None:
        command = shell.set_host_alias(self.registry.domain, self.deploy_hosts[0])
        self.driver.execute(
            [*masters, *nodes], lambda h: self.driver.cmd_async(h, None, command), "registry-hosts-file"
        )

    def uninstall_from(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        self.remove_registry_config(remove_hosts([*masters, *nodes], unreachable or []))

    def get_registry_info(self) -> RegistryInfo:
        return RegistryInfo(
            url=self.endpoint,
            domain=self.registry.domain,
            port=self.registry.port,
            insecure=self.registry.insecure,
            deploy_hosts=self.deploy_hosts[:1],
            username=self.registry.username,
        )


class LocalHAConfigurator(_LocalConfigurator):
    """Registry on every deploy master behind an IPVS virtual IP.

    Masters resolve the domain to themselves; every other node resolves it to
    the VIP, which is load balanced across all deploy hosts.
    """

    @property
    def vip(self) -> str:
        return lvs.get_registry_vip(self.driver.get_host_ip_list(), self.driver.get_cluster_env())

    def configure_registry_network(self, masters: list[str], nodes: list[str]) -> None:
        domain = self.registry.domain
        self.driver.execute(
            masters,
            lambda h: self.driver.cmd_async(h, None, shell.set_host_alias(domain, h)),
            "registry-hosts-file",
        )
        # New masters change the backend list, so every node is refreshed
        if masters:
            self.configure_lvs(self.deploy_hosts, self.driver.get_host_ip_list_by_role(NODE))
        else:
            self.configure_lvs(self.deploy_hosts, nodes)

    def configure_lvs(self, registry_hosts: list[str], client_hosts: list[str]) -> None:
        """Program the IPVS rule and lvscare pod on ``client_hosts``."""
        if not client_hosts:
            return
        port = self.registry.port
        vip = self.vip
        vs = lvs.join_host_port(vip, port)
        rs = lvs.real_servers(registry_hosts, port)
        scheme = lvs.health_scheme(self.registry.insecure)
        image = f"{self.endpoint}/{lvs.LVSCARE_IMAGE}"

        manifest = lvs.lvscare_static_pod(lvs.LVSCARE_POD_NAME, vs, rs, image, scheme)
        cmds = [
            lvs.ipvs_cmd(vs, rs, scheme),
            lvs.static_pod_cmd(manifest, f"{lvs.LVSCARE_POD_NAME}.yaml"),
            shell.set_host_alias(self.registry.domain, vip),
        ]
        logger.info(f"Programming registry IPVS rule {vs} -> {rs} on {len(client_hosts)} host(s)")
        self.driver.execute(client_hosts, lambda h: self.driver.cmd_async(h, None, *cmds), "registry-lvs")

    def uninstall_from(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        self.remove_registry_config(remove_hosts([*masters, *nodes], unreachable or []))
        # Nothing left to route to, or the backend list did not change
        if not self.deploy_hosts or not masters:
            return
        remaining_nodes = remove_hosts(self.driver.get_host_ip_list_by_role(NODE), nodes)
        self.configure_lvs(self.deploy_hosts, remaining_nodes)

    def get_registry_info(self) -> RegistryInfo:
        return RegistryInfo(
            url=self.endpoint,
            domain=self.registry.domain,
            port=self.registry.port,
            ha=True,
            insecure=self.registry.insecure,
            vip=self.vip,
            deploy_hosts=list(self.deploy_hosts),
            username=self.registry.username,
        )


class ExternalConfigurator(Configurator):
    """Registry outside the cluster; only credentials are managed."""

    def __init__(self, registry: ExternalRegistry, runtime_info: ContainerRuntimeInfo, driver: InfraDriver):
        super().__init__(registry, runtime_info, driver)
        self.registry = registry

    def install_on(self, masters: list[str], nodes: list[str]) -> None:
        self.configure_access_credential(unique([*masters, *nodes]))

    def uninstall_from(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        command = self._logout_cmd()
        if not command:
            return
        hosts = remove_hosts([*masters, *nodes], unreachable or [])
        self.driver.execute(hosts, lambda h: self.driver.cmd_async(h, None, command), "registry-logout")

    def get_registry_info(self) -> RegistryInfo:
        return RegistryInfo(
            url=self.endpoint,
            domain=self.registry.domain,
            port=self.registry.port,
            external=True,
            username=self.registry.username,
        )

    def get_driver(self) -> RegistryDriver:
        return ExternalRegistryDriver(self.get_registry_info())


def new_configurator(
    registry: Registry,
    deploy_hosts: list[str],
    runtime_info: ContainerRuntimeInfo,
    driver: InfraDriver,
    distributor: Distributor,
    local_rootfs: str | Path | None = None,
) -> Configurator:
    """Pick the configurator matching the registry policy."""
    if registry.external_registry is not None:
        return ExternalConfigurator(registry.external_registry, runtime_info, driver)

    local = registry.local_registry
    cls = LocalHAConfigurator if local.ha else LocalSingletonConfigurator
    return cls(local, deploy_hosts, runtime_info, driver, distributor, local_rootfs)
