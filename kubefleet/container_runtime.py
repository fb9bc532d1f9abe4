"""Container engine installers.

The engine is one of a closed set of variants, chosen once from the cluster
configuration by :func:`new_container_runtime_installer`.
"""

from dataclasses import dataclass

from kubefleet import shell
from kubefleet.exceptions import ConfigurationError
from kubefleet.infradriver import InfraDriver
from kubefleet.logging_config import get_logger
from kubefleet.models.runtime import (
    CONTAINERD,
    DOCKER,
    KUBERNETES,
    SUPPORTED_CLUSTER_RUNTIMES,
    ContainerRuntimeConfig,
)

logger = get_logger(__name__)

CONTAINER_RUNTIME_LABEL = "cluster.alpha.kubefleet.io/container-runtime-type"
CLUSTER_RUNTIME_LABEL = "cluster.alpha.kubefleet.io/cluster-runtime-type"

DEFAULT_AUTH_CONFIG = "/root/.docker/config.json"


@dataclass(frozen=True)
class ContainerRuntimeInfo:
    """What other components need to know about the installed engine."""

    type: str
    cgroup_driver: str
    limit_nofile: int | None
    cri_socket: str
    certs_dir: str
    config_file_path: str = DEFAULT_AUTH_CONFIG


@dataclass(frozen=True)
class InstallInfo:
    """Runtime variants chosen for a cluster."""

    container_runtime_type: str
    cluster_runtime_type: str


def get_cluster_install_info(image_labels: dict[str, str], config: ContainerRuntimeConfig) -> InstallInfo:
    """Pick the container and cluster runtimes for a cluster image.

    The image labels give the defaults, an explicit ``config.type`` wins, and
    docker/kubernetes are used when neither says anything.

    Raises:
        ConfigurationError: If a label names an unsupported runtime
    """
    labels = image_labels or {}
    container_runtime = config.type or labels.get(CONTAINER_RUNTIME_LABEL) or DOCKER
    cluster_runtime = labels.get(CLUSTER_RUNTIME_LABEL) or KUBERNETES

    if container_runtime not in _INSTALLERS:
        raise ConfigurationError(f"Unsupported container runtime type: {container_runtime}")
    if cluster_runtime not in SUPPORTED_CLUSTER_RUNTIMES:
        raise ConfigurationError(f"Unsupported cluster runtime type: {cluster_runtime}")
    return InstallInfo(container_runtime_type=container_runtime, cluster_runtime_type=cluster_runtime)


class ContainerRuntimeInstaller:
    """Installs a container engine with the rootfs scripts."""

    runtime_type: str = ""
    cri_socket: str = ""
    certs_dir: str = ""

    def __init__(self, config: ContainerRuntimeConfig, driver: InfraDriver):
        self.config = config
        self.driver = driver

    def _env(self) -> dict[str, str]:
        env = {
            "ContainerRuntime": self.runtime_type,
            "CgroupDriver": self.config.cgroup_driver,
        }
        if self.config.limit_nofile:
            env["LimitNofile"] = str(self.config.limit_nofile)
        return env

    def _run_script(self, hosts: list[str], script: str, step: str) -> None:
        rootfs = self.driver.get_cluster_rootfs_path()
        command = shell.in_scripts_dir(rootfs, script)

        def run(host: str) -> None:
            env = {**self.driver.get_host_env(host), **self._env()}
            self.driver.cmd_async(host, env, command)

        self.driver.execute(hosts, run, step)

    def install_on(self, hosts: list[str]) -> None:
        logger.info(f"Installing {self.runtime_type} on {len(hosts)} host(s)")
        self._run_script(hosts, "init-container-runtime.sh", f"install-{self.runtime_type}")

    def uninstall_from(self, hosts: list[str]) -> None:
        logger.info(f"Uninstalling {self.runtime_type} from {len(hosts)} host(s)")
        self._run_script(hosts, "uninstall-container-runtime.sh", f"uninstall-{self.runtime_type}")

    def get_info(self) -> ContainerRuntimeInfo:
        return ContainerRuntimeInfo(
            type=self.runtime_type,
            cgroup_driver=self.config.cgroup_driver,
            limit_nofile=self.config.limit_nofile,
            cri_socket=self.cri_socket,
            certs_dir=self.certs_dir,
        )


class DockerInstaller(ContainerRuntimeInstaller):
    runtime_type = DOCKER
    cri_socket = "/var/run/cri-dockerd.sock"
    certs_dir = "/etc/docker/certs.d"


class ContainerdInstaller(ContainerRuntimeInstaller):
    runtime_type = CONTAINERD
    cri_socket = "/run/containerd/containerd.sock"
    certs_dir = "/etc/containerd/certs.d"


_INSTALLERS: dict[str, type[ContainerRuntimeInstaller]] = {
    DOCKER: DockerInstaller,
    CONTAINERD: ContainerdInstaller,
}


def new_container_runtime_installer(
    runtime_type: str, config: ContainerRuntimeConfig, driver: InfraDriver
) -> ContainerRuntimeInstaller:
    """Create the installer for ``runtime_type``.

    Raises:
        ConfigurationError: If the type is not supported
    """
    try:
        installer_cls = _INSTALLERS[runtime_type]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported container runtime type: {runtime_type}",
            f"Supported types: {', '.join(_INSTALLERS)}",
        ) from None
    return installer_cls(config, driver)
