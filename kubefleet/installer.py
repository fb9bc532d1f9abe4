"""Cluster lifecycle pipelines.

Every public :class:`Installer` operation is a fixed sequence of steps. Steps
run one after another; a step that touches several hosts fans out to all of
them and fails as a whole if any host fails. The first failing step aborts
the operation with an :class:`~kubefleet.exceptions.OperationError` naming the
operation and the step. There is no resume: operations are re-run from the
start and rely on every step being safe to repeat.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kubefleet.clusterfile import KUBECONFIG_NAME, ClusterFile
from kubefleet.container_runtime import InstallInfo, new_container_runtime_installer
from kubefleet.distributor import Distributor
from kubefleet.exceptions import ConfigurationError, KubefleetError, OperationError
from kubefleet.fanout import check_hosts_ssh, wait_ssh_ready
from kubefleet.hooks import HookRunner, Phase
from kubefleet.hostset import contains, remove_hosts, unique
from kubefleet.infradriver import InfraDriver
from kubefleet.kube_runtime import KubeDriver, KubeRuntimeInstaller, new_kube_runtime_installer
from kubefleet.logging_config import get_logger
from kubefleet.models.cluster import MASTER, NODE
from kubefleet.models.registry import RegistryInfo
from kubefleet.models.runtime import SUPPORTED_CLUSTER_RUNTIMES, ContainerRuntimeConfig
from kubefleet.registry import Configurator, LocalRegistryInstaller, RegistryDriver, new_configurator

logger = get_logger(__name__)

REGISTRY_CONFIGMAP = "kubefleet-registry"
REGISTRY_CONFIGMAP_NAMESPACE = "kube-system"
REGISTRY_CONFIGMAP_KEY = "registry-info"

KubeRuntimeFactory = Callable[..., KubeRuntimeInstaller]


@dataclass(frozen=True)
class InstallerOptions:
    """Switches for a single operation.

    Attributes:
        force: UnInstall logs failing steps and keeps tearing down
        prune: UnInstall and ScaleDown also remove the cluster data directory
    """

    force: bool = False
    prune: bool = False


@dataclass(frozen=True)
class RuntimeConfig:
    """Collaborators and settings shared by every pipeline step.

    Attributes:
        distributor: Pushes the mounted cluster image to hosts
        container_runtime_config: Container engine settings
        kubeadm_config: Overrides for the generated kubeadm configuration
        kubeconfig_path: Where the admin kubeconfig is kept locally
        local_rootfs: Local copy of the rootfs used for generated registry files
    """

    distributor: Distributor
    container_runtime_config: ContainerRuntimeConfig = field(default_factory=ContainerRuntimeConfig)
    kubeadm_config: dict | None = None
    kubeconfig_path: str | Path | None = None
    local_rootfs: str | Path | None = None


@contextmanager
def _step(operation: str, step: str, tolerate: bool = False) -> Iterator[None]:
    logger.info(f"[{operation}] {step}")
    try:
        yield
    except OperationError:
        raise
    except Exception as e:
        if not tolerate:
            raise OperationError(operation, step, e) from e
        message = e.format_message() if isinstance(e, KubefleetError) else str(e)
        logger.warning(f"[{operation}] step '{step}' failed, continuing: {message}")


class Installer:
    """Runs the lifecycle operations of one cluster.

    The container runtime, cluster runtime and registry variants are chosen
    here, once, from ``install_info`` and the cluster's registry policy.

    Args:
        driver: Host transport, also holding the cluster description
        runtime_config: Collaborators and settings
        install_info: Container and cluster runtime types
        hooks: Lifecycle hooks. Defaults to none
        cluster_file: Where the cluster is persisted. Nothing is persisted
            when omitted
        options: Operation switches
        kube_runtime_factory: Builds the cluster runtime once container and
            registry details are known
    """

    def __init__(
        self,
        driver: InfraDriver,
        runtime_config: RuntimeConfig,
        install_info: InstallInfo,
        hooks: HookRunner | None = None,
        cluster_file: ClusterFile | None = None,
        options: InstallerOptions | None = None,
        kube_runtime_factory: KubeRuntimeFactory = new_kube_runtime_installer,
    ):
        if install_info.cluster_runtime_type not in SUPPORTED_CLUSTER_RUNTIMES:
            raise ConfigurationError(f"Unsupported cluster runtime type: {install_info.cluster_runtime_type}")

        self.driver = driver
        self.cluster = driver.cluster
        self.runtime_config = runtime_config
        self.install_info = install_info
        self.hooks = hooks or HookRunner({})
        self.cluster_file = cluster_file
        self.options = options or InstallerOptions()
        self.kube_runtime_factory = kube_runtime_factory

        self.container_runtime = new_container_runtime_installer(
            install_info.container_runtime_type, runtime_config.container_runtime_config, driver
        )

        self.registry = self.cluster.spec.registry
        self.registry_installer: LocalRegistryInstaller | None = None
        if self.registry.local_registry is not None:
            self.registry_installer = LocalRegistryInstaller(
                self.registry.local_registry,
                driver,
                runtime_config.distributor,
                local_rootfs=runtime_config.local_rootfs,
            )

    @property
    def distributor(self) -> Distributor:
        return self.runtime_config.distributor

    @property
    def kubeconfig_path(self) -> Path:
        if self.runtime_config.kubeconfig_path:
            return Path(self.runtime_config.kubeconfig_path)
        if self.cluster_file:
            return self.cluster_file.kubeconfig_path
        return ClusterFile.default_path(self.cluster.name).parent / KUBECONFIG_NAME

    @property
    def is_local_ha(self) -> bool:
        return self.registry.local_registry is not None and self.registry.local_registry.ha

    @property
    def registry_deploy_hosts(self) -> list[str]:
        if self.registry_installer is None:
            return []
        return list(self.registry_installer.current_deploy_hosts)

    def _desired_registry_hosts(self) -> list[str]:
        if self.is_local_ha:
            return self.driver.get_host_ip_list_by_role(MASTER)
        return [self.driver.get_master0()]

    def _reconcile_registry(self, desired: list[str]) -> None:
        if self.registry_installer is None:
            return
        self.registry.local_registry.deploy_hosts = self.registry_installer.reconcile(desired)

    def _sync_deploy_hosts(self) -> None:
        if self.registry_installer is not None:
            self.registry.local_registry.deploy_hosts = self.registry_deploy_hosts

    def _configurator(self) -> Configurator:
        return new_configurator(
            self.registry,
            self.registry_deploy_hosts,
            self.container_runtime.get_info(),
            self.driver,
            self.distributor,
            self.runtime_config.local_rootfs,
        )

    def _kube_runtime(self, registry_info: RegistryInfo | None) -> KubeRuntimeInstaller:
        return self.kube_runtime_factory(
            self.install_info.cluster_runtime_type,
            self.driver,
            self.container_runtime.get_info(),
            registry_info,
            self.runtime_config.kubeadm_config,
            self.kubeconfig_path,
        )

    def _persist(self) -> None:
        self._sync_deploy_hosts()
        if self.cluster_file is not None:
            self.cluster_file.save(self.cluster)

    def _distribute_rootfs(self, hosts: list[str]) -> None:
        self.driver.set_cluster_host_aliases(hosts)
        self.distributor.distribute(hosts, self.driver.get_cluster_rootfs_path())

    def _apply_node_metadata(self, kube: KubeDriver, hosts: list[str]) -> None:
        kube.set_roles(self.driver.get_role_list_by_host_ip)
        for host in hosts:
            kube.set_node_labels(host, self.driver.get_host_labels(host))
            kube.set_node_taints(host, self.driver.get_host_taints(host))

    def _launch_cluster_cmds(self) -> None:
        cmds = self.driver.get_cluster_launch_cmds()
        if not cmds:
            return
        master0 = self.driver.get_master0()
        logger.info(f"Launching {len(cmds)} cluster command(s) on {master0}")
        self.driver.cmd_async(master0, self.driver.get_host_env(master0), *cmds)

    def install(self) -> tuple[RegistryDriver, KubeDriver]:
        """Bring up a new cluster on every declared host.

        Returns:
            The registry driver and Kubernetes driver of the new cluster
        """
        op = "install"
        all_hosts = self.driver.get_host_ip_list()
        masters = self.driver.get_host_ip_list_by_role(MASTER)
        nodes = self.driver.get_host_ip_list_by_role(NODE)
        logger.info(f"Installing cluster {self.cluster.name} on {len(all_hosts)} host(s)")

        with _step(op, "save-clusterfile"):
            self._persist()
        with _step(op, "distribute-rootfs"):
            self._distribute_rootfs(all_hosts)
        with _step(op, "pre-install-hooks"):
            self.hooks.run_phase(Phase.PRE_INSTALL)
            self.hooks.run_host_phase(Phase.PRE_INIT_HOST, all_hosts)
        with _step(op, "install-container-runtime"):
            self.container_runtime.install_on(all_hosts)
        with _step(op, "reconcile-registry"):
            self._reconcile_registry(self._desired_registry_hosts())
            configurator = self._configurator()
            configurator.install_on(masters, nodes)
            registry_info = configurator.get_registry_info()
        with _step(op, "pre-join-hooks"):
            self.hooks.run_host_phase(Phase.PRE_JOIN, remove_hosts(all_hosts, [self.driver.get_master0()]))
        with _step(op, "install-kubernetes"):
            kube_runtime = self._kube_runtime(registry_info)
            kube_runtime.install()
        with _step(op, "post-install-hooks"):
            self.hooks.run_host_phase(Phase.POST_INIT_HOST, all_hosts)
            self.hooks.run_phase(Phase.POST_INSTALL)
        with _step(op, "configure-nodes"):
            kube = kube_runtime.get_current_runtime_driver()
            self._apply_node_metadata(kube, all_hosts)
            kube.save_configmap(
                REGISTRY_CONFIGMAP,
                REGISTRY_CONFIGMAP_NAMESPACE,
                {REGISTRY_CONFIGMAP_KEY: yaml.safe_dump(registry_info.model_dump(mode="json"), sort_keys=False)},
            )
        with _step(op, "save-clusterfile"):
            self._persist()

        logger.info(f"Cluster {self.cluster.name} installed")
        return configurator.get_driver(), kube

    def scale_up(self, masters: list[str], nodes: list[str]) -> tuple[RegistryDriver, KubeDriver]:
        """Join new hosts to the cluster.

        Hosts missing from the cluster description are added to it with the
        matching role before anything else happens.

        Returns:
            The registry driver and Kubernetes driver of the grown cluster
        """
        op = "scale-up"
        masters = unique(masters)
        nodes = remove_hosts(nodes, masters)
        new_hosts = [*masters, *nodes]
        if not new_hosts:
            raise ConfigurationError("No hosts to scale up")

        self.cluster.add_hosts(masters, MASTER)
        self.cluster.add_hosts(nodes, NODE)
        logger.info(f"Scaling up cluster {self.cluster.name}: masters={masters} nodes={nodes}")

        with _step(op, "save-clusterfile"):
            self._persist()
        with _step(op, "wait-ssh-ready"):
            # Adding masters changes the apiserver backends on existing nodes too
            waiting_on = new_hosts
            if masters:
                waiting_on = unique([*new_hosts, *self.driver.get_host_ip_list_by_role(NODE)])
            wait_ssh_ready(self.driver, waiting_on)
        with _step(op, "distribute-rootfs"):
            self._distribute_rootfs(new_hosts)
        with _step(op, "pre-scale-up-hooks"):
            self.hooks.run_phase(Phase.PRE_SCALE_UP)
            self.hooks.run_host_phase(Phase.PRE_INIT_HOST, new_hosts)
        with _step(op, "install-container-runtime"):
            self.container_runtime.install_on(new_hosts)
        with _step(op, "reconcile-registry"):
            if self.is_local_ha:
                self._reconcile_registry(self.driver.get_host_ip_list_by_role(MASTER))
            configurator = self._configurator()
            configurator.install_on(masters, nodes)
            registry_info = configurator.get_registry_info()
        with _step(op, "pre-join-hooks"):
            self.hooks.run_host_phase(Phase.PRE_JOIN, new_hosts)
        with _step(op, "scale-up-kubernetes"):
            kube_runtime = self._kube_runtime(registry_info)
            kube_runtime.scale_up(masters, nodes)
        with _step(op, "post-scale-up-hooks"):
            self.hooks.run_host_phase(Phase.POST_INIT_HOST, new_hosts)
            self.hooks.run_phase(Phase.POST_SCALE_UP)
        with _step(op, "configure-nodes"):
            kube = kube_runtime.get_current_runtime_driver()
            self._apply_node_metadata(kube, new_hosts)
        with _step(op, "save-clusterfile"):
            self._persist()

        return configurator.get_driver(), kube

    def scale_down(self, masters: list[str], nodes: list[str]) -> tuple[RegistryDriver, KubeDriver]:
        """Remove hosts from the cluster.

        Departing hosts that do not answer over SSH are only removed from the
        control plane; the rest are cleaned. The hosts leave the cluster
        description only once every step has succeeded.

        Returns:
            The registry driver and Kubernetes driver of the shrunk cluster

        Raises:
            ConfigurationError: If every master would be removed
        """
        op = "scale-down"
        current_masters = self.driver.get_host_ip_list_by_role(MASTER)
        current_nodes = self.driver.get_host_ip_list_by_role(NODE)
        masters = [h for h in unique(masters) if contains(current_masters, h)]
        nodes = [h for h in unique(nodes) if contains(current_nodes, h)]
        departing = unique([*masters, *nodes])
        if not departing:
            raise ConfigurationError("None of the given hosts belong to the cluster")

        remaining_masters = remove_hosts(current_masters, masters)
        if not remaining_masters:
            raise ConfigurationError(
                "Cleaning up all masters is illegal",
                "Delete the whole cluster instead if that is what you want",
            )
        remaining_nodes = remove_hosts(current_nodes, nodes)
        logger.info(f"Scaling down cluster {self.cluster.name}: masters={masters} nodes={nodes}")

        with _step(op, "check-ssh"):
            unreachable = check_hosts_ssh(self.driver, departing)
            reachable = remove_hosts(departing, unreachable)
            if unreachable:
                logger.warning(f"Hosts {unreachable} are unreachable and will only be removed from Kubernetes")
            if masters:
                wait_ssh_ready(self.driver, remaining_nodes)
        with _step(op, "delete-host-aliases"):
            self.driver.delete_cluster_host_aliases(reachable)
        with _step(op, "pre-clean-host-hooks"):
            self.hooks.run_host_phase(Phase.PRE_CLEAN_HOST, reachable)
        with _step(op, "reconcile-registry"):
            if self.is_local_ha:
                self.registry_installer.forget(unreachable)
                self._reconcile_registry(remaining_masters)
            configurator = self._configurator()
            registry_info = configurator.get_registry_info()
        with _step(op, "scale-down-kubernetes"):
            kube_runtime = self._kube_runtime(registry_info)
            kube_runtime.scale_down(masters, nodes, unreachable)
        with _step(op, "uninstall-registry-config"):
            configurator.uninstall_from(masters, nodes, unreachable)
        with _step(op, "uninstall-container-runtime"):
            self.container_runtime.uninstall_from(reachable)
        with _step(op, "post-clean-host-hooks"):
            self.hooks.run_host_phase(Phase.POST_CLEAN_HOST, reachable)
        with _step(op, "restore-rootfs"):
            self.distributor.restore(self._restore_dir(), reachable)

        self.cluster.remove_hosts(departing)
        with _step(op, "save-clusterfile"):
            self._persist()

        logger.info(f"Cluster {self.cluster.name} scaled down, master0 is {self.driver.get_master0()}")
        return configurator.get_driver(), kube_runtime.get_current_runtime_driver()

    def _restore_dir(self) -> str:
        if self.options.prune:
            return self.driver.get_cluster_base_path()
        return self.driver.get_cluster_rootfs_path()

    def uninstall(self) -> None:
        """Tear the whole cluster down and delete its local files."""
        op = "uninstall"
        all_hosts = self.driver.get_host_ip_list()
        masters = self.driver.get_host_ip_list_by_role(MASTER)
        nodes = self.driver.get_host_ip_list_by_role(NODE)
        force = self.options.force
        logger.info(f"Uninstalling cluster {self.cluster.name} from {len(all_hosts)} host(s)")

        with _step(op, "pre-uninstall-hooks", force):
            self.hooks.run_phase(Phase.PRE_UNINSTALL)
            self.hooks.run_host_phase(Phase.PRE_CLEAN_HOST, all_hosts)
        with _step(op, "reset-kubernetes", force):
            self._kube_runtime(None).reset()
        with _step(op, "uninstall-registry-config", force):
            self._configurator().uninstall_from(masters, nodes)
        with _step(op, "clean-registry", force):
            if self.registry_installer is not None:
                self.registry_installer.clean()
        with _step(op, "uninstall-container-runtime", force):
            self.container_runtime.uninstall_from(all_hosts)
        with _step(op, "post-clean-host-hooks", force):
            self.hooks.run_host_phase(Phase.POST_CLEAN_HOST, all_hosts)
        with _step(op, "delete-host-aliases", force):
            self.driver.delete_cluster_host_aliases(all_hosts)
        with _step(op, "restore-rootfs", force):
            self.distributor.restore(self._restore_dir(), all_hosts)
        with _step(op, "post-uninstall-hooks", force):
            self.hooks.run_phase(Phase.POST_UNINSTALL)
        with _step(op, "remove-local-files"):
            if self.cluster_file is not None:
                self.cluster_file.remove()
            elif self.kubeconfig_path.exists():
                self.kubeconfig_path.unlink()

        logger.info(f"Cluster {self.cluster.name} uninstalled")

    def _relaunch_registry(self) -> None:
        """Reinstall the registry where it runs so it serves the new image data."""
        if self.registry_installer is None:
            return
        hosts = self.registry_deploy_hosts or self._desired_registry_hosts()
        self.registry_installer.current_deploy_hosts = []
        self._reconcile_registry(hosts)

    def upgrade(self) -> None:
        """Move the cluster to the image currently set in its description."""
        op = "upgrade"
        all_hosts = self.driver.get_host_ip_list()
        logger.info(f"Upgrading cluster {self.cluster.name} to {self.driver.get_cluster_image_name()}")

        with _step(op, "save-clusterfile"):
            self._persist()
        with _step(op, "distribute-rootfs"):
            self.distributor.distribute(all_hosts, self.driver.get_cluster_rootfs_path())
        with _step(op, "reconcile-registry"):
            self._relaunch_registry()
            registry_info = self._configurator().get_registry_info()
        with _step(op, "upgrade-hooks"):
            self.hooks.run_phase(Phase.UPGRADE)
        with _step(op, "upgrade-kubernetes"):
            self._kube_runtime(registry_info).upgrade()
        with _step(op, "launch-cluster-cmds"):
            self._launch_cluster_cmds()
        with _step(op, "save-clusterfile"):
            self._persist()

    def rollback(self) -> None:
        """Return the cluster to a previously installed image.

        Kubernetes itself is not downgraded; only the image content, the
        registry and the launch commands are brought back.
        """
        op = "rollback"
        all_hosts = self.driver.get_host_ip_list()
        logger.info(f"Rolling back cluster {self.cluster.name} to {self.driver.get_cluster_image_name()}")

        with _step(op, "save-clusterfile"):
            self._persist()
        with _step(op, "distribute-rootfs"):
            self.distributor.distribute(all_hosts, self.driver.get_cluster_rootfs_path())
        with _step(op, "reconcile-registry"):
            self._relaunch_registry()
        with _step(op, "rollback-hooks"):
            self.hooks.run_phase(Phase.ROLLBACK)
        with _step(op, "launch-cluster-cmds"):
            self._launch_cluster_cmds()
        with _step(op, "save-clusterfile"):
            self._persist()

    def get_current_driver(self) -> tuple[RegistryDriver, KubeDriver]:
        """Drivers for the running cluster, without changing anything."""
        configurator = self._configurator()
        kube_runtime = self._kube_runtime(configurator.get_registry_info())
        return configurator.get_driver(), kube_runtime.get_current_runtime_driver()
