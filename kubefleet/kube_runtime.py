"""Kubernetes control plane lifecycle.

:class:`KubeadmRuntime` drives kubeadm on the hosts through the infra driver;
:class:`KubeDriver` talks to the resulting cluster with the Kubernetes API.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from kubefleet import shell
from kubefleet.container_runtime import ContainerRuntimeInfo
from kubefleet.exceptions import ConfigurationError, KubernetesError
from kubefleet.hostset import normalize, remove_hosts
from kubefleet.infradriver import InfraDriver
from kubefleet.logging_config import get_logger
from kubefleet.models.cluster import MASTER, NODE, Taint
from kubefleet.models.registry import RegistryInfo
from kubefleet.models.runtime import KUBERNETES
from kubefleet.registry import lvs

logger = get_logger(__name__)

API_SERVER_DOMAIN = "apiserver.cluster.local"
API_SERVER_PORT = 6443
ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
KUBEADM_CONFIG_FILE = "/etc/kubernetes/kubeadm.yaml"
KUBE_LVSCARE_POD_NAME = "kube-lvscare"
NODE_ROLE_LABEL_PREFIX = "node-role.kubernetes.io/"

RESET_CMD = (
    "if which kubeadm > /dev/null 2>&1;then kubeadm reset -f;fi && "
    "rm -rf /etc/kubernetes/ /etc/cni /var/lib/etcd /var/lib/kubelet $HOME/.kube"
)

TAINT_UPDATE_ATTEMPTS = 10


def _is_conflict(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 409


class KubeDriver:
    """Thin wrapper over the Kubernetes core API for node bookkeeping.

    Args:
        kubeconfig: Path to a kubeconfig for the cluster
        api: Pre-built CoreV1Api, used instead of loading ``kubeconfig``
    """

    def __init__(self, kubeconfig: str | Path | None = None, api: client.CoreV1Api | None = None):
        if api is None:
            api_client = config.new_client_from_config(config_file=str(kubeconfig))
            api = client.CoreV1Api(api_client)
        self.api = api

    def list_nodes(self) -> list:
        try:
            return self.api.list_node().items
        except ApiException as e:
            raise KubernetesError(f"Failed to list nodes: {e.reason}", str(e.body)) from e

    def node_name_for(self, ip: str) -> str | None:
        """Name of the node whose InternalIP is ``ip``."""
        key = normalize(ip)
        for node in self.list_nodes():
            for address in node.status.addresses or []:
                if address.type == "InternalIP" and normalize(address.address) == key:
                    return node.metadata.name
        return None

    def _require_node(self, ip: str) -> str:
        name = self.node_name_for(ip)
        if name is None:
            raise KubernetesError(f"No Kubernetes node found with address {ip}")
        return name

    def set_roles(self, roles_for: Callable[[str], list[str]]) -> None:
        """Label every node with ``node-role.kubernetes.io/<role>`` for its roles."""
        for node in self.list_nodes():
            for address in node.status.addresses or []:
                if address.type != "InternalIP":
                    continue
                roles = roles_for(address.address)
                if not roles:
                    continue
                labels = {f"{NODE_ROLE_LABEL_PREFIX}{role}": "" for role in roles}
                self.api.patch_node(node.metadata.name, {"metadata": {"labels": labels}})

    def set_node_labels(self, ip: str, labels: dict[str, str]) -> None:
        if not labels:
            return
        name = self._require_node(ip)
        logger.debug(f"Labeling node {name}: {labels}")
        self.api.patch_node(name, {"metadata": {"labels": labels}})

    @retry(
        retry=retry_if_exception(_is_conflict),
        stop=stop_after_attempt(TAINT_UPDATE_ATTEMPTS),
        wait=wait_fixed(1),
        reraise=True,
    )
    def set_node_taints(self, ip: str, taints: list[Taint]) -> None:
        """Apply taints to a node, honoring deletion taints.

        Retried on update conflicts.
        """
        if not taints:
            return
        name = self._require_node(ip)
        node = self.api.read_node(name)
        current = [
            {"key": t.key, "value": t.value or "", "effect": t.effect} for t in node.spec.taints or []
        ]

        for taint in taints:
            if taint.delete:
                current = [t for t in current if not taint.matches(t["key"], t["effect"])]
                continue
            current = [t for t in current if not (t["key"] == taint.key and t["effect"] == taint.effect)]
            current.append({"key": taint.key, "value": taint.value, "effect": taint.effect})

        logger.debug(f"Setting taints on node {name}: {current}")
        self.api.patch_node(
            name, {"metadata": {"resourceVersion": node.metadata.resource_version}, "spec": {"taints": current}}
        )

    def delete_node(self, name: str) -> None:
        try:
            self.api.delete_node(name)
        except ApiException as e:
            if e.status != 404:
                raise KubernetesError(f"Failed to delete node {name}: {e.reason}") from e

    def save_configmap(self, name: str, namespace: str, data: dict[str, str]) -> None:
        """Create or replace a ConfigMap."""
        body = client.V1ConfigMap(metadata=client.V1ObjectMeta(name=name, namespace=namespace), data=data)
        try:
            self.api.create_namespaced_config_map(namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise KubernetesError(f"Failed to create configmap {namespace}/{name}: {e.reason}") from e
            self.api.replace_namespaced_config_map(name, namespace, body)


class KubeRuntimeInstaller(ABC):
    """Lifecycle of the Kubernetes control plane."""

    @abstractmethod
    def install(self) -> None:
        """Bring up the control plane and join every declared host."""

    @abstractmethod
    def upgrade(self) -> None:
        """Upgrade the control plane and kubelets in place."""

    @abstractmethod
    def reset(self) -> None:
        """Tear Kubernetes down on every declared host."""

    @abstractmethod
    def scale_up(self, masters: list[str], nodes: list[str]) -> None:
        """Join new hosts to the cluster."""

    @abstractmethod
    def scale_down(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        """Remove hosts from the cluster.

        Hosts in ``unreachable`` are only removed from the control plane and
        are not reset.
        """

    @abstractmethod
    def get_current_runtime_driver(self) -> KubeDriver:
        """Return an API driver for the running cluster."""


class KubeadmRuntime(KubeRuntimeInstaller):
    """Kubernetes bootstrapped with kubeadm on the declared hosts.

    Masters resolve ``apiserver.cluster.local`` to themselves (joining masters
    to master0 until they are up). Nodes resolve it to a virtual IP balanced
    across all masters by IPVS.

    Args:
        driver: Host transport and cluster description
        runtime_info: Installed container engine
        registry_info: Registry the cluster pulls from
        kubeadm_config: Overrides merged into the generated ClusterConfiguration
        kubeconfig_path: Where the admin kubeconfig is written locally
    """

    def __init__(
        self,
        driver: InfraDriver,
        runtime_info: ContainerRuntimeInfo,
        registry_info: RegistryInfo | None,
        kubeadm_config: dict | None,
        kubeconfig_path: str | Path,
    ):
        self.driver = driver
        self.runtime_info = runtime_info
        self.registry_info = registry_info
        self.kubeadm_config = kubeadm_config or {}
        self.kubeconfig_path = Path(kubeconfig_path)

    @property
    def vip(self) -> str:
        return lvs.get_registry_vip(self.driver.get_host_ip_list(), self.driver.get_cluster_env())

    def _kubeadm_config_yaml(self, master0: str) -> str:
        cluster_config = {
            "apiVersion": "kubeadm.k8s.io/v1beta3",
            "kind": "ClusterConfiguration",
            "controlPlaneEndpoint": f"{API_SERVER_DOMAIN}:{API_SERVER_PORT}",
            "apiServer": {
                "certSANs": [API_SERVER_DOMAIN, "127.0.0.1", self.vip, *self.driver.get_host_ip_list_by_role(MASTER)]
            },
        }
        if self.registry_info:
            cluster_config["imageRepository"] = self.registry_info.url
        cluster_config.update(self.kubeadm_config)

        init_config = {
            "apiVersion": "kubeadm.k8s.io/v1beta3",
            "kind": "InitConfiguration",
            "localAPIEndpoint": {"advertiseAddress": master0, "bindPort": API_SERVER_PORT},
            "nodeRegistration": {"criSocket": f"unix://{self.runtime_info.cri_socket}"},
        }
        return yaml.safe_dump_all([init_config, cluster_config], default_flow_style=False, sort_keys=False)

    def _run(self, host: str, *cmds: str) -> None:
        self.driver.cmd_async(host, self.driver.get_host_env(host), *cmds)

    def install(self) -> None:
        master0 = self.driver.get_master0()
        masters = self.driver.get_host_ip_list_by_role(MASTER)
        nodes = self.driver.get_host_ip_list_by_role(NODE)

        logger.info(f"Initializing Kubernetes control plane on {master0}")
        config_yaml = self._kubeadm_config_yaml(master0)
        self._run(
            master0,
            shell.set_host_alias(API_SERVER_DOMAIN, master0),
            f"mkdir -p /etc/kubernetes && cat > {KUBEADM_CONFIG_FILE} << 'KUBEFLEET_EOF'\n{config_yaml}KUBEFLEET_EOF",
            f"kubeadm init --config={KUBEADM_CONFIG_FILE} --upload-certs",
        )
        self._fetch_kubeconfig(master0)

        self._join(masters[1:], nodes, master0)
        logger.info("Kubernetes control plane is up")

    def scale_up(self, masters: list[str], nodes: list[str]) -> None:
        master0 = self.driver.get_master0()
        self._join(remove_hosts(masters, [master0]), nodes, master0)
        if masters:
            existing_nodes = remove_hosts(self.driver.get_host_ip_list_by_role(NODE), nodes)
            self._configure_node_lvs(existing_nodes)

    def _join(self, masters: list[str], nodes: list[str], master0: str) -> None:
        if not masters and not nodes:
            return
        join_cmd = self.driver.cmd(master0, None, "kubeadm token create --print-join-command").strip()
        if not join_cmd.startswith("kubeadm join"):
            raise KubernetesError(f"Unexpected join command from {master0}: {join_cmd!r}")
        cri = f"--cri-socket unix://{self.runtime_info.cri_socket}"

        if masters:
            upload = self.driver.cmd(master0, None, "kubeadm init phase upload-certs --upload-certs")
            cert_key = upload.strip().splitlines()[-1].strip()
            # Control plane members join one at a time
            for master in masters:
                logger.info(f"Joining master {master}")
                self._run(
                    master,
                    shell.set_host_alias(API_SERVER_DOMAIN, master0),
                    f"{join_cmd} --control-plane --certificate-key {cert_key} "
                    f"--apiserver-advertise-address {master} {cri}",
                    shell.set_host_alias(API_SERVER_DOMAIN, master),
                )

        if nodes:
            logger.info(f"Joining {len(nodes)} node(s)")
            self._configure_node_lvs(nodes)
            self.driver.execute(nodes, lambda h: self._run(h, f"{join_cmd} {cri}"), "join-nodes")

    def _configure_node_lvs(self, nodes: list[str], masters: list[str] | None = None) -> None:
        if not nodes:
            return
        if masters is None:
            masters = self.driver.get_host_ip_list_by_role(MASTER)
        vs = lvs.join_host_port(self.vip, API_SERVER_PORT)
        rs = lvs.real_servers(masters, API_SERVER_PORT)
        image = lvs.LVSCARE_IMAGE
        if self.registry_info:
            image = f"{self.registry_info.url}/{lvs.LVSCARE_IMAGE}"
        manifest = lvs.lvscare_static_pod(KUBE_LVSCARE_POD_NAME, vs, rs, image, "https", "/healthz")
        cmds = [
            lvs.ipvs_cmd(vs, rs, "https", "/healthz"),
            lvs.static_pod_cmd(manifest, f"{KUBE_LVSCARE_POD_NAME}.yaml"),
            shell.set_host_alias(API_SERVER_DOMAIN, self.vip),
        ]
        self.driver.execute(nodes, lambda h: self._run(h, *cmds), "apiserver-lvs")

    def scale_down(self, masters: list[str], nodes: list[str], unreachable: list[str] | None = None) -> None:
        remaining_masters = remove_hosts(self.driver.get_host_ip_list_by_role(MASTER), masters)
        if not remaining_masters:
            raise ConfigurationError(
                "Cleaning up all masters is illegal",
                "Delete the whole cluster instead if that is what you want",
            )

        # The kubeconfig may point at a master that is leaving
        self._fetch_kubeconfig(remaining_masters[0])
        kube = KubeDriver(self.kubeconfig_path)
        departing = [*nodes, *masters]
        for host in departing:
            name = kube.node_name_for(host)
            if name is None:
                logger.warning(f"Host {host} is not registered as a Kubernetes node, skipping")
                continue
            logger.info(f"Deleting node {name} ({host})")
            kube.delete_node(name)

        reachable = remove_hosts(departing, unreachable or [])
        if reachable:
            self.driver.execute(reachable, lambda h: self._run(h, RESET_CMD), "kubeadm-reset")

        if masters:
            remaining_nodes = remove_hosts(self.driver.get_host_ip_list_by_role(NODE), nodes)
            self._configure_node_lvs(remaining_nodes, remaining_masters)

    def reset(self) -> None:
        hosts = self.driver.get_host_ip_list()
        logger.info(f"Resetting Kubernetes on {len(hosts)} host(s)")
        self.driver.execute(
            hosts,
            lambda h: self._run(h, RESET_CMD, shell.delete_host_alias(API_SERVER_DOMAIN)),
            "kubeadm-reset",
        )

    def upgrade(self) -> None:
        master0 = self.driver.get_master0()
        masters = self.driver.get_host_ip_list_by_role(MASTER)
        nodes = self.driver.get_host_ip_list_by_role(NODE)
        version = self.kubeadm_config.get("kubernetesVersion") or "$(kubeadm version -o short)"

        logger.info(f"Upgrading control plane on {master0} to {version}")
        self._run(master0, f"kubeadm upgrade apply -y {version}", "systemctl restart kubelet")
        for master in remove_hosts(masters, [master0]):
            self._run(master, "kubeadm upgrade node", "systemctl restart kubelet")
        self.driver.execute(
            nodes, lambda h: self._run(h, "kubeadm upgrade node", "systemctl restart kubelet"), "upgrade-nodes"
        )

    def _fetch_kubeconfig(self, master0: str) -> None:
        content = self.driver.cmd(master0, None, f"cat {ADMIN_KUBECONFIG}")
        if not content.strip():
            raise KubernetesError(f"Empty admin kubeconfig on {master0}")
        self.kubeconfig_path.parent.mkdir(parents=True, exist_ok=True)
        self.kubeconfig_path.write_text(content.replace(API_SERVER_DOMAIN, master0))
        self.kubeconfig_path.chmod(0o600)
        logger.debug(f"Wrote admin kubeconfig to {self.kubeconfig_path}")

    def get_current_runtime_driver(self) -> KubeDriver:
        if not self.kubeconfig_path.exists():
            self._fetch_kubeconfig(self.driver.get_master0())
        return KubeDriver(self.kubeconfig_path)


def new_kube_runtime_installer(
    runtime_type: str,
    driver: InfraDriver,
    runtime_info: ContainerRuntimeInfo,
    registry_info: RegistryInfo | None,
    kubeadm_config: dict | None,
    kubeconfig_path: str | Path,
) -> KubeRuntimeInstaller:
    """Create the installer for ``runtime_type``.

    Raises:
        ConfigurationError: If the type is not supported
    """
    if runtime_type != KUBERNETES:
        raise ConfigurationError(f"Unsupported cluster runtime type: {runtime_type}")
    return KubeadmRuntime(driver, runtime_info, registry_info, kubeadm_config, kubeconfig_path)
