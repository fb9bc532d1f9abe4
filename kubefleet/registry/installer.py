"""Reconcile where the local registry runs.

:class:`LocalRegistryInstaller` remembers the hosts the registry is currently
deployed on and converges them toward a desired host set, one direction per
call: a call that finds both joined and departed hosts only installs on the
joined ones. Callers persist the returned set as the new current set.
"""

from pathlib import Path

from kubefleet import shell
from kubefleet.distributor import Distributor
from kubefleet.exceptions import RegistryError
from kubefleet.hostset import diff, remove_hosts, union, unique
from kubefleet.infradriver import InfraDriver
from kubefleet.logging_config import get_logger
from kubefleet.models.registry import LocalRegistry
from kubefleet.registry.certs import generate_ca_cert, generate_htpasswd, write_cert_pair

logger = get_logger(__name__)

REGISTRY_CONTAINER_NAME = "kubefleet-registry"
HTPASSWD_FILE_NAME = "registry_htpasswd"

_DELETE_REGISTRY_CMD = (
    "if docker inspect {name} 2>/dev/null;then docker rm -f {name};fi && "
    "((! nerdctl ps -a 2>/dev/null |grep {name}) || (nerdctl stop {name} && nerdctl rmi -f {name}))"
)


class LocalRegistryInstaller:
    """Installs and removes the registry container on a set of hosts.

    Args:
        registry: Local registry configuration
        driver: Host transport
        distributor: Pushes registry data to hosts
        current_deploy_hosts: Hosts the registry runs on now. Defaults to the
            persisted ``registry.deploy_hosts``.
        local_rootfs: Local copy of the cluster rootfs where generated
            credentials and certificates are cached. Defaults to the cluster
            rootfs path, which is where the image is mounted on master0.
    """

    def __init__(
        self,
        registry: LocalRegistry,
        driver: InfraDriver,
        distributor: Distributor,
        current_deploy_hosts: list[str] | None = None,
        local_rootfs: str | Path | None = None,
    ):
        self.registry = registry
        self.driver = driver
        self.distributor = distributor
        if current_deploy_hosts is None:
            current_deploy_hosts = registry.deploy_hosts
        self.current_deploy_hosts = unique(current_deploy_hosts)
        self.local_rootfs = Path(local_rootfs or driver.get_cluster_rootfs_path())

    @property
    def remote_rootfs(self) -> str:
        return self.driver.get_cluster_rootfs_path()

    @property
    def data_dir(self) -> str:
        return self.registry.data_dir or f"{self.remote_rootfs}/registry"

    def reconcile(self, desired_hosts: list[str]) -> list[str]:
        """Converge the deployed registry hosts toward ``desired_hosts``.

        Returns:
            The hosts the registry is deployed on after this call
        """
        desired = unique(desired_hosts)

        if not self.current_deploy_hosts:
            if desired:
                self._install(desired)
            return self._remember(desired)

        joined, departed = diff(self.current_deploy_hosts, desired)
        if not joined and not departed:
            logger.debug(f"Registry already deployed on {self.current_deploy_hosts}")
            return list(self.current_deploy_hosts)

        if joined:
            if departed:
                logger.warning(
                    f"Registry hosts {departed} are no longer desired but will only be "
                    "removed by the next reconcile; this call only adds hosts"
                )
            self._install(joined)
            return self._remember(union(self.current_deploy_hosts, joined))

        self._clean(departed)
        return self._remember(remove_hosts(self.current_deploy_hosts, departed))

    def clean(self) -> None:
        """Remove the registry from every currently deployed host."""
        self._clean(self.current_deploy_hosts)
        self._remember([])

    def forget(self, hosts: list[str]) -> list[str]:
        """Drop hosts from the deployed set without contacting them."""
        gone = [h for h in unique(hosts) if h in self.current_deploy_hosts]
        if gone:
            logger.warning(f"Forgetting registry on unreachable hosts {gone}")
        return self._remember(remove_hosts(self.current_deploy_hosts, gone))

    def _remember(self, hosts: list[str]) -> list[str]:
        self.current_deploy_hosts = list(hosts)
        return list(hosts)

    def _install(self, hosts: list[str]) -> None:
        logger.info(f"Launching local registry on {hosts}")
        self._sync_basic_auth_file(hosts)
        self._sync_registry_cert(hosts)
        self._launch_registry(hosts)

    def _sync_basic_auth_file(self, hosts: list[str]) -> None:
        if not self.registry.has_credentials:
            return

        local_file = self.local_rootfs / "etc" / HTPASSWD_FILE_NAME
        if not local_file.exists():
            local_file.parent.mkdir(parents=True, exist_ok=True)
            local_file.write_text(generate_htpasswd(self.registry.username, self.registry.password))
            logger.debug(f"Generated registry htpasswd file {local_file}")

        remote_file = f"{self.remote_rootfs}/etc/{HTPASSWD_FILE_NAME}"
        self.driver.execute(
            hosts,
            lambda h: self.driver.copy(h, str(local_file), remote_file),
            "sync-registry-auth",
        )

    def _sync_registry_cert(self, hosts: list[str]) -> None:
        if self.registry.insecure:
            return

        cert_dir = self.local_rootfs / "certs"
        name = self.registry.domain
        cert_exists = (cert_dir / f"{name}.crt").exists()
        key_exists = (cert_dir / f"{name}.key").exists()

        if cert_exists != key_exists:
            missing = f"{name}.key" if cert_exists else f"{name}.crt"
            raise RegistryError(
                f"Registry certificate pair for '{name}' is incomplete: {missing} is missing",
                f"Provide both {name}.crt and {name}.key in {cert_dir}, or remove both to regenerate",
            )

        if not cert_exists:
            san = self.registry.cert.subject_alt_name
            dns_names = [name, *(san.dns_names if san else [])]
            cert_pem, key_pem = generate_ca_cert(dns_names, san.ips if san else [])
            write_cert_pair(cert_dir, name, cert_pem, key_pem)
            logger.info(f"Generated self-signed certificate for registry domain {name}")

        remote_dir = f"{self.remote_rootfs}/certs"
        self.driver.execute(
            hosts,
            lambda h: self.driver.copy(h, str(cert_dir), remote_dir),
            "sync-registry-cert",
        )

    def _launch_registry(self, hosts: list[str]) -> None:
        self.distributor.distribute_registry(hosts, self.data_dir)

        env = self.driver.get_cluster_env()
        command = shell.in_scripts_dir(
            self.remote_rootfs, "init-registry.sh", self.registry.port, self.data_dir, self.registry.domain
        )
        self.driver.execute(hosts, lambda h: self.driver.cmd_async(h, env, command), "init-registry")

    def _clean(self, hosts: list[str]) -> None:
        if not hosts:
            return
        logger.info(f"Removing local registry from {hosts}")
        command = _DELETE_REGISTRY_CMD.format(name=REGISTRY_CONTAINER_NAME)
        self.driver.execute(hosts, lambda h: self.driver.cmd_async(h, None, command), "clean-registry")
