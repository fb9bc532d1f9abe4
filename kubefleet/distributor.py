"""Push a mounted cluster image rootfs to hosts."""

from abc import ABC, abstractmethod
from pathlib import Path

from kubefleet.exceptions import ConfigurationError
from kubefleet.infradriver import InfraDriver
from kubefleet.logging_config import get_logger

logger = get_logger(__name__)

REGISTRY_DIR_NAME = "registry"


class Distributor(ABC):
    """Pushes image content to hosts and removes it again."""

    @abstractmethod
    def distribute(self, hosts: list[str], dest: str) -> None:
        """Copy the rootfs (without registry data) to ``dest`` on every host."""

    @abstractmethod
    def distribute_registry(self, hosts: list[str], data_dir: str) -> None:
        """Copy the image's registry data to ``data_dir`` on every host."""

    @abstractmethod
    def restore(self, target_dir: str, hosts: list[str]) -> None:
        """Remove a previously distributed directory from every host."""


class ScpDistributor(Distributor):
    """Copies a locally mounted rootfs to hosts through the infra driver.

    Args:
        mount_dir: Local directory holding the unpacked cluster image
        driver: Transport used for the copies
    """

    def __init__(self, mount_dir: str | Path, driver: InfraDriver):
        self.mount_dir = Path(mount_dir)
        self.driver = driver

    def _rootfs_entries(self) -> list[Path]:
        if not self.mount_dir.is_dir():
            raise ConfigurationError(
                f"Mounted rootfs not found: {self.mount_dir}",
                "Mount or unpack the cluster image before distributing it",
            )
        return sorted(
            p
            for p in self.mount_dir.iterdir()
            if not (p.is_dir() and p.name == REGISTRY_DIR_NAME)
        )

    def distribute(self, hosts: list[str], dest: str) -> None:
        entries = self._rootfs_entries()
        logger.info(f"Distributing rootfs {self.mount_dir} to {len(hosts)} host(s)")

        def copy_rootfs(host: str) -> None:
            for entry in entries:
                self.driver.copy(host, str(entry), f"{dest}/{entry.name}")

        self.driver.execute(hosts, copy_rootfs, "distribute-rootfs")

    def distribute_registry(self, hosts: list[str], data_dir: str) -> None:
        registry_dir = self.mount_dir / REGISTRY_DIR_NAME
        if not registry_dir.is_dir():
            logger.info(f"No registry data in {self.mount_dir}, skipping registry distribution")
            return
        logger.info(f"Distributing registry data to {len(hosts)} host(s)")
        self.driver.execute(
            hosts,
            lambda h: self.driver.copy(h, str(registry_dir), data_dir),
            "distribute-registry",
        )

    def restore(self, target_dir: str, hosts: list[str]) -> None:
        self.driver.execute(
            hosts,
            lambda h: self.driver.cmd_async(h, None, f"rm -rf {target_dir}"),
            "restore-rootfs",
        )
