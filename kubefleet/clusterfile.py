"""Persisted cluster state.

The Clusterfile is the cluster's desired state plus the registry deploy hosts,
stored as YAML with ruamel.yaml. Every write keeps the previous version next
to it as ``Clusterfile.backup``.
"""

import shutil
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML

from kubefleet.exceptions import ClusterFileError
from kubefleet.logging_config import get_logger
from kubefleet.models.cluster import Cluster

logger = get_logger(__name__)

DEFAULT_WORK_DIR = Path.home() / ".kubefleet"
CLUSTERFILE_NAME = "Clusterfile"
KUBECONFIG_NAME = "admin.conf"


class ClusterFile:
    """Reads and writes one cluster's Clusterfile.

    Args:
        path: Location of the Clusterfile. Its directory is the cluster work
            directory, which also holds the admin kubeconfig.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)

    @classmethod
    def default_path(cls, cluster_name: str, work_dir: Path | None = None) -> Path:
        return (work_dir or DEFAULT_WORK_DIR) / cluster_name / CLUSTERFILE_NAME

    @property
    def work_dir(self) -> Path:
        return self.path.parent

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.backup")

    @property
    def kubeconfig_path(self) -> Path:
        return self.work_dir / KUBECONFIG_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Cluster:
        """Load and validate the cluster.

        Raises:
            ClusterFileError: If the file is missing, unreadable or invalid
        """
        logger.debug(f"Reading Clusterfile: {self.path}")

        if not self.path.exists():
            raise ClusterFileError(
                f"Clusterfile not found: {self.path}",
                "Create the cluster with 'kubefleet run' or pass --clusterfile",
            )

        try:
            with open(self.path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read Clusterfile: {e}", exc_info=True)
            raise ClusterFileError(
                f"Failed to read Clusterfile: {e}",
                f"The file may be corrupted or have invalid YAML syntax. Check the file at: {self.path.absolute()}",
            ) from e

        if not data:
            raise ClusterFileError(f"Clusterfile is empty: {self.path}")

        try:
            return Cluster.model_validate(data)
        except PydanticValidationError as e:
            raise ClusterFileError(f"Invalid Clusterfile {self.path}", str(e)) from e

    def save(self, cluster: Cluster) -> None:
        """Write the cluster, keeping the previous version as a backup.

        Raises:
            ClusterFileError: If the file cannot be written
        """
        logger.debug(f"Writing Clusterfile: {self.path}")
        data = cluster.model_dump(mode="json", exclude_none=True)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            if self.path.exists():
                logger.debug(f"Creating backup at: {self.backup_path}")
                shutil.copy2(self.path, self.backup_path)

            with open(self.path, "w") as f:
                self.yaml.dump(data, f)

            logger.info(f"Saved Clusterfile: {self.path}")

        except PermissionError as e:
            logger.error(f"Permission denied writing Clusterfile: {e}")
            raise ClusterFileError(
                f"Permission denied writing Clusterfile: {self.path}",
                "Check file permissions or try running with appropriate privileges",
            ) from e
        except OSError as e:
            logger.error(f"OS error writing Clusterfile: {e}")
            raise ClusterFileError(
                f"Failed to write Clusterfile: {e}",
                "Check disk space and file system permissions",
            ) from e

    def remove(self) -> None:
        """Delete the files kubefleet owns: the Clusterfile, its backup and the kubeconfig.

        The work directory itself is removed only when nothing else is left in it.
        """
        if not self.work_dir.exists():
            return
        logger.info(f"Removing cluster files from {self.work_dir}")
        try:
            for path in (self.path, self.backup_path, self.kubeconfig_path):
                path.unlink(missing_ok=True)
            if not any(self.work_dir.iterdir()):
                self.work_dir.rmdir()
            else:
                logger.debug(f"Keeping {self.work_dir}: it holds other files")
        except OSError as e:
            raise ClusterFileError(f"Failed to remove cluster files from {self.work_dir}: {e}") from e
