"""Data models for container runtime and plugin configuration."""

from pydantic import BaseModel, Field, field_validator

DOCKER = "docker"
CONTAINERD = "containerd"
SUPPORTED_CONTAINER_RUNTIMES = [DOCKER, CONTAINERD]

KUBERNETES = "kubernetes"
SUPPORTED_CLUSTER_RUNTIMES = [KUBERNETES]


class ContainerRuntimeConfig(BaseModel):
    """Container engine settings passed to the runtime install scripts."""

    type: str | None = None  # None means "use the image default"
    cgroup_driver: str = "systemd"
    limit_nofile: int | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str | None) -> str | None:
        """Validate container runtime type."""
        if v is not None and v not in SUPPORTED_CONTAINER_RUNTIMES:
            raise ValueError(f"type must be one of {SUPPORTED_CONTAINER_RUNTIMES}, got '{v}'")
        return v

    @field_validator("cgroup_driver")
    @classmethod
    def validate_cgroup_driver(cls, v: str) -> str:
        """Validate cgroup driver."""
        allowed = ["systemd", "cgroupfs"]
        if v not in allowed:
            raise ValueError(f"cgroup_driver must be one of {allowed}, got '{v}'")
        return v

    @field_validator("limit_nofile")
    @classmethod
    def validate_limit_nofile(cls, v: int | None) -> int | None:
        """Validate the file-descriptor limit is positive."""
        if v is not None and v <= 0:
            raise ValueError("limit_nofile must be positive")
        return v


class Plugin(BaseModel):
    """A shell snippet bound to a lifecycle phase.

    ``action`` names the phase (for example ``post-install``) and ``scope`` is a
    ``|`` separated list of host roles the plugin applies to. An empty scope
    means every host.
    """

    name: str
    type: str = "SHELL"
    action: str
    scope: str = ""
    data: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Only shell plugins are supported."""
        if v.upper() != "SHELL":
            raise ValueError(f"unsupported plugin type '{v}', only SHELL is supported")
        return "SHELL"

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        """Validate the plugin has something to run."""
        if not v.strip():
            raise ValueError("plugin data cannot be empty")
        return v

    @property
    def scope_roles(self) -> list[str]:
        """Roles this plugin is scoped to, empty for every host."""
        return [r.strip() for r in self.scope.split("|") if r.strip()]
