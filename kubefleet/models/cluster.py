"""Data models for the declared cluster."""

import re

from pydantic import BaseModel, Field, field_serializer, field_validator

from kubefleet.exceptions import ConfigurationError
from kubefleet.hostset import normalize, remove_hosts, unique
from kubefleet.models.registry import Registry
from kubefleet.models.runtime import ContainerRuntimeConfig, Plugin

MASTER = "master"
NODE = "node"

TAINT_EFFECTS = ["NoSchedule", "PreferNoSchedule", "NoExecute"]


def _env_to_dict(v) -> dict[str, str]:
    # Accept both {"K": "V"} and ["K=V", ...]
    if v is None:
        return {}
    if isinstance(v, dict):
        return {str(k): str(val) for k, val in v.items()}
    env = {}
    for item in v:
        key, sep, value = str(item).partition("=")
        if not sep or not key:
            raise ValueError(f"environment entry '{item}' must be in KEY=VALUE form")
        env[key] = value
    return env


class Taint(BaseModel):
    """Kubernetes node taint.

    Written as ``key=value:Effect``. A trailing ``-`` marks the taint for
    deletion: ``key=value:Effect-`` removes that exact taint, ``key-`` removes
    every taint with the key.
    """

    key: str
    value: str = ""
    effect: str = ""
    delete: bool = False

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Validate taint key is not empty."""
        if not v:
            raise ValueError("taint key cannot be empty")
        return v

    @field_validator("effect")
    @classmethod
    def validate_effect(cls, v: str) -> str:
        """Validate taint effect is one of the allowed values."""
        if v and v not in TAINT_EFFECTS:
            raise ValueError(f"effect must be one of {TAINT_EFFECTS}, got {v}")
        return v

    @classmethod
    def parse(cls, text: str) -> "Taint":
        """Parse a taint from its ``key=value:Effect[-]`` form."""
        text = text.strip()
        delete = text.endswith("-")
        if delete:
            text = text[:-1]

        kv, _, effect = text.partition(":")
        key, _, value = kv.partition("=")
        if not delete and not effect:
            raise ValueError(f"taint '{text}' must have an effect")
        return cls(key=key, value=value, effect=effect, delete=delete)

    def matches(self, key: str, effect: str) -> bool:
        """Whether an existing node taint is selected by this deletion taint."""
        return self.key == key and (not self.effect or self.effect == effect)


class SSHConfig(BaseModel):
    """SSH credentials used to reach hosts."""

    user: str = "root"
    password: str | None = None
    port: int = 22
    pk: str | None = None  # path to a private key

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate SSH port range."""
        if not 0 < v < 65536:
            raise ValueError(f"ssh port must be between 1 and 65535, got {v}")
        return v


class HostAlias(BaseModel):
    """An ``/etc/hosts`` entry written on every cluster host."""

    ip: str
    hostnames: list[str]

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        return normalize(v)


class Host(BaseModel):
    """A group of hosts sharing roles and settings."""

    ips: list[str]
    roles: list[str]
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[str] = Field(default_factory=list)
    ssh: SSHConfig | None = None

    @field_validator("ips")
    @classmethod
    def validate_ips(cls, v: list[str]) -> list[str]:
        """Normalize addresses and reject empty groups."""
        ips = unique(ip for ip in v if str(ip).strip())
        if not ips:
            raise ValueError("host group must have at least one address")
        return ips

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        """Validate the host group has at least one role."""
        roles = [r.strip() for r in v if r.strip()]
        if not roles:
            raise ValueError("host group must have at least one role")
        return roles

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v) -> dict[str, str]:
        return _env_to_dict(v)

    @field_validator("taints")
    @classmethod
    def validate_taints(cls, v: list[str]) -> list[str]:
        """Validate every taint parses."""
        for taint in v:
            Taint.parse(taint)
        return v

    @field_serializer("ssh")
    def serialize_ssh(self, ssh: SSHConfig | None) -> dict | None:
        # Unset fields fall back to the cluster ssh settings
        return ssh.model_dump(exclude_unset=True) if ssh else None


class ClusterSpec(BaseModel):
    """Desired state of a cluster."""

    image: str
    env: dict[str, str] = Field(default_factory=dict)
    cmds: list[str] = Field(default_factory=list)
    hosts: list[Host] = Field(default_factory=list)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    host_aliases: list[HostAlias] = Field(default_factory=list)
    registry: Registry = Field(default_factory=Registry)
    container_runtime: ContainerRuntimeConfig = Field(default_factory=ContainerRuntimeConfig)
    plugins: list[Plugin] = Field(default_factory=list)
    kubeadm_config: dict = Field(default_factory=dict)

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Validate image reference is not empty."""
        if not v or not v.strip():
            raise ValueError("cluster image cannot be empty")
        return v.strip()

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v) -> dict[str, str]:
        return _env_to_dict(v)


class Cluster(BaseModel):
    """A declared cluster: a name plus its desired spec."""

    name: str
    spec: ClusterSpec

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate cluster name follows DNS label conventions."""
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", v or ""):
            raise ValueError(
                f"cluster name '{v}' must contain only lowercase alphanumeric characters "
                "and hyphens, and cannot start or end with a hyphen"
            )
        return v

    def ips_by_role(self, role: str) -> list[str]:
        """Addresses having ``role``, in declaration order."""
        return unique(ip for host in self.spec.hosts if role in host.roles for ip in host.ips)

    @property
    def master_ips(self) -> list[str]:
        return self.ips_by_role(MASTER)

    @property
    def node_ips(self) -> list[str]:
        return self.ips_by_role(NODE)

    @property
    def all_ips(self) -> list[str]:
        return unique(ip for host in self.spec.hosts for ip in host.ips)

    @property
    def master0(self) -> str:
        """The bootstrap master: first address of the master list.

        Recomputed on every access, so removing master0 promotes the next
        master in declaration order.

        Raises:
            ConfigurationError: If the cluster has no master
        """
        masters = self.master_ips
        if not masters:
            raise ConfigurationError(
                f"Cluster '{self.name}' has no master host",
                "Declare at least one host group with the 'master' role",
            )
        return masters[0]

    def host_for(self, ip: str) -> Host | None:
        """Return the host group that declares ``ip``."""
        key = normalize(ip)
        for host in self.spec.hosts:
            if key in host.ips:
                return host
        return None

    def roles_for(self, ip: str) -> list[str]:
        host = self.host_for(ip)
        return list(host.roles) if host else []

    def add_hosts(self, ips: list[str], role: str, **settings) -> list[str]:
        """Append a host group for addresses that are not in the cluster yet.

        Args:
            ips: Addresses to add
            role: Role of the new group
            **settings: Extra ``Host`` fields (env, labels, taints, ssh)

        Returns:
            The addresses actually added
        """
        new_ips = remove_hosts(ips, self.all_ips)
        if new_ips:
            self.spec.hosts.append(Host(ips=new_ips, roles=[role], **settings))
        return new_ips

    def remove_hosts(self, ips: list[str]) -> None:
        """Remove addresses from every host group, dropping groups left empty."""
        kept = []
        for host in self.spec.hosts:
            remaining = remove_hosts(host.ips, ips)
            if remaining:
                host.ips = remaining
                kept.append(host)
        self.spec.hosts = kept
