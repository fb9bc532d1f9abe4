"""Data models for the image registry configuration."""

import ipaddress

from pydantic import BaseModel, Field, field_validator, model_validator

from kubefleet.hostset import unique

DEFAULT_REGISTRY_DOMAIN = "sea.hub"
DEFAULT_REGISTRY_PORT = 5000


class SubjectAltName(BaseModel):
    """Extra names the registry certificate is valid for."""

    dns_names: list[str] = Field(default_factory=list)
    ips: list[str] = Field(default_factory=list)

    @field_validator("ips")
    @classmethod
    def validate_ips(cls, v: list[str]) -> list[str]:
        """Validate and normalize certificate IP addresses."""
        return [str(ipaddress.ip_address(str(ip).strip())) for ip in v]


class TLSCert(BaseModel):
    """Certificate settings for a locally deployed registry."""

    subject_alt_name: SubjectAltName | None = None


class RegistryConfig(BaseModel):
    """Registry endpoint and optional basic-auth credentials."""

    domain: str = DEFAULT_REGISTRY_DOMAIN
    port: int | None = DEFAULT_REGISTRY_PORT
    username: str | None = None
    password: str | None = None

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Validate domain is not empty."""
        if not v or not v.strip():
            raise ValueError("registry domain cannot be empty")
        return v.strip()

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int | None) -> int | None:
        """Validate port range."""
        if v is not None and not 0 < v < 65536:
            raise ValueError(f"registry port must be between 1 and 65535, got {v}")
        return v

    @property
    def url(self) -> str:
        """Registry endpoint as ``domain:port`` (or just the domain without a port)."""
        if not self.port:
            return self.domain
        return f"{self.domain}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class LocalRegistry(RegistryConfig):
    """A registry that kubefleet deploys on cluster hosts.

    ``deploy_hosts`` records where the registry is currently running and is the
    "current" side of every reconciliation, so it is persisted between runs.
    """

    port: int = DEFAULT_REGISTRY_PORT
    ha: bool = True
    insecure: bool = False
    cert: TLSCert = Field(default_factory=TLSCert)
    deploy_hosts: list[str] = Field(default_factory=list)
    data_dir: str | None = None

    @field_validator("deploy_hosts")
    @classmethod
    def validate_deploy_hosts(cls, v: list[str]) -> list[str]:
        """Normalize deploy host addresses."""
        return unique(v)


class ExternalRegistry(RegistryConfig):
    """A registry managed outside of the cluster."""

    port: int | None = None


class Registry(BaseModel):
    """Registry policy: exactly one of local or external."""

    local_registry: LocalRegistry | None = None
    external_registry: ExternalRegistry | None = None

    @model_validator(mode="after")
    def default_to_local(self) -> "Registry":
        """Fall back to a local registry when nothing is configured."""
        if self.local_registry is None and self.external_registry is None:
            self.local_registry = LocalRegistry()
        if self.local_registry is not None and self.external_registry is not None:
            raise ValueError("only one of local_registry and external_registry can be set")
        return self

    @property
    def config(self) -> RegistryConfig:
        """The active registry endpoint configuration."""
        return self.local_registry or self.external_registry


class RegistryInfo(BaseModel):
    """What the cluster needs to know about its registry after install."""

    url: str
    domain: str
    port: int | None = None
    external: bool = False
    ha: bool = False
    insecure: bool = False
    vip: str | None = None
    deploy_hosts: list[str] = Field(default_factory=list)
    username: str | None = None
