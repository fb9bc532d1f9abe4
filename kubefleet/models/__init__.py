"""Data models for cluster configuration and state."""

from kubefleet.models.cluster import (
    MASTER,
    NODE,
    Cluster,
    ClusterSpec,
    Host,
    HostAlias,
    SSHConfig,
    Taint,
)
from kubefleet.models.registry import (
    ExternalRegistry,
    LocalRegistry,
    Registry,
    RegistryConfig,
    RegistryInfo,
    SubjectAltName,
    TLSCert,
)
from kubefleet.models.runtime import ContainerRuntimeConfig, Plugin

__all__ = [
    "MASTER",
    "NODE",
    "Cluster",
    "ClusterSpec",
    "Host",
    "HostAlias",
    "SSHConfig",
    "Taint",
    "ExternalRegistry",
    "LocalRegistry",
    "Registry",
    "RegistryConfig",
    "RegistryInfo",
    "SubjectAltName",
    "TLSCert",
    "ContainerRuntimeConfig",
    "Plugin",
]
