"""Local and external image registry management."""

from kubefleet.registry.configurator import (
    Configurator,
    ExternalConfigurator,
    LocalHAConfigurator,
    LocalSingletonConfigurator,
    RegistryDriver,
    new_configurator,
)
from kubefleet.registry.installer import LocalRegistryInstaller

__all__ = [
    "Configurator",
    "ExternalConfigurator",
    "LocalHAConfigurator",
    "LocalSingletonConfigurator",
    "LocalRegistryInstaller",
    "RegistryDriver",
    "new_configurator",
]
