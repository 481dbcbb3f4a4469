"""Container registry integration for buildfarm."""

from buildfarm.registry.client import (
    RegistryAuthError,
    RegistryClient,
    RegistryError,
    TransientRegistryError,
)
from buildfarm.registry.reference import ImageReference

__all__ = [
    "ImageReference",
    "RegistryAuthError",
    "RegistryClient",
    "RegistryError",
    "TransientRegistryError",
]
