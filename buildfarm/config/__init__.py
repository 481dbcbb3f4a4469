"""Configuration management for buildfarm."""

from buildfarm.config.loader import ConfigLoadError, ConfigLoader
from buildfarm.config.models import (
    ActiveWindow,
    BuildFarm,
    ClusterRef,
    CostConfig,
    DayOfWeek,
    FarmSpec,
    HealthConfig,
    ImageConfig,
    MachineConfig,
    Metadata,
    PoolConfig,
    StorageConfig,
    WorkloadConfig,
)
from buildfarm.config.validator import ConfigValidator, ValidationResult

__all__ = [
    "ActiveWindow",
    "BuildFarm",
    "ClusterRef",
    "ConfigLoadError",
    "ConfigLoader",
    "ConfigValidator",
    "CostConfig",
    "DayOfWeek",
    "FarmSpec",
    "HealthConfig",
    "ImageConfig",
    "MachineConfig",
    "Metadata",
    "PoolConfig",
    "StorageConfig",
    "ValidationResult",
    "WorkloadConfig",
]
