"""Controller components for buildfarm."""

from buildfarm.controller.cost import CostPolicyEngine, DemandSignal
from buildfarm.controller.daemon import (
    BuildFarmDaemon,
    DaemonConfig,
    FarmController,
    FarmStatus,
    create_controller,
    create_daemon,
)
from buildfarm.controller.errors import (
    FarmError,
    HealthUnreachable,
    PublishError,
    ScaleConflict,
    ScaleTimeoutError,
    StorageTimeoutError,
    UnschedulableSpecError,
)
from buildfarm.controller.health import HealthMonitor, HealthSlot, HealthSnapshot
from buildfarm.controller.pool import PoolEvent, PoolScaler
from buildfarm.controller.publisher import ImagePublisher, PublishedImage
from buildfarm.controller.schedule import ActiveHours
from buildfarm.controller.storage import StorageProvisioner
from buildfarm.controller.workload import WorkloadReconciler, plan_rollout

__all__ = [
    "ActiveHours",
    "BuildFarmDaemon",
    "CostPolicyEngine",
    "DaemonConfig",
    "DemandSignal",
    "FarmController",
    "FarmError",
    "FarmStatus",
    "HealthMonitor",
    "HealthSlot",
    "HealthSnapshot",
    "HealthUnreachable",
    "ImagePublisher",
    "PoolEvent",
    "PoolScaler",
    "PublishError",
    "PublishedImage",
    "ScaleConflict",
    "ScaleTimeoutError",
    "StorageProvisioner",
    "StorageTimeoutError",
    "UnschedulableSpecError",
    "WorkloadReconciler",
    "create_controller",
    "create_daemon",
    "plan_rollout",
]
