"""Pydantic models for buildfarm configuration."""

from datetime import date, time
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from buildfarm.types import (
    ClusterPool,
    DiskProfile,
    MachineProfile,
    PersistentVolumeClaim,
    ResourceQuantities,
    WorkloadSpec,
)


class DayOfWeek(str, Enum):
    """Days of the week enumeration."""

    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"


def _validate_k8s_name(v: str, what: str) -> str:
    if not v:
        raise ValueError(f"{what} cannot be empty")
    if len(v) > 63:
        raise ValueError(f"{what} cannot exceed 63 characters")
    if v != v.lower() or not v.replace("-", "").isalnum() or v.startswith("-") or v.endswith("-"):
        raise ValueError(f"{what} '{v}' must be lowercase alphanumeric characters or '-'")
    return v


class Metadata(BaseModel):
    """Metadata for a build farm."""

    name: str = Field(description="Name of the build farm")
    namespace: str = Field(default="default", description="Namespace of the workload")
    labels: Optional[dict[str, str]] = Field(
        default=None,
        description="Optional labels applied to managed resources"
    )

    @field_validator("name", "namespace")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate names follow Kubernetes naming conventions."""
        return _validate_k8s_name(v, "Name")


class ClusterRef(BaseModel):
    """GKE cluster holding the pool. Always explicit, never taken from gcloud defaults."""

    project: str = Field(description="GCP project id")
    location: str = Field(description="Zone or region of the cluster")
    name: str = Field(description="Cluster name")


class MachineConfig(BaseModel):
    """Machine shape of the pool's nodes."""

    type: str = Field(default="e2-standard-2", description="GCE machine type")
    cpu: str = Field(default="1930m", description="Allocatable CPU per node")
    memory: str = Field(default="5Gi", description="Allocatable memory per node")
    preemptible: bool = Field(default=True, description="Use preemptible (spot) nodes")
    hourly_cost: Optional[float] = Field(
        default=None,
        ge=0,
        alias="hourlyCost",
        description="Price of one node per hour, used for the budget ceiling"
    )

    @model_validator(mode="after")
    def validate_quantities(self) -> "MachineConfig":
        """Validate allocatable quantities parse as Kubernetes quantities."""
        capacity = _parse_quantities(self.cpu, self.memory, "machine")
        if capacity.cpu_millicores <= 0 or capacity.memory_bytes <= 0:
            raise ValueError("Machine allocatable cpu and memory must be positive")
        return self

    model_config = {"populate_by_name": True}


class DiskConfig(BaseModel):
    """Boot disk of the pool's nodes."""

    type: Literal["pd-standard", "pd-balanced", "pd-ssd"] = Field(
        default="pd-standard",
        description="Disk type"
    )
    size_gb: int = Field(default=30, ge=10, alias="sizeGb", description="Disk size in GB")

    model_config = {"populate_by_name": True}


class PoolConfig(BaseModel):
    """Elastic node pool limits."""

    name: str = Field(description="Node pool name")
    min_nodes: int = Field(default=0, ge=0, alias="minNodes", description="Floor (0 allows parking)")
    max_nodes: int = Field(default=1, ge=1, alias="maxNodes", description="Ceiling")
    active_nodes: int = Field(
        default=1,
        ge=1,
        alias="activeNodes",
        description="Node count while there is active demand"
    )
    machine: MachineConfig = Field(default_factory=MachineConfig)
    disk: DiskConfig = Field(default_factory=DiskConfig)

    @model_validator(mode="after")
    def validate_limits(self) -> "PoolConfig":
        """Validate that min_nodes <= active_nodes <= max_nodes."""
        if self.min_nodes > self.max_nodes:
            raise ValueError(
                f"min_nodes ({self.min_nodes}) cannot be greater than "
                f"max_nodes ({self.max_nodes})"
            )
        if self.active_nodes > self.max_nodes:
            raise ValueError(
                f"active_nodes ({self.active_nodes}) cannot be greater than "
                f"max_nodes ({self.max_nodes})"
            )
        return self

    model_config = {"populate_by_name": True}


class StorageConfig(BaseModel):
    """Persistent volume for the CI server's state."""

    claim_name: str = Field(alias="claimName", description="PersistentVolumeClaim name")
    size: str = Field(default="10Gi", description="Requested size")
    storage_class: str = Field(
        default="standard",
        alias="storageClass",
        description="Storage class (standard disks are the cheap default)"
    )
    access_mode: Literal["ReadWriteOnce", "ReadWriteMany", "ReadWriteOncePod"] = Field(
        default="ReadWriteOnce",
        alias="accessMode",
    )
    bind_timeout_seconds: int = Field(
        default=300,
        gt=0,
        alias="bindTimeoutSeconds",
        description="How long a claim may stay Pending before it is reported Lost"
    )

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: str) -> str:
        """Validate the size parses as a Kubernetes quantity."""
        _parse_quantities("1", v, "storage")
        return v

    model_config = {"populate_by_name": True}


class ImageConfig(BaseModel):
    """Container image of the CI server."""

    reference: str = Field(description="Target reference, e.g. gcr.io/proj/jenkins:lts")
    source: Optional[str] = Field(
        default=None,
        description="Local image to tag and push; omit for images that are already published"
    )
    username: Optional[str] = Field(default=None, description="Registry username")
    password_env: Optional[str] = Field(
        default=None,
        alias="passwordEnv",
        description="Environment variable holding the registry password or token"
    )
    push_attempts: int = Field(default=5, ge=1, alias="pushAttempts")

    @field_validator("reference")
    @classmethod
    def validate_reference(cls, v: str) -> str:
        """Validate the reference names a repository."""
        if not v or " " in v:
            raise ValueError(f"Invalid image reference: '{v}'")
        return v

    model_config = {"populate_by_name": True}


class ResourceBounds(BaseModel):
    """CPU and memory amounts."""

    cpu: str
    memory: str

    @model_validator(mode="after")
    def validate_quantities(self) -> "ResourceBounds":
        _parse_quantities(self.cpu, self.memory, "resource")
        return self

    def to_quantities(self) -> ResourceQuantities:
        return ResourceQuantities.from_strings(self.cpu, self.memory)


class ResourcesConfig(BaseModel):
    """Requests and limits of the CI container."""

    requests: ResourceBounds = Field(
        default_factory=lambda: ResourceBounds(cpu="500m", memory="1Gi")
    )
    limits: ResourceBounds = Field(
        default_factory=lambda: ResourceBounds(cpu="1", memory="2Gi")
    )


class WorkloadConfig(BaseModel):
    """CI server deployment."""

    name: str = Field(description="Deployment and service name")
    replicas: int = Field(default=1, ge=0, description="Replicas while active")
    port: int = Field(default=8080, gt=0, lt=65536)
    mount_path: str = Field(default="/var/jenkins_home", alias="mountPath")
    env: dict[str, str] = Field(default_factory=dict)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_k8s_name(v, "Workload name")

    model_config = {"populate_by_name": True}


class HealthConfig(BaseModel):
    """Health probing of the CI server."""

    path: str = Field(default="/login", description="HTTP path probed for health")
    port: Optional[int] = Field(default=None, description="Defaults to the workload port")
    url: Optional[str] = Field(default=None, description="Full URL overriding service/port/path")
    cold_start_grace_seconds: int = Field(default=600, gt=0, alias="coldStartGraceSeconds")
    warm_start_grace_seconds: int = Field(default=180, gt=0, alias="warmStartGraceSeconds")
    failure_threshold: int = Field(default=3, ge=1, alias="failureThreshold")
    interval_seconds: float = Field(default=15, gt=0, alias="intervalSeconds")
    timeout_seconds: float = Field(default=5, gt=0, alias="timeoutSeconds")
    jitter: float = Field(default=0.2, ge=0, lt=1, description="Fraction of interval")

    @model_validator(mode="after")
    def validate_grace_periods(self) -> "HealthConfig":
        """A cold start after scale-up takes longer than a warm restart."""
        if self.warm_start_grace_seconds >= self.cold_start_grace_seconds:
            raise ValueError(
                f"warm_start_grace_seconds ({self.warm_start_grace_seconds}) must be less than "
                f"cold_start_grace_seconds ({self.cold_start_grace_seconds})"
            )
        return self

    model_config = {"populate_by_name": True}


class ActiveWindow(BaseModel):
    """A recurring window in which the farm is expected to be busy."""

    name: str = Field(description="Human-readable name for this window")
    days: Optional[list[DayOfWeek]] = Field(
        default=None,
        description="Days of week on which the window starts"
    )
    dates: Optional[list[date]] = Field(
        default=None,
        description="Specific dates on which the window starts (YYYY-MM-DD)"
    )
    time_start: Optional[time] = Field(default=None, alias="timeStart")
    time_end: Optional[time] = Field(default=None, alias="timeEnd")
    timezone: str = Field(default="UTC", description="IANA timezone of the window")

    @model_validator(mode="after")
    def validate_window(self) -> "ActiveWindow":
        """Validate the window has a day condition and a non-empty time range."""
        if not self.days and not self.dates:
            raise ValueError("At least one of 'days' or 'dates' must be specified")
        if self.time_start is not None and self.time_start == self.time_end:
            raise ValueError(
                f"time_start and time_end are both {self.time_start}; the window would be empty"
            )
        return self

    model_config = {"populate_by_name": True}


class CostConfig(BaseModel):
    """Cost policy: when to park the pool."""

    idle_window_minutes: int = Field(
        default=30,
        ge=0,
        alias="idleWindowMinutes",
        description="Minutes without demand before the pool is parked"
    )
    cooldown_minutes: int = Field(
        default=10,
        ge=0,
        alias="cooldownMinutes",
        description="Minimum minutes between scale-direction changes"
    )
    hourly_budget: Optional[float] = Field(
        default=None,
        ge=0,
        alias="hourlyBudget",
        description="Maximum compute spend per hour"
    )
    active_hours: list[ActiveWindow] = Field(default_factory=list, alias="activeHours")

    model_config = {"populate_by_name": True}


class FarmSpec(BaseModel):
    """Desired state of one build farm: one workload on one pool."""

    cluster: ClusterRef
    pool: PoolConfig
    storage: StorageConfig
    image: ImageConfig
    workload: WorkloadConfig
    health: HealthConfig = Field(default_factory=HealthConfig)
    cost: CostConfig = Field(default_factory=CostConfig)

    @model_validator(mode="after")
    def validate_requests_within_limits(self) -> "FarmSpec":
        """Validate requests do not exceed limits."""
        requests = self.workload.resources.requests.to_quantities()
        limits = self.workload.resources.limits.to_quantities()
        if not requests.fits_within(limits):
            raise ValueError(
                f"Workload '{self.workload.name}' requests ({self.workload.resources.requests.cpu}, "
                f"{self.workload.resources.requests.memory}) exceed limits "
                f"({self.workload.resources.limits.cpu}, {self.workload.resources.limits.memory})"
            )
        return self


class BuildFarm(BaseModel):
    """Root model for a build farm document."""

    api_version: str = Field(
        default="buildfarm.io/v1",
        alias="apiVersion",
        description="API version"
    )
    kind: Literal["BuildFarm"] = Field(default="BuildFarm", description="Kind of resource")
    metadata: Metadata = Field(description="Farm metadata")
    spec: FarmSpec = Field(description="Desired farm state")

    model_config = {"populate_by_name": True}

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def machine_profile(self) -> MachineProfile:
        machine = self.spec.pool.machine
        return MachineProfile(
            machine_type=machine.type,
            allocatable=ResourceQuantities.from_strings(machine.cpu, machine.memory),
            preemptible=machine.preemptible,
            hourly_cost=machine.hourly_cost,
        )

    def to_pool(self, node_count: int = 0) -> ClusterPool:
        """Build the runtime pool record."""
        pool = self.spec.pool
        return ClusterPool(
            name=pool.name,
            zone=self.spec.cluster.location,
            node_count=node_count,
            min_nodes=pool.min_nodes,
            max_nodes=pool.max_nodes,
            machine_profile=self.machine_profile(),
            disk_profile=DiskProfile(disk_type=pool.disk.type, size_gb=pool.disk.size_gb),
        )

    def to_claim(self) -> PersistentVolumeClaim:
        """Build the runtime volume claim record."""
        storage = self.spec.storage
        return PersistentVolumeClaim(
            name=storage.claim_name,
            namespace=self.metadata.namespace,
            requested_size=storage.size,
            storage_class=storage.storage_class,
            access_mode=storage.access_mode,
        )

    def to_workload(self, image: str, replicas: Optional[int] = None) -> WorkloadSpec:
        """Build the desired workload spec for a resolved image."""
        workload = self.spec.workload
        return WorkloadSpec(
            name=workload.name,
            namespace=self.metadata.namespace,
            image=image,
            replicas=workload.replicas if replicas is None else replicas,
            requests=workload.resources.requests.to_quantities(),
            limits=workload.resources.limits.to_quantities(),
            volume_claim=self.spec.storage.claim_name,
            mount_path=workload.mount_path,
            port=workload.port,
            health_path=self.spec.health.path,
            env=tuple(sorted(workload.env.items())),
        )

    def health_url(self) -> str:
        """URL probed by the health monitor."""
        health = self.spec.health
        if health.url:
            return health.url
        port = health.port or self.spec.workload.port
        return (
            f"http://{self.spec.workload.name}.{self.metadata.namespace}.svc.cluster.local:"
            f"{port}{health.path}"
        )


def _parse_quantities(cpu: str, memory: str, what: str) -> ResourceQuantities:
    try:
        return ResourceQuantities.from_strings(cpu, memory)
    except (ValueError, ArithmeticError) as e:
        raise ValueError(f"Invalid {what} quantity (cpu={cpu!r}, memory={memory!r}): {e}") from e
