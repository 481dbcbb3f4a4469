"""Runtime domain types shared by the buildfarm controllers."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from kubernetes.utils import parse_quantity


class BoundState(str, Enum):
    """Binding state of a persistent volume claim."""

    UNBOUND = "Unbound"
    PENDING = "Pending"
    BOUND = "Bound"
    LOST = "Lost"


class HealthPhase(str, Enum):
    """Health phase of a workload instance."""

    STARTING = "Starting"
    READY = "Ready"
    DEGRADED = "Degraded"
    UNREACHABLE = "Unreachable"


class PoolPhase(str, Enum):
    """Phase of an elastic node pool."""

    STABLE = "Stable"
    SCALING = "Scaling"
    PARKED = "Parked"


class WorkloadPhase(str, Enum):
    """Phase of the managed workload."""

    WAITING = "Waiting"
    ROLLING_OUT = "RollingOut"
    RUNNING = "Running"
    PARKED = "Parked"


@dataclass(frozen=True)
class ResourceQuantities:
    """CPU and memory amounts in scheduler units."""

    cpu_millicores: int
    memory_bytes: int

    @classmethod
    def from_strings(cls, cpu: str, memory: str) -> "ResourceQuantities":
        """
        Parse Kubernetes quantity strings such as "500m" and "2Gi".

        Raises:
            ValueError: If a quantity cannot be parsed
        """
        millicores = parse_quantity(cpu) * 1000
        return cls(
            cpu_millicores=int(math.ceil(millicores)),
            memory_bytes=int(math.ceil(parse_quantity(memory))),
        )

    def fits_within(self, other: "ResourceQuantities") -> bool:
        """Return True if both dimensions are <= the other's."""
        return (
            self.cpu_millicores <= other.cpu_millicores
            and self.memory_bytes <= other.memory_bytes
        )

    def as_k8s(self) -> dict[str, str]:
        """Render as a Kubernetes resource map."""
        return {
            "cpu": f"{self.cpu_millicores}m",
            "memory": str(self.memory_bytes),
        }


@dataclass(frozen=True)
class MachineProfile:
    """Node shape of a pool."""

    machine_type: str
    allocatable: ResourceQuantities
    preemptible: bool = True
    hourly_cost: Optional[float] = None

    def pods_per_node(self, requests: ResourceQuantities) -> int:
        """How many pods with the given requests fit on one node."""
        by_cpu = self.allocatable.cpu_millicores // max(requests.cpu_millicores, 1)
        by_memory = self.allocatable.memory_bytes // max(requests.memory_bytes, 1)
        return min(by_cpu, by_memory)

    def nodes_for(self, pods: int, requests: ResourceQuantities) -> int:
        """Nodes needed to schedule the given number of pods."""
        if pods <= 0:
            return 0
        per_node = self.pods_per_node(requests)
        if per_node == 0:
            raise ValueError(
                f"Requests {requests} do not fit on a {self.machine_type} node"
            )
        return math.ceil(pods / per_node)


@dataclass(frozen=True)
class DiskProfile:
    """Boot disk of the pool's nodes."""

    disk_type: str = "pd-standard"
    size_gb: int = 30


@dataclass
class ClusterPool:
    """An elastic node pool. Only the PoolScaler writes node_count."""

    name: str
    zone: str
    node_count: int
    min_nodes: int
    max_nodes: int
    machine_profile: MachineProfile
    disk_profile: DiskProfile = field(default_factory=DiskProfile)

    def __post_init__(self) -> None:
        if self.min_nodes < 0:
            raise ValueError(f"Pool {self.name}: min_nodes cannot be negative")
        if self.min_nodes > self.max_nodes:
            raise ValueError(
                f"Pool {self.name}: min_nodes ({self.min_nodes}) cannot be greater than "
                f"max_nodes ({self.max_nodes})"
            )
        self.node_count = self.clamp(self.node_count)

    def clamp(self, count: int) -> int:
        """Clamp a node count into [min_nodes, max_nodes]."""
        return max(self.min_nodes, min(self.max_nodes, count))

    @property
    def parked(self) -> bool:
        return self.node_count == 0


@dataclass
class PersistentVolumeClaim:
    """Durable volume backing the CI server's home directory."""

    name: str
    namespace: str
    requested_size: str
    storage_class: str = "standard"
    access_mode: str = "ReadWriteOnce"
    bound_state: BoundState = BoundState.UNBOUND

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class WorkloadSpec:
    """Declared desired state of the CI server deployment."""

    name: str
    namespace: str
    image: str
    replicas: int
    requests: ResourceQuantities
    limits: ResourceQuantities
    volume_claim: str
    mount_path: str = "/var/jenkins_home"
    port: int = 8080
    health_path: str = "/login"
    env: tuple[tuple[str, str], ...] = ()
    max_surge: int = 1
    max_unavailable: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class HealthRecord:
    """Latest observed health of one workload. Never persisted."""

    workload_id: str
    phase: HealthPhase = HealthPhase.STARTING
    consecutive_failures: int = 0
    last_probe_time: Optional[datetime] = None
    phase_since: Optional[datetime] = None
    started_at: Optional[datetime] = None
    epoch: int = 0
    cold_start: bool = True


@dataclass(frozen=True)
class CostDecision:
    """Directive from the cost policy to the pool scaler."""

    timestamp: datetime
    target_node_count: int
    reason: str
    direction: int = 0

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "target_node_count": self.target_node_count,
            "reason": self.reason,
            "direction": self.direction,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CostDecision":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            target_node_count=int(data["target_node_count"]),
            reason=data["reason"],
            direction=int(data.get("direction", 0)),
        )


@dataclass(frozen=True)
class PoolState:
    """Result of a PoolScaler reconcile."""

    pool_name: str
    phase: PoolPhase
    node_count: int
    ready_nodes: int = 0
    in_flight_target: Optional[int] = None
    queued_target: Optional[int] = None


@dataclass(frozen=True)
class WorkloadState:
    """Result of a WorkloadReconciler reconcile."""

    workload_id: str
    phase: WorkloadPhase
    reason: str
    desired_replicas: int = 0
    running_replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0

    @property
    def scheduled(self) -> bool:
        return self.phase in (WorkloadPhase.ROLLING_OUT, WorkloadPhase.RUNNING)
