"""Main daemon controller for buildfarm."""

import asyncio
import json
import logging
import os
import signal
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from buildfarm.cloud.node_pools import NodePoolClient, NodePoolError
from buildfarm.config.loader import ConfigLoader
from buildfarm.config.models import BuildFarm
from buildfarm.config.validator import ConfigValidator
from buildfarm.controller.cost import CostPolicyEngine, DemandSignal
from buildfarm.controller.errors import FarmError, HealthUnreachable
from buildfarm.controller.health import HealthMonitor, HealthSnapshot
from buildfarm.controller.pool import PoolScaler
from buildfarm.controller.publisher import ImagePublisher, PublishedImage
from buildfarm.controller.schedule import ActiveHours
from buildfarm.controller.storage import StorageProvisioner
from buildfarm.controller.workload import WorkloadReconciler
from buildfarm.k8s.client import K8sClient
from buildfarm.k8s.resources import ClusterResourceError, ClusterResources
from buildfarm.registry.client import RegistryClient
from buildfarm.types import (
    BoundState,
    ClusterPool,
    HealthPhase,
    PoolState,
    WorkloadPhase,
    WorkloadState,
)
from buildfarm.utils.state import DecisionLog, DecisionLogError
from buildfarm.utils.time_utils import get_current_datetime

logger = logging.getLogger(__name__)

# Failures that end a cycle and are reported in the farm status
CYCLE_ERRORS = (FarmError, ClusterResourceError, NodePoolError, DecisionLogError)

PARKED = "Parked"


@dataclass
class FarmStatus:
    """Operator-facing summary of one farm after a cycle."""

    farm: str
    phase: str = "Pending"
    pool_phase: Optional[str] = None
    node_count: int = 0
    ready_nodes: int = 0
    target_node_count: Optional[int] = None
    decision_reason: Optional[str] = None
    volume_state: Optional[str] = None
    image: Optional[str] = None
    workload_phase: Optional[str] = None
    workload_reason: Optional[str] = None
    health_phase: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class FarmController:
    """Runs one reconcile cycle of a build farm across all components."""

    def __init__(
        self,
        farm: BuildFarm,
        pool: ClusterPool,
        storage: StorageProvisioner,
        publisher: ImagePublisher,
        scaler: PoolScaler,
        reconciler: WorkloadReconciler,
        monitor: HealthMonitor,
        cost: CostPolicyEngine,
        schedule: Optional[ActiveHours] = None,
        registry: Optional[RegistryClient] = None,
    ):
        self.farm = farm
        self.pool = pool
        self.claim = farm.to_claim()
        self.storage = storage
        self.publisher = publisher
        self.scaler = scaler
        self.reconciler = reconciler
        self.monitor = monitor
        self.cost = cost
        self.schedule = schedule
        self.registry = registry

        self._pending_requests = 0
        self._scheduled = False
        self._alert: Optional[HealthUnreachable] = None
        self._published: Optional[PublishedImage] = None
        self._status = FarmStatus(farm=farm.key)
        monitor.subscribe(self._on_unreachable)

    @property
    def key(self) -> str:
        return self.farm.key

    def signal_demand(self, count: int = 1) -> None:
        """Record external demand (e.g. a queued build) for the next cycle."""
        self._pending_requests += count
        logger.info(f"Farm {self.key}: {count} demand signal(s) received")

    def _on_unreachable(self, alert: HealthUnreachable) -> None:
        self._alert = alert

    def status(self) -> FarmStatus:
        return self._status

    def _desired(self, replicas: Optional[int] = None):
        image = self._published.pinned if self._published else self.farm.spec.image.reference
        return self.farm.to_workload(image, replicas=replicas)

    async def reconcile_once(self, now: Optional[datetime] = None) -> FarmStatus:
        """
        Run one cycle: cost, pool, storage, image, workload, health.

        Returns:
            FarmStatus describing the farm after the cycle
        """
        if now is None:
            now = get_current_datetime("UTC")

        status = FarmStatus(farm=self.key, updated_at=now.isoformat())
        try:
            await self._cycle(status, now)
        except CYCLE_ERRORS as e:
            status.last_error = str(e)
            status.phase = "Error"
            logger.error(f"Farm {self.key}: {e}")

        status.node_count = self.pool.node_count
        status.volume_state = self.claim.bound_state.value
        status.health_phase = self._health_phase(status)
        self._status = status
        return status

    def _health(self) -> Optional[HealthSnapshot]:
        """Latest published health, or None while the workload is not being probed."""
        snapshot = self.monitor.slot.read()
        if snapshot is None or snapshot.suspended:
            return None
        return snapshot

    def _health_phase(self, status: FarmStatus) -> str:
        snapshot = self._health()
        if snapshot is not None:
            return snapshot.phase.value
        if status.target_node_count == 0:
            return PARKED
        return HealthPhase.STARTING.value

    async def _cycle(self, status: FarmStatus, now: datetime) -> None:
        snapshot = self._health()
        demand = DemandSignal(
            active_requests=self._pending_requests,
            workload_starting=self._scheduled and (snapshot is None or snapshot.phase == HealthPhase.STARTING),
        )
        decision = self.cost.decide(demand, self.schedule, self.pool, now)
        self._pending_requests = 0
        status.target_node_count = decision.target_node_count
        status.decision_reason = decision.reason

        if decision.target_node_count == 0:
            await self._park(status, now)
            return

        pool_state = await asyncio.to_thread(self.scaler.reconcile, self.pool, decision.target_node_count, now)
        self._record_pool(status, pool_state)

        bound = await asyncio.to_thread(self.storage.ensure_volume, self.claim, now)
        if bound != BoundState.BOUND:
            self._record_workload(status, WorkloadState(
                workload_id=f"{self.farm.metadata.namespace}/{self.farm.spec.workload.name}",
                phase=WorkloadPhase.WAITING,
                reason=f"volume {self.claim.key} is {bound.value}",
                desired_replicas=self.farm.spec.workload.replicas,
            ))
            return

        image = self.farm.spec.image
        self._published = await self.publisher.ensure_published(image.reference, image.source)
        status.image = self._published.pinned

        desired = self._desired()
        workload_state = await asyncio.to_thread(self.reconciler.reconcile, desired, self.pool, self.claim)
        self._record_workload(status, workload_state)
        await self._track_health(desired, workload_state, now)

    async def _park(self, status: FarmStatus, now: datetime) -> None:
        """Drain the workload, then let the scaler take the pool to zero."""
        workload_state = await asyncio.to_thread(
            self.reconciler.reconcile, self._desired(replicas=0), self.pool, self.claim
        )
        self._record_workload(status, workload_state)
        self._scheduled = False
        self._alert = None
        self.monitor.suspend(now)

        pool_state = await asyncio.to_thread(self.scaler.reconcile, self.pool, 0, now)
        self._record_pool(status, pool_state)
        if self.pool.parked:
            status.phase = PARKED

    async def _track_health(self, desired, workload_state: WorkloadState, now: datetime) -> None:
        if workload_state.scheduled and not self._scheduled:
            self.monitor.restart(now, cold=True)
        elif not workload_state.scheduled and self._scheduled:
            self.monitor.suspend(now)
        self._scheduled = workload_state.scheduled

        alert, self._alert = self._alert, None
        snapshot = self._health()
        if alert is not None and self._scheduled and snapshot is not None and alert.epoch == snapshot.epoch:
            await asyncio.to_thread(self.reconciler.restart, desired, self.pool, now)
            self.monitor.restart(now, cold=False)

    @staticmethod
    def _record_pool(status: FarmStatus, pool_state: PoolState) -> None:
        status.pool_phase = pool_state.phase.value
        status.ready_nodes = pool_state.ready_nodes

    @staticmethod
    def _record_workload(status: FarmStatus, workload_state: WorkloadState) -> None:
        status.workload_phase = workload_state.phase.value
        status.workload_reason = workload_state.reason
        status.phase = workload_state.phase.value

    async def close(self) -> None:
        await self.monitor.close()
        if self.registry is not None:
            await self.registry.close()


def create_controller(
    farm: BuildFarm,
    k8s_client: K8sClient,
    state_dir: Optional[str] = None,
    dry_run: bool = False,
    node_pools: Optional[NodePoolClient] = None,
    registry: Optional[RegistryClient] = None,
) -> FarmController:
    """
    Build a FarmController and its components from a farm document.

    Args:
        farm: Validated farm document
        k8s_client: Kubernetes client
        state_dir: Directory for the decision log (in-memory when omitted)
        dry_run: If True, observe and log without mutating anything
        node_pools: Node pool client (built from the farm's cluster when omitted)
        registry: Registry client (built from the farm's image config when omitted)

    Returns:
        Configured FarmController
    """
    spec = farm.spec
    resources = ClusterResources(k8s_client, dry_run=dry_run)

    if node_pools is None:
        node_pools = NodePoolClient(
            project=spec.cluster.project,
            location=spec.cluster.location,
            cluster=spec.cluster.name,
        )
    if registry is None:
        password = os.environ.get(spec.image.password_env) if spec.image.password_env else None
        registry = RegistryClient(username=spec.image.username, password=password)

    log_path = None
    if state_dir:
        log_path = Path(state_dir) / f"{farm.metadata.namespace}-{farm.metadata.name}.decisions.jsonl"

    scaler = PoolScaler(node_pools, resources, dry_run=dry_run)
    health = spec.health
    return FarmController(
        farm=farm,
        pool=farm.to_pool(),
        storage=StorageProvisioner(resources, bind_timeout=spec.storage.bind_timeout_seconds),
        publisher=ImagePublisher(registry, max_attempts=spec.image.push_attempts, dry_run=dry_run),
        scaler=scaler,
        reconciler=WorkloadReconciler(resources, scaler, labels=farm.metadata.labels),
        monitor=HealthMonitor(
            workload_id=f"{farm.metadata.namespace}/{spec.workload.name}",
            url=farm.health_url(),
            cold_start_grace=health.cold_start_grace_seconds,
            warm_start_grace=health.warm_start_grace_seconds,
            failure_threshold=health.failure_threshold,
            interval=health.interval_seconds,
            timeout=health.timeout_seconds,
            jitter=health.jitter,
        ),
        cost=CostPolicyEngine(
            active_nodes=spec.pool.active_nodes,
            idle_window_minutes=spec.cost.idle_window_minutes,
            cooldown_minutes=spec.cost.cooldown_minutes,
            hourly_budget=spec.cost.hourly_budget,
            decision_log=DecisionLog(log_path),
        ),
        schedule=ActiveHours(spec.cost.active_hours),
        registry=registry,
    )


class BuildFarmDaemon:
    """Main daemon that reconciles every managed farm on an interval."""

    def __init__(
        self,
        controller_factory: Callable[[BuildFarm], FarmController],
        check_interval: int = 60,
        max_workers: int = 4,
        status_file: Optional[str] = None,
        dry_run: bool = False,
    ):
        """
        Initialize buildfarm daemon.

        Args:
            controller_factory: Builds a FarmController for a farm document
            check_interval: Seconds between reconcile cycles
            max_workers: Farms reconciled concurrently
            status_file: Optional JSON file rewritten after each cycle
            dry_run: If True, don't mutate cluster or cloud resources
        """
        self.controller_factory = controller_factory
        self.check_interval = check_interval
        self.max_workers = max_workers
        self.status_file = Path(status_file) if status_file else None
        self.dry_run = dry_run

        # Farms to reconcile, keyed namespace/name
        self.farms: dict[str, FarmController] = {}

        self._pool_locks: dict[str, asyncio.Lock] = {}
        self._stop: Optional[asyncio.Event] = None
        self._shutdown = False
        self._monitor_tasks: dict[str, asyncio.Task] = {}

    def request_shutdown(self) -> None:
        """Handle shutdown signals."""
        logger.info("Shutdown requested, finishing current cycle...")
        self._shutdown = True
        if self._stop is not None:
            self._stop.set()

    def load_farms_from_directory(self, directory: str) -> int:
        """
        Load farms from a directory.

        Args:
            directory: Path to directory containing YAML files

        Returns:
            Number of farms loaded successfully
        """
        farms = ConfigLoader.load_multiple_from_directory(directory)
        loaded_count = sum(1 for farm in farms if self.add_farm(farm))
        logger.info(f"Successfully loaded {loaded_count}/{len(farms)} farms")
        return loaded_count

    def add_farm(self, farm: BuildFarm) -> bool:
        """
        Validate a farm and start managing it.

        Returns:
            True if the farm was added
        """
        validation = ConfigValidator.validate(farm)
        if not validation.valid:
            logger.error(f"Invalid farm '{farm.metadata.name}': {validation.errors}")
            return False
        if validation.warnings:
            logger.warning(f"Farm '{farm.metadata.name}' has warnings: {validation.warnings}")

        if farm.key in self.farms:
            logger.warning(f"Farm {farm.key} already managed, keeping the existing controller")
            return False

        self.farms[farm.key] = self.controller_factory(farm)
        logger.info(f"Added farm: {farm.key}")
        return True

    async def remove_farm(self, name: str, namespace: str = "default") -> bool:
        """
        Stop managing a farm and close its clients. Cluster resources are left in place.

        Returns:
            True if the farm was removed
        """
        key = f"{namespace}/{name}"
        controller = self.farms.pop(key, None)
        if controller is None:
            return False
        task = self._monitor_tasks.pop(key, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await controller.close()
        logger.info(f"Removed farm: {key}")
        return True

    def signal_demand(self, name: str, namespace: str = "default", count: int = 1) -> bool:
        controller = self.farms.get(f"{namespace}/{name}")
        if controller is None:
            return False
        controller.signal_demand(count)
        return True

    def _pool_lock(self, controller: FarmController) -> asyncio.Lock:
        cluster = controller.farm.spec.cluster
        key = f"{cluster.project}/{cluster.location}/{cluster.name}/{controller.pool.name}"
        if key not in self._pool_locks:
            self._pool_locks[key] = asyncio.Lock()
        return self._pool_locks[key]

    async def _reconcile_farm(self, controller: FarmController, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            async with self._pool_lock(controller):
                try:
                    status = await controller.reconcile_once()
                    logger.debug(f"Farm {controller.key}: {status.phase}")
                except Exception as e:
                    logger.error(f"Error reconciling farm {controller.key}: {e}", exc_info=True)

    async def run_cycle(self) -> None:
        """Run one reconcile cycle for all farms."""
        if not self.farms:
            logger.debug("No farms to reconcile")
            return

        logger.debug(f"Running reconcile cycle for {len(self.farms)} farms")
        start_time = time.monotonic()

        semaphore = asyncio.Semaphore(self.max_workers)
        await asyncio.gather(*(
            self._reconcile_farm(controller, semaphore)
            for controller in list(self.farms.values())
        ))

        elapsed = time.monotonic() - start_time
        logger.debug(f"Reconcile cycle completed in {elapsed:.2f}s")
        self.write_status()

    def _start_monitors(self) -> None:
        for key, controller in self.farms.items():
            task = self._monitor_tasks.get(key)
            if task is None or task.done():
                self._monitor_tasks[key] = asyncio.create_task(controller.monitor.run(self._stop))

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for signal {signum}")

    async def run(self, once: bool = False) -> None:
        """
        Run the daemon main loop until shutdown is requested.

        Args:
            once: Run a single cycle and return
        """
        logger.info(
            f"buildfarm daemon starting (check_interval={self.check_interval}s, "
            f"max_workers={self.max_workers}, dry_run={self.dry_run})"
        )
        logger.info(f"Managing {len(self.farms)} farms")

        self._stop = asyncio.Event()
        if not once:
            self._install_signal_handlers()

        cycle_count = 0
        try:
            while not self._shutdown:
                cycle_count += 1
                logger.debug(f"Starting reconcile cycle #{cycle_count}")
                try:
                    await self.run_cycle()
                    self._start_monitors()
                except Exception as e:
                    logger.error(f"Error in daemon loop: {e}", exc_info=True)

                if once:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.check_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("buildfarm daemon shutting down")
            await self._cleanup()

    async def _cleanup(self) -> None:
        """Stop monitors and close clients."""
        if self._stop is not None:
            self._stop.set()
        tasks = list(self._monitor_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitor_tasks.clear()
        for controller in self.farms.values():
            await controller.close()
        self.write_status()
        logger.info("Cleanup complete")

    def statuses(self) -> dict[str, dict]:
        return {key: controller.status().to_dict() for key, controller in self.farms.items()}

    def write_status(self) -> None:
        """Rewrite the status file atomically."""
        if self.status_file is None:
            return
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.status_file.with_suffix(self.status_file.suffix + ".tmp")
            tmp.write_text(json.dumps(self.statuses(), indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.status_file)
        except OSError as e:
            logger.error(f"Failed to write status file {self.status_file}: {e}")

    def health_check(self) -> dict:
        """
        Get health status of the daemon.

        Returns:
            Dictionary with health information
        """
        return {
            "status": "healthy" if not self._shutdown else "shutting_down",
            "farms_count": len(self.farms),
            "dry_run": self.dry_run,
            "check_interval": self.check_interval,
            "max_workers": self.max_workers,
        }


class DaemonConfig:
    """Configuration for the daemon."""

    def __init__(
        self,
        check_interval: int = 60,
        max_workers: int = 4,
        dry_run: bool = False,
        in_cluster: bool = True,
        config_directory: Optional[str] = None,
        state_dir: Optional[str] = None,
        status_file: Optional[str] = None,
        kube_context: Optional[str] = None,
    ):
        """
        Initialize daemon configuration.

        Args:
            check_interval: Seconds between reconcile cycles
            max_workers: Farms reconciled concurrently
            dry_run: If True, don't mutate cluster or cloud resources
            in_cluster: If True, use in-cluster Kubernetes config
            config_directory: Directory containing BuildFarm YAML files
            state_dir: Directory for persisted cost decisions
            status_file: JSON file receiving farm status after each cycle
            kube_context: Kubeconfig context when not running in-cluster
        """
        self.check_interval = check_interval
        self.max_workers = max_workers
        self.dry_run = dry_run
        self.in_cluster = in_cluster
        self.config_directory = config_directory
        self.state_dir = state_dir
        self.status_file = status_file
        self.kube_context = kube_context


def create_daemon(config: DaemonConfig) -> BuildFarmDaemon:
    """
    Create and configure a buildfarm daemon.

    Args:
        config: Daemon configuration

    Returns:
        Configured BuildFarmDaemon instance
    """
    logger.info(f"Initializing Kubernetes client (in_cluster={config.in_cluster})...")
    k8s_client = K8sClient(in_cluster=config.in_cluster, context=config.kube_context)

    if not k8s_client.test_connection():
        logger.error("Failed to connect to Kubernetes API")
        raise RuntimeError("Cannot connect to Kubernetes API")

    logger.info("Successfully connected to Kubernetes API")

    def factory(farm: BuildFarm) -> FarmController:
        return create_controller(
            farm,
            k8s_client,
            state_dir=config.state_dir,
            dry_run=config.dry_run,
        )

    daemon = BuildFarmDaemon(
        controller_factory=factory,
        check_interval=config.check_interval,
        max_workers=config.max_workers,
        status_file=config.status_file,
        dry_run=config.dry_run,
    )

    if config.config_directory:
        logger.info(f"Loading farms from directory: {config.config_directory}")
        count = daemon.load_farms_from_directory(config.config_directory)
        if count == 0:
            logger.warning("No farms were loaded successfully")

    return daemon
