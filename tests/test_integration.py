"""End-to-end integration tests for buildfarm."""

import time
from datetime import timedelta
from typing import Optional
from unittest.mock import MagicMock

import httpx
import pytest

from buildfarm.cloud.node_pools import OperationStatus
from buildfarm.config.models import BuildFarm
from buildfarm.controller.cost import CostPolicyEngine
from buildfarm.controller.daemon import FarmController
from buildfarm.controller.health import HealthMonitor, HealthSnapshot
from buildfarm.controller.pool import PoolScaler
from buildfarm.controller.publisher import ImagePublisher
from buildfarm.controller.schedule import ActiveHours
from buildfarm.controller.storage import StorageProvisioner
from buildfarm.controller.workload import WorkloadReconciler
from buildfarm.k8s.resources import SPEC_HASH_ANNOTATION, ClaimStatus, DeploymentStatus
from buildfarm.registry.client import RegistryAuthError, RegistryClient
from buildfarm.types import BoundState, HealthPhase
from buildfarm.utils.state import DecisionLog

DIGEST = "sha256:" + "e" * 64


class FakeNodePools:
    """GKE node pool API where every resize needs two polls to finish."""

    def __init__(self, events: list[str], polls_to_finish: int = 2):
        self.events = events
        self.polls_to_finish = polls_to_finish
        self.size = 0
        self.resizes: list[int] = []
        self._operations: dict[str, list[int]] = {}

    def pool_exists(self, pool_name: str) -> bool:
        return True

    def set_size(self, pool_name: str, node_count: int) -> str:
        name = f"operation-{len(self.resizes) + 1}"
        self.resizes.append(node_count)
        self._operations[name] = [node_count, 0]
        return name

    def get_operation(self, operation_name: str) -> OperationStatus:
        operation = self._operations[operation_name]
        operation[1] += 1
        if operation[1] < self.polls_to_finish:
            return OperationStatus(name=operation_name, done=False)
        del self._operations[operation_name]
        self.size = operation[0]
        self.events.append(f"pool-resized:{self.size}")
        return OperationStatus(name=operation_name, done=True)


class FakeCluster:
    """Kubernetes API where claims bind on the first read after creation and pods follow patches one read behind."""

    def __init__(self, node_pools: FakeNodePools, events: list[str]):
        self.node_pools = node_pools
        self.events = events
        self.calls: list[str] = []
        self.claim_created = False
        self.claim_bound = False
        self.deployment: Optional[dict] = None

    def read_claim(self, name, namespace):
        self.calls.append("read_claim")
        if not self.claim_created:
            return None
        if not self.claim_bound:
            self.claim_bound = True
            self.events.append("claim-bound")
        return ClaimStatus(phase="Bound", size="10Gi", storage_class="standard")

    def create_claim(self, claim, labels=None):
        self.calls.append("create_claim")
        self.claim_created = True

    def count_ready_nodes(self, pool_name):
        self.calls.append("count_ready_nodes")
        return self.node_pools.size

    def count_pool_nodes(self, pool_name):
        self.calls.append("count_pool_nodes")
        return self.node_pools.size

    def read_deployment(self, name, namespace):
        self.calls.append("read_deployment")
        if self.deployment is None:
            return None
        spec = self.deployment["spec"]
        running = self.deployment["running"]
        status = DeploymentStatus(
            spec_replicas=spec,
            replicas=running,
            ready_replicas=running,
            updated_replicas=running,
            available_replicas=running,
            unavailable_replicas=max(0, spec - running),
            spec_hash=self.deployment["hash"],
            generation=1,
            observed_generation=1,
        )
        self.deployment["running"] = spec
        return status

    def create_deployment(self, namespace, body):
        self.calls.append("create_deployment")
        self.events.append("deployment-created")
        self.deployment = {
            "spec": body["spec"]["replicas"],
            "running": body["spec"]["replicas"],
            "hash": body["metadata"]["annotations"][SPEC_HASH_ANNOTATION],
        }

    def patch_deployment(self, name, namespace, body):
        self.calls.append("patch_deployment")
        self.deployment["spec"] = body["spec"]["replicas"]
        annotations = body.get("metadata", {}).get("annotations", {})
        if SPEC_HASH_ANNOTATION in annotations:
            self.deployment["hash"] = annotations[SPEC_HASH_ANNOTATION]

    def restart_deployment(self, name, namespace, when):
        self.calls.append("restart_deployment")

    def ensure_service(self, namespace, body):
        self.calls.append("ensure_service")
        return False


@pytest.fixture
def events():
    return []


@pytest.fixture
def node_pools(events):
    return FakeNodePools(events)


@pytest.fixture
def cluster(node_pools, events):
    return FakeCluster(node_pools, events)


@pytest.fixture
def registry():
    registry = MagicMock(spec=RegistryClient)
    registry.resolve_digest.return_value = DIGEST
    registry.local_image_id.return_value = "sha256:local"
    registry.local_repo_digest.return_value = None
    registry.push.return_value = DIGEST
    return registry


@pytest.fixture
def http():
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))


def build_controller(
    farm: BuildFarm, cluster, node_pools, registry, http, backoff: float = 0
) -> FarmController:
    spec = farm.spec
    scaler = PoolScaler(node_pools, cluster, conflict_backoff=0)
    return FarmController(
        farm=farm,
        pool=farm.to_pool(),
        storage=StorageProvisioner(cluster, bind_timeout=spec.storage.bind_timeout_seconds),
        publisher=ImagePublisher(registry, backoff_min=backoff, backoff_max=backoff),
        scaler=scaler,
        reconciler=WorkloadReconciler(cluster, scaler),
        monitor=HealthMonitor(
            workload_id=f"{farm.metadata.namespace}/{spec.workload.name}",
            url=farm.health_url(),
            cold_start_grace=spec.health.cold_start_grace_seconds,
            warm_start_grace=spec.health.warm_start_grace_seconds,
            failure_threshold=spec.health.failure_threshold,
            http=http,
        ),
        cost=CostPolicyEngine(
            active_nodes=spec.pool.active_nodes,
            idle_window_minutes=spec.cost.idle_window_minutes,
            cooldown_minutes=spec.cost.cooldown_minutes,
            decision_log=DecisionLog(),
        ),
        schedule=ActiveHours(spec.cost.active_hours),
    )


def minutes(now, n):
    return now + timedelta(minutes=n)


async def provision(controller, now, start):
    """Cycle once a minute from start until the workload is Ready; return the next free minute."""
    minute = start
    for _ in range(10):
        status = await controller.reconcile_once(minutes(now, minute))
        minute += 1
        if status.workload_phase in ("RollingOut", "Running"):
            break
    else:
        pytest.fail("workload was never scheduled")

    assert controller.monitor.phase == HealthPhase.STARTING
    phase = await controller.monitor.probe_once(minutes(now, minute))
    assert phase == HealthPhase.READY
    minute += 1
    return minute


class TestEndToEnd:
    """End-to-end reconcile scenarios."""

    @pytest.mark.asyncio
    async def test_scenario_a_cold_provisioning(self, farm, cluster, node_pools, registry, http, events, now):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()

        first = await controller.reconcile_once(now)
        assert first.workload_phase == "Waiting"
        assert first.target_node_count == 1
        assert first.volume_state == "Pending"
        assert first.health_phase == "Starting"

        second = await controller.reconcile_once(minutes(now, 1))
        assert second.volume_state == "Bound"
        assert second.workload_phase == "Waiting"
        assert second.workload_reason == "pool ci-pool has no nodes"

        third = await controller.reconcile_once(minutes(now, 2))
        assert third.node_count == 1
        assert third.workload_phase == "RollingOut"
        assert third.image == f"gcr.io/acme-ci/jenkins@{DIGEST}"
        assert third.health_phase == "Starting"

        assert events == ["claim-bound", "pool-resized:1", "deployment-created"]

        probed_at = minutes(now, 3)
        assert await controller.monitor.probe_once(probed_at) == HealthPhase.READY
        started_at = controller.monitor.record.started_at
        assert probed_at - started_at < controller.monitor.grace_period()

        fourth = await controller.reconcile_once(minutes(now, 4))
        assert fourth.workload_phase == "Running"
        assert fourth.health_phase == "Ready"
        assert node_pools.resizes == [1]

    @pytest.mark.asyncio
    async def test_scenario_b_idle_park_and_reprovision(
        self, farm, cluster, node_pools, registry, http, events, now
    ):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        minute = await provision(controller, now, 0)
        assert (await controller.reconcile_once(minutes(now, minute))).workload_phase == "Running"

        # Idle beyond the 30 minute window: drain the workload, then park the pool
        reasons = []
        for minute in range(31, 45):
            status = await controller.reconcile_once(minutes(now, minute))
            reasons.append(status.workload_reason)
            assert status.target_node_count == 0
            if status.pool_phase == "Parked":
                break
        else:
            pytest.fail("pool was never parked")

        assert status.phase == "Parked"
        assert status.node_count == 0
        assert status.health_phase == "Parked"
        assert "draining 1 pod(s)" in reasons
        assert cluster.deployment["spec"] == 0
        assert node_pools.resizes == [1, 0]
        assert controller.cost.log.last().reason == "idle longer than 30m"

        # Parked: no cluster traffic at all
        calls_before = len(cluster.calls)
        parked = await controller.reconcile_once(minutes(now, 50))
        assert parked.phase == "Parked"
        assert len(cluster.calls) == calls_before

        # New demand brings everything back
        controller.signal_demand()
        waking = await controller.reconcile_once(minutes(now, 60))
        assert waking.target_node_count == 1
        assert waking.workload_phase == "Waiting"
        assert waking.volume_state == "Bound"

        await provision(controller, now, 61)
        assert node_pools.resizes == [1, 0, 1]
        assert cluster.deployment["spec"] == 1
        assert controller.monitor.record.epoch == 2
        assert events.count("deployment-created") == 1

    @pytest.mark.asyncio
    async def test_scenario_c_auth_failure(self, farm_data, cluster, node_pools, registry, http, events, now):
        farm_data["spec"]["image"]["source"] = "jenkins:local"
        farm = BuildFarm.model_validate(farm_data)
        registry.authenticate.side_effect = RegistryAuthError("unauthorized: authentication required")
        controller = build_controller(farm, cluster, node_pools, registry, http, backoff=60)
        controller.signal_demand()

        await controller.reconcile_once(now)

        started = time.monotonic()
        status = await controller.reconcile_once(minutes(now, 1))
        elapsed = time.monotonic() - started

        assert elapsed < 1
        assert status.phase == "Error"
        assert "Authentication failed" in status.last_error
        assert "Image/gcr.io/acme-ci/jenkins:lts" in status.last_error
        assert status.volume_state == BoundState.BOUND.value
        registry.authenticate.assert_awaited_once()
        registry.push.assert_not_awaited()

        # Still failing once the pool is up; the workload is never scheduled
        status = await controller.reconcile_once(minutes(now, 2))
        assert status.phase == "Error"
        assert node_pools.size == 1
        assert "deployment-created" not in events
        assert "create_deployment" not in cluster.calls
        assert "ensure_service" not in cluster.calls
        assert controller.monitor.suspended is True


class TestHealthSlot:
    """The controller follows the health monitor through its published slot."""

    @staticmethod
    def publish(monitor, phase, at, epoch=None):
        monitor.slot.publish(monitor, HealthSnapshot(
            workload_id=monitor.record.workload_id,
            phase=phase,
            consecutive_failures=0,
            epoch=monitor.record.epoch if epoch is None else epoch,
            timestamp=at,
        ))

    @pytest.mark.asyncio
    async def test_status_reports_published_phase(self, farm, cluster, node_pools, registry, http, now):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        minute = await provision(controller, now, 0)

        self.publish(controller.monitor, HealthPhase.DEGRADED, minutes(now, minute))
        status = await controller.reconcile_once(minutes(now, minute))

        assert status.health_phase == "Degraded"

    @pytest.mark.asyncio
    async def test_starting_snapshot_is_demand(self, farm, cluster, node_pools, registry, http, now):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        minute = await provision(controller, now, 0)

        ready = await controller.reconcile_once(minutes(now, minute))
        assert ready.decision_reason == "within idle window"

        self.publish(controller.monitor, HealthPhase.STARTING, minutes(now, minute + 1))
        starting = await controller.reconcile_once(minutes(now, minute + 1))

        assert starting.decision_reason == "workload starting"
        assert starting.health_phase == "Starting"

    @pytest.mark.asyncio
    async def test_unreachable_alert_restarts_current_epoch(
        self, farm, cluster, node_pools, registry, http, now
    ):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        minute = await provision(controller, now, 0)
        monitor = controller.monitor

        for second in range(4):
            monitor.observe(False, minutes(now, minute) + timedelta(seconds=second))
        assert monitor.slot.read().phase == HealthPhase.UNREACHABLE

        status = await controller.reconcile_once(minutes(now, minute + 1))

        assert "restart_deployment" in cluster.calls
        assert monitor.record.epoch == 2
        assert monitor.slot.read().epoch == 2
        assert status.health_phase == "Starting"

    @pytest.mark.asyncio
    async def test_alert_from_older_epoch_is_ignored(self, farm, cluster, node_pools, registry, http, now):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        minute = await provision(controller, now, 0)
        monitor = controller.monitor

        for second in range(4):
            monitor.observe(False, minutes(now, minute) + timedelta(seconds=second))
        # A newer epoch is published before the controller handles the alert
        self.publish(monitor, HealthPhase.STARTING, minutes(now, minute), epoch=monitor.record.epoch + 1)

        await controller.reconcile_once(minutes(now, minute + 1))

        assert "restart_deployment" not in cluster.calls
        assert monitor.record.epoch == 1

    @pytest.mark.asyncio
    async def test_parked_farm_reports_parked(self, farm, cluster, node_pools, registry, http, now):
        controller = build_controller(farm, cluster, node_pools, registry, http)
        controller.signal_demand()
        await provision(controller, now, 0)

        status = await controller.reconcile_once(minutes(now, 45))

        assert status.target_node_count == 0
        assert controller.monitor.slot.read().suspended is True
        assert status.health_phase == "Parked"
