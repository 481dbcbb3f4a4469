"""Tests for the pool scaler."""

import random
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from buildfarm.cloud.node_pools import NodePoolBusyError, NodePoolClient, OperationStatus
from buildfarm.controller.errors import ScaleConflict, ScaleTimeoutError
from buildfarm.controller.pool import PoolEvent, PoolScaler
from buildfarm.k8s.resources import ClusterResources
from buildfarm.types import PoolPhase


@pytest.fixture
def pool(farm):
    return farm.to_pool()


@pytest.fixture
def node_pools():
    node_pools = MagicMock(spec=NodePoolClient)
    node_pools.pool_exists.return_value = True
    node_pools.set_size.return_value = "operation-resize"
    node_pools.create_pool.return_value = "operation-create"
    node_pools.get_operation.return_value = OperationStatus(name="operation-resize", done=True)
    return node_pools


@pytest.fixture
def resources(pool):
    """Every node of the pool reports ready."""
    resources = MagicMock(spec=ClusterResources)
    resources.count_ready_nodes.side_effect = lambda name: pool.node_count
    resources.count_pool_nodes.side_effect = lambda name: pool.node_count
    return resources


@pytest.fixture
def scaler(node_pools, resources):
    return PoolScaler(node_pools, resources, conflict_attempts=3, conflict_backoff=0, operation_timeout=900)


def running(name="operation-resize"):
    return OperationStatus(name=name, done=False)


class TestAdoption:
    """Tests for first contact with a pool."""

    def test_adopts_existing_pool(self, scaler, node_pools, resources, pool, now):
        resources.count_pool_nodes.side_effect = None
        resources.count_pool_nodes.return_value = 1

        state = scaler.reconcile(pool, 1, now)

        assert pool.node_count == 1
        assert state.phase == PoolPhase.STABLE
        node_pools.create_pool.assert_not_called()
        node_pools.set_size.assert_not_called()

    def test_adoption_is_clamped(self, scaler, node_pools, resources, pool, now):
        """An oversized pool is recorded at max_nodes and resized down to it."""
        resources.count_pool_nodes.side_effect = None
        resources.count_pool_nodes.return_value = 3

        state = scaler.reconcile(pool, 2, now)

        assert pool.node_count == 2
        assert state.phase == PoolPhase.SCALING
        node_pools.set_size.assert_called_once_with(pool.name, 2)
        assert scaler.in_flight(pool.name).previous == 3

        state = scaler.reconcile(pool, 2, now + timedelta(seconds=30))
        assert state.phase == PoolPhase.STABLE
        assert node_pools.set_size.call_count == 1

    def test_adoption_counts_booting_nodes(self, scaler, node_pools, resources, pool, now):
        """A node that is still booting counts toward the adopted size."""
        resources.count_pool_nodes.side_effect = None
        resources.count_pool_nodes.return_value = 2
        resources.count_ready_nodes.side_effect = None
        resources.count_ready_nodes.return_value = 1

        state = scaler.reconcile(pool, 2, now)

        assert pool.node_count == 2
        assert state.ready_nodes == 1
        node_pools.set_size.assert_not_called()

    def test_dry_run_adoption_does_not_resize(self, node_pools, resources, pool, now):
        resources.count_pool_nodes.side_effect = None
        resources.count_pool_nodes.return_value = 5
        scaler = PoolScaler(node_pools, resources, dry_run=True)

        scaler.reconcile(pool, 2, now)

        assert pool.node_count == 2
        node_pools.set_size.assert_not_called()

    def test_creates_missing_pool(self, scaler, node_pools, pool, now):
        node_pools.pool_exists.return_value = False

        state = scaler.reconcile(pool, 1, now)

        node_pools.create_pool.assert_called_once_with(pool)
        assert state.phase == PoolPhase.SCALING
        assert scaler.in_flight(pool.name).name == "operation-create"

        # Next step waits for the create, then resizes
        scaler.reconcile(pool, 1, now + timedelta(seconds=30))
        node_pools.pool_exists.assert_called_once()
        node_pools.set_size.assert_called_once_with(pool.name, 1)

    def test_failed_create_is_issued_again(self, scaler, node_pools, pool, now):
        node_pools.pool_exists.return_value = False
        node_pools.get_operation.return_value = OperationStatus(
            name="operation-create", done=True, error="QUOTA_EXCEEDED"
        )

        scaler.reconcile(pool, 1, now)
        state = scaler.reconcile(pool, 1, now + timedelta(seconds=30))

        assert state.phase == PoolPhase.SCALING
        assert scaler.in_flight(pool.name) is None
        node_pools.set_size.assert_not_called()

        scaler.reconcile(pool, 1, now + timedelta(seconds=60))
        assert node_pools.create_pool.call_count == 2
        assert node_pools.pool_exists.call_count == 2
        node_pools.set_size.assert_not_called()

    def test_failed_resize_keeps_pool_known(self, scaler, node_pools, pool, now):
        node_pools.get_operation.return_value = OperationStatus(
            name="operation-resize", done=True, error="QUOTA_EXCEEDED"
        )

        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 1, now + timedelta(seconds=30))

        node_pools.pool_exists.assert_called_once()
        node_pools.create_pool.assert_not_called()

    def test_dry_run_never_creates(self, node_pools, resources, pool, now):
        node_pools.pool_exists.return_value = False
        scaler = PoolScaler(node_pools, resources, dry_run=True)

        scaler.reconcile(pool, 1, now)
        state = scaler.reconcile(pool, 1, now)

        node_pools.create_pool.assert_not_called()
        node_pools.set_size.assert_not_called()
        node_pools.pool_exists.assert_called_once()
        assert state.phase == PoolPhase.STABLE


class TestReconcile:
    """Tests for PoolScaler.reconcile."""

    def test_scale_up(self, scaler, node_pools, pool, now):
        state = scaler.reconcile(pool, 1, now)

        node_pools.set_size.assert_called_once_with(pool.name, 1)
        assert state.phase == PoolPhase.SCALING
        assert state.in_flight_target == 1
        assert pool.node_count == 0

        state = scaler.reconcile(pool, 1, now + timedelta(seconds=60))

        assert pool.node_count == 1
        assert state.phase == PoolPhase.STABLE
        assert state.ready_nodes == 1
        assert scaler.in_flight(pool.name) is None

    def test_parked(self, scaler, node_pools, pool, now):
        state = scaler.reconcile(pool, 0, now)

        assert state.phase == PoolPhase.PARKED
        node_pools.set_size.assert_not_called()

    def test_target_is_clamped(self, scaler, node_pools, pool, now):
        scaler.reconcile(pool, 10, now)
        node_pools.set_size.assert_called_once_with(pool.name, 2)

    def test_demand_floor(self, scaler, node_pools, pool, now):
        scaler.reconcile(pool, 2, now)
        scaler.reconcile(pool, 2, now)
        assert pool.node_count == 2
        node_pools.set_size.reset_mock()

        scaler.report_demand(pool.name, 2)
        state = scaler.reconcile(pool, 0, now)

        assert state.phase == PoolPhase.STABLE
        node_pools.set_size.assert_not_called()
        assert scaler.effective_target(pool, 0) == 2

        scaler.report_demand(pool.name, 0)
        scaler.reconcile(pool, 0, now)
        node_pools.set_size.assert_called_once_with(pool.name, 0)

    def test_queued_target(self, scaler, node_pools, pool, now):
        node_pools.get_operation.return_value = running()
        scaler.reconcile(pool, 1, now)

        state = scaler.reconcile(pool, 2, now + timedelta(seconds=10))

        assert state.phase == PoolPhase.SCALING
        assert state.in_flight_target == 1
        assert state.queued_target == 2
        node_pools.set_size.assert_called_once()

        node_pools.get_operation.return_value = OperationStatus(name="operation-resize", done=True)
        scaler.reconcile(pool, 2, now + timedelta(seconds=20))

        assert pool.node_count == 1
        node_pools.set_size.assert_called_with(pool.name, 2)
        assert scaler.in_flight(pool.name).target == 2

    def test_queued_target_dropped_when_back_to_in_flight(self, scaler, node_pools, pool, now):
        node_pools.get_operation.return_value = running()
        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 2, now)

        state = scaler.reconcile(pool, 1, now)
        assert state.queued_target is None

    def test_cancel_queued(self, scaler, node_pools, pool, now):
        node_pools.get_operation.return_value = running()
        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 2, now)

        assert scaler.cancel_queued(pool.name) is True
        assert scaler.cancel_queued(pool.name) is False
        # The issued resize keeps running
        assert scaler.in_flight(pool.name).target == 1

    def test_failed_operation_is_reissued(self, scaler, node_pools, pool, now):
        scaler.reconcile(pool, 1, now)
        node_pools.get_operation.return_value = OperationStatus(
            name="operation-resize", done=True, error="quota exceeded"
        )

        state = scaler.reconcile(pool, 1, now + timedelta(seconds=30))

        assert pool.node_count == 0
        assert node_pools.set_size.call_count == 2
        assert state.phase == PoolPhase.SCALING

    def test_operation_timeout(self, scaler, node_pools, pool, now):
        node_pools.get_operation.return_value = running()
        scaler.reconcile(pool, 1, now)

        scaler.reconcile(pool, 1, now + timedelta(seconds=900))
        with pytest.raises(ScaleTimeoutError) as exc_info:
            scaler.reconcile(pool, 1, now + timedelta(seconds=901))
        assert exc_info.value.entity == f"NodePool/{pool.name}"

    def test_dry_run_resize(self, node_pools, resources, pool, now):
        scaler = PoolScaler(node_pools, resources, dry_run=True)
        state = scaler.reconcile(pool, 1, now)
        node_pools.set_size.assert_not_called()
        assert state.phase == PoolPhase.STABLE


class TestConflicts:
    """Tests for busy-pool retries."""

    def test_conflict_then_success(self, scaler, node_pools, pool, now):
        node_pools.set_size.side_effect = [
            NodePoolBusyError("incompatible operation"),
            "operation-resize",
        ]

        state = scaler.reconcile(pool, 1, now)

        assert node_pools.set_size.call_count == 2
        assert state.in_flight_target == 1

    def test_conflict_exhausted(self, scaler, node_pools, pool, now):
        node_pools.set_size.side_effect = NodePoolBusyError("incompatible operation")

        with pytest.raises(ScaleConflict) as exc_info:
            scaler.reconcile(pool, 1, now)

        assert exc_info.value.attempts == 3
        assert exc_info.value.entity == f"NodePool/{pool.name}"
        assert node_pools.set_size.call_count == 3
        assert scaler.in_flight(pool.name) is None


class TestPoolEvents:
    """Tests for readiness events."""

    def test_ready_and_parked_events(self, scaler, pool, now):
        events: list[PoolEvent] = []
        scaler.subscribe(events.append)

        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 0, now)
        scaler.reconcile(pool, 0, now)

        assert [e.ready for e in events] == [False, True, False]
        assert events[1].node_count == 1
        assert events[1].ready_nodes == 1

    def test_nodes_not_ready_yet(self, scaler, resources, pool, now):
        events: list[PoolEvent] = []
        scaler.subscribe(events.append)
        resources.count_ready_nodes.side_effect = None
        resources.count_ready_nodes.return_value = 0

        scaler.reconcile(pool, 1, now)
        scaler.reconcile(pool, 1, now)

        assert pool.node_count == 1
        assert events
        assert all(not e.ready for e in events)


class TestPoolInvariants:
    """Randomized checks of pool bounds."""

    @pytest.mark.parametrize("seed", range(5))
    def test_node_count_stays_within_bounds(self, scaler, node_pools, pool, now, seed):
        rng = random.Random(seed)
        node_pools.get_operation.side_effect = lambda name: OperationStatus(
            name=name, done=rng.random() < 0.6
        )

        for step in range(200):
            if rng.random() < 0.2:
                scaler.report_demand(pool.name, rng.randint(0, 4))
            scaler.reconcile(pool, rng.randint(-3, 6), now + timedelta(seconds=step))
            assert pool.min_nodes <= pool.node_count <= pool.max_nodes
            for call in node_pools.set_size.call_args_list:
                assert pool.min_nodes <= call.args[1] <= pool.max_nodes
