"""Elastic node pool scaling for buildfarm."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from buildfarm.cloud.node_pools import NodePoolBusyError, NodePoolClient
from buildfarm.controller.errors import ScaleConflict, ScaleTimeoutError
from buildfarm.k8s.resources import ClusterResources
from buildfarm.types import ClusterPool, PoolPhase, PoolState
from buildfarm.utils.time_utils import get_current_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolEvent:
    """Pool readiness change delivered to subscribers."""

    pool_name: str
    ready: bool
    node_count: int
    ready_nodes: int
    timestamp: datetime


@dataclass
class ScaleOperation:
    """An issued resize that has not completed yet."""

    name: str
    target: int
    previous: int
    issued_at: datetime
    create: bool = False


class PoolScaler:
    """
    Converges a pool's node count toward the cost policy's target.

    The scaler is the only writer of ClusterPool.node_count.
    """

    def __init__(
        self,
        node_pools: NodePoolClient,
        resources: ClusterResources,
        conflict_attempts: int = 5,
        conflict_backoff: float = 2,
        conflict_backoff_max: float = 60,
        operation_timeout: float = 900,
        dry_run: bool = False,
    ):
        """
        Initialize pool scaler.

        Args:
            node_pools: GKE node pool client
            resources: Cluster resource operations (node readiness)
            conflict_attempts: Attempts when the pool is busy with another operation
            conflict_backoff: Initial wait between conflicting attempts in seconds
            conflict_backoff_max: Largest wait between conflicting attempts in seconds
            operation_timeout: Seconds an issued resize may run before it is reported
            dry_run: If True, log resizes without issuing them
        """
        self.node_pools = node_pools
        self.resources = resources
        self.conflict_attempts = conflict_attempts
        self.conflict_backoff = conflict_backoff
        self.conflict_backoff_max = conflict_backoff_max
        self.operation_timeout = timedelta(seconds=operation_timeout)
        self.dry_run = dry_run

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._in_flight: dict[str, ScaleOperation] = {}
        self._queued: dict[str, int] = {}
        self._demand: dict[str, int] = {}
        self._ready: dict[str, bool] = {}
        self._known_pools: set[str] = set()
        self._subscribers: list[Callable[[PoolEvent], None]] = []

    def _lock_for(self, pool_name: str) -> threading.Lock:
        with self._locks_guard:
            if pool_name not in self._locks:
                self._locks[pool_name] = threading.Lock()
            return self._locks[pool_name]

    def subscribe(self, callback: Callable[[PoolEvent], None]) -> None:
        """Register a callback for pool readiness events."""
        self._subscribers.append(callback)

    def report_demand(self, pool_name: str, nodes: int) -> None:
        """Record how many nodes the workload currently needs on the pool."""
        self._demand[pool_name] = max(0, nodes)

    def demand(self, pool_name: str) -> int:
        return self._demand.get(pool_name, 0)

    def in_flight(self, pool_name: str) -> Optional[ScaleOperation]:
        return self._in_flight.get(pool_name)

    def cancel_queued(self, pool_name: str) -> bool:
        """
        Drop a queued target that has not been issued.

        Issued operations cannot be cancelled; they run to completion.

        Returns:
            True if a queued target was dropped
        """
        with self._lock_for(pool_name):
            dropped = self._queued.pop(pool_name, None)
        if dropped is not None:
            logger.info(f"Cancelled queued resize of pool {pool_name} to {dropped}")
            return True
        return False

    def effective_target(self, pool: ClusterPool, target: int) -> int:
        """Clamp the target into pool limits and never below reported demand."""
        floor = self._demand.get(pool.name, 0)
        return pool.clamp(max(target, floor))

    def reconcile(self, pool: ClusterPool, target: int, now: Optional[datetime] = None) -> PoolState:
        """
        Converge the pool toward the target node count.

        Args:
            pool: Pool record (node_count is updated when a resize completes)
            target: Node count requested by the cost policy
            now: Current time (defaults to now)

        Returns:
            PoolState after this step

        Raises:
            ScaleConflict: If the pool stayed busy for every attempt
            ScaleTimeoutError: If an issued resize exceeded the operation timeout
            NodePoolError: If the node pool API fails otherwise
        """
        if now is None:
            now = get_current_datetime("UTC")

        with self._lock_for(pool.name):
            if pool.name not in self._known_pools and self._adopt(pool, now):
                return self._state(pool, PoolPhase.SCALING, now)

            effective = self.effective_target(pool, target)
            if effective != pool.clamp(target):
                logger.info(
                    f"Pool {pool.name}: holding at {effective} node(s), "
                    f"workload still needs {self._demand.get(pool.name, 0)}"
                )

            operation = self._in_flight.get(pool.name)
            if operation is not None:
                if not self._poll(pool, operation, now):
                    if effective != operation.target:
                        self._queued[pool.name] = effective
                    elif pool.name in self._queued:
                        del self._queued[pool.name]
                    return self._state(pool, PoolPhase.SCALING, now)
                if pool.name not in self._known_pools:
                    # Create failed; the next step creates the pool again
                    return self._state(pool, PoolPhase.SCALING, now)
                queued = self._queued.pop(pool.name, None)
                if queued is not None:
                    effective = self.effective_target(pool, queued)

            if effective == pool.node_count:
                phase = PoolPhase.PARKED if pool.parked else PoolPhase.STABLE
                return self._state(pool, phase, now)

            if self.dry_run:
                logger.info(
                    f"[DRY-RUN] Would resize pool {pool.name} from {pool.node_count} to {effective}"
                )
                return self._state(pool, PoolPhase.STABLE, now)

            self._issue(pool, effective, now)
            return self._state(pool, PoolPhase.SCALING, now)

    def _issue(self, pool: ClusterPool, target: int, now: datetime, previous: Optional[int] = None) -> None:
        if previous is None:
            previous = pool.node_count
        retrying = Retrying(
            stop=stop_after_attempt(self.conflict_attempts),
            wait=wait_exponential(
                multiplier=self.conflict_backoff,
                min=self.conflict_backoff,
                max=self.conflict_backoff_max,
            ),
            retry=retry_if_exception_type(NodePoolBusyError),
            before_sleep=lambda state: logger.warning(
                f"Pool {pool.name} is busy with another operation "
                f"(attempt {state.attempt_number}/{self.conflict_attempts}), retrying"
            ),
        )
        try:
            for attempt in retrying:
                with attempt:
                    operation_name = self.node_pools.set_size(pool.name, target)
        except RetryError as e:
            raise ScaleConflict(
                f"Pool stayed busy for {self.conflict_attempts} attempts: {e.last_attempt.exception()}",
                entity=f"NodePool/{pool.name}",
                last_state=f"{pool.node_count} node(s)",
                attempts=self.conflict_attempts,
            ) from e.last_attempt.exception()

        self._in_flight[pool.name] = ScaleOperation(
            name=operation_name,
            target=target,
            previous=previous,
            issued_at=now,
        )
        logger.info(f"Pool {pool.name}: resizing {previous} -> {target} ({operation_name})")

    def _poll(self, pool: ClusterPool, operation: ScaleOperation, now: datetime) -> bool:
        """Return True once the in-flight operation has finished."""
        status = self.node_pools.get_operation(operation.name)
        if not status.done:
            running = now - operation.issued_at
            if running > self.operation_timeout:
                raise ScaleTimeoutError(
                    f"Resize to {operation.target} still running after "
                    f"{int(running.total_seconds())}s ({operation.name})",
                    entity=f"NodePool/{pool.name}",
                    last_state=f"{pool.node_count} -> {operation.target}",
                )
            return False

        del self._in_flight[pool.name]
        if status.error:
            if operation.create:
                logger.error(f"Pool {pool.name}: create failed: {status.error}")
                self._known_pools.discard(pool.name)
            else:
                logger.error(
                    f"Pool {pool.name}: resize to {operation.target} failed: {status.error}"
                )
            return True

        pool.node_count = pool.clamp(operation.target)
        logger.info(f"Pool {pool.name}: resize to {pool.node_count} complete")
        return True

    def _state(self, pool: ClusterPool, phase: PoolPhase, now: datetime) -> PoolState:
        ready_nodes = self.resources.count_ready_nodes(pool.name) if pool.node_count > 0 else 0
        ready = pool.node_count > 0 and ready_nodes > 0
        if self._ready.get(pool.name) != ready:
            self._ready[pool.name] = ready
            self._emit(PoolEvent(
                pool_name=pool.name,
                ready=ready,
                node_count=pool.node_count,
                ready_nodes=ready_nodes,
                timestamp=now,
            ))

        operation = self._in_flight.get(pool.name)
        return PoolState(
            pool_name=pool.name,
            phase=phase,
            node_count=pool.node_count,
            ready_nodes=ready_nodes,
            in_flight_target=operation.target if operation else None,
            queued_target=self._queued.get(pool.name),
        )

    def _emit(self, event: PoolEvent) -> None:
        logger.info(
            f"Pool {event.pool_name} is {'ready' if event.ready else 'not ready'} "
            f"({event.ready_nodes}/{event.node_count} node(s) ready)"
        )
        for callback in self._subscribers:
            callback(event)

    def _adopt(self, pool: ClusterPool, now: datetime) -> bool:
        """
        Create the pool on first use, or adopt the size of an existing one.

        Returns:
            True if a create or corrective resize was issued
        """
        if self.node_pools.pool_exists(pool.name):
            observed = self.resources.count_pool_nodes(pool.name)
            pool.node_count = pool.clamp(observed)
            self._known_pools.add(pool.name)
            logger.info(f"Pool {pool.name}: adopted with {observed} node(s)")
            if observed == pool.node_count:
                return False

            logger.warning(
                f"Pool {pool.name}: {observed} node(s) outside "
                f"[{pool.min_nodes}, {pool.max_nodes}], resizing to {pool.node_count}"
            )
            if self.dry_run:
                return False
            self._issue(pool, pool.node_count, now, previous=observed)
            return True

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would create pool {pool.name} with {pool.node_count} node(s)")
            self._known_pools.add(pool.name)
            return False

        operation_name = self.node_pools.create_pool(pool)
        self._in_flight[pool.name] = ScaleOperation(
            name=operation_name,
            target=pool.node_count,
            previous=pool.node_count,
            issued_at=now,
            create=True,
        )
        self._known_pools.add(pool.name)
        return True
