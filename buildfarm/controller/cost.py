"""Cost policy: decide when the pool runs and when it is parked."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from buildfarm.controller.schedule import ActiveHours
from buildfarm.types import ClusterPool, CostDecision
from buildfarm.utils.state import DecisionLog

logger = logging.getLogger(__name__)

COOLDOWN_REASON = "cooldown"


@dataclass(frozen=True)
class DemandSignal:
    """Demand observed by the controller in one cycle."""

    active_requests: int = 0
    workload_starting: bool = False


class CostPolicyEngine:
    """
    Computes the pool's target node count from demand, schedule and budget.

    Decisions are rate limited to one scale-direction change per cooldown
    window and recorded in the decision log whenever target or reason change.
    """

    def __init__(
        self,
        active_nodes: int = 1,
        idle_window_minutes: float = 30,
        cooldown_minutes: float = 10,
        hourly_budget: Optional[float] = None,
        decision_log: Optional[DecisionLog] = None,
    ):
        """
        Initialize cost policy engine.

        Args:
            active_nodes: Node count while there is demand
            idle_window_minutes: Minutes without demand before dropping to min_nodes
            cooldown_minutes: Minimum minutes between scale-direction changes
            hourly_budget: Maximum compute spend per hour (optional)
            decision_log: Log receiving decisions; in-memory when omitted
        """
        self.active_nodes = active_nodes
        self.idle_window = timedelta(minutes=idle_window_minutes)
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.hourly_budget = hourly_budget
        self.log = decision_log if decision_log is not None else DecisionLog()

        self._last_active: Optional[datetime] = None
        self._last_move_at: Optional[datetime] = None
        self._last_direction = 0
        self._restore()

    def _restore(self) -> None:
        """Recover rate-limit state from the persisted log."""
        for decision in self.log.history():
            if decision.direction != 0:
                self._last_direction = decision.direction
                self._last_move_at = decision.timestamp
                break

    def budget_ceiling(self, pool: ClusterPool) -> int:
        """Most nodes the budget affords, never below min_nodes."""
        cost = pool.machine_profile.hourly_cost
        if self.hourly_budget is None or not cost:
            return pool.max_nodes
        affordable = math.floor(self.hourly_budget / cost)
        return max(pool.min_nodes, min(pool.max_nodes, affordable))

    def _idle_since(self, pool: ClusterPool, now: datetime) -> datetime:
        if self._last_active is None:
            last = self.log.last()
            if last is not None and last.target_node_count == pool.min_nodes and last.direction <= 0:
                # Parked before a restart; stay parked until new demand
                self._last_active = min(last.timestamp, now) - self.idle_window
            else:
                self._last_active = now
        return self._last_active

    def decide(
        self,
        demand: DemandSignal,
        schedule: Optional[ActiveHours],
        pool: ClusterPool,
        now: datetime,
    ) -> CostDecision:
        """
        Decide the pool's target node count.

        Args:
            demand: Demand observed this cycle
            schedule: Active hours of the farm (optional)
            pool: Pool being decided on
            now: Current time

        Returns:
            CostDecision consumed by the PoolScaler
        """
        in_window, window = schedule.is_active(now) if schedule is not None else (False, None)

        if in_window:
            active_reason = f"active hours: {window}"
        elif demand.active_requests > 0:
            active_reason = f"{demand.active_requests} pending request(s)"
        elif demand.workload_starting:
            active_reason = "workload starting"
        else:
            active_reason = None

        if active_reason is not None:
            self._last_active = now
        idle_for = now - self._idle_since(pool, now)

        if active_reason is not None:
            target = max(pool.min_nodes, self.active_nodes)
            reason = active_reason
        elif idle_for <= self.idle_window:
            target = max(pool.min_nodes, self.active_nodes)
            reason = "within idle window"
        else:
            target = pool.min_nodes
            reason = f"idle longer than {int(self.idle_window.total_seconds() // 60)}m"

        ceiling = self.budget_ceiling(pool)
        if target > ceiling and ceiling < pool.max_nodes:
            target = ceiling
            reason = f"{reason}; budget ceiling {ceiling}"
        target = pool.clamp(target)

        last = self.log.last()
        previous = last.target_node_count if last is not None else pool.node_count
        direction = (target > previous) - (target < previous)

        if (
            direction != 0
            and self._last_direction != 0
            and direction != self._last_direction
            and self._last_move_at is not None
            and now - self._last_move_at <= self.cooldown
        ):
            logger.debug(
                f"Pool {pool.name}: holding {previous} node(s), wanted {target} ({reason})"
            )
            target, reason, direction = previous, COOLDOWN_REASON, 0

        if direction != 0:
            self._last_direction = direction
            self._last_move_at = now

        decision = CostDecision(
            timestamp=now,
            target_node_count=target,
            reason=reason,
            direction=direction,
        )

        if last is None or last.target_node_count != target or last.reason != reason:
            self.log.append(decision)
            logger.info(f"Pool {pool.name}: target {target} node(s) ({reason})")

        return decision
