"""Health monitoring of the CI server."""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from buildfarm.controller.errors import HealthUnreachable
from buildfarm.types import HealthPhase, HealthRecord
from buildfarm.utils.time_utils import get_current_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthSnapshot:
    """Published view of a HealthRecord."""

    workload_id: str
    phase: HealthPhase
    consecutive_failures: int
    epoch: int
    timestamp: datetime
    suspended: bool = False


class HealthSlot:
    """
    Latest health snapshot of one workload.

    Only the monitor that first publishes may write; any number of readers
    see the last write.
    """

    def __init__(self):
        self._snapshot: Optional[HealthSnapshot] = None
        self._writer: Optional[object] = None
        self._lock = threading.Lock()

    def publish(self, writer: object, snapshot: HealthSnapshot) -> None:
        """
        Replace the snapshot.

        Raises:
            RuntimeError: If another writer already owns the slot
        """
        with self._lock:
            if self._writer is None:
                self._writer = writer
            elif self._writer is not writer:
                raise RuntimeError(f"Health slot of {snapshot.workload_id} already has a writer")
            self._snapshot = snapshot

    def read(self) -> Optional[HealthSnapshot]:
        with self._lock:
            return self._snapshot


class HealthMonitor:
    """Probes the workload and tracks its health phase per restart epoch."""

    def __init__(
        self,
        workload_id: str,
        url: str,
        cold_start_grace: float = 600,
        warm_start_grace: float = 180,
        failure_threshold: int = 3,
        interval: float = 15,
        timeout: float = 5,
        jitter: float = 0.2,
        http: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize health monitor.

        The monitor starts suspended; restart() begins the first epoch.

        Args:
            workload_id: namespace/name of the workload
            url: Health endpoint URL
            cold_start_grace: Seconds of unanswered probes tolerated after a cold start
            warm_start_grace: Seconds tolerated after a controller-initiated restart
            failure_threshold: Consecutive failures tolerated while Degraded
            interval: Seconds between probes
            timeout: Seconds before a probe counts as failed
            jitter: Random fraction added to or removed from each interval
            http: Optional shared HTTP client
            rng: Random source for jitter
        """
        self.url = url
        self.cold_start_grace = timedelta(seconds=cold_start_grace)
        self.warm_start_grace = timedelta(seconds=warm_start_grace)
        self.failure_threshold = failure_threshold
        self.interval = interval
        self.timeout = timeout
        self.jitter = jitter
        self.rng = rng or random.Random()

        self.record = HealthRecord(workload_id=workload_id)
        self.slot = HealthSlot()
        self._http = http
        self._owns_http = http is None
        self._suspended = True
        self._subscribers: list[Callable[[HealthUnreachable], None]] = []

    @property
    def phase(self) -> HealthPhase:
        return self.record.phase

    @property
    def suspended(self) -> bool:
        return self._suspended

    def subscribe(self, callback: Callable[[HealthUnreachable], None]) -> None:
        """Register a callback for unreachable alerts."""
        self._subscribers.append(callback)

    def grace_period(self) -> timedelta:
        return self.cold_start_grace if self.record.cold_start else self.warm_start_grace

    def restart(self, now: datetime, cold: bool = True) -> None:
        """
        Start a new epoch in Starting.

        Args:
            now: Time the workload (re)started
            cold: True after scale-up from zero or controller boot
        """
        record = self.record
        record.epoch += 1
        record.cold_start = cold
        record.started_at = now
        record.consecutive_failures = 0
        self._suspended = False
        self._transition(HealthPhase.STARTING, now)
        logger.info(
            f"Health of {record.workload_id}: epoch {record.epoch} "
            f"({'cold' if cold else 'warm'} start, grace {int(self.grace_period().total_seconds())}s)"
        )

    def suspend(self, now: Optional[datetime] = None) -> None:
        """Stop probing while the workload is parked."""
        if self._suspended:
            return
        logger.info(f"Health of {self.record.workload_id}: probing suspended")
        self._suspended = True
        self._publish(now or get_current_datetime("UTC"))

    def observe(self, success: bool, now: datetime) -> HealthPhase:
        """
        Feed one probe result into the state machine.

        Args:
            success: Whether the probe succeeded
            now: Time of the probe

        Returns:
            Phase after the observation
        """
        record = self.record
        if self._suspended:
            return record.phase

        record.last_probe_time = now
        if record.started_at is None:
            record.started_at = now

        if success:
            record.consecutive_failures = 0
            if record.phase in (HealthPhase.STARTING, HealthPhase.DEGRADED):
                self._transition(HealthPhase.READY, now)
            return record.phase

        if record.phase == HealthPhase.STARTING:
            if now - record.started_at < self.grace_period():
                logger.debug(f"Health of {record.workload_id}: probe failed within grace period")
                return record.phase
            record.consecutive_failures = 1
            self._transition(HealthPhase.DEGRADED, now)
        elif record.phase == HealthPhase.READY:
            record.consecutive_failures = 1
            self._transition(HealthPhase.DEGRADED, now)
        elif record.phase == HealthPhase.DEGRADED:
            record.consecutive_failures += 1
            if record.consecutive_failures > self.failure_threshold:
                self._transition(HealthPhase.UNREACHABLE, now)
                self._alert(now)
            else:
                self._publish(now)
        else:
            record.consecutive_failures += 1
            self._publish(now)

        return record.phase

    def _transition(self, phase: HealthPhase, now: datetime) -> None:
        record = self.record
        if record.phase != phase:
            logger.info(
                f"Health of {record.workload_id}: {record.phase.value} -> {phase.value} "
                f"(failures: {record.consecutive_failures})"
            )
        record.phase = phase
        record.phase_since = now
        self._publish(now)

    def _publish(self, now: datetime) -> None:
        record = self.record
        self.slot.publish(self, HealthSnapshot(
            workload_id=record.workload_id,
            phase=record.phase,
            consecutive_failures=record.consecutive_failures,
            epoch=record.epoch,
            timestamp=now,
            suspended=self._suspended,
        ))

    def _alert(self, now: datetime) -> None:
        record = self.record
        alert = HealthUnreachable(
            workload_id=record.workload_id,
            epoch=record.epoch,
            consecutive_failures=record.consecutive_failures,
            since=now,
        )
        logger.error(
            f"Health of {record.workload_id}: unreachable after "
            f"{record.consecutive_failures} consecutive failures"
        )
        for callback in self._subscribers:
            callback(alert)

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def probe(self) -> bool:
        """GET the health endpoint; any 2xx answer is healthy."""
        try:
            response = await self.http.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Probe of {self.url} failed: {e}")
            return False
        return 200 <= response.status_code < 300

    async def probe_once(self, now: Optional[datetime] = None) -> HealthPhase:
        success = await self.probe()
        return self.observe(success, now or get_current_datetime("UTC"))

    def next_delay(self) -> float:
        """Probe interval with jitter applied."""
        spread = self.interval * self.jitter
        return max(0.0, self.interval + self.rng.uniform(-spread, spread))

    async def run(self, stop: asyncio.Event) -> None:
        """Probe periodically until stop is set."""
        logger.debug(f"Health monitor for {self.record.workload_id} started ({self.url})")
        while not stop.is_set():
            if not self._suspended:
                try:
                    await self.probe_once()
                except Exception as e:
                    logger.error(f"Error probing {self.record.workload_id}: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
        logger.debug(f"Health monitor for {self.record.workload_id} stopped")

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
