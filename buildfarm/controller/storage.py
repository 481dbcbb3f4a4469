"""Persistent volume provisioning for buildfarm."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from kubernetes.utils import parse_quantity

from buildfarm.controller.errors import StorageTimeoutError
from buildfarm.k8s.resources import ClusterResources
from buildfarm.types import BoundState, PersistentVolumeClaim
from buildfarm.utils.time_utils import get_current_datetime

logger = logging.getLogger(__name__)


@dataclass
class _VolumeRecord:
    state: BoundState
    requested_size: str
    storage_class: str
    create_issued: bool = False
    pending_since: Optional[datetime] = None


class StorageProvisioner:
    """Ensures the CI server's claim exists and is bound before anything is scheduled."""

    def __init__(self, resources: ClusterResources, bind_timeout: float = 300):
        """
        Initialize storage provisioner.

        Args:
            resources: Cluster resource operations
            bind_timeout: Seconds a claim may stay Pending before it is reported Lost
        """
        self.resources = resources
        self.bind_timeout = timedelta(seconds=bind_timeout)
        self._records: dict[str, _VolumeRecord] = {}
        self._lock = threading.Lock()

    def state_of(self, claim: PersistentVolumeClaim) -> BoundState:
        """Last known state of a claim without touching the cluster."""
        record = self._records.get(claim.key)
        return record.state if record else BoundState.UNBOUND

    def ensure_volume(self, claim: PersistentVolumeClaim, now: Optional[datetime] = None) -> BoundState:
        """
        Make sure the claim exists and report its binding state.

        Args:
            claim: Desired claim
            now: Current time (defaults to now)

        Returns:
            The claim's BoundState; claim.bound_state is updated to match

        Raises:
            StorageTimeoutError: If the claim stayed Pending beyond the bind timeout
            ClusterResourceError: If the cluster API call fails
        """
        if now is None:
            now = get_current_datetime("UTC")

        with self._lock:
            record = self._records.get(claim.key)
            if (
                record is not None
                and record.state == BoundState.BOUND
                and record.requested_size == claim.requested_size
                and record.storage_class == claim.storage_class
            ):
                claim.bound_state = BoundState.BOUND
                return BoundState.BOUND

            if record is None:
                record = _VolumeRecord(
                    state=BoundState.UNBOUND,
                    requested_size=claim.requested_size,
                    storage_class=claim.storage_class,
                )
                self._records[claim.key] = record

            state = self._observe(claim, record, now)
            claim.bound_state = state
            return state

    def _observe(self, claim: PersistentVolumeClaim, record: _VolumeRecord, now: datetime) -> BoundState:
        status = self.resources.read_claim(claim.name, claim.namespace)

        if status is None:
            if not record.create_issued:
                self.resources.create_claim(claim)
                record.create_issued = True
                record.pending_since = now
                logger.info(f"Requested claim {claim.key}; waiting for it to bind")
            # The create may not be visible yet; never re-issue it
            return self._pending(claim, record, now)

        record.create_issued = True
        if status.size and status.size != claim.requested_size:
            logger.warning(
                f"Claim {claim.key} exists with size {status.size}, spec asks for "
                f"{claim.requested_size}; claim size is immutable, use resize_volume"
            )
        record.requested_size = claim.requested_size
        record.storage_class = claim.storage_class

        if status.phase == BoundState.BOUND.value:
            if record.state != BoundState.BOUND:
                logger.info(f"Claim {claim.key} is bound")
            record.state = BoundState.BOUND
            record.pending_since = None
            return BoundState.BOUND

        if status.phase == BoundState.LOST.value:
            if record.state != BoundState.LOST:
                logger.error(f"Claim {claim.key} lost its volume")
            record.state = BoundState.LOST
            record.pending_since = None
            return BoundState.LOST

        return self._pending(claim, record, now)

    def _pending(self, claim: PersistentVolumeClaim, record: _VolumeRecord, now: datetime) -> BoundState:
        if record.state == BoundState.LOST or record.pending_since is None:
            # Fresh attempt after a timeout
            record.pending_since = now
        record.state = BoundState.PENDING

        waited = now - record.pending_since
        if waited > self.bind_timeout:
            record.state = BoundState.LOST
            claim.bound_state = BoundState.LOST
            raise StorageTimeoutError(
                f"Claim did not bind within {int(self.bind_timeout.total_seconds())}s",
                entity=f"PersistentVolumeClaim/{claim.key}",
                last_state=BoundState.PENDING.value,
            )

        logger.debug(f"Claim {claim.key} pending for {int(waited.total_seconds())}s")
        return BoundState.PENDING

    def resize_volume(self, claim: PersistentVolumeClaim, new_size: str) -> None:
        """
        Grow a claim. This is the only way its size changes.

        Raises:
            ValueError: If the new size is not larger than the current size
            ClusterResourceError: If the cluster API call fails
        """
        if parse_quantity(new_size) <= parse_quantity(claim.requested_size):
            raise ValueError(
                f"Claim {claim.key} can only grow: {claim.requested_size} -> {new_size}"
            )
        with self._lock:
            self.resources.resize_claim(claim.name, claim.namespace, new_size)
            claim.requested_size = new_size
            record = self._records.get(claim.key)
            if record is not None:
                record.requested_size = new_size

    def teardown(self, claim: PersistentVolumeClaim) -> None:
        """
        Delete the claim and forget it. Only called on explicit teardown.

        Raises:
            ClusterResourceError: If the cluster API call fails
        """
        with self._lock:
            self.resources.delete_claim(claim.name, claim.namespace)
            self._records.pop(claim.key, None)
            claim.bound_state = BoundState.UNBOUND
        logger.warning(f"Claim {claim.key} deleted; its data is gone")

    def forget(self, claim: PersistentVolumeClaim) -> None:
        """Drop cached state so the next ensure_volume re-reads the cluster."""
        with self._lock:
            self._records.pop(claim.key, None)
