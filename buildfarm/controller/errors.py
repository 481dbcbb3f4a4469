"""Typed failures raised by the buildfarm controllers."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class FarmError(Exception):
    """Base class for controller failures. Carries the entity and its last known state."""

    def __init__(self, message: str, entity: str, last_state: Optional[str] = None):
        super().__init__(message)
        self.entity = entity
        self.last_state = last_state

    def __str__(self) -> str:
        message = super().__str__()
        if self.last_state is not None:
            return f"{message} [{self.entity}, last state: {self.last_state}]"
        return f"{message} [{self.entity}]"


class StorageTimeoutError(FarmError):
    """A volume claim never bound within the bind timeout."""

    pass


class PublishError(FarmError):
    """The workload image could not be published."""

    def __init__(self, message: str, entity: str, last_state: Optional[str] = None, permanent: bool = False):
        super().__init__(message, entity, last_state)
        self.permanent = permanent


class ScaleConflict(FarmError):
    """A pool resize kept colliding with another operation on the same pool."""

    def __init__(self, message: str, entity: str, last_state: Optional[str] = None, attempts: int = 0):
        super().__init__(message, entity, last_state)
        self.attempts = attempts


class ScaleTimeoutError(FarmError):
    """An issued pool operation exceeded its wall-clock timeout."""

    pass


class UnschedulableSpecError(FarmError):
    """The workload spec can never be scheduled on the pool's machines."""

    pass


@dataclass(frozen=True)
class HealthUnreachable:
    """Alert raised when a workload exceeds its failure threshold. Not an exception."""

    workload_id: str
    epoch: int
    consecutive_failures: int
    since: datetime
