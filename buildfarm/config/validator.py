"""Configuration validator for buildfarm."""

import logging
import math
from typing import Optional

import pytz
from pydantic import ValidationError

from buildfarm.config.models import BuildFarm

logger = logging.getLogger(__name__)


class ValidationResult:
    """Result of configuration validation."""

    def __init__(self, valid: bool, errors: Optional[list[str]] = None, warnings: Optional[list[str]] = None):
        """
        Initialize validation result.

        Args:
            valid: Whether the configuration is valid
            errors: List of validation errors
            warnings: List of validation warnings
        """
        self.valid = valid
        self.errors = errors or []
        self.warnings = warnings or []

    def __bool__(self) -> bool:
        """Return validation status."""
        return self.valid

    def __str__(self) -> str:
        """Return human-readable validation result."""
        lines = []
        if self.valid:
            lines.append("✓ Configuration is valid")
        else:
            lines.append("✗ Configuration is invalid")

        if self.errors:
            lines.append("\nErrors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("\nWarnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines)


class ConfigValidator:
    """Validate BuildFarm configuration beyond what the models enforce."""

    @staticmethod
    def validate(farm: BuildFarm) -> ValidationResult:
        """
        Validate a BuildFarm configuration.

        Args:
            farm: The BuildFarm to validate

        Returns:
            ValidationResult with any errors or warnings
        """
        errors: list[str] = []
        warnings: list[str] = []
        spec = farm.spec

        # Validate timezone strings
        for window in spec.cost.active_hours:
            try:
                pytz.timezone(window.timezone)
            except pytz.exceptions.UnknownTimeZoneError:
                errors.append(
                    f"Window '{window.name}': Invalid timezone '{window.timezone}'. "
                    "Use IANA timezone names (e.g., 'UTC', 'Europe/Berlin')"
                )

        # Workload shape against the machine profile
        machine = farm.machine_profile()
        requests = spec.workload.resources.requests.to_quantities()
        limits = spec.workload.resources.limits.to_quantities()

        if not limits.fits_within(machine.allocatable):
            errors.append(
                f"Workload limits ({spec.workload.resources.limits.cpu}, "
                f"{spec.workload.resources.limits.memory}) exceed the allocatable capacity of a "
                f"{machine.machine_type} node ({spec.pool.machine.cpu}, {spec.pool.machine.memory})"
            )
        elif spec.workload.replicas > 0:
            # A surge rollout runs one extra replica until an old one drains
            peak = spec.workload.replicas + 1
            capacity = spec.pool.max_nodes * machine.pods_per_node(requests)
            if capacity < peak:
                errors.append(
                    f"Pool ceiling of {spec.pool.max_nodes} node(s) fits {capacity} replica(s), "
                    f"but a rollout of {spec.workload.replicas} replica(s) needs {peak} with surge. "
                    "Raise maxNodes or lower the replica count"
                )

        if spec.workload.replicas > 1 and spec.storage.access_mode == "ReadWriteOnce":
            warnings.append(
                f"{spec.workload.replicas} replicas share ReadWriteOnce claim "
                f"'{spec.storage.claim_name}'; replicas on different nodes cannot mount it"
            )

        # Budget ceiling
        budget = spec.cost.hourly_budget
        hourly_cost = spec.pool.machine.hourly_cost
        if budget is not None:
            if not hourly_cost:
                warnings.append(
                    "hourlyBudget is set but machine.hourlyCost is not; the budget is ignored"
                )
            else:
                affordable = math.floor(budget / hourly_cost)
                if affordable < spec.pool.min_nodes:
                    errors.append(
                        f"hourlyBudget {budget} affords {affordable} node(s), "
                        f"below minNodes ({spec.pool.min_nodes})"
                    )
                elif affordable < spec.pool.active_nodes:
                    warnings.append(
                        f"hourlyBudget {budget} affords {affordable} node(s); "
                        f"activeNodes ({spec.pool.active_nodes}) will be capped"
                    )

        # Idle spend
        if spec.pool.min_nodes > 0:
            warnings.append(
                f"minNodes is {spec.pool.min_nodes}; the pool can never be parked at zero nodes"
            )

        if not spec.pool.machine.preemptible:
            warnings.append("Pool uses non-preemptible machines, which cost several times more")

        if spec.pool.disk.type == "pd-ssd":
            warnings.append("Pool boot disks use pd-ssd; pd-standard is the cheaper default")

        if spec.cost.idle_window_minutes < spec.cost.cooldown_minutes:
            warnings.append(
                f"idleWindowMinutes ({spec.cost.idle_window_minutes}) is shorter than "
                f"cooldownMinutes ({spec.cost.cooldown_minutes}); parking may be held back by the cooldown"
            )

        for window in spec.cost.active_hours:
            if window.dates and not window.days:
                warnings.append(
                    f"Window '{window.name}' uses specific dates without recurring days. "
                    "It will only apply on those specific dates."
                )

        if spec.image.username and not spec.image.password_env:
            warnings.append(
                f"Registry username '{spec.image.username}' is set without passwordEnv"
            )

        valid = len(errors) == 0
        return ValidationResult(valid=valid, errors=errors, warnings=warnings)

    @staticmethod
    def validate_from_dict(data: dict) -> ValidationResult:
        """
        Validate configuration from a dictionary.

        Args:
            data: Dictionary containing configuration

        Returns:
            ValidationResult with any errors or warnings
        """
        try:
            farm = BuildFarm.model_validate(data)
            return ConfigValidator.validate(farm)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = " -> ".join(str(x) for x in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
            return ValidationResult(valid=False, errors=errors)
