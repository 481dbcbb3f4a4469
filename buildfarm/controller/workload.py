"""Workload reconciliation for buildfarm."""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from buildfarm.controller.errors import UnschedulableSpecError
from buildfarm.controller.pool import PoolEvent, PoolScaler
from buildfarm.k8s.resources import (
    NODE_POOL_LABEL,
    SPEC_HASH_ANNOTATION,
    ClusterResources,
    DeploymentStatus,
)
from buildfarm.types import (
    BoundState,
    ClusterPool,
    PersistentVolumeClaim,
    WorkloadPhase,
    WorkloadSpec,
    WorkloadState,
)

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
NAME_LABEL = "app.kubernetes.io/name"


@dataclass(frozen=True)
class RolloutStep:
    """Replica counts at one point of a surge-then-drain rollout."""

    old: int
    new: int

    @property
    def running(self) -> int:
        return self.old + self.new


def plan_rollout(desired: int, max_surge: int = 1, max_unavailable: int = 0) -> list[RolloutStep]:
    """
    Plan the replica sequence of a rolling update from old to new pods.

    Each step first starts up to max_surge new pods, then drains as many old
    pods as the surge allows, so the running count stays within
    [desired - max_unavailable, desired + max_surge].

    Args:
        desired: Replicas of the workload
        max_surge: Pods allowed above desired
        max_unavailable: Pods allowed below desired

    Returns:
        Steps from all-old to all-new, including both ends

    Raises:
        ValueError: If the rollout could never make progress
    """
    if desired < 0:
        raise ValueError(f"desired replicas cannot be negative: {desired}")
    if max_surge < 0 or max_unavailable < 0:
        raise ValueError("max_surge and max_unavailable cannot be negative")
    if desired > 0 and max_surge == 0 and max_unavailable == 0:
        raise ValueError("max_surge and max_unavailable cannot both be 0")

    old, new = desired, 0
    steps = [RolloutStep(old, new)]
    while new < desired:
        # Surge: start new pods while the total stays under the ceiling
        start = min(desired - new, desired + max_surge - (old + new))
        if start > 0:
            new += start
            steps.append(RolloutStep(old, new))
        # Drain: stop old pods while the total stays over the floor
        stop = min(old, (old + new) - (desired - max_unavailable))
        if stop > 0:
            old -= stop
            steps.append(RolloutStep(old, new))
    if old > 0:
        steps.append(RolloutStep(0, new))
    return steps


def spec_hash(body: dict) -> str:
    """Stable hash of a deployment's template and strategy."""
    payload = {
        "template": body["spec"]["template"],
        "strategy": body["spec"]["strategy"],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


def build_deployment(desired: WorkloadSpec, pool_name: str, labels: Optional[dict[str, str]] = None) -> dict:
    """Render the Deployment body for a workload pinned to a node pool."""
    selector = {NAME_LABEL: desired.name}
    pod_labels = {**(labels or {}), **selector, MANAGED_BY_LABEL: "buildfarm"}
    probe = {"httpGet": {"path": desired.health_path, "port": desired.port}}

    body = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": desired.name,
            "namespace": desired.namespace,
            "labels": pod_labels,
            "annotations": {},
        },
        "spec": {
            "replicas": desired.replicas,
            "selector": {"matchLabels": selector},
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {
                    "maxSurge": desired.max_surge,
                    "maxUnavailable": desired.max_unavailable,
                },
            },
            "template": {
                "metadata": {"labels": pod_labels},
                "spec": {
                    "nodeSelector": {NODE_POOL_LABEL: pool_name},
                    "securityContext": {"fsGroup": 1000},
                    "containers": [
                        {
                            "name": desired.name,
                            "image": desired.image,
                            "ports": [{"name": "http", "containerPort": desired.port}],
                            "env": [{"name": k, "value": v} for k, v in desired.env],
                            "resources": {
                                "requests": desired.requests.as_k8s(),
                                "limits": desired.limits.as_k8s(),
                            },
                            "volumeMounts": [{"name": "home", "mountPath": desired.mount_path}],
                            "readinessProbe": {**probe, "periodSeconds": 10, "failureThreshold": 3},
                            "livenessProbe": {
                                **probe,
                                "initialDelaySeconds": 120,
                                "periodSeconds": 20,
                                "failureThreshold": 6,
                            },
                        }
                    ],
                    "volumes": [
                        {
                            "name": "home",
                            "persistentVolumeClaim": {"claimName": desired.volume_claim},
                        }
                    ],
                },
            },
        },
    }
    body["metadata"]["annotations"][SPEC_HASH_ANNOTATION] = spec_hash(body)
    return body


def build_service(desired: WorkloadSpec, labels: Optional[dict[str, str]] = None) -> dict:
    """Render the ClusterIP Service in front of the workload."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": desired.name,
            "namespace": desired.namespace,
            "labels": {**(labels or {}), NAME_LABEL: desired.name, MANAGED_BY_LABEL: "buildfarm"},
        },
        "spec": {
            "type": "ClusterIP",
            "selector": {NAME_LABEL: desired.name},
            "ports": [{"name": "http", "port": desired.port, "targetPort": desired.port}],
        },
    }


class WorkloadReconciler:
    """Drives the CI server deployment toward its desired state."""

    def __init__(
        self,
        resources: ClusterResources,
        scaler: PoolScaler,
        labels: Optional[dict[str, str]] = None,
    ):
        """
        Initialize workload reconciler.

        Args:
            resources: Cluster resource operations
            scaler: Pool scaler that receives demand and emits readiness events
            labels: Extra labels for managed resources
        """
        self.resources = resources
        self.scaler = scaler
        self.labels = labels or {}
        self._pool_ready: dict[str, bool] = {}
        self._rolling: set[str] = set()
        self._services: set[str] = set()
        self._lock = threading.Lock()
        scaler.subscribe(self.on_pool_event)

    def on_pool_event(self, event: PoolEvent) -> None:
        """Track pool readiness reported by the scaler."""
        self._pool_ready[event.pool_name] = event.ready

    def pool_ready(self, pool_name: str) -> bool:
        return self._pool_ready.get(pool_name, False)

    @staticmethod
    def validate_spec(desired: WorkloadSpec, pool: ClusterPool) -> None:
        """
        Check the workload can ever be scheduled on the pool's machines.

        Raises:
            UnschedulableSpecError: If requests exceed limits or limits exceed a node
        """
        entity = f"Deployment/{desired.key}"
        if not desired.requests.fits_within(desired.limits):
            raise UnschedulableSpecError(
                f"Requests {desired.requests.as_k8s()} exceed limits {desired.limits.as_k8s()}",
                entity=entity,
            )
        allocatable = pool.machine_profile.allocatable
        if not desired.limits.fits_within(allocatable):
            raise UnschedulableSpecError(
                f"Limits {desired.limits.as_k8s()} exceed the allocatable capacity "
                f"{allocatable.as_k8s()} of a {pool.machine_profile.machine_type} node",
                entity=entity,
            )

    def _nodes_for(self, pool: ClusterPool, desired: WorkloadSpec, pods: int) -> int:
        return pool.machine_profile.nodes_for(pods, desired.requests)

    def _waiting(self, desired: WorkloadSpec, pool: ClusterPool, reason: str) -> WorkloadState:
        if pool.node_count == 0:
            self.scaler.report_demand(pool.name, 0)
        logger.info(f"Workload {desired.key} waiting: {reason}")
        return WorkloadState(
            workload_id=desired.key,
            phase=WorkloadPhase.WAITING,
            reason=reason,
            desired_replicas=desired.replicas,
        )

    def reconcile(
        self, desired: WorkloadSpec, pool: ClusterPool, pvc: PersistentVolumeClaim
    ) -> WorkloadState:
        """
        Converge the deployment toward the desired spec.

        Args:
            desired: Desired workload; replicas=0 parks it
            pool: Pool the workload runs on
            pvc: Claim mounted by the workload

        Returns:
            WorkloadState; Waiting when the volume or pool is not ready yet

        Raises:
            UnschedulableSpecError: If the spec can never fit on the pool
            ClusterResourceError: If a cluster API call fails
        """
        self.validate_spec(desired, pool)

        if desired.replicas == 0:
            return self.park(desired, pool)

        if pvc.bound_state != BoundState.BOUND:
            return self._waiting(desired, pool, f"volume {pvc.key} is {pvc.bound_state.value}")
        if pool.node_count < 1:
            return self._waiting(desired, pool, f"pool {pool.name} has no nodes")
        if not self.pool_ready(pool.name):
            return self._waiting(desired, pool, f"pool {pool.name} has no ready node yet")

        with self._lock:
            return self._apply(desired, pool)

    def _apply(self, desired: WorkloadSpec, pool: ClusterPool) -> WorkloadState:
        body = build_deployment(desired, pool.name, self.labels)
        wanted_hash = body["metadata"]["annotations"][SPEC_HASH_ANNOTATION]

        if desired.key not in self._services:
            self.resources.ensure_service(desired.namespace, build_service(desired, self.labels))
            self._services.add(desired.key)

        status = self.resources.read_deployment(desired.name, desired.namespace)
        if status is None:
            self.resources.create_deployment(desired.namespace, body)
            self.scaler.report_demand(pool.name, self._nodes_for(pool, desired, desired.replicas))
            return WorkloadState(
                workload_id=desired.key,
                phase=WorkloadPhase.ROLLING_OUT,
                reason="deployment created",
                desired_replicas=desired.replicas,
            )

        patched = False
        if status.spec_hash != wanted_hash or status.spec_replicas != desired.replicas:
            if status.spec_hash != wanted_hash:
                self._rolling.add(desired.key)
                logger.info(f"Workload {desired.key}: template changed, rolling out {wanted_hash}")
            else:
                logger.info(
                    f"Workload {desired.key}: replicas {status.spec_replicas} -> {desired.replicas}"
                )
            self.resources.patch_deployment(desired.name, desired.namespace, body)
            patched = True
        elif status.rollout_complete:
            self._rolling.discard(desired.key)

        self.scaler.report_demand(pool.name, self._demand(desired, pool, status))

        if patched or not status.rollout_complete:
            reason = "rollout in progress" if desired.key in self._rolling else "scaling replicas"
            phase = WorkloadPhase.ROLLING_OUT
        else:
            reason = "rollout complete"
            phase = WorkloadPhase.RUNNING

        return WorkloadState(
            workload_id=desired.key,
            phase=phase,
            reason=reason,
            desired_replicas=desired.replicas,
            running_replicas=status.replicas,
            ready_replicas=status.ready_replicas,
            updated_replicas=status.updated_replicas,
        )

    def _demand(self, desired: WorkloadSpec, pool: ClusterPool, status: Optional[DeploymentStatus]) -> int:
        """Nodes the workload needs now, including the surge pod of a rollout."""
        pods = desired.replicas
        if desired.key in self._rolling:
            peak = max(step.running for step in plan_rollout(
                desired.replicas, desired.max_surge, desired.max_unavailable
            ))
            pods = max(pods, peak)
        if status is not None:
            pods = max(pods, status.replicas)
        return self._nodes_for(pool, desired, pods)

    def park(self, desired: WorkloadSpec, pool: ClusterPool) -> WorkloadState:
        """
        Scale the deployment to zero ahead of parking the pool.

        Demand stays at the pods still running until they are gone.
        """
        if pool.node_count == 0:
            self.scaler.report_demand(pool.name, 0)
            return WorkloadState(
                workload_id=desired.key,
                phase=WorkloadPhase.PARKED,
                reason=f"pool {pool.name} is parked",
            )

        with self._lock:
            status = self.resources.read_deployment(desired.name, desired.namespace)
            if status is None:
                self.scaler.report_demand(pool.name, 0)
                return WorkloadState(
                    workload_id=desired.key,
                    phase=WorkloadPhase.PARKED,
                    reason="no deployment",
                )

            if status.spec_replicas != 0:
                self.resources.patch_deployment(
                    desired.name, desired.namespace, {"spec": {"replicas": 0}}
                )
                logger.info(f"Workload {desired.key}: parking ({status.spec_replicas} -> 0 replicas)")
            self._rolling.discard(desired.key)

            self.scaler.report_demand(pool.name, self._nodes_for(pool, desired, status.replicas))
            reason = f"draining {status.replicas} pod(s)" if status.replicas else "parked"
            return WorkloadState(
                workload_id=desired.key,
                phase=WorkloadPhase.PARKED,
                reason=reason,
                running_replicas=status.replicas,
                ready_replicas=status.ready_replicas,
            )

    def restart(self, desired: WorkloadSpec, pool: ClusterPool, now: datetime) -> None:
        """
        Roll the workload's pods in response to an unreachable alert.

        Raises:
            ClusterResourceError: If the patch fails
        """
        with self._lock:
            self.resources.restart_deployment(desired.name, desired.namespace, now)
            self._rolling.add(desired.key)
            self.scaler.report_demand(pool.name, self._demand(desired, pool, None))
        logger.warning(f"Workload {desired.key}: restarted after health alert")
