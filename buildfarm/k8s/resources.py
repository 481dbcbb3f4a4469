"""Kubernetes resource operations used by the buildfarm controllers."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from buildfarm.k8s.client import K8sClient
from buildfarm.types import PersistentVolumeClaim

logger = logging.getLogger(__name__)

NODE_POOL_LABEL = "cloud.google.com/gke-nodepool"
SPEC_HASH_ANNOTATION = "buildfarm.io/spec-hash"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


class ClusterResourceError(Exception):
    """Raised when a Kubernetes resource operation fails."""

    pass


@dataclass(frozen=True)
class ClaimStatus:
    """Observed state of a PersistentVolumeClaim."""

    phase: str
    size: Optional[str]
    storage_class: Optional[str]


@dataclass(frozen=True)
class DeploymentStatus:
    """Observed state of a Deployment."""

    spec_replicas: int
    replicas: int
    ready_replicas: int
    updated_replicas: int
    available_replicas: int
    unavailable_replicas: int
    spec_hash: Optional[str]
    generation: int
    observed_generation: int

    @property
    def rollout_complete(self) -> bool:
        return (
            self.observed_generation >= self.generation
            and self.updated_replicas == self.spec_replicas
            and self.replicas == self.spec_replicas
            and self.available_replicas == self.spec_replicas
        )


class ClusterResources:
    """PVC, Deployment, Service and Node operations against the Kubernetes API."""

    def __init__(self, k8s_client: K8sClient, dry_run: bool = False):
        """
        Initialize ClusterResources.

        Args:
            k8s_client: Kubernetes client instance
            dry_run: If True, mutating calls use server-side dry-run
        """
        self.client = k8s_client
        self.dry_run = dry_run

    def _opts(self, mutating: bool = False) -> dict:
        opts = {"_request_timeout": getattr(self.client, "request_timeout", 30)}
        if mutating and self.dry_run:
            opts["dry_run"] = "All"
        return opts

    # Persistent volume claims

    def read_claim(self, name: str, namespace: str) -> Optional[ClaimStatus]:
        """
        Read a claim's phase and size.

        Returns:
            ClaimStatus, or None if the claim does not exist

        Raises:
            ClusterResourceError: If the read fails
        """
        try:
            pvc = self.client.core_v1.read_namespaced_persistent_volume_claim(
                name=name, namespace=namespace, **self._opts()
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterResourceError(f"Failed to read claim {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to read claim {namespace}/{name}: {e}") from e

        phase = (pvc.status.phase if pvc.status else None) or "Pending"
        requests = (pvc.spec.resources.requests or {}) if pvc.spec and pvc.spec.resources else {}
        return ClaimStatus(
            phase=phase,
            size=requests.get("storage"),
            storage_class=pvc.spec.storage_class_name if pvc.spec else None,
        )

    def create_claim(self, claim: PersistentVolumeClaim, labels: Optional[dict[str, str]] = None) -> None:
        """
        Create a claim. An already existing claim is not an error.

        Raises:
            ClusterResourceError: If the create fails
        """
        body = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": claim.name, "namespace": claim.namespace, "labels": labels or {}},
            "spec": {
                "accessModes": [claim.access_mode],
                "storageClassName": claim.storage_class,
                "resources": {"requests": {"storage": claim.requested_size}},
            },
        }
        try:
            self.client.core_v1.create_namespaced_persistent_volume_claim(
                namespace=claim.namespace, body=body, **self._opts(mutating=True)
            )
            logger.info(
                f"{'[DRY-RUN] ' if self.dry_run else ''}Created claim {claim.key} "
                f"({claim.requested_size}, class {claim.storage_class})"
            )
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Claim {claim.key} already exists")
                return
            raise ClusterResourceError(f"Failed to create claim {claim.key}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to create claim {claim.key}: {e}") from e

    def resize_claim(self, name: str, namespace: str, size: str) -> None:
        """
        Patch the requested storage of a claim.

        Raises:
            ClusterResourceError: If the patch fails
        """
        body = {"spec": {"resources": {"requests": {"storage": size}}}}
        try:
            self.client.core_v1.patch_namespaced_persistent_volume_claim(
                name=name, namespace=namespace, body=body, **self._opts(mutating=True)
            )
            logger.info(f"Requested resize of claim {namespace}/{name} to {size}")
        except ApiException as e:
            raise ClusterResourceError(f"Failed to resize claim {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to resize claim {namespace}/{name}: {e}") from e

    def delete_claim(self, name: str, namespace: str) -> None:
        """
        Delete a claim. A missing claim is not an error.

        Raises:
            ClusterResourceError: If the delete fails
        """
        try:
            self.client.core_v1.delete_namespaced_persistent_volume_claim(
                name=name, namespace=namespace, **self._opts(mutating=True)
            )
            logger.info(f"Deleted claim {namespace}/{name}")
        except ApiException as e:
            if e.status == 404:
                return
            raise ClusterResourceError(f"Failed to delete claim {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to delete claim {namespace}/{name}: {e}") from e

    # Nodes

    def _list_pool_nodes(self, pool_name: str) -> list:
        try:
            nodes = self.client.core_v1.list_node(
                label_selector=f"{NODE_POOL_LABEL}={pool_name}", **self._opts()
            )
        except ApiException as e:
            raise ClusterResourceError(f"Failed to list nodes of pool {pool_name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to list nodes of pool {pool_name}: {e}") from e
        return nodes.items

    def count_pool_nodes(self, pool_name: str) -> int:
        """
        Count every node registered for a pool, ready or not.

        Raises:
            ClusterResourceError: If the list fails
        """
        return len(self._list_pool_nodes(pool_name))

    def count_ready_nodes(self, pool_name: str) -> int:
        """
        Count schedulable nodes of a pool whose Ready condition is True.

        Raises:
            ClusterResourceError: If the list fails
        """
        ready = 0
        for node in self._list_pool_nodes(pool_name):
            if node.spec is not None and node.spec.unschedulable:
                continue
            conditions = (node.status.conditions or []) if node.status else []
            if any(c.type == "Ready" and c.status == "True" for c in conditions):
                ready += 1
        return ready

    # Deployments and services

    def read_deployment(self, name: str, namespace: str) -> Optional[DeploymentStatus]:
        """
        Read a deployment's spec replicas, status and spec hash.

        Returns:
            DeploymentStatus, or None if the deployment does not exist

        Raises:
            ClusterResourceError: If the read fails
        """
        try:
            deployment = self.client.apps_v1.read_namespaced_deployment(
                name=name, namespace=namespace, **self._opts()
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterResourceError(f"Failed to read deployment {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to read deployment {namespace}/{name}: {e}") from e

        status = deployment.status
        annotations = deployment.metadata.annotations or {}
        return DeploymentStatus(
            spec_replicas=deployment.spec.replicas or 0,
            replicas=(status.replicas or 0) if status else 0,
            ready_replicas=(status.ready_replicas or 0) if status else 0,
            updated_replicas=(status.updated_replicas or 0) if status else 0,
            available_replicas=(status.available_replicas or 0) if status else 0,
            unavailable_replicas=(status.unavailable_replicas or 0) if status else 0,
            spec_hash=annotations.get(SPEC_HASH_ANNOTATION),
            generation=deployment.metadata.generation or 0,
            observed_generation=(status.observed_generation or 0) if status else 0,
        )

    def create_deployment(self, namespace: str, body: dict) -> None:
        """
        Create a deployment.

        Raises:
            ClusterResourceError: If the create fails
        """
        name = body["metadata"]["name"]
        try:
            self.client.apps_v1.create_namespaced_deployment(
                namespace=namespace, body=body, **self._opts(mutating=True)
            )
            logger.info(f"{'[DRY-RUN] ' if self.dry_run else ''}Created deployment {namespace}/{name}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Deployment {namespace}/{name} already exists")
                return
            raise ClusterResourceError(f"Failed to create deployment {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to create deployment {namespace}/{name}: {e}") from e

    def patch_deployment(self, name: str, namespace: str, body: dict) -> None:
        """
        Patch a deployment.

        Raises:
            ClusterResourceError: If the patch fails
        """
        try:
            self.client.apps_v1.patch_namespaced_deployment(
                name=name, namespace=namespace, body=body, **self._opts(mutating=True)
            )
            logger.info(f"{'[DRY-RUN] ' if self.dry_run else ''}Patched deployment {namespace}/{name}")
        except ApiException as e:
            raise ClusterResourceError(f"Failed to patch deployment {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to patch deployment {namespace}/{name}: {e}") from e

    def restart_deployment(self, name: str, namespace: str, when: datetime) -> None:
        """
        Trigger a rolling restart by stamping the pod template.

        Raises:
            ClusterResourceError: If the patch fails
        """
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {RESTARTED_AT_ANNOTATION: when.isoformat()}}
                }
            }
        }
        self.patch_deployment(name, namespace, body)

    def ensure_service(self, namespace: str, body: dict) -> bool:
        """
        Create a service unless it already exists.

        Returns:
            True if the service was created

        Raises:
            ClusterResourceError: If the read or create fails
        """
        name = body["metadata"]["name"]
        try:
            self.client.core_v1.read_namespaced_service(name=name, namespace=namespace, **self._opts())
            return False
        except ApiException as e:
            if e.status != 404:
                raise ClusterResourceError(f"Failed to read service {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to read service {namespace}/{name}: {e}") from e

        try:
            self.client.core_v1.create_namespaced_service(
                namespace=namespace, body=body, **self._opts(mutating=True)
            )
            logger.info(f"{'[DRY-RUN] ' if self.dry_run else ''}Created service {namespace}/{name}")
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise ClusterResourceError(f"Failed to create service {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise ClusterResourceError(f"Failed to create service {namespace}/{name}: {e}") from e
