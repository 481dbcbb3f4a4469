"""GKE node pool client for buildfarm."""

import logging
from dataclasses import dataclass
from typing import Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import container_v1

from buildfarm.types import ClusterPool

logger = logging.getLogger(__name__)


class NodePoolError(Exception):
    """Raised when a node pool operation fails."""

    pass


class NodePoolBusyError(NodePoolError):
    """Raised when the cluster rejects a request because another operation is running."""

    pass


@dataclass(frozen=True)
class OperationStatus:
    """Status of a long-running GKE operation."""

    name: str
    done: bool
    error: Optional[str] = None


def _is_busy(error: google_exceptions.GoogleAPICallError) -> bool:
    message = str(error).lower()
    if isinstance(error, google_exceptions.Aborted):
        return True
    return isinstance(error, google_exceptions.FailedPrecondition) and (
        "incompatible operation" in message
        or ("operation" in message and "in progress" in message)
    )


class NodePoolClient:
    """
    Node pool operations on one GKE cluster.

    Project, location and cluster are always passed explicitly; nothing is
    read from the local gcloud configuration.
    """

    def __init__(
        self,
        project: str,
        location: str,
        cluster: str,
        client: Optional[container_v1.ClusterManagerClient] = None,
        timeout: float = 60,
    ):
        """
        Initialize node pool client.

        Args:
            project: GCP project id
            location: Zone or region of the cluster
            cluster: Cluster name
            client: Optional preconfigured ClusterManagerClient
            timeout: Seconds before any single API request is abandoned
        """
        self.project = project
        self.location = location
        self.cluster = cluster
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> container_v1.ClusterManagerClient:
        """Get the ClusterManagerClient, creating it on first use."""
        if self._client is None:
            self._client = container_v1.ClusterManagerClient()
        return self._client

    @property
    def cluster_path(self) -> str:
        return f"projects/{self.project}/locations/{self.location}/clusters/{self.cluster}"

    def pool_path(self, pool_name: str) -> str:
        return f"{self.cluster_path}/nodePools/{pool_name}"

    def operation_path(self, operation_name: str) -> str:
        if operation_name.startswith("projects/"):
            return operation_name
        return f"projects/{self.project}/locations/{self.location}/operations/{operation_name}"

    def _wrap(self, error: google_exceptions.GoogleAPICallError, action: str) -> NodePoolError:
        if _is_busy(error):
            return NodePoolBusyError(f"Cannot {action}: {error}")
        return NodePoolError(f"Failed to {action}: {error}")

    def pool_exists(self, pool_name: str) -> bool:
        """
        Check whether a node pool exists.

        Raises:
            NodePoolError: If the lookup fails for another reason
        """
        try:
            self.client.get_node_pool(request={"name": self.pool_path(pool_name)}, timeout=self.timeout)
            return True
        except google_exceptions.NotFound:
            return False
        except google_exceptions.GoogleAPICallError as e:
            raise self._wrap(e, f"read node pool {pool_name}") from e

    def create_pool(self, pool: ClusterPool) -> str:
        """
        Create a node pool shaped after the pool record.

        Returns:
            Name of the create operation

        Raises:
            NodePoolBusyError: If another operation is running on the cluster
            NodePoolError: If the request fails
        """
        node_pool = container_v1.NodePool(
            name=pool.name,
            initial_node_count=pool.node_count,
            config=container_v1.NodeConfig(
                machine_type=pool.machine_profile.machine_type,
                disk_type=pool.disk_profile.disk_type,
                disk_size_gb=pool.disk_profile.size_gb,
                preemptible=pool.machine_profile.preemptible,
            ),
        )
        try:
            operation = self.client.create_node_pool(
                request={"parent": self.cluster_path, "node_pool": node_pool},
                timeout=self.timeout,
            )
        except google_exceptions.GoogleAPICallError as e:
            raise self._wrap(e, f"create node pool {pool.name}") from e

        logger.info(f"Creating node pool {pool.name} in {self.cluster_path} ({operation.name})")
        return operation.name

    def set_size(self, pool_name: str, node_count: int) -> str:
        """
        Request a node pool resize.

        Returns:
            Name of the resize operation

        Raises:
            NodePoolBusyError: If another operation is running on the pool
            NodePoolError: If the request fails
        """
        try:
            operation = self.client.set_node_pool_size(
                request={"name": self.pool_path(pool_name), "node_count": node_count},
                timeout=self.timeout,
            )
        except google_exceptions.GoogleAPICallError as e:
            raise self._wrap(e, f"resize node pool {pool_name} to {node_count}") from e

        logger.info(f"Resizing node pool {pool_name} to {node_count} node(s) ({operation.name})")
        return operation.name

    def get_operation(self, operation_name: str) -> OperationStatus:
        """
        Poll a long-running operation.

        Raises:
            NodePoolError: If the operation cannot be read
        """
        try:
            operation = self.client.get_operation(
                request={"name": self.operation_path(operation_name)},
                timeout=self.timeout,
            )
        except google_exceptions.GoogleAPICallError as e:
            raise NodePoolError(f"Failed to read operation {operation_name}: {e}") from e

        done = operation.status == container_v1.Operation.Status.DONE
        error = None
        if operation.error and operation.error.message:
            error = operation.error.message
        return OperationStatus(name=operation_name, done=done, error=error)
