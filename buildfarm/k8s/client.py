"""Kubernetes API access for buildfarm."""

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)


class K8sClientError(Exception):
    """Raised when the Kubernetes API cannot be configured."""

    pass


class K8sClient:
    """
    Owns one ApiClient and the typed APIs built on it.

    Configuration is loaded into a private Configuration object, so several
    clients (e.g. for different contexts) can live in one process.
    """

    def __init__(
        self,
        in_cluster: bool = True,
        config_file: Optional[str] = None,
        context: Optional[str] = None,
        request_timeout: float = 30,
    ):
        """
        Initialize Kubernetes client.

        Args:
            in_cluster: If True, use the pod's service account. If False, use a kubeconfig.
            config_file: Kubeconfig path (default location when omitted)
            context: Kubeconfig context (current context when omitted)
            request_timeout: Seconds before any single API request is abandoned
        """
        self.in_cluster = in_cluster
        self.config_file = config_file
        self.context = context
        self.request_timeout = request_timeout
        self._api_client: Optional[client.ApiClient] = None
        self._apps_v1_api: Optional[client.AppsV1Api] = None
        self._core_v1_api: Optional[client.CoreV1Api] = None
        self._connect()

    def _connect(self) -> None:
        configuration = client.Configuration()
        try:
            if self.in_cluster:
                logger.info("Using in-cluster service account credentials")
                config.load_incluster_config(client_configuration=configuration)
            else:
                logger.info(
                    f"Using kubeconfig {self.config_file or '(default)'}, "
                    f"context {self.context or '(current)'}"
                )
                config.load_kube_config(
                    config_file=self.config_file,
                    context=self.context,
                    client_configuration=configuration,
                )
        except Exception as e:
            raise K8sClientError(f"Failed to initialize Kubernetes client: {e}") from e

        self._api_client = client.ApiClient(configuration)
        self._apps_v1_api = client.AppsV1Api(self._api_client)
        self._core_v1_api = client.CoreV1Api(self._api_client)

    @property
    def apps_v1(self) -> client.AppsV1Api:
        if self._apps_v1_api is None:
            raise K8sClientError("Kubernetes client is closed")
        return self._apps_v1_api

    @property
    def core_v1(self) -> client.CoreV1Api:
        if self._core_v1_api is None:
            raise K8sClientError("Kubernetes client is closed")
        return self._core_v1_api

    def test_connection(self) -> bool:
        """
        Check the API server answers and the controller may list nodes.

        Node listing is what pool readiness depends on, so a missing
        permission there fails the check early instead of every cycle.

        Returns:
            True if the server is reachable and nodes can be listed
        """
        try:
            version = client.VersionApi(self._api_client).get_code(_request_timeout=self.request_timeout)
            self.core_v1.list_node(limit=1, _request_timeout=self.request_timeout)
        except ApiException as e:
            logger.error(f"Kubernetes API check failed: {e.status} {e.reason}")
            return False
        except Exception as e:
            logger.error(f"Kubernetes API unreachable: {e}")
            return False

        logger.info(f"Connected to Kubernetes {version.git_version}")
        return True

    def close(self) -> None:
        """Release the connection pool."""
        if self._api_client is not None:
            self._api_client.close()
        self._api_client = None
        self._apps_v1_api = None
        self._core_v1_api = None
