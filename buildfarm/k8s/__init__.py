"""Kubernetes client integration for buildfarm."""

from buildfarm.k8s.client import K8sClient, K8sClientError
from buildfarm.k8s.resources import ClusterResourceError, ClusterResources

__all__ = ["ClusterResourceError", "ClusterResources", "K8sClient", "K8sClientError"]
