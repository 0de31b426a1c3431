"""Cluster client adapters."""
import logging
from typing import Optional

from .base import (
    ApplyOutcome,
    ClusterClient,
    ClusterError,
    ClusterRejected,
    ClusterUnreachable,
    ServiceStatus,
    WorkloadCondition,
    WorkloadNotFound,
    WorkloadStatus,
)
from .memory import InMemoryClusterClient
from releasectl.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class ClusterClientFactory:
    """Factory to initialize the correct cluster client based on cluster mode"""

    @staticmethod
    def get_cluster_client(settings: Optional[Settings] = None) -> ClusterClient:
        settings = settings or get_settings()

        if settings.cluster_mode == "memory":
            logger.info("Creating in-memory cluster client")
            return InMemoryClusterClient()

        if settings.cluster_mode == "kubernetes":
            from .kubernetes import KubernetesClusterClient

            logger.info(f"Creating Kubernetes cluster client for namespace {settings.k8s_namespace}")
            return KubernetesClusterClient(
                namespace=settings.k8s_namespace,
                in_cluster=settings.k8s_in_cluster,
                context=settings.k8s_context,
            )

        raise ValueError(
            f"Invalid cluster_mode: {settings.cluster_mode}. "
            f"Choose from ['memory', 'kubernetes']"
        )


__all__ = [
    "ApplyOutcome",
    "ClusterClient",
    "ClusterClientFactory",
    "ClusterError",
    "ClusterRejected",
    "ClusterUnreachable",
    "InMemoryClusterClient",
    "ServiceStatus",
    "WorkloadCondition",
    "WorkloadNotFound",
    "WorkloadStatus",
]
