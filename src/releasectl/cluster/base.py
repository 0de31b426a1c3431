"""
Cluster client capability interface and the types it reports.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from releasectl.manifest.models import DeploymentSpec, ServiceSpec


class ClusterError(Exception):
    """Base class for errors raised by cluster clients."""


class ClusterUnreachable(ClusterError):
    """Transport failure talking to the cluster. Retryable."""


class ClusterRejected(ClusterError):
    """The cluster refused the resource as invalid. Fatal."""


class WorkloadNotFound(ClusterError):
    """The workload does not exist on the cluster."""


class ApplyOutcome(str, Enum):
    """Result of an apply, as kubectl reports it"""
    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"


class WorkloadCondition(str, Enum):
    """Coarse rollout condition reported for a workload"""
    PROGRESSING = "progressing"
    AVAILABLE = "available"
    FAILED = "failed"   # terminal, e.g. every replica crash-looping


@dataclass
class WorkloadStatus:
    """Observed state of a workload."""
    workload: str
    desired_replicas: int
    ready_replicas: int
    condition: WorkloadCondition
    image: Optional[str] = None
    fingerprint: Optional[str] = None
    message: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.ready_replicas == self.desired_replicas


@dataclass
class ServiceStatus:
    """Observed state of a service."""
    name: str
    selector: str
    port: int
    target_port: int
    exposure: str
    address: Optional[str] = None


class ClusterClient:
    """Base class for cluster clients (to be extended by specific implementations).

    Calls are synchronous; the rollout engine runs them off the event loop and
    owns retries, so implementations raise ClusterUnreachable instead of
    retrying themselves.
    """

    def apply(self, spec: DeploymentSpec) -> ApplyOutcome:
        """Create the workload if absent, patch it if it differs."""
        raise NotImplementedError

    def apply_service(self, service: ServiceSpec) -> ApplyOutcome:
        raise NotImplementedError

    def get_status(self, workload: str) -> WorkloadStatus:
        """Raises WorkloadNotFound when the workload does not exist."""
        raise NotImplementedError

    def get_service(self, name: str) -> Optional[ServiceStatus]:
        raise NotImplementedError

    def delete(self, workload: str) -> None:
        """Raises WorkloadNotFound when the workload does not exist."""
        raise NotImplementedError
