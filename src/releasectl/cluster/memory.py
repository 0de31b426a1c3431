"""
In-memory simulated cluster.

Used for dry runs (`cluster_mode=memory`) and tests. Readiness advances by
`ready_step` replicas on every status poll after a spec change; images can be
marked as crash-looping, never becoming ready, or rejected, and transport
failures can be injected for the next N calls.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .base import (
    ApplyOutcome,
    ClusterClient,
    ClusterRejected,
    ClusterUnreachable,
    ServiceStatus,
    WorkloadCondition,
    WorkloadNotFound,
    WorkloadStatus,
)
from releasectl.manifest.models import DeploymentSpec, ServiceSpec

logger = logging.getLogger(__name__)


@dataclass
class _Workload:
    spec: DeploymentSpec
    ready: int = 0


class InMemoryClusterClient(ClusterClient):
    """Cluster simulation holding workloads and services in process memory."""

    def __init__(self, ready_step: int = 1):
        self.ready_step = ready_step
        self.workloads: Dict[str, _Workload] = {}
        self.services: Dict[str, ServiceSpec] = {}
        self.mutations = 0
        self.calls: List[Tuple[str, str]] = []
        self._failing_images: Set[str] = set()
        self._stalled_images: Set[str] = set()
        self._rejected_images: Set[str] = set()
        self._unreachable_calls = 0
        self._lock = threading.Lock()

    # Fault injection

    def fail_image(self, image: str) -> None:
        """Replicas running `image` crash-loop (terminal failure)."""
        self._failing_images.add(image)

    def stall_image(self, image: str) -> None:
        """Replicas running `image` never become ready."""
        self._stalled_images.add(image)

    def reject_image(self, image: str) -> None:
        """Applying a spec with `image` is refused as invalid."""
        self._rejected_images.add(image)

    def fail_next(self, calls: int) -> None:
        """The next `calls` calls raise ClusterUnreachable."""
        self._unreachable_calls = calls

    def _record(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        if self._unreachable_calls > 0:
            self._unreachable_calls -= 1
            raise ClusterUnreachable(f"simulated transport failure during {op} {name}")

    # ClusterClient

    def apply(self, spec: DeploymentSpec) -> ApplyOutcome:
        with self._lock:
            self._record("apply", spec.name)
            if str(spec.image) in self._rejected_images:
                raise ClusterRejected(f"image {spec.image} rejected for {spec.name}")

            current = self.workloads.get(spec.name)
            if current is not None and current.spec.fingerprint() == spec.fingerprint():
                logger.info(f"deployment/{spec.name} unchanged")
                return ApplyOutcome.UNCHANGED

            self.workloads[spec.name] = _Workload(spec=spec)
            self.mutations += 1
            outcome = ApplyOutcome.CREATED if current is None else ApplyOutcome.CONFIGURED
            logger.info(f"deployment/{spec.name} {outcome.value} ({spec.image})")
            return outcome

    def apply_service(self, service: ServiceSpec) -> ApplyOutcome:
        with self._lock:
            self._record("apply_service", service.name)
            current = self.services.get(service.name)
            if current == service:
                return ApplyOutcome.UNCHANGED
            self.services[service.name] = service
            self.mutations += 1
            return ApplyOutcome.CREATED if current is None else ApplyOutcome.CONFIGURED

    def get_status(self, workload: str) -> WorkloadStatus:
        with self._lock:
            self._record("get_status", workload)
            state = self.workloads.get(workload)
            if state is None:
                raise WorkloadNotFound(f"deployment {workload} not found")

            image = str(state.spec.image)
            condition = WorkloadCondition.PROGRESSING
            message = None
            if image in self._failing_images:
                state.ready = 0
                condition = WorkloadCondition.FAILED
                message = f"all replicas of {workload} are in CrashLoopBackOff"
            elif image not in self._stalled_images:
                state.ready = min(state.ready + self.ready_step, state.spec.replicas)
                if state.ready == state.spec.replicas:
                    condition = WorkloadCondition.AVAILABLE

            return WorkloadStatus(
                workload=workload,
                desired_replicas=state.spec.replicas,
                ready_replicas=state.ready,
                condition=condition,
                image=image,
                fingerprint=state.spec.fingerprint(),
                message=message,
            )

    def get_service(self, name: str) -> Optional[ServiceStatus]:
        with self._lock:
            self._record("get_service", name)
            service = self.services.get(name)
            if service is None:
                return None
            return ServiceStatus(
                name=service.name,
                selector=service.selector,
                port=service.port,
                target_port=service.target_port,
                exposure=service.exposure.value,
                address=f"{service.name}.svc.cluster.local",
            )

    def delete(self, workload: str) -> None:
        with self._lock:
            self._record("delete", workload)
            if workload not in self.workloads:
                raise WorkloadNotFound(f"deployment {workload} not found")
            del self.workloads[workload]
            self.mutations += 1
            logger.info(f"deployment/{workload} deleted")

    def applied_spec(self, workload: str) -> Optional[DeploymentSpec]:
        """Spec currently applied for a workload (test/inspection helper)."""
        state = self.workloads.get(workload)
        return state.spec if state else None
