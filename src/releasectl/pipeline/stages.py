"""
Pipeline stages.

Every stage exposes the same `execute() -> StageResult` contract; the work
itself lives in `run()`, which returns a short output string or raises.
Stages that depend on an earlier stage (publish on build, deploy on publish)
hold a reference to it and read what it produced.
"""
import asyncio
import logging
import time
from typing import List, Optional

from releasectl.artifacts import ArtifactPublisher, ArtifactRef
from releasectl.cluster.base import WorkloadNotFound
from releasectl.errors import ConvergenceFailure, ReleaseError, ValidationError, error_for_kind
from releasectl.manifest.models import DeploymentSpec, ImageRef, ServiceSpec
from releasectl.pipeline.run import ErrorDetail, StageOutcome, StageResult
from releasectl.rollout.engine import RolloutEngine
from releasectl.rollout.records import RolloutRecord

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_KIND = "StageError"


class Stage:
    """Base class for pipeline stages."""

    def __init__(self, name: str, required: bool = True):
        self.name = name
        self.required = required

    async def run(self) -> Optional[str]:
        raise NotImplementedError

    async def execute(self) -> StageResult:
        """Run the stage and report its outcome; errors become a failure result."""
        start_time = time.monotonic()
        try:
            output = await self.run()
        except ReleaseError as e:
            logger.error(f"Stage {self.name} failed ({e.kind}): {e}")
            return self._result(StageOutcome.FAILURE, start_time,
                                error=ErrorDetail(kind=e.kind, message=str(e)))
        except Exception as e:
            logger.exception(f"Stage {self.name} failed unexpectedly")
            return self._result(StageOutcome.FAILURE, start_time,
                                error=ErrorDetail(kind=UNKNOWN_ERROR_KIND, message=f"{type(e).__name__}: {e}"))
        return self._result(StageOutcome.SUCCESS, start_time, output=output)

    def _result(self, outcome: StageOutcome, start_time: float, error: Optional[ErrorDetail] = None,
                output: Optional[str] = None) -> StageResult:
        return StageResult(
            name=self.name,
            outcome=outcome,
            duration=round(time.monotonic() - start_time, 3),
            error=error,
            output=output,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class BuildStage(Stage):
    """Package the application and build its image."""

    def __init__(self, publisher: ArtifactPublisher, name: str = "build", required: bool = True):
        super().__init__(name, required)
        self.publisher = publisher
        self.artifact: Optional[ArtifactRef] = None

    async def run(self) -> Optional[str]:
        self.artifact = await asyncio.to_thread(self.publisher.build)
        return self.artifact.image


class PublishStage(Stage):
    """Push the image built by a BuildStage to the registry."""

    def __init__(self, publisher: ArtifactPublisher, build: BuildStage, name: str = "publish",
                 required: bool = True):
        super().__init__(name, required)
        self.publisher = publisher
        self.build = build
        self.image: Optional[ImageRef] = None

    async def run(self) -> Optional[str]:
        if self.build.artifact is None:
            raise ValidationError(f"Stage {self.build.name} produced no artifact to publish")
        self.image = await asyncio.to_thread(self.publisher.publish, self.build.artifact)
        return str(self.image)


def _resolve_spec(spec: DeploymentSpec, image_from: Optional[PublishStage]) -> DeploymentSpec:
    if image_from is None:
        return spec
    if image_from.image is None:
        raise ValidationError(f"Stage {image_from.name} published no image for {spec.name}")
    return spec.with_image(image_from.image)


class DeployStage(Stage):
    """Roll a workload out and apply the services bound to it."""

    def __init__(self, engine: RolloutEngine, spec: DeploymentSpec, timeout: float,
                 services: Optional[List[ServiceSpec]] = None, image_from: Optional[PublishStage] = None,
                 cancel: Optional[asyncio.Event] = None, name: Optional[str] = None,
                 required: bool = True):
        super().__init__(name or f"deploy-{spec.name}", required)
        self.engine = engine
        self.spec = spec
        self.timeout = timeout
        self.services = services or []
        self.image_from = image_from
        self.cancel = cancel
        self.record: Optional[RolloutRecord] = None

    async def run(self) -> Optional[str]:
        spec = _resolve_spec(self.spec, self.image_from)
        self.record = await self.engine.roll_out(spec, self.timeout, cancel=self.cancel)

        if not self.record.succeeded:
            raise error_for_kind(
                self.record.error_kind,
                f"{spec.name} ended in {self.record.phase.value}: {self.record.failure_reason}",
            )

        for service in self.services:
            await self.engine.apply_service(service)
        return f"{self.record.phase.value} {spec.image}"


class VerifyStage(Stage):
    """Re-query the cluster and check the workload matches its spec."""

    def __init__(self, engine: RolloutEngine, spec: DeploymentSpec,
                 services: Optional[List[ServiceSpec]] = None, image_from: Optional[PublishStage] = None,
                 name: Optional[str] = None, required: bool = True):
        super().__init__(name or f"verify-{spec.name}", required)
        self.engine = engine
        self.spec = spec
        self.services = services or []
        self.image_from = image_from

    async def run(self) -> Optional[str]:
        spec = _resolve_spec(self.spec, self.image_from)
        try:
            status = await self.engine.observe(spec.name)
        except WorkloadNotFound as e:
            raise ConvergenceFailure(f"{spec.name} not found on the cluster") from e

        if status.desired_replicas != spec.replicas or status.ready_replicas != spec.replicas:
            raise ConvergenceFailure(
                f"{spec.name}: {status.ready_replicas}/{status.desired_replicas} ready, "
                f"expected {spec.replicas}"
            )
        if status.image is not None and status.image != str(spec.image):
            raise ConvergenceFailure(f"{spec.name} runs {status.image}, expected {spec.image}")

        for service in self.services:
            observed = await self.engine.observe_service(service.name)
            if observed is None:
                raise ConvergenceFailure(f"service {service.name} for {spec.name} not found")
            if (observed.port, observed.target_port) != (service.port, service.target_port):
                raise ConvergenceFailure(
                    f"service {service.name} exposes {observed.port}->{observed.target_port}, "
                    f"expected {service.port}->{service.target_port}"
                )

        return f"{status.ready_replicas}/{spec.replicas} ready"
