"""
Rollout engine.

Drives one workload from its current state to a DeploymentSpec:

    Pending -> Applying -> Waiting -> Succeeded | Failed | TimedOut | Cancelled
    Failed | TimedOut | Cancelled -> RollingBack -> RolledBack | RollbackFailed

Cluster calls run in a worker thread and are retried with bounded exponential
backoff on ClusterUnreachable only. The readiness poll waits on the cancel
event, so other rollouts on the same event loop keep running while this one
sleeps.

A rollout, rollback included, ends within one poll interval of its timeout:
the rollback gets whatever is left of that bound, and retries never sleep
past it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from releasectl.cluster.base import (
    ApplyOutcome,
    ClusterClient,
    ClusterRejected,
    ClusterUnreachable,
    ServiceStatus,
    WorkloadCondition,
    WorkloadNotFound,
    WorkloadStatus,
)
from releasectl.errors import (
    ConvergenceFailure,
    RollbackFailure,
    TransientInfraError,
    ValidationError,
)
from releasectl.manifest.models import DeploymentSpec, ServiceSpec
from releasectl.monitoring.progress import ProgressStream
from releasectl.rollout.history import RolloutHistory
from releasectl.rollout.policy import RolloutPolicy
from releasectl.rollout.records import ROLLBACK_TRIGGERS, RolloutPhase, RolloutRecord
from releasectl.utils.decorators import async_retry

logger = logging.getLogger(__name__)


@dataclass
class _PollResult:
    phase: RolloutPhase
    status: Optional[WorkloadStatus] = None
    reason: Optional[str] = None
    polls: int = 0


class RolloutEngine:
    """Converges workloads on a cluster, with automatic rollback."""

    def __init__(self, cluster: ClusterClient, history: Optional[RolloutHistory] = None,
                 policy: Optional[RolloutPolicy] = None, progress: Optional[ProgressStream] = None):
        self.cluster = cluster
        self.history = history if history is not None else RolloutHistory()
        self.policy = policy or RolloutPolicy()
        self.progress = progress

    # Cluster calls

    async def _call(self, func: Callable[..., Any], *args, deadline: Optional[float] = None) -> Any:
        """Run a cluster call off the loop, retrying transient failures until `deadline`."""
        retrying = async_retry(
            max_attempts=self.policy.max_attempts,
            delay=self.policy.initial_delay,
            backoff=self.policy.backoff,
            max_delay=self.policy.max_delay,
            exceptions=(ClusterUnreachable,),
            escalate_to=TransientInfraError,
            logger_name=__name__,
            deadline=deadline,
        )(self._in_thread)
        return await retrying(func, *args)

    @staticmethod
    async def _in_thread(func: Callable[..., Any], *args) -> Any:
        return await asyncio.to_thread(func, *args)

    # Bookkeeping

    def _transition(self, record: RolloutRecord, phase: RolloutPhase, detail: Optional[str] = None) -> None:
        record.transition(phase, detail)
        logger.info(f"Rollout {record.workload}: {phase.value}" + (f" ({detail})" if detail else ""))
        if self.progress is not None:
            self.progress.phase_changed(record)

    def _finish(self, record: RolloutRecord) -> RolloutRecord:
        record.finish()
        self.history.record(record)
        return record

    @staticmethod
    def _validate(spec: DeploymentSpec, timeout: float) -> None:
        if not spec.image.resolvable:
            raise ValidationError(f"Image {spec.image} of {spec.name} has no tag or digest")
        if timeout is None or timeout <= 0:
            raise ValidationError(f"Rollout timeout must be positive, got {timeout}")

    # Polling

    async def _wait(self, cancel: asyncio.Event, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll(self, spec: DeploymentSpec, deadline: float,
                    cancel: Optional[asyncio.Event], on_status=None) -> _PollResult:
        """Poll readiness until converged, failed, timed out or cancelled.

        `deadline` is a time.monotonic() value. Neither the waits nor the
        retries of a status call run past it.
        """
        cancel = cancel or asyncio.Event()
        polls = 0

        while True:
            try:
                status = await self._call(self.cluster.get_status, spec.name, deadline=deadline)
            except WorkloadNotFound as e:
                return _PollResult(RolloutPhase.FAILED, reason=str(e), polls=polls)
            polls += 1
            if on_status is not None:
                on_status(status)

            if status.condition == WorkloadCondition.FAILED:
                return _PollResult(RolloutPhase.FAILED, status,
                                   status.message or f"{spec.name} reported a terminal failure", polls)
            if status.desired_replicas == spec.replicas and status.ready_replicas == spec.replicas:
                return _PollResult(RolloutPhase.SUCCEEDED, status, polls=polls)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _PollResult(
                    RolloutPhase.TIMED_OUT, status,
                    f"{status.ready_replicas}/{spec.replicas} replicas ready at the deadline",
                    polls,
                )
            if await self._wait(cancel, min(self.policy.poll_interval, remaining)):
                return _PollResult(
                    RolloutPhase.CANCELLED, status,
                    f"cancelled with {status.ready_replicas}/{spec.replicas} replicas ready",
                    polls,
                )

    # Public API

    async def roll_out(self, spec: DeploymentSpec, timeout: float,
                       cancel: Optional[asyncio.Event] = None,
                       auto_rollback: Optional[bool] = None) -> RolloutRecord:
        """Converge the cluster to `spec` and return the finished RolloutRecord.

        Args:
            spec: Desired state; its image must carry a tag or digest
            timeout: Seconds to wait for readiness (must be positive)
            cancel: Optional event that stops polling when set
            auto_rollback: Overrides the policy's automatic rollback setting

        Raises:
            ValidationError: The spec or timeout is unusable
        """
        self._validate(spec, timeout)
        auto_rollback = self.policy.auto_rollback if auto_rollback is None else auto_rollback

        previous = self.history.previous_good(spec.name, exclude=spec)
        record = RolloutRecord.start(spec, previous)
        if self.progress is not None:
            self.progress.phase_changed(record)
        logger.info(f"🚀 Rolling out {spec.name} -> {spec.image} ({spec.replicas} replicas, timeout {timeout:g}s)")

        deadline = time.monotonic() + timeout
        try:
            await self._converge(record, spec, deadline, cancel)
            if self._should_roll_back(record, auto_rollback):
                await self._roll_back(record, previous, deadline + self.policy.poll_interval)
        except asyncio.CancelledError:
            if record.phase in (RolloutPhase.PENDING, RolloutPhase.APPLYING, RolloutPhase.WAITING):
                record.fail(ConvergenceFailure.kind, "rollout task cancelled")
                self._transition(record, RolloutPhase.CANCELLED, "rollout task cancelled")
            elif record.phase == RolloutPhase.ROLLING_BACK:
                record.fail(RollbackFailure.kind, f"{record.failure_reason}; rollback task cancelled")
                self._transition(record, RolloutPhase.ROLLBACK_FAILED, "rollback task cancelled")
            self._finish(record)
            raise

        self._finish(record)
        if record.succeeded:
            logger.info(f"✅ {spec.name} converged on {spec.image}")
        else:
            logger.error(f"❌ Rollout of {spec.name} ended in {record.phase.value}: {record.failure_reason}")
        return record

    def _should_roll_back(self, record: RolloutRecord, auto_rollback: bool) -> bool:
        """Only convergence failures after an apply take the rollback path."""
        if record.phase not in ROLLBACK_TRIGGERS or record.error_kind != ConvergenceFailure.kind:
            return False
        if record.phase == RolloutPhase.CANCELLED and not self.policy.rollback_on_cancel:
            logger.info(f"Rollout of {record.workload} cancelled; rollback on cancel disabled")
            return False
        if not auto_rollback:
            logger.info(f"Automatic rollback disabled; leaving {record.workload} in {record.phase.value}")
            return False
        if record.previous is None:
            logger.warning(f"No previous good spec for {record.workload}; nothing to roll back to")
            return False
        return True

    async def _converge(self, record: RolloutRecord, spec: DeploymentSpec, deadline: float,
                        cancel: Optional[asyncio.Event]) -> None:
        self._transition(record, RolloutPhase.APPLYING, str(spec.image))
        try:
            outcome = await self._call(self.cluster.apply, spec, deadline=deadline)
        except ClusterRejected as e:
            # nothing was changed on the cluster
            record.fail(ValidationError.kind, str(e))
            self._transition(record, RolloutPhase.FAILED, str(e))
            return
        except TransientInfraError as e:
            record.fail(TransientInfraError.kind, str(e))
            self._transition(record, RolloutPhase.FAILED, str(e))
            return

        self._transition(record, RolloutPhase.WAITING, f"apply {outcome.value}")

        def track(status: WorkloadStatus) -> None:
            record.desired_replicas = status.desired_replicas
            record.ready_replicas = status.ready_replicas

        try:
            result = await self._poll(spec, deadline, cancel, on_status=track)
        except ClusterRejected as e:
            record.fail(ValidationError.kind, str(e))
            self._transition(record, RolloutPhase.FAILED, str(e))
            return
        except TransientInfraError as e:
            # cluster state unknown, left for the operator
            record.fail(TransientInfraError.kind, str(e))
            self._transition(record, RolloutPhase.FAILED, str(e))
            return

        if result.phase == RolloutPhase.SUCCEEDED:
            record.already_converged = outcome == ApplyOutcome.UNCHANGED and result.polls == 1
            detail = "already converged" if record.already_converged else None
            self._transition(record, RolloutPhase.SUCCEEDED, detail)
            return

        record.fail(ConvergenceFailure.kind, result.reason)
        self._transition(record, result.phase, result.reason)

    async def _roll_back(self, record: RolloutRecord, previous: DeploymentSpec, deadline: float) -> None:
        """Re-apply `previous` and watch it until `deadline`.

        A re-applied spec still coming up at the deadline counts as rolled
        back; only a rejected apply or a terminal failure does not.
        """
        self._transition(record, RolloutPhase.ROLLING_BACK, f"re-applying {previous.image}")
        try:
            await self._call(self.cluster.apply, previous, deadline=deadline)
            result = await self._poll(previous, deadline, None)
        except (ClusterRejected, TransientInfraError) as e:
            result = _PollResult(RolloutPhase.FAILED, reason=str(e))

        if result.phase in (RolloutPhase.SUCCEEDED, RolloutPhase.TIMED_OUT):
            record.ready_replicas = result.status.ready_replicas
            record.desired_replicas = result.status.desired_replicas
            detail = f"restored {previous.image}"
            if result.phase == RolloutPhase.TIMED_OUT:
                detail += f", {result.status.ready_replicas}/{previous.replicas} replicas ready so far"
            self._transition(record, RolloutPhase.ROLLED_BACK, detail)
            return

        record.fail(RollbackFailure.kind, f"{record.failure_reason}; rollback to {previous.image} failed: {result.reason}")
        self._transition(record, RolloutPhase.ROLLBACK_FAILED, result.reason)
        logger.critical(f"🛑 Rollback of {record.workload} failed, operator intervention required")

    async def roll_back(self, workload: str, timeout: float,
                        cancel: Optional[asyncio.Event] = None) -> RolloutRecord:
        """Operator-initiated rollback to the previous good revision.

        Raises:
            ValidationError: There is no earlier revision to restore
        """
        target = self.history.rollback_target(workload)
        if target is None:
            raise ValidationError(f"No earlier successful revision of {workload} to roll back to")
        logger.info(f"⏪ Rolling {workload} back to {target.image}")
        return await self.roll_out(target, timeout, cancel=cancel, auto_rollback=False)

    async def apply_service(self, service: ServiceSpec) -> ApplyOutcome:
        """Apply an exposure rule with the engine's retry policy.

        Raises:
            ValidationError: The cluster rejected the service
            TransientInfraError: The cluster stayed unreachable
        """
        try:
            outcome = await self._call(self.cluster.apply_service, service)
        except ClusterRejected as e:
            raise ValidationError(str(e)) from e
        logger.info(f"service/{service.name} {outcome.value}")
        return outcome

    async def observe(self, workload: str) -> WorkloadStatus:
        """Current cluster status of a workload, with transient retries."""
        return await self._call(self.cluster.get_status, workload)

    async def observe_service(self, name: str) -> Optional[ServiceStatus]:
        """Current cluster status of a service, or None if it does not exist."""
        return await self._call(self.cluster.get_service, name)
