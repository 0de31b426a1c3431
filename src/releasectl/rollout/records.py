from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from releasectl.manifest.models import DeploymentSpec


class RolloutPhase(str, Enum):
    """Rollout phases"""
    PENDING = "Pending"
    APPLYING = "Applying"
    WAITING = "Waiting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"
    ROLLBACK_FAILED = "RollbackFailed"


ALLOWED_TRANSITIONS = {
    RolloutPhase.PENDING: {RolloutPhase.APPLYING, RolloutPhase.CANCELLED},
    RolloutPhase.APPLYING: {RolloutPhase.WAITING, RolloutPhase.FAILED, RolloutPhase.CANCELLED},
    RolloutPhase.WAITING: {RolloutPhase.SUCCEEDED, RolloutPhase.FAILED,
                           RolloutPhase.TIMED_OUT, RolloutPhase.CANCELLED},
    RolloutPhase.FAILED: {RolloutPhase.ROLLING_BACK},
    RolloutPhase.TIMED_OUT: {RolloutPhase.ROLLING_BACK},
    RolloutPhase.CANCELLED: {RolloutPhase.ROLLING_BACK},
    RolloutPhase.ROLLING_BACK: {RolloutPhase.ROLLED_BACK, RolloutPhase.ROLLBACK_FAILED},
    RolloutPhase.SUCCEEDED: set(),
    RolloutPhase.ROLLED_BACK: set(),
    RolloutPhase.ROLLBACK_FAILED: set(),
}

# Phases from which the rollback path may start
ROLLBACK_TRIGGERS = {RolloutPhase.FAILED, RolloutPhase.TIMED_OUT, RolloutPhase.CANCELLED}


class InvalidTransition(Exception):
    """Exception raised for invalid phase transitions"""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhaseTransition(BaseModel):
    """One phase change of a rollout."""
    phase: RolloutPhase
    at: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None


class RolloutRecord(BaseModel):
    """Tracks one attempt to converge a DeploymentSpec.

    Owned and mutated only by the rollout engine processing it.
    """
    workload: str
    target: DeploymentSpec
    previous: Optional[DeploymentSpec] = Field(None, description="Last good spec, used for rollback")
    phase: RolloutPhase = RolloutPhase.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    desired_replicas: int = 0
    ready_replicas: int = 0
    failure_reason: Optional[str] = None
    error_kind: Optional[str] = None
    already_converged: bool = False
    transitions: List[PhaseTransition] = Field(default_factory=list)

    @classmethod
    def start(cls, target: DeploymentSpec, previous: Optional[DeploymentSpec] = None) -> "RolloutRecord":
        record = cls(workload=target.name, target=target, previous=previous,
                     desired_replicas=target.replicas)
        record.transitions.append(PhaseTransition(phase=RolloutPhase.PENDING, at=record.started_at))
        return record

    def transition(self, phase: RolloutPhase, detail: Optional[str] = None) -> PhaseTransition:
        """Move to `phase`, enforcing the rollout state machine."""
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.workload}: cannot move from {self.phase.value} to {phase.value}")
        self.phase = phase
        entry = PhaseTransition(phase=phase, detail=detail)
        self.transitions.append(entry)
        return entry

    def fail(self, error_kind: str, reason: str) -> None:
        self.error_kind = error_kind
        self.failure_reason = reason

    def finish(self) -> None:
        self.finished_at = utcnow()

    @property
    def succeeded(self) -> bool:
        return self.phase == RolloutPhase.SUCCEEDED

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def phases(self) -> List[RolloutPhase]:
        return [entry.phase for entry in self.transitions]
