import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, PrivateAttr


class StageOutcome(str, Enum):
    """Stage outcomes"""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ErrorDetail(BaseModel):
    """Why a stage failed."""
    kind: str = Field(..., description="Error kind from the releasectl taxonomy")
    message: str


class StageResult(BaseModel):
    """Result of one pipeline stage."""
    name: str
    outcome: StageOutcome
    duration: float = 0.0
    error: Optional[ErrorDetail] = None
    output: Optional[str] = Field(None, description="Artifact, image or rollout phase produced")

    @classmethod
    def skipped(cls, name: str) -> "StageResult":
        return cls(name=name, outcome=StageOutcome.SKIPPED)


class RunClosed(Exception):
    """Exception raised when appending to a terminal pipeline run"""
    pass


class PipelineRun(BaseModel):
    """Append-only record of one pipeline invocation."""
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    results: List[StageResult] = Field(default_factory=list)
    halted: bool = False
    halted_by: Optional[str] = None

    _completed: bool = PrivateAttr(default=False)

    def record(self, result: StageResult, required: bool = True) -> None:
        """Append a stage result.

        After a required stage fails only `skipped` results are accepted, and
        nothing is accepted once the run is complete.
        """
        if self._completed:
            raise RunClosed(f"run {self.run_id} is complete")
        if self.halted and result.outcome != StageOutcome.SKIPPED:
            raise RunClosed(f"run {self.run_id} halted; cannot record {result.outcome.value} for {result.name}")
        self.results.append(result)
        if result.outcome == StageOutcome.FAILURE and required:
            self.halted = True
            self.halted_by = result.name

    def complete(self) -> None:
        self._completed = True
        self.finished_at = datetime.now(timezone.utc)

    @property
    def terminal(self) -> bool:
        return self._completed or self.halted

    @property
    def failed_stage(self) -> Optional[StageResult]:
        """The stage that halted the run."""
        if not self.halted:
            return None
        for result in self.results:
            if result.outcome == StageOutcome.FAILURE and result.name == self.halted_by:
                return result
        return None

    @property
    def succeeded(self) -> bool:
        return self._completed and not self.halted

    def outcome_of(self, name: str) -> Optional[StageOutcome]:
        for result in self.results:
            if result.name == name:
                return result.outcome
        return None
