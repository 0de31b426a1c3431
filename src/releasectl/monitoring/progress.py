"""
Progress stream for pipeline runs and rollouts.

Stage results and rollout phase transitions are emitted the moment they
happen, in order, to every subscriber. The log is a subscriber by default; a
JSON-lines file can be added for an external dashboard to tail.
"""
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from releasectl.pipeline.run import StageResult
    from releasectl.rollout.records import RolloutRecord

logger = logging.getLogger(__name__)


class ProgressEvent(BaseModel):
    """One entry of the progress stream."""
    event: str = Field(..., description="stage or phase")
    name: str = Field(..., description="Stage name or workload")
    status: str = Field(..., description="Stage outcome or rollout phase")
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[str] = None
    detail: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[ProgressEvent], None]


def log_event(event: ProgressEvent) -> None:
    """Default subscriber: one log line per event."""
    prefix = f"[{event.run_id}] " if event.run_id else ""
    suffix = f" - {event.detail}" if event.detail else ""
    if event.event == "stage":
        logger.info(f"{prefix}stage {event.name}: {event.status}{suffix}")
    else:
        logger.info(f"{prefix}rollout {event.name}: {event.status}{suffix}")


class JsonLinesSink:
    """Appends every event as one JSON line."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            with open(self.path, 'a') as f:
                f.write(event.model_dump_json() + "\n")


class ProgressStream:
    """Ordered fan-out of progress events."""

    def __init__(self, run_id: Optional[str] = None, log: bool = True):
        self.run_id = run_id
        self._subscribers: List[Subscriber] = [log_event] if log else []
        self.events: List[ProgressEvent] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: ProgressEvent) -> None:
        if event.run_id is None:
            event.run_id = self.run_id
        self.events.append(event)
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"Progress subscriber {subscriber!r} failed")

    def stage_completed(self, result: "StageResult") -> None:
        self.emit(ProgressEvent(
            event="stage",
            name=result.name,
            status=result.outcome.value,
            detail=result.error.message if result.error else None,
            data=result.model_dump(mode="json"),
        ))

    def phase_changed(self, record: "RolloutRecord") -> None:
        transition = record.transitions[-1]
        self.emit(ProgressEvent(
            event="phase",
            name=record.workload,
            status=transition.phase.value,
            at=transition.at,
            detail=transition.detail,
            data={
                "image": str(record.target.image),
                "desired_replicas": record.desired_replicas,
                "ready_replicas": record.ready_replicas,
            },
        ))
