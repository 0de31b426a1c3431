"""
Rollout history.

Keeps, per workload, the latest RolloutRecord and the recent specs that rolled
out successfully (revisions). The rollout engine reads the last good revision
to roll back to; the CLI reads it for `status` and `rollback`.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic

from releasectl.manifest.models import DeploymentSpec
from releasectl.rollout.records import RolloutPhase, RolloutRecord

logger = logging.getLogger(__name__)

DEFAULT_REVISION_LIMIT = 10


class RolloutHistory:
    """In-memory rollout history."""

    def __init__(self, revision_limit: int = DEFAULT_REVISION_LIMIT):
        self.revision_limit = revision_limit
        self._latest: Dict[str, RolloutRecord] = {}
        self._revisions: Dict[str, List[DeploymentSpec]] = {}
        self._lock = threading.Lock()

    def record(self, record: RolloutRecord) -> None:
        """Store a finished rollout; it supersedes the workload's previous record."""
        with self._lock:
            self._latest[record.workload] = record.model_copy(deep=True)
            if record.phase == RolloutPhase.SUCCEEDED:
                revisions = self._revisions.setdefault(record.workload, [])
                if not revisions or revisions[-1].fingerprint() != record.target.fingerprint():
                    revisions.append(record.target)
                del revisions[:-self.revision_limit]
            self._save()

    def latest(self, workload: str) -> Optional[RolloutRecord]:
        with self._lock:
            record = self._latest.get(workload)
            return record.model_copy(deep=True) if record else None

    def revisions(self, workload: str) -> List[DeploymentSpec]:
        """Successful specs for a workload, oldest first."""
        with self._lock:
            return list(self._revisions.get(workload, []))

    def last_good(self, workload: str) -> Optional[DeploymentSpec]:
        revisions = self.revisions(workload)
        return revisions[-1] if revisions else None

    def previous_good(self, workload: str, exclude: DeploymentSpec) -> Optional[DeploymentSpec]:
        """Most recent good spec that differs from `exclude`."""
        fingerprint = exclude.fingerprint()
        for spec in reversed(self.revisions(workload)):
            if spec.fingerprint() != fingerprint:
                return spec
        return None

    def rollback_target(self, workload: str) -> Optional[DeploymentSpec]:
        """Spec an operator-initiated rollback should restore.

        When the latest rollout left the last good revision running (it
        succeeded, or it rolled back to it), go one revision further back.
        """
        revisions = self.revisions(workload)
        if not revisions:
            return None
        running = self.running_spec(workload)
        if running is not None and running.fingerprint() == revisions[-1].fingerprint():
            return self.previous_good(workload, exclude=running)
        return revisions[-1]

    def running_spec(self, workload: str) -> Optional[DeploymentSpec]:
        """Spec the latest rollout left in place, if known."""
        latest = self.latest(workload)
        if latest is None:
            return None
        if latest.succeeded:
            return latest.target
        if latest.phase == RolloutPhase.ROLLED_BACK:
            return latest.previous
        return None

    def workloads(self) -> List[str]:
        with self._lock:
            return sorted(set(self._latest) | set(self._revisions))

    def _save(self) -> None:
        """Persist state; nothing to do in memory."""
        pass


class FileRolloutHistory(RolloutHistory):
    """Rollout history persisted to a JSON state file after every change."""

    def __init__(self, state_file: str = ".rollout_state.json",
                 revision_limit: int = DEFAULT_REVISION_LIMIT):
        super().__init__(revision_limit=revision_limit)
        self.state_file = Path(state_file)
        self._load_state()

    def _load_state(self) -> None:
        """Load rollout state from file."""
        if not self.state_file.exists():
            return

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return

        latest: Dict[str, RolloutRecord] = {}
        revisions: Dict[str, List[DeploymentSpec]] = {}
        try:
            for workload, entry in state.get("workloads", {}).items():
                if entry.get("latest"):
                    latest[workload] = RolloutRecord.model_validate(entry["latest"])
                revisions[workload] = [DeploymentSpec.model_validate(spec)
                                       for spec in entry.get("revisions", [])]
        except (pydantic.ValidationError, AttributeError) as e:
            logger.warning(f"Ignoring state file {self.state_file} with an unknown layout: {e}")
            return

        self._latest.update(latest)
        self._revisions.update(revisions)
        logger.debug(f"Loaded rollout state for {len(self._revisions)} workloads from {self.state_file}")

    def _state(self) -> Dict[str, Any]:
        workloads: Dict[str, Any] = {}
        for workload in set(self._latest) | set(self._revisions):
            latest = self._latest.get(workload)
            workloads[workload] = {
                "latest": latest.model_dump(mode="json", by_alias=True) if latest else None,
                "revisions": [spec.model_dump(mode="json", by_alias=True)
                              for spec in self._revisions.get(workload, [])],
            }
        return {
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "workloads": workloads,
        }

    def _save(self) -> None:
        """Save current state to file."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, 'w') as f:
            json.dump(self._state(), f, indent=2)
