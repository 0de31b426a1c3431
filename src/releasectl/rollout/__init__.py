"""Rollout engine, rollout records and rollout history."""
from .engine import RolloutEngine
from .history import FileRolloutHistory, RolloutHistory
from .policy import RolloutPolicy
from .records import InvalidTransition, PhaseTransition, RolloutPhase, RolloutRecord

__all__ = [
    "FileRolloutHistory",
    "InvalidTransition",
    "PhaseTransition",
    "RolloutEngine",
    "RolloutHistory",
    "RolloutPhase",
    "RolloutPolicy",
    "RolloutRecord",
]
