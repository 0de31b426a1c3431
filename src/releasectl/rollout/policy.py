"""Rollout engine tuning knobs."""
from dataclasses import dataclass


@dataclass(frozen=True)
class RolloutPolicy:
    """How the rollout engine polls, retries and recovers."""
    poll_interval: float = 3.0
    auto_rollback: bool = True
    rollback_on_cancel: bool = True
    # bounded exponential backoff for transient cluster errors
    max_attempts: int = 5
    initial_delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
