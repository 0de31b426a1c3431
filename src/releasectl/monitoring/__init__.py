"""Progress reporting for pipeline runs and rollouts."""
from .progress import JsonLinesSink, ProgressEvent, ProgressStream, log_event

__all__ = ["JsonLinesSink", "ProgressEvent", "ProgressStream", "log_event"]
