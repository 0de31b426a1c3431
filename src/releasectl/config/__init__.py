"""
Configuration management for releasectl.

Contains the Pydantic settings used by the CLI, the rollout engine policy and
the cluster/registry clients, for both the in-memory and Kubernetes modes.
"""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
