"""
releasectl - deployment orchestration core.

Parses release manifests, rolls workloads out to a cluster with readiness
polling and automatic rollback, and sequences build/publish/deploy/verify
pipelines.
"""

__version__ = "0.1.0"
