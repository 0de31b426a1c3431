# src/releasectl/config/settings.py
from typing import Optional, Dict, Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Single source of truth for all releasectl settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from releasectl.config import get_settings
        settings = get_settings()
        namespace = settings.k8s_namespace
    """

    # Application Settings
    app_name: str = Field(
        default="releasectl",
        description="Application name"
    )

    # Cluster Mode
    cluster_mode: str = Field(
        default="memory",
        description="Cluster backend: memory (simulated) or kubernetes"
    )

    # Kubernetes Configuration
    k8s_namespace: str = Field(
        default="default",
        description="Kubernetes namespace"
    )

    k8s_context: Optional[str] = Field(
        default=None,
        description="Kubernetes context (kubeconfig default when unset)"
    )

    k8s_in_cluster: bool = Field(
        default=False,
        description="Load in-cluster service account config"
    )

    # AWS / ECR Configuration
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    ecr_repo_name: str = Field(
        default="webapp",
        description="ECR repository the application image is pushed to"
    )

    # Build Configuration
    build_command: Optional[str] = Field(
        default="mvn clean package -DskipTests",
        description="Command that packages the application before docker build"
    )

    docker_context: str = Field(
        default=".",
        description="Docker build context directory"
    )

    dockerfile: str = Field(
        default="Dockerfile",
        description="Dockerfile path relative to the build context"
    )

    # Rollout Configuration
    poll_interval_secs: float = Field(
        default=3.0,
        description="Seconds between readiness polls"
    )

    rollout_timeout_secs: float = Field(
        default=300.0,
        description="Default rollout timeout"
    )

    auto_rollback: bool = Field(
        default=True,
        description="Re-apply the last good spec when a rollout fails or times out"
    )

    rollback_on_cancel: bool = Field(
        default=True,
        description="Treat an externally cancelled rollout like a timeout"
    )

    # Retry Configuration (transient cluster errors only)
    retry_max_attempts: int = Field(default=5, description="Attempts per cluster call")
    retry_initial_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    retry_backoff: float = Field(default=2.0, description="Backoff multiplier")
    retry_max_delay: float = Field(default=30.0, description="Backoff delay cap in seconds")

    # State Configuration
    state_file: str = Field(
        default=".rollout_state.json",
        description="Rollout history file"
    )

    progress_log: Optional[str] = Field(
        default=None,
        description="Optional JSON-lines file receiving progress events"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('cluster_mode', mode='before')
    @classmethod
    def normalize_cluster_mode(cls, v):
        """Normalize cluster mode aliases."""
        if v:
            mode_mapping = {
                "k8s": "kubernetes",
                "eks": "kubernetes",
                "mock": "memory",
                "local-dev": "memory",
            }
            return mode_mapping.get(str(v).lower(), str(v).lower())
        return v

    @field_validator('cluster_mode')
    @classmethod
    def validate_cluster_mode(cls, v):
        """Validate cluster mode is one of the allowed values."""
        valid_modes = ["memory", "kubernetes"]
        if v not in valid_modes:
            raise ValueError(f"Invalid cluster_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('poll_interval_secs', 'rollout_timeout_secs', 'retry_initial_delay',
                     'retry_backoff', 'retry_max_delay')
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {v}")
        return v

    @field_validator('retry_max_attempts')
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError(f"retry_max_attempts must be at least 1, got {v}")
        return v

    def rollout_policy(self):
        """Build the rollout engine policy from these settings."""
        from releasectl.rollout.policy import RolloutPolicy

        return RolloutPolicy(
            poll_interval=self.poll_interval_secs,
            auto_rollback=self.auto_rollback,
            rollback_on_cancel=self.rollback_on_cancel,
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            backoff=self.retry_backoff,
            max_delay=self.retry_max_delay,
        )

    def get_environment_dict(self) -> Dict[str, Any]:
        """Get configuration as a dictionary suitable for display or subprocess."""
        return {
            'CLUSTER_MODE': self.cluster_mode,
            'K8S_NAMESPACE': self.k8s_namespace,
            'K8S_CONTEXT': self.k8s_context or '',
            'AWS_DEFAULT_REGION': self.aws_region,
            'AWS_ENDPOINT_URL': self.aws_endpoint_url or '',
            'ECR_REPO_NAME': self.ecr_repo_name,
            'POLL_INTERVAL_SECS': self.poll_interval_secs,
            'ROLLOUT_TIMEOUT_SECS': self.rollout_timeout_secs,
            'AUTO_ROLLBACK': str(self.auto_rollback).lower(),
            'STATE_FILE': self.state_file,
            'LOG_LEVEL': self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
