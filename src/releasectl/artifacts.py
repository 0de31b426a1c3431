"""
Artifact publisher interface.

The build side of a release: `build()` turns the application source into a
local container image, `publish()` pushes it to a registry and returns the
reference a DeploymentSpec can point at.
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from releasectl.manifest.models import ImageRef


class ArtifactRef(BaseModel):
    """A locally built image, not yet published."""
    image: str = Field(..., description="Local image reference (name:tag)")
    context: Optional[str] = Field(None, description="Build context directory")
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ArtifactPublisher:
    """Base class for artifact publishers (to be extended by specific implementations).

    Failures are raised as releasectl.errors.PublishError.
    """

    def build(self) -> ArtifactRef:
        raise NotImplementedError

    def publish(self, artifact: ArtifactRef) -> ImageRef:
        raise NotImplementedError
