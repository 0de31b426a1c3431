"""
Typed release manifest model.

Specs are frozen pydantic models: once a DeploymentSpec is handed to a rollout
it cannot change; derive a new spec (e.g. with_image) instead.
"""
import hashlib
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_core import PydanticCustomError


WORKLOAD_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class Exposure(str, Enum):
    """Service exposure class"""
    INTERNAL = "internal"   # ClusterIP
    EXTERNAL = "external"   # LoadBalancer


class ImageRef(BaseModel):
    """Container image reference (name, tag and optional digest)."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Registry/repository path")
    tag: str = Field(default="", description="Image tag; empty until published")
    digest: str = Field(default="", description="Content digest such as sha256:...")

    @model_validator(mode="before")
    @classmethod
    def split_reference(cls, data):
        """Accept the textual `name[:tag][@digest]` form."""
        if isinstance(data, str):
            return cls.split(data)
        return data

    @staticmethod
    def split(reference: str) -> Dict[str, str]:
        reference, _, digest = reference.partition("@")
        # The tag separator is the last ':' after the last '/', so
        # "registry:5000/app" has no tag.
        slash = reference.rfind("/")
        colon = reference.rfind(":")
        if colon > slash:
            return {"name": reference[:colon], "tag": reference[colon + 1:], "digest": digest}
        return {"name": reference, "tag": "", "digest": digest}

    @property
    def resolvable(self) -> bool:
        return bool(self.name) and bool(self.tag or self.digest)

    def __str__(self) -> str:
        reference = f"{self.name}:{self.tag}" if self.tag else self.name
        return f"{reference}@{self.digest}" if self.digest else reference


class SecretRef(BaseModel):
    """Reference to a key inside a cluster secret."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)


class EnvBinding(BaseModel):
    """Environment variable bound to a literal value or a secret key."""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    value: Optional[str] = None
    secret_ref: Optional[SecretRef] = Field(default=None, alias="secretRef")

    @model_validator(mode="after")
    def exactly_one_source(self):
        if self.value is None and self.secret_ref is None:
            raise PydanticCustomError("missing", "env binding needs a value or a secretRef")
        if self.value is not None and self.secret_ref is not None:
            raise ValueError("env binding takes either a value or a secretRef, not both")
        return self


class ContainerPort(BaseModel):
    """Port exposed by the workload's container."""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    container_port: int = Field(..., ge=1, le=65535, strict=True, alias="containerPort")
    name: Optional[str] = None


class DeploymentSpec(BaseModel):
    """Desired state of one workload."""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, pattern=WORKLOAD_NAME_PATTERN)
    replicas: int = Field(..., gt=0, strict=True)
    image: ImageRef
    env: Tuple[EnvBinding, ...] = ()
    ports: Tuple[ContainerPort, ...] = ()

    @property
    def labels(self) -> Dict[str, str]:
        """Pod labels; services select workloads through the `app` label."""
        return {"app": self.name}

    def with_image(self, image: ImageRef) -> "DeploymentSpec":
        """Return a copy of this spec pointing at another image."""
        return self.model_copy(update={"image": image})

    def fingerprint(self) -> str:
        """Stable hash of the spec, used to detect no-op applies."""
        payload = self.model_dump_json(by_alias=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class ServiceSpec(BaseModel):
    """Exposure rule bound to a DeploymentSpec by selector."""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, pattern=WORKLOAD_NAME_PATTERN)
    selector: str = Field(..., min_length=1, description="Identity of the selected workload")
    port: int = Field(..., ge=1, le=65535, strict=True)
    target_port: int = Field(..., ge=1, le=65535, strict=True, alias="targetPort")
    exposure: Exposure = Exposure.INTERNAL

    @model_validator(mode="before")
    @classmethod
    def default_target_port(cls, data):
        """targetPort falls back to port, as in Kubernetes."""
        if isinstance(data, dict) and "targetPort" not in data and "target_port" not in data \
                and "port" in data:
            data = {**data, "targetPort": data["port"]}
        return data


class ManifestSet(BaseModel):
    """A parsed document set: workloads in document order plus their services."""
    model_config = ConfigDict(frozen=True)

    deployments: Tuple[DeploymentSpec, ...] = ()
    services: Tuple[ServiceSpec, ...] = ()

    def deployment(self, name: str) -> Optional[DeploymentSpec]:
        for spec in self.deployments:
            if spec.name == name:
                return spec
        return None

    def services_for(self, name: str) -> List[ServiceSpec]:
        return [service for service in self.services if service.selector == name]

    def groups(self) -> List[Tuple[DeploymentSpec, List[ServiceSpec]]]:
        """Each deployment with the services bound to it, in document order."""
        return [(spec, self.services_for(spec.name)) for spec in self.deployments]
