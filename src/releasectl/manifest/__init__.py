"""Release manifest model and (de)serialization."""
from .models import (
    ContainerPort,
    DeploymentSpec,
    EnvBinding,
    Exposure,
    ImageRef,
    ManifestSet,
    SecretRef,
    ServiceSpec,
)
from .parser import dump, load, parse

__all__ = [
    "ContainerPort",
    "DeploymentSpec",
    "EnvBinding",
    "Exposure",
    "ImageRef",
    "ManifestSet",
    "SecretRef",
    "ServiceSpec",
    "dump",
    "load",
    "parse",
]
