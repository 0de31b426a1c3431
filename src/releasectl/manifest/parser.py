"""
Release manifest parsing and serialization.

A manifest is a YAML multi-document stream. Each document is either a
workload::

    kind: Deployment
    name: webapp
    replicas: 2
    image: 123456789012.dkr.ecr.us-east-1.amazonaws.com/webapp:1.4.0
    env:
      - name: DB_HOST
        value: mysql
      - name: DB_PASSWORD
        secretRef: {name: mysql-credentials, key: password}
    ports:
      - containerPort: 8080

or an exposure rule bound to a workload by name::

    kind: Service
    name: webapp
    selector: webapp
    port: 80
    targetPort: 8080
    exposure: external

Workloads are rolled out in document order, so a database listed before the
application is deployed first.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from releasectl.errors import ParseError, ParseErrorKind
from releasectl.manifest.models import DeploymentSpec, ManifestSet, ServiceSpec

logger = logging.getLogger(__name__)

DEPLOYMENT_KIND = "Deployment"
SERVICE_KIND = "Service"

MODELS_BY_KIND = {
    DEPLOYMENT_KIND: DeploymentSpec,
    SERVICE_KIND: ServiceSpec,
}

MISSING_ERROR_TYPES = {"missing"}


def _field_path(loc: Tuple[Union[str, int], ...]) -> str:
    """Render a pydantic error location as env[1].name."""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else part
    return path or "(document)"


def _translate(error: PydanticValidationError, index: int) -> ParseError:
    """Turn the first pydantic error into a ParseError."""
    first = error.errors()[0]
    kind = (ParseErrorKind.MISSING_FIELD if first["type"] in MISSING_ERROR_TYPES
            else ParseErrorKind.INVALID_VALUE)
    return ParseError(kind, _field_path(tuple(first["loc"])), first["msg"], document=index)


def _parse_document(document: Any, index: int):
    if not isinstance(document, dict):
        raise ParseError(ParseErrorKind.INVALID_VALUE, "(document)",
                         f"expected a mapping, got {type(document).__name__}", document=index)

    body = dict(document)
    kind = body.pop("kind", None)
    if kind is None:
        raise ParseError(ParseErrorKind.MISSING_FIELD, "kind", "field required", document=index)
    model = MODELS_BY_KIND.get(kind)
    if model is None:
        raise ParseError(ParseErrorKind.INVALID_VALUE, "kind",
                         f"unknown kind {kind!r}, expected one of {sorted(MODELS_BY_KIND)}",
                         document=index)

    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        raise _translate(e, index) from e


def parse(raw: str) -> ManifestSet:
    """Parse manifest text into a validated ManifestSet.

    Raises:
        ParseError: MissingField, InvalidValue or DanglingSelector
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(raw) if doc is not None]
    except yaml.YAMLError as e:
        raise ParseError(ParseErrorKind.INVALID_VALUE, "(document)", f"malformed YAML: {e}") from e

    deployments: List[Tuple[int, DeploymentSpec]] = []
    services: List[Tuple[int, ServiceSpec]] = []
    for index, document in enumerate(documents):
        parsed = _parse_document(document, index)
        if isinstance(parsed, DeploymentSpec):
            deployments.append((index, parsed))
        else:
            services.append((index, parsed))

    if not deployments:
        raise ParseError(ParseErrorKind.MISSING_FIELD, "kind",
                         f"manifest contains no {DEPLOYMENT_KIND} document")

    _check_unique(deployments)
    _check_unique(services)

    workload_names = {spec.name for _, spec in deployments}
    for index, service in services:
        if service.selector not in workload_names:
            raise ParseError(ParseErrorKind.DANGLING_SELECTOR, "selector",
                             f"service {service.name!r} selects unknown workload {service.selector!r}",
                             document=index)

    manifest = ManifestSet(
        deployments=tuple(spec for _, spec in deployments),
        services=tuple(service for _, service in services),
    )
    logger.debug(f"Parsed manifest with {len(manifest.deployments)} workloads "
                 f"and {len(manifest.services)} services")
    return manifest


def _check_unique(entries) -> None:
    seen = set()
    for index, entry in entries:
        if entry.name in seen:
            raise ParseError(ParseErrorKind.INVALID_VALUE, "name",
                             f"duplicate name {entry.name!r}", document=index)
        seen.add(entry.name)


def load(path: Union[str, Path]) -> ManifestSet:
    """Read and parse a manifest file."""
    text = Path(path).read_text(encoding="utf-8")
    logger.info(f"Loading manifest {path}")
    return parse(text)


def _deployment_document(spec: DeploymentSpec) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "kind": DEPLOYMENT_KIND,
        "name": spec.name,
        "replicas": spec.replicas,
        "image": str(spec.image),
    }
    if spec.env:
        document["env"] = [binding.model_dump(by_alias=True, exclude_none=True)
                           for binding in spec.env]
    if spec.ports:
        document["ports"] = [port.model_dump(by_alias=True, exclude_none=True)
                             for port in spec.ports]
    return document


def _service_document(service: ServiceSpec) -> Dict[str, Any]:
    return {
        "kind": SERVICE_KIND,
        "name": service.name,
        "selector": service.selector,
        "port": service.port,
        "targetPort": service.target_port,
        "exposure": service.exposure.value,
    }


def dump(manifest: ManifestSet) -> str:
    """Serialize a ManifestSet back to manifest text.

    Workloads come first, then services, each in their original order, so
    parse(dump(m)) == m.
    """
    documents: List[Dict[str, Any]] = [_deployment_document(spec) for spec in manifest.deployments]
    documents.extend(_service_document(service) for service in manifest.services)
    return yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False)
