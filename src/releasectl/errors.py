"""
Error taxonomy for releasectl.

Every error that can reach the pipeline coordinator or the CLI derives from
ReleaseError and carries a `kind` (reported on the failing stage) and an
`exit_code` (returned by the CLI).
"""
from enum import Enum
from typing import Optional


EXIT_OK = 0
EXIT_VALIDATION = 3
EXIT_DEPLOYMENT = 4
EXIT_TRANSIENT = 5


class ReleaseError(Exception):
    """Base class for all releasectl errors."""
    kind = "ReleaseError"
    exit_code = 1


class ValidationError(ReleaseError):
    """Bad manifest or bad rollout input. Fatal, never retried."""
    kind = "ValidationError"
    exit_code = EXIT_VALIDATION


class ParseErrorKind(str, Enum):
    """Why a manifest failed to parse."""
    MISSING_FIELD = "MissingField"
    INVALID_VALUE = "InvalidValue"
    DANGLING_SELECTOR = "DanglingSelector"


class ParseError(ValidationError):
    """Manifest parse failure with the offending field path."""

    def __init__(self, kind: ParseErrorKind, field: str, message: str,
                 document: Optional[int] = None):
        self.parse_kind = ParseErrorKind(kind)
        self.field = field
        self.document = document
        location = f"document {document}: " if document is not None else ""
        super().__init__(f"{self.parse_kind.value} at {location}{field}: {message}")


class TransientInfraError(ReleaseError):
    """Cluster stayed unreachable after the bounded retries."""
    kind = "TransientInfraError"
    exit_code = EXIT_TRANSIENT


class DeploymentFailure(ReleaseError):
    """A release could not be put in place."""
    kind = "DeploymentFailure"
    exit_code = EXIT_DEPLOYMENT


class ConvergenceFailure(DeploymentFailure):
    """Replicas never became ready."""
    kind = "ConvergenceFailure"


class RollbackFailure(DeploymentFailure):
    """Rollback to the previous spec failed. Requires operator intervention."""
    kind = "RollbackFailure"


class PublishError(DeploymentFailure):
    """Building or publishing the application image failed."""
    kind = "PublishError"


EXIT_CODES_BY_KIND = {
    ValidationError.kind: EXIT_VALIDATION,
    TransientInfraError.kind: EXIT_TRANSIENT,
    DeploymentFailure.kind: EXIT_DEPLOYMENT,
    ConvergenceFailure.kind: EXIT_DEPLOYMENT,
    RollbackFailure.kind: EXIT_DEPLOYMENT,
    PublishError.kind: EXIT_DEPLOYMENT,
}


def exit_code_for(kind: Optional[str]) -> int:
    """Map an error kind reported on a stage to a CLI exit code."""
    if kind is None:
        return EXIT_OK
    return EXIT_CODES_BY_KIND.get(kind, EXIT_DEPLOYMENT)


def error_for_kind(kind: Optional[str], message: str) -> ReleaseError:
    """Rebuild the exception for an error kind recorded on a rollout."""
    classes = {
        cls.kind: cls
        for cls in (ValidationError, TransientInfraError, DeploymentFailure,
                    ConvergenceFailure, RollbackFailure, PublishError)
    }
    return classes.get(kind, ConvergenceFailure)(message)
