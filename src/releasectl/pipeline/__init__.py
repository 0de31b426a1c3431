"""Pipeline coordinator, stages and run records."""
from .coordinator import PipelineCoordinator
from .run import ErrorDetail, PipelineRun, RunClosed, StageOutcome, StageResult
from .stages import BuildStage, DeployStage, PublishStage, Stage, VerifyStage

__all__ = [
    "BuildStage",
    "DeployStage",
    "ErrorDetail",
    "PipelineCoordinator",
    "PipelineRun",
    "PublishStage",
    "RunClosed",
    "Stage",
    "StageOutcome",
    "StageResult",
    "VerifyStage",
]
