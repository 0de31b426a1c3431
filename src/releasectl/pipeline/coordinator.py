"""
Pipeline coordinator.

Runs stages strictly one after another. The first failing required stage
halts the run and every later stage is recorded as skipped. Each result is
emitted to the progress stream as soon as it is recorded.
"""
import asyncio
import logging
from typing import Optional, Sequence

from releasectl.monitoring.progress import ProgressStream
from releasectl.pipeline.run import PipelineRun, StageOutcome, StageResult
from releasectl.pipeline.stages import Stage

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """Sequences pipeline stages and owns the PipelineRun."""

    def __init__(self, progress: Optional[ProgressStream] = None):
        self.progress = progress or ProgressStream()

    async def run(self, stages: Sequence[Stage], run_id: Optional[str] = None) -> PipelineRun:
        """Execute `stages` in order and return the finished run."""
        pipeline_run = PipelineRun(run_id=run_id) if run_id else PipelineRun()
        if self.progress.run_id is None:
            self.progress.run_id = pipeline_run.run_id

        logger.info(f"🚀 Pipeline {pipeline_run.run_id}: {len(stages)} stages "
                    f"({', '.join(stage.name for stage in stages)})")

        for stage in stages:
            if pipeline_run.halted:
                result = StageResult.skipped(stage.name)
            else:
                logger.info(f"Starting stage: {stage.name}")
                result = await stage.execute()
                if result.outcome == StageOutcome.FAILURE and not stage.required:
                    logger.warning(f"Optional stage {stage.name} failed; continuing")

            pipeline_run.record(result, required=stage.required)
            self.progress.stage_completed(result)

        pipeline_run.complete()
        self._log_summary(pipeline_run)
        return pipeline_run

    def run_sync(self, stages: Sequence[Stage], run_id: Optional[str] = None) -> PipelineRun:
        """Blocking wrapper for callers without an event loop."""
        return asyncio.run(self.run(stages, run_id=run_id))

    @staticmethod
    def _log_summary(pipeline_run: PipelineRun) -> None:
        for result in pipeline_run.results:
            logger.info(f"  {result.name}: {result.outcome.value} ({result.duration:.2f}s)")
        failed = pipeline_run.failed_stage
        if failed is None:
            logger.info(f"✅ Pipeline {pipeline_run.run_id} succeeded")
        else:
            logger.error(f"❌ Pipeline {pipeline_run.run_id} failed at {failed.name} "
                         f"({failed.error.kind}): {failed.error.message}")
