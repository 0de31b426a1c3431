# cli.py
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Callable, List, Optional

import click
import pydantic

from releasectl.artifacts import ArtifactPublisher
from releasectl.cluster import ClusterClientFactory, WorkloadNotFound
from releasectl.config.settings import Settings, get_settings
from releasectl.errors import EXIT_VALIDATION, ReleaseError, ValidationError, exit_code_for
from releasectl.manifest import ManifestSet, load
from releasectl.monitoring import JsonLinesSink, ProgressStream
from releasectl.pipeline import (
    BuildStage,
    DeployStage,
    PipelineCoordinator,
    PipelineRun,
    PublishStage,
    Stage,
    VerifyStage,
)
from releasectl.rollout import FileRolloutHistory, RolloutEngine, RolloutRecord

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _progress_stream(settings: Settings) -> ProgressStream:
    progress = ProgressStream()
    if settings.progress_log:
        progress.subscribe(JsonLinesSink(settings.progress_log))
    return progress


def _engine(settings: Settings, progress: Optional[ProgressStream] = None) -> RolloutEngine:
    return RolloutEngine(
        cluster=ClusterClientFactory.get_cluster_client(settings),
        history=FileRolloutHistory(settings.state_file),
        policy=settings.rollout_policy(),
        progress=progress,
    )


def build_stages(manifest: ManifestSet, engine: RolloutEngine, timeout: float,
                 publisher: Optional[ArtifactPublisher] = None, image_for: Optional[str] = None,
                 verify: bool = True, cancel: Optional[asyncio.Event] = None) -> List[Stage]:
    """Stages for a release: build, publish, deploy each workload in order, verify."""
    stages: List[Stage] = []
    publish = None
    if publisher is not None:
        if image_for is None or manifest.deployment(image_for) is None:
            raise ValidationError(f"--image-for must name a workload in the manifest, got {image_for!r}")
        build = BuildStage(publisher)
        publish = PublishStage(publisher, build)
        stages.extend([build, publish])

    for spec, services in manifest.groups():
        image_from = publish if spec.name == image_for else None
        stages.append(DeployStage(engine, spec, timeout, services=services,
                                  image_from=image_from, cancel=cancel))

    if verify:
        for spec, services in manifest.groups():
            image_from = publish if spec.name == image_for else None
            stages.append(VerifyStage(engine, spec, services=services, image_from=image_from))
    return stages


async def _run_pipeline(coordinator: PipelineCoordinator,
                        stages_for: Callable[[asyncio.Event], List[Stage]]) -> PipelineRun:
    """Build the stages around a cancel event that SIGINT/SIGTERM set, then run them."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass
    return await coordinator.run(stages_for(cancel))


def _print_record(record: RolloutRecord) -> None:
    print(f"  Workload: {record.workload}")
    print(f"  Phase: {record.phase.value}")
    print(f"  Image: {record.target.image}")
    print(f"  Replicas: {record.ready_replicas}/{record.desired_replicas} ready")
    if record.previous is not None:
        print(f"  Previous: {record.previous.image}")
    if record.failure_reason:
        print(f"  Failure ({record.error_kind}): {record.failure_reason}")


@click.group()
def cli():
    """Release orchestration: deploy, roll back and inspect workloads"""
    try:
        settings = get_settings()
    except pydantic.ValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(EXIT_VALIDATION)
    _configure_logging(settings.log_level)


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    for key, value in settings.get_environment_dict().items():
        print(f"  {key}: {value}")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
def validate(manifest):
    """Parse and validate a release manifest"""
    try:
        release = load(manifest)
    except ValidationError as e:
        print(f"❌ {e}")
        sys.exit(e.exit_code)

    print(f"✅ {manifest} is valid")
    for spec, services in release.groups():
        exposed = ", ".join(f"{s.name}:{s.port}->{s.target_port} ({s.exposure.value})" for s in services)
        print(f"  {spec.name}: {spec.image} x{spec.replicas}" + (f" [{exposed}]" if exposed else ""))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--timeout", type=float, default=None,
              help="Rollout timeout per workload in seconds (default from settings)")
@click.option("--build/--no-build", default=False,
              help="Build and publish the application image before deploying")
@click.option("--image-for", default=None,
              help="Workload that runs the freshly published image")
@click.option("--tag", default=None,
              help="Image tag to publish (default: UTC timestamp)")
@click.option("--verify/--no-verify", default=True,
              help="Re-check every workload after deploying")
def deploy(manifest, timeout, build, image_for, tag, verify):
    """Deploy the workloads of a release manifest"""
    settings = get_settings()
    timeout = timeout or settings.rollout_timeout_secs
    progress = _progress_stream(settings)

    try:
        release = load(manifest)
        engine = _engine(settings, progress)

        publisher = None
        if build:
            from releasectl.aws.ecr_publisher import EcrPublisher

            publisher = EcrPublisher(
                repository=settings.ecr_repo_name,
                tag=tag or datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
                build_command=settings.build_command,
                context=settings.docker_context,
                dockerfile=settings.dockerfile,
            )

        def stages_for(cancel: asyncio.Event) -> List[Stage]:
            return build_stages(release, engine, timeout, publisher=publisher,
                                image_for=image_for, verify=verify, cancel=cancel)

        pipeline_run = asyncio.run(_run_pipeline(PipelineCoordinator(progress), stages_for))
    except ValidationError as e:
        print(f"❌ {e}")
        sys.exit(e.exit_code)

    print(f"Pipeline {pipeline_run.run_id}:")
    for result in pipeline_run.results:
        line = f"  {result.name}: {result.outcome.value}"
        if result.output:
            line += f" - {result.output}"
        print(line)

    failed = pipeline_run.failed_stage
    if failed is not None:
        print(f"❌ Failed at {failed.name} ({failed.error.kind}): {failed.error.message}")
        sys.exit(exit_code_for(failed.error.kind))
    print("✅ Release deployed")


@cli.command()
@click.argument("workload")
@click.option("--timeout", type=float, default=None,
              help="Rollout timeout in seconds (default from settings)")
def rollback(workload, timeout):
    """Roll a workload back to its previous good revision"""
    settings = get_settings()
    engine = _engine(settings, _progress_stream(settings))

    try:
        record = asyncio.run(engine.roll_back(workload, timeout or settings.rollout_timeout_secs))
    except ReleaseError as e:
        print(f"❌ {e}")
        sys.exit(e.exit_code)

    print("Rollback:")
    _print_record(record)
    if not record.succeeded:
        sys.exit(exit_code_for(record.error_kind))
    print(f"✅ {workload} rolled back to {record.target.image}")


@cli.command()
@click.argument("workload")
@click.option("--json", "as_json", is_flag=True, help="Print the latest rollout record as JSON")
def status(workload, as_json):
    """Show the latest rollout and live cluster status of a workload"""
    settings = get_settings()
    engine = _engine(settings)
    record = engine.history.latest(workload)

    if as_json:
        if record is None:
            print("null")
        else:
            print(record.model_dump_json(indent=2, by_alias=True))
        return

    print(f"Status of {workload}:")
    if record is None:
        print("  No rollouts recorded")
    else:
        _print_record(record)
    print(f"  Revisions: {len(engine.history.revisions(workload))}")

    try:
        observed = asyncio.run(engine.observe(workload))
    except WorkloadNotFound:
        print("  Cluster: not deployed")
        return
    except ReleaseError as e:
        print(f"❌ {e}")
        sys.exit(e.exit_code)

    print(f"  Cluster: {observed.ready_replicas}/{observed.desired_replicas} ready, "
          f"{observed.condition.value}, image {observed.image}")


def main():
    cli()


if __name__ == "__main__":
    main()
