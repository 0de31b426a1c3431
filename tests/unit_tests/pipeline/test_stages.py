from releasectl.artifacts import ArtifactPublisher, ArtifactRef
from releasectl.errors import PublishError
from releasectl.manifest import ImageRef
from releasectl.pipeline import BuildStage, DeployStage, PublishStage, StageOutcome, VerifyStage
from tests.consts import DEFAULT_TIMEOUT, SHORT_TIMEOUT
from tests.fixtures.manifest_fixtures import make_spec


class FakePublisher(ArtifactPublisher):
    def __init__(self, tag="1.1.0", fail_publish=False):
        self.tag = tag
        self.fail_publish = fail_publish
        self.published = []

    def build(self) -> ArtifactRef:
        return ArtifactRef(image=f"webapp:{self.tag}", context=".")

    def publish(self, artifact: ArtifactRef) -> ImageRef:
        if self.fail_publish:
            raise PublishError("registry refused the push")
        self.published.append(artifact.image)
        return ImageRef(name="registry.local/webapp", tag=self.tag)


async def test_build_and_publish_hand_over_artifacts():
    publisher = FakePublisher()
    build = BuildStage(publisher)
    publish = PublishStage(publisher, build)

    assert (await build.execute()).output == "webapp:1.1.0"
    result = await publish.execute()

    assert result.outcome == StageOutcome.SUCCESS
    assert result.output == "registry.local/webapp:1.1.0"
    assert publish.image == ImageRef(name="registry.local/webapp", tag="1.1.0")
    assert publisher.published == ["webapp:1.1.0"]


async def test_publish_without_build_fails():
    publisher = FakePublisher()
    result = await PublishStage(publisher, BuildStage(publisher)).execute()

    assert result.outcome == StageOutcome.FAILURE
    assert result.error.kind == "ValidationError"


async def test_publish_error_kind():
    publisher = FakePublisher(fail_publish=True)
    build = BuildStage(publisher)
    await build.execute()

    result = await PublishStage(publisher, build).execute()

    assert result.error.kind == "PublishError"


async def test_deploy_applies_workload_and_services(engine, cluster, manifest):
    spec = manifest.deployment("webapp")
    stage = DeployStage(engine, spec, DEFAULT_TIMEOUT, services=manifest.services_for("webapp"))

    result = await stage.execute()

    assert stage.name == "deploy-webapp"
    assert result.outcome == StageOutcome.SUCCESS
    assert result.output.startswith("Succeeded")
    assert stage.record.succeeded
    assert cluster.get_service("webapp").target_port == 8080


async def test_deploy_uses_published_image(engine, cluster):
    publisher = FakePublisher(tag="2.5.0")
    build = BuildStage(publisher)
    publish = PublishStage(publisher, build)
    await build.execute()
    await publish.execute()

    result = await DeployStage(engine, make_spec(tag=""), DEFAULT_TIMEOUT, image_from=publish).execute()

    assert result.outcome == StageOutcome.SUCCESS
    assert str(cluster.applied_spec("webapp").image) == "registry.local/webapp:2.5.0"


async def test_deploy_untagged_image_fails_validation(engine):
    result = await DeployStage(engine, make_spec(tag=""), DEFAULT_TIMEOUT).execute()

    assert result.outcome == StageOutcome.FAILURE
    assert result.error.kind == "ValidationError"


async def test_rolled_back_deploy_is_a_convergence_failure(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.stall_image(str(spec_v2.image))

    stage = DeployStage(engine, spec_v2, SHORT_TIMEOUT)
    result = await stage.execute()

    assert result.outcome == StageOutcome.FAILURE
    assert result.error.kind == "ConvergenceFailure"
    assert "RolledBack" in result.error.message
    assert stage.record.phase.value == "RolledBack"


async def test_transient_deploy_failure_kind(engine, cluster, spec_v1):
    cluster.fail_next(10)

    result = await DeployStage(engine, spec_v1, DEFAULT_TIMEOUT).execute()

    assert result.error.kind == "TransientInfraError"


async def test_verify_converged_workload(engine, manifest):
    spec = manifest.deployment("webapp")
    services = manifest.services_for("webapp")
    await DeployStage(engine, spec, DEFAULT_TIMEOUT, services=services).execute()

    result = await VerifyStage(engine, spec, services=services).execute()

    assert result.outcome == StageOutcome.SUCCESS
    assert result.output == "2/2 ready"


async def test_verify_missing_workload(engine, spec_v1):
    result = await VerifyStage(engine, spec_v1).execute()

    assert result.outcome == StageOutcome.FAILURE
    assert result.error.kind == "ConvergenceFailure"


async def test_verify_detects_image_drift(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    result = await VerifyStage(engine, spec_v2).execute()

    assert result.outcome == StageOutcome.FAILURE
    assert "expected registry.local/webapp:2.0.0" in result.error.message


async def test_verify_missing_service(engine, manifest):
    spec = manifest.deployment("webapp")
    await engine.roll_out(spec, DEFAULT_TIMEOUT)

    result = await VerifyStage(engine, spec, services=manifest.services_for("webapp")).execute()

    assert result.outcome == StageOutcome.FAILURE
    assert "service webapp" in result.error.message
