import subprocess

import pytest

from releasectl.artifacts import ArtifactRef
from releasectl.aws.ecr_publisher import EcrPublisher
from releasectl.errors import PublishError
from tests.consts import TEST_REPOSITORY, TEST_TAG


@pytest.fixture
def docker_calls(monkeypatch):
    """Record subprocess invocations instead of running docker/mvn."""
    calls = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs))
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr("releasectl.aws.ecr_publisher.subprocess.run", fake_run)
    return calls


def test_build_runs_packaging_then_docker(docker_calls, tmp_path):
    publisher = EcrPublisher(TEST_REPOSITORY, TEST_TAG, build_command="mvn clean package -DskipTests",
                             context=str(tmp_path))

    artifact = publisher.build()

    assert artifact.image == f"{TEST_REPOSITORY}:{TEST_TAG}"
    commands = [command for command, _ in docker_calls]
    assert commands == [
        ["mvn", "clean", "package", "-DskipTests"],
        ["docker", "build", "-t", f"{TEST_REPOSITORY}:{TEST_TAG}", "-f", "Dockerfile", "."],
    ]
    assert all(kwargs["cwd"] == tmp_path for _, kwargs in docker_calls)


def test_build_failure_is_publish_error(monkeypatch):
    def failing_run(command, **kwargs):
        raise subprocess.CalledProcessError(1, command)

    monkeypatch.setattr("releasectl.aws.ecr_publisher.subprocess.run", failing_run)

    with pytest.raises(PublishError):
        EcrPublisher(TEST_REPOSITORY, TEST_TAG, build_command=None).build()


def test_missing_docker_is_publish_error(monkeypatch):
    def missing_binary(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr("releasectl.aws.ecr_publisher.subprocess.run", missing_binary)

    with pytest.raises(PublishError, match="not installed"):
        EcrPublisher(TEST_REPOSITORY, TEST_TAG).build()


def test_publish_pushes_to_ecr(mocked_aws, docker_calls):
    publisher = EcrPublisher(TEST_REPOSITORY, TEST_TAG, ecr_client=mocked_aws)

    image = publisher.publish(ArtifactRef(image=f"{TEST_REPOSITORY}:{TEST_TAG}"))

    assert image.tag == TEST_TAG
    assert image.name.endswith(f".amazonaws.com/{TEST_REPOSITORY}")
    repositories = mocked_aws.describe_repositories()["repositories"]
    assert [repo["repositoryName"] for repo in repositories] == [TEST_REPOSITORY]

    login, tag, push = docker_calls
    assert login[0][:2] == ["docker", "login"]
    assert "--password-stdin" in login[0]
    assert login[1]["input"]
    assert tag[0] == ["docker", "tag", f"{TEST_REPOSITORY}:{TEST_TAG}", str(image)]
    assert push[0] == ["docker", "push", str(image)]


def test_publish_reuses_existing_repository(mocked_aws, docker_calls):
    mocked_aws.create_repository(repositoryName=TEST_REPOSITORY)
    publisher = EcrPublisher(TEST_REPOSITORY, TEST_TAG, ecr_client=mocked_aws)

    publisher.publish(ArtifactRef(image=f"{TEST_REPOSITORY}:{TEST_TAG}"))

    assert len(mocked_aws.describe_repositories()["repositories"]) == 1


def test_default_client_comes_from_client_manager(mocked_aws, docker_calls):
    publisher = EcrPublisher(TEST_REPOSITORY, TEST_TAG)

    publisher.publish(ArtifactRef(image=f"{TEST_REPOSITORY}:{TEST_TAG}"))

    assert publisher.ecr_client.meta.region_name == "us-east-1"
    assert mocked_aws.describe_repositories()["repositories"][0]["repositoryName"] == TEST_REPOSITORY
