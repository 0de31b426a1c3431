"""Build the application image and publish it to Amazon ECR."""
import base64
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from releasectl.artifacts import ArtifactPublisher, ArtifactRef
from releasectl.aws.clients import get_ecr_client
from releasectl.errors import PublishError
from releasectl.manifest.models import ImageRef
from releasectl.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


class EcrPublisher(ArtifactPublisher):
    """Packages the application, builds its image and pushes it to ECR."""

    def __init__(self, repository: str, tag: str, build_command: Optional[str] = None,
                 context: str = ".", dockerfile: str = "Dockerfile", ecr_client: Any = None):
        self.repository = repository
        self.tag = tag
        self.build_command = build_command
        self.context = Path(context)
        self.dockerfile = dockerfile
        self._ecr_client = ecr_client

    @property
    def ecr_client(self):
        if self._ecr_client is None:
            self._ecr_client = get_ecr_client()
        return self._ecr_client

    def _run(self, command: List[str], cwd: Optional[Path] = None, input: Optional[bytes] = None) -> None:
        logger.info(f"Running: {' '.join(command)}")
        try:
            subprocess.run(command, check=True, cwd=cwd, input=input)
        except subprocess.CalledProcessError as e:
            raise PublishError(f"{command[0]} exited with {e.returncode}: {' '.join(command)}") from e
        except FileNotFoundError as e:
            raise PublishError(f"{command[0]} is not installed") from e

    @log_execution_time
    def build(self) -> ArtifactRef:
        """Run the build command, then docker build a local image."""
        if self.build_command:
            self._run(shlex.split(self.build_command), cwd=self.context)

        local_image = f"{self.repository}:{self.tag}"
        self._run(["docker", "build", "-t", local_image, "-f", self.dockerfile, "."], cwd=self.context)
        logger.info(f"✅ Built image {local_image}")
        return ArtifactRef(image=local_image, context=str(self.context))

    def _ensure_repository(self) -> None:
        """Create the ECR repository if needed."""
        try:
            self.ecr_client.create_repository(
                repositoryName=self.repository,
                imageScanningConfiguration={'scanOnPush': True}
            )
            logger.info(f"Created ECR repository: {self.repository}")
        except self.ecr_client.exceptions.RepositoryAlreadyExistsException:
            logger.info(f"ECR repository {self.repository} already exists")

    @log_execution_time
    def publish(self, artifact: ArtifactRef) -> ImageRef:
        """Log in to ECR, tag the local image and push it."""
        try:
            self._ensure_repository()
            token_data = self.ecr_client.get_authorization_token()['authorizationData'][0]
        except (ClientError, BotoCoreError) as e:
            raise PublishError(f"ECR unavailable: {e}") from e

        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)
        endpoint = token_data['proxyEndpoint']
        registry = endpoint.split('//')[-1]

        image = ImageRef(name=f"{registry}/{self.repository}", tag=self.tag)

        self._run(["docker", "login", "--username", username, "--password-stdin", endpoint],
                  input=password.encode())
        self._run(["docker", "tag", artifact.image, str(image)])
        self._run(["docker", "push", str(image)])

        logger.info(f"✅ Pushed image to ECR: {image}")
        return image
