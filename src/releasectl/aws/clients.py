"""AWS client management for the image registry."""
import os
import logging
from typing import Any, Dict

import boto3

from releasectl.config.settings import get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Process-wide cache of boto3 clients built from releasectl settings."""
    _instance = None
    _clients: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._configure()
        return cls._instance

    def _configure(self):
        settings = get_settings()
        self.region = settings.aws_region
        self.endpoint_url = settings.aws_endpoint_url
        self.profile = os.environ.get('AWS_PROFILE')
        logger.info(f"AWS clients: region={self.region} endpoint={self.endpoint_url or 'default'} "
                    f"profile={self.profile or 'default chain'}")

    def get_client(self, service_name: str) -> Any:
        """Get or create a client for `service_name`."""
        if service_name not in self._clients:
            # A named profile (e.g. SSO) wins over a custom endpoint
            if self.profile:
                session = boto3.Session(profile_name=self.profile)
                client = session.client(service_name, region_name=self.region)
            else:
                client = boto3.client(service_name, region_name=self.region,
                                      endpoint_url=self.endpoint_url or None)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    @classmethod
    def reset(cls):
        """Drop cached clients and settings; the next use re-reads configuration."""
        cls._clients.clear()
        cls._instance = None


def get_ecr_client():
    """Get the ECR client."""
    return AWSClientManager().get_client('ecr')
