"""AWS utility functions and client management."""
import os
import boto3
import logging
from typing import Any, Dict, List, Optional
from botocore.config import Config

from ecs_deployer.settings import get_settings

logger = logging.getLogger(__name__)

# botocore's own retries stay short; the apply engine owns backoff
BOTO_CONFIG = Config(retries={'max_attempts': 2, 'mode': 'standard'})


class AWSClientManager:
    """Singleton manager for AWS service clients."""
    _instance = None
    _clients = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the client manager with settings."""
        self.settings = get_settings()

        # Cache commonly used values
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode

        logger.info("Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    @classmethod
    def reset(cls):
        """Forget the instance and its clients so settings are re-read."""
        cls._clients.clear()
        cls._instance = None

    def get_client(self, service_name: str, region: Optional[str] = None) -> Any:
        """Get or create an AWS service client, in the configured region unless one is given."""
        region = region or self.region
        key = service_name if region == self.region else f"{service_name}:{region}"
        # Return existing client if already created
        if key in self._clients:
            return self._clients[key]

        client_kwargs = {
            'region_name': region,
            'config': BOTO_CONFIG,
        }

        # Check for AWS profile in environment (for SSO)
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            try:
                session = boto3.Session(profile_name=aws_profile)
                client = session.client(service_name, **client_kwargs)
                self._clients[key] = client
                logger.debug(f"Created {service_name} client using profile: {aws_profile}")
                return client
            except Exception as e:
                logger.warning(f"Failed to create client with profile {aws_profile}: {e}")
                # Fall back to manual credential configuration

        # Add credentials from settings (fallback or for non-SSO modes)
        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        # Add endpoint URL for local/mock modes
        if self.endpoint_url and self.settings.is_local:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = boto3.client(service_name, **client_kwargs)
            self._clients[key] = client
            logger.debug(f"Created {service_name} client")
            return client
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise


# Convenience functions for common operations

def get_ecs_client():
    """Get the ECS client."""
    return AWSClientManager().get_client('ecs')


def get_elbv2_client():
    """Get the Elastic Load Balancing v2 client."""
    return AWSClientManager().get_client('elbv2')


def get_ec2_client():
    """Get the EC2 client."""
    return AWSClientManager().get_client('ec2')


def get_logs_client():
    """Get the CloudWatch Logs client."""
    return AWSClientManager().get_client('logs')


def get_ecr_client(region: Optional[str] = None):
    """Get the ECR client for a registry region (defaults to the configured one)."""
    return AWSClientManager().get_client('ecr', region)


def get_sts_client():
    """Get the STS client."""
    return AWSClientManager().get_client('sts')


def to_ecs_tags(tags: Optional[Dict[str, str]]) -> List[Dict[str, str]]:
    """ECS wants lowercase key/value tag entries."""
    return [{'key': k, 'value': v} for k, v in (tags or {}).items()]


def to_elb_tags(tags: Optional[Dict[str, str]]) -> List[Dict[str, str]]:
    """ELBv2 wants capitalised Key/Value tag entries."""
    return [{'Key': k, 'Value': v} for k, v in (tags or {}).items()]


def error_code(error) -> str:
    """Error code of a botocore ClientError."""
    return error.response.get('Error', {}).get('Code', '')


def get_account_id() -> str:
    """Account id from settings, falling back to the STS caller identity."""
    settings = get_settings()
    if settings.aws_account_id:
        return settings.aws_account_id
    return get_sts_client().get_caller_identity()['Account']
