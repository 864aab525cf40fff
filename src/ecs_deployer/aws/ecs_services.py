"""ECS service management for the load-balanced application service."""
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from ecs_deployer.aws.utils import error_code, get_ecs_client, to_ecs_tags

logger = logging.getLogger(__name__)

GONE_CODES = ('ServiceNotFoundException', 'ServiceNotActiveException', 'ClusterNotFoundException')


class ECSServiceManager:
    """Manager for ECS services."""

    def __init__(self, ecs_client=None):
        self.ecs_client = ecs_client or get_ecs_client()

    def find_service(self, cluster_name: str, service_name: str) -> Optional[Dict[str, Any]]:
        """Describe a service; None when the cluster or service does not exist."""
        try:
            response = self.ecs_client.describe_services(
                cluster=cluster_name,
                services=[service_name]
            )
        except ClientError as e:
            if error_code(e) == 'ClusterNotFoundException':
                return None
            raise
        for service in response.get('services', []):
            if service.get('status') != 'INACTIVE':
                return service
        return None

    @staticmethod
    def _network_configuration(params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'awsvpcConfiguration': {
                'subnets': list(params['subnets']),
                'securityGroups': list(params.get('security_groups') or []),
                'assignPublicIp': 'ENABLED' if params.get('assign_public_ip') else 'DISABLED'
            }
        }

    @staticmethod
    def _load_balancers(params: Dict[str, Any]):
        return [
            {
                'targetGroupArn': params['target_group_arn'],
                'containerName': params['container_name'],
                'containerPort': params['container_port']
            }
        ]

    def create_service(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create the service; an existing active service is updated instead."""
        cluster_name = params['cluster']
        service_name = params['name']

        existing_service = self.find_service(cluster_name, service_name)
        if existing_service and existing_service.get('status') == 'ACTIVE':
            logger.info(f"Using existing ECS service: {service_name}")
            return self.update_service(params)

        try:
            service_response = self.ecs_client.create_service(
                cluster=cluster_name,
                serviceName=service_name,
                taskDefinition=params['task_definition_arn'],
                desiredCount=params['desired_count'],
                launchType=params.get('launch_type') or 'FARGATE',
                networkConfiguration=self._network_configuration(params),
                loadBalancers=self._load_balancers(params),
                healthCheckGracePeriodSeconds=params.get('health_check_grace_period', 60),
                deploymentConfiguration={
                    'maximumPercent': 200,
                    'minimumHealthyPercent': 100,
                    'deploymentCircuitBreaker': {'enable': True, 'rollback': True}
                },
                enableExecuteCommand=False,
                tags=to_ecs_tags(params.get('tags'))
            )
        except ClientError as e:
            logger.error(f"Failed to create ECS service {service_name}: {e}")
            raise

        service = service_response['service']
        logger.info(f"Created ECS service: {service_name}")
        return {'arn': service['serviceArn'], 'name': service_name}

    def update_service(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Point the service at the desired revision, count, network and target group."""
        service_name = params['name']
        try:
            response = self.ecs_client.update_service(
                cluster=params['cluster'],
                service=service_name,
                taskDefinition=params['task_definition_arn'],
                desiredCount=params['desired_count'],
                networkConfiguration=self._network_configuration(params),
                loadBalancers=self._load_balancers(params),
                healthCheckGracePeriodSeconds=params.get('health_check_grace_period', 60)
            )
        except ClientError as e:
            logger.error(f"Failed to update ECS service {service_name}: {e}")
            raise

        service = response['service']
        logger.info(f"Updated ECS service: {service_name} -> {params['task_definition_arn']}")
        return {'arn': service['serviceArn'], 'name': service_name}

    def delete_service(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Scale the service to zero and delete it."""
        cluster_name = params['cluster']
        service_name = params['name']
        try:
            self.ecs_client.update_service(
                cluster=cluster_name,
                service=service_name,
                desiredCount=0
            )
            self.ecs_client.delete_service(
                cluster=cluster_name,
                service=service_name,
                force=True
            )
            logger.info(f"Deleted ECS service: {service_name}")
        except ClientError as e:
            if error_code(e) in GONE_CODES:
                logger.info(f"ECS service already gone: {service_name}")
            else:
                raise
        return {}
