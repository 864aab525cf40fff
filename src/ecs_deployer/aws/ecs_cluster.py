"""ECS cluster management."""
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from ecs_deployer.aws.utils import error_code, get_ecs_client, to_ecs_tags

logger = logging.getLogger(__name__)


class ECSClusterManager:
    """Manager for the ECS cluster a service runs in."""

    def __init__(self, ecs_client=None):
        self.ecs_client = ecs_client or get_ecs_client()

    def find_cluster(self, cluster_name: str) -> Optional[Dict[str, Any]]:
        """Return the cluster description, or None when it does not exist or is inactive."""
        response = self.ecs_client.describe_clusters(
            clusters=[cluster_name],
            include=['SETTINGS']
        )
        for cluster in response.get('clusters', []):
            if cluster.get('status') == 'ACTIVE':
                return cluster
        return None

    @staticmethod
    def container_insights_enabled(cluster: Dict[str, Any]) -> bool:
        for setting in cluster.get('settings', []) or []:
            if setting.get('name') == 'containerInsights':
                return setting.get('value') == 'enabled'
        return False

    def create_cluster(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create the cluster unless an active one with that name exists."""
        cluster_name = params['name']

        existing_cluster = self.find_cluster(cluster_name)
        if existing_cluster:
            logger.info(f"Using existing ECS cluster: {cluster_name}")
            return {'arn': existing_cluster['clusterArn'], 'name': cluster_name}

        try:
            cluster_response = self.ecs_client.create_cluster(
                clusterName=cluster_name,
                tags=to_ecs_tags(params.get('tags')),
                settings=[
                    {
                        'name': 'containerInsights',
                        'value': 'enabled' if params.get('container_insights') else 'disabled'
                    }
                ]
            )
        except ClientError as e:
            logger.error(f"Failed to create ECS cluster {cluster_name}: {e}")
            raise

        cluster_arn = cluster_response['cluster']['clusterArn']
        logger.info(f"Created ECS cluster: {cluster_name}")
        return {'arn': cluster_arn, 'name': cluster_name}

    def update_cluster(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Apply cluster settings in place."""
        cluster_name = params['name']
        response = self.ecs_client.update_cluster_settings(
            cluster=cluster_name,
            settings=[
                {
                    'name': 'containerInsights',
                    'value': 'enabled' if params.get('container_insights') else 'disabled'
                }
            ]
        )
        logger.info(f"Updated ECS cluster settings: {cluster_name}")
        return {'arn': response['cluster']['clusterArn'], 'name': cluster_name}

    def delete_cluster(self, params: Dict[str, Any]) -> Dict[str, Any]:
        cluster_name = params['name']
        try:
            self.ecs_client.delete_cluster(cluster=cluster_name)
            logger.info(f"Deleted ECS cluster: {cluster_name}")
        except ClientError as e:
            if error_code(e) in ('ClusterNotFoundException',):
                logger.info(f"ECS cluster already gone: {cluster_name}")
            else:
                raise
        return {}
