"""
ECS Task Definition Builder
Registers Fargate task definitions for the service container and manages the
CloudWatch log group the container writes to.
"""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ecs_deployer.aws.utils import error_code, get_ecs_client, get_logs_client, to_ecs_tags

logger = logging.getLogger(__name__)


class TaskDefinitionBuilder:
    """Builds and registers task definitions; revisions are never edited in place."""

    def __init__(self, region: str, ecs_client=None, logs_client=None):
        self.region = region
        self.ecs_client = ecs_client or get_ecs_client()
        self.logs_client = logs_client or get_logs_client()

    # Log groups

    def find_log_group(self, log_group_name: str) -> Optional[Dict[str, Any]]:
        response = self.logs_client.describe_log_groups(logGroupNamePrefix=log_group_name)
        for group in response.get('logGroups', []):
            if group['logGroupName'] == log_group_name:
                return group
        return None

    def create_log_group(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create CloudWatch log group for task logging."""
        log_group_name = params['name']
        try:
            self.logs_client.create_log_group(
                logGroupName=log_group_name,
                tags=params.get('tags') or {}
            )
            logger.info(f"Created log group: {log_group_name}")
        except self.logs_client.exceptions.ResourceAlreadyExistsException:
            logger.info(f"Log group already exists: {log_group_name}")
        except Exception as e:
            logger.error(f"Failed to create log group {log_group_name}: {e}")
            raise

        return self.update_log_group(params)

    def update_log_group(self, params: Dict[str, Any]) -> Dict[str, Any]:
        log_group_name = params['name']
        if params.get('retention_days'):
            self.logs_client.put_retention_policy(
                logGroupName=log_group_name,
                retentionInDays=params['retention_days']
            )
        group = self.find_log_group(log_group_name) or {}
        return {'arn': group.get('arn', log_group_name), 'name': log_group_name}

    # Task definitions

    def build_task_definition(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Translate desired parameters into a register_task_definition request."""
        container = {
            'name': params['container_name'],
            'image': params['image'],
            'essential': True,
            'portMappings': [
                {
                    'containerPort': params['container_port'],
                    'protocol': 'tcp'
                }
            ],
            'environment': [
                {'name': name, 'value': value}
                for name, value in sorted((params.get('environment') or {}).items())
            ],
        }

        if params.get('log_group'):
            container['logConfiguration'] = {
                'logDriver': 'awslogs',
                'options': {
                    'awslogs-group': params['log_group'],
                    'awslogs-region': self.region,
                    'awslogs-stream-prefix': params.get('stream_prefix') or 'ecs'
                }
            }

        task_definition = {
            'family': params['family'],
            'networkMode': 'awsvpc',
            'requiresCompatibilities': [params.get('launch_type') or 'FARGATE'],
            'cpu': str(params['cpu']),
            'memory': str(params['memory']),
            'containerDefinitions': [container],
        }
        if params.get('execution_role_arn'):
            task_definition['executionRoleArn'] = params['execution_role_arn']
        if params.get('task_role_arn'):
            task_definition['taskRoleArn'] = params['task_role_arn']
        if params.get('tags'):
            task_definition['tags'] = to_ecs_tags(params['tags'])
        return task_definition

    def register(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Register a new revision of the family."""
        task_definition = self.build_task_definition(params)
        try:
            response = self.ecs_client.register_task_definition(**task_definition)
        except ClientError as e:
            logger.error(f"Failed to register task definition {params['family']}: {e}")
            raise

        registered = response['taskDefinition']
        logger.info(f"Registered task definition: {registered['family']}:{registered['revision']}")
        return {
            'arn': registered['taskDefinitionArn'],
            'family': registered['family'],
            'revision': registered['revision'],
        }

    def describe_latest(self, family: str) -> Optional[Dict[str, Any]]:
        """Latest ACTIVE revision of a family, or None."""
        try:
            response = self.ecs_client.describe_task_definition(taskDefinition=family)
        except ClientError as e:
            if error_code(e) in ('ClientException', 'InvalidParameterException'):
                return None
            raise
        task_definition = response['taskDefinition']
        if task_definition.get('status', 'ACTIVE') != 'ACTIVE':
            return None
        return task_definition

    def describe(self, task_definition_arn: str) -> Optional[Dict[str, Any]]:
        try:
            return self.ecs_client.describe_task_definition(taskDefinition=task_definition_arn)['taskDefinition']
        except ClientError as e:
            if error_code(e) in ('ClientException', 'InvalidParameterException'):
                return None
            raise

    def list_revisions(self, family: str) -> List[str]:
        """ACTIVE revision ARNs of exactly this family."""
        arns = []
        kwargs = {'familyPrefix': family, 'status': 'ACTIVE'}
        while True:
            response = self.ecs_client.list_task_definitions(**kwargs)
            for arn in response.get('taskDefinitionArns', []):
                name = arn.rsplit('/', 1)[-1]
                if name.rsplit(':', 1)[0] == family:
                    arns.append(arn)
            token = response.get('nextToken')
            if not token:
                return arns
            kwargs['nextToken'] = token

    def deregister(self, params: Dict[str, Any]) -> Dict[str, Any]:
        deregistered = []
        for arn in params.get('arns', []):
            try:
                self.ecs_client.deregister_task_definition(taskDefinition=arn)
                deregistered.append(arn)
                logger.info(f"Deregistered task definition: {arn}")
            except ClientError as e:
                if error_code(e) in ('ClientException', 'InvalidParameterException'):
                    logger.info(f"Task definition already inactive: {arn}")
                else:
                    raise
        return {'deregistered': deregistered}

    @staticmethod
    def fingerprint(task_definition: Dict[str, Any]) -> Dict[str, Any]:
        """Comparable view of a described task definition."""
        containers = task_definition.get('containerDefinitions') or [{}]
        container = containers[0]
        ports = container.get('portMappings') or [{}]
        log_options = (container.get('logConfiguration') or {}).get('options') or {}
        compatibilities = task_definition.get('requiresCompatibilities') or [None]
        environment = {
            item['name']: item.get('value', '') for item in container.get('environment', []) or []
        }
        cpu = task_definition.get('cpu')
        memory = task_definition.get('memory')
        return {
            'family': task_definition.get('family'),
            'container_name': container.get('name'),
            'image': container.get('image'),
            'cpu': str(cpu) if cpu is not None else None,
            'memory': str(memory) if memory is not None else None,
            'container_port': ports[0].get('containerPort'),
            'environment': sorted(environment.items()),
            'launch_type': compatibilities[0],
            'execution_role_arn': task_definition.get('executionRoleArn'),
            'task_role_arn': task_definition.get('taskRoleArn'),
            'log_group': log_options.get('awslogs-group'),
            'stream_prefix': log_options.get('awslogs-stream-prefix'),
        }
