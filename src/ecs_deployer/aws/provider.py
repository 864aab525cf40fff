"""
AWS provider: the single seam between deployment logic and boto3.

The apply engine calls execute(kind, action, params); the runner and the
status reporter use the observe/describe helpers. botocore errors leave this
module already classified as transient or permanent.
"""
import logging
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecs_deployer.aws.ecr import ECRImageVerifier, parse_ecr_image
from ecs_deployer.aws.ecs_cluster import ECSClusterManager
from ecs_deployer.aws.ecs_services import ECSServiceManager
from ecs_deployer.aws.ecs_task_definitions import TaskDefinitionBuilder
from ecs_deployer.aws.load_balancer import LoadBalancerManager
from ecs_deployer.aws.observer import StateObserver
from ecs_deployer.aws.utils import get_account_id
from ecs_deployer.errors import PermanentCloudError, classify_client_error
from ecs_deployer.settings import get_settings
from ecs_deployer.spec.models import DeploymentSpec
from ecs_deployer.state import Action, ObservedState, ResourceKind
from ecs_deployer.status_reporter import ServiceHealth
from ecs_deployer.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


class AwsProvider:
    """Cloud provider backed by the ECS, ELBv2, EC2, CloudWatch Logs, ECR and STS APIs."""

    def __init__(self, region: Optional[str] = None, clusters: ECSClusterManager = None,
                 task_definitions: TaskDefinitionBuilder = None,
                 services: ECSServiceManager = None,
                 load_balancers: LoadBalancerManager = None,
                 images: ECRImageVerifier = None):
        self.region = region or get_settings().aws_region
        self.clusters = clusters or ECSClusterManager()
        self.task_definitions = task_definitions or TaskDefinitionBuilder(self.region)
        self.services = services or ECSServiceManager()
        self.load_balancers = load_balancers or LoadBalancerManager()
        self._images = images
        self.observer = StateObserver(self.clusters, self.task_definitions,
                                      self.services, self.load_balancers)

        self._handlers: Dict[tuple, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            (ResourceKind.CLUSTER, Action.CREATE): self.clusters.create_cluster,
            (ResourceKind.CLUSTER, Action.UPDATE): self.clusters.update_cluster,
            (ResourceKind.CLUSTER, Action.DELETE): self.clusters.delete_cluster,
            (ResourceKind.LOG_GROUP, Action.CREATE): self.task_definitions.create_log_group,
            (ResourceKind.LOG_GROUP, Action.UPDATE): self.task_definitions.update_log_group,
            (ResourceKind.TARGET_GROUP, Action.CREATE): self.load_balancers.create_target_group,
            (ResourceKind.TARGET_GROUP, Action.UPDATE): self.load_balancers.update_target_group,
            (ResourceKind.TARGET_GROUP, Action.DELETE): self.load_balancers.delete_target_group,
            (ResourceKind.LOAD_BALANCER, Action.CREATE): self.load_balancers.create_load_balancer,
            (ResourceKind.LOAD_BALANCER, Action.UPDATE): self.load_balancers.update_load_balancer,
            (ResourceKind.LOAD_BALANCER, Action.DELETE): self.load_balancers.delete_load_balancer,
            (ResourceKind.LISTENER, Action.CREATE): self.load_balancers.create_listener,
            (ResourceKind.LISTENER, Action.UPDATE): self.load_balancers.update_listener,
            (ResourceKind.LISTENER, Action.DELETE): self.load_balancers.delete_listener,
            (ResourceKind.TASK_DEFINITION, Action.CREATE): self.task_definitions.register,
            (ResourceKind.TASK_DEFINITION, Action.UPDATE): self.task_definitions.register,
            (ResourceKind.TASK_DEFINITION, Action.DELETE): self.task_definitions.deregister,
            (ResourceKind.SERVICE, Action.CREATE): self.services.create_service,
            (ResourceKind.SERVICE, Action.UPDATE): self.services.update_service,
            (ResourceKind.SERVICE, Action.DELETE): self.services.delete_service,
        }

    @property
    def images(self) -> ECRImageVerifier:
        if self._images is None:
            self._images = ECRImageVerifier()
        return self._images

    def execute(self, kind: ResourceKind, action: Action, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run one control-plane operation and return its outputs."""
        operation_id = f"{action.value}:{kind.value}"
        handler = self._handlers.get((kind, action))
        if handler is None:
            raise PermanentCloudError(f"{operation_id} is not supported", operation_id=operation_id)
        try:
            return handler(params)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, operation_id) from e

    @log_execution_time
    def observe(self, spec: DeploymentSpec) -> ObservedState:
        try:
            return self.observer.observe(spec)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, 'observe') from e

    def observe_service_chain(self, cluster: str, service: str) -> ObservedState:
        try:
            return self.observer.observe_service_chain(cluster, service)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, 'observe') from e

    def account_id(self) -> str:
        try:
            return get_account_id()
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, 'sts') from e

    def image_exists(self, image: str) -> Optional[bool]:
        """True/False for ECR images, None when the image lives in another registry."""
        ecr_image = parse_ecr_image(image)
        if ecr_image is None:
            return None
        try:
            return self.images.image_exists(ecr_image)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, 'verify_image') from e

    def describe_service_health(self, cluster: str, service: str) -> ServiceHealth:
        """One stability reading: task counts, primary rollout and target health."""
        try:
            current = self.services.find_service(cluster, service)
            if current is None:
                return ServiceHealth(found=False)

            deployments = current.get('deployments', [])
            primary = next((d for d in deployments if d.get('status') == 'PRIMARY'), {})

            healthy = None
            unhealthy = 0
            for lb in current.get('loadBalancers', []):
                if lb.get('targetGroupArn'):
                    healthy, unhealthy = self.load_balancers.describe_target_health(lb['targetGroupArn'])
                    break
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, 'describe_service_health') from e

        return ServiceHealth(
            found=True,
            status=current.get('status', 'ACTIVE'),
            desired=current.get('desiredCount', 0),
            running=current.get('runningCount', 0),
            pending=current.get('pendingCount', 0),
            deployments=len(deployments),
            rollout_state=primary.get('rolloutState'),
            failed_tasks=primary.get('failedTasks', 0),
            healthy_targets=healthy,
            unhealthy_targets=unhealthy,
        )
