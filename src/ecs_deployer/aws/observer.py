"""
Snapshot the AWS resources behind one service into an ObservedState.

Two entry points: observe() looks resources up by the names a descriptor
declares; observe_service_chain() starts from a deployed service and follows
its target group, load balancer and task definition family.
"""
import logging
from typing import Any, Dict, Optional

from ecs_deployer.aws.ecs_cluster import ECSClusterManager
from ecs_deployer.aws.ecs_services import ECSServiceManager
from ecs_deployer.aws.ecs_task_definitions import TaskDefinitionBuilder
from ecs_deployer.aws.load_balancer import LoadBalancerManager
from ecs_deployer.spec.models import DeploymentSpec
from ecs_deployer.state import (
    ClusterState,
    ListenerState,
    LoadBalancerState,
    LogGroupState,
    ObservedState,
    ServiceState,
    TargetGroupState,
    TaskDefinitionState,
)

logger = logging.getLogger(__name__)


def cluster_state(cluster: Dict[str, Any]) -> ClusterState:
    return ClusterState(
        name=cluster['clusterName'],
        arn=cluster['clusterArn'],
        status=cluster.get('status', 'ACTIVE'),
        container_insights=ECSClusterManager.container_insights_enabled(cluster),
        active_services=cluster.get('activeServicesCount', 0),
    )


def log_group_state(group: Dict[str, Any]) -> LogGroupState:
    return LogGroupState(
        name=group['logGroupName'],
        arn=group.get('arn', group['logGroupName']),
        retention_days=group.get('retentionInDays'),
    )


def target_group_state(group: Dict[str, Any]) -> TargetGroupState:
    return TargetGroupState(
        name=group['TargetGroupName'],
        arn=group['TargetGroupArn'],
        port=group.get('Port'),
        protocol=group.get('Protocol'),
        vpc_id=group.get('VpcId'),
        target_type=group.get('TargetType', 'instance'),
        health_check_path=group.get('HealthCheckPath', '/'),
        health_check_interval=group.get('HealthCheckIntervalSeconds'),
        health_check_timeout=group.get('HealthCheckTimeoutSeconds'),
        healthy_threshold=group.get('HealthyThresholdCount'),
        unhealthy_threshold=group.get('UnhealthyThresholdCount'),
        matcher=(group.get('Matcher') or {}).get('HttpCode'),
        load_balancer_arns=tuple(group.get('LoadBalancerArns', [])),
    )


def load_balancer_state(balancer: Dict[str, Any]) -> LoadBalancerState:
    return LoadBalancerState(
        name=balancer['LoadBalancerName'],
        arn=balancer['LoadBalancerArn'],
        dns_name=balancer.get('DNSName', ''),
        scheme=balancer.get('Scheme', 'internet-facing'),
        state=(balancer.get('State') or {}).get('Code', 'active'),
        subnets=tuple(LoadBalancerManager.load_balancer_subnets(balancer)),
        security_groups=tuple(balancer.get('SecurityGroups', [])),
    )


def listener_state(listener: Dict[str, Any]) -> ListenerState:
    certificates = listener.get('Certificates') or [{}]
    return ListenerState(
        arn=listener['ListenerArn'],
        port=listener.get('Port'),
        protocol=listener.get('Protocol'),
        target_group_arn=LoadBalancerManager.forward_target_group(listener),
        certificate_arn=certificates[0].get('CertificateArn'),
    )


def task_definition_state(task_definition: Dict[str, Any]) -> TaskDefinitionState:
    return TaskDefinitionState(
        family=task_definition['family'],
        arn=task_definition['taskDefinitionArn'],
        revision=task_definition.get('revision', 0),
        fingerprint=TaskDefinitionBuilder.fingerprint(task_definition),
    )


def service_state(service: Dict[str, Any]) -> ServiceState:
    network = (service.get('networkConfiguration') or {}).get('awsvpcConfiguration') or {}
    load_balancers = service.get('loadBalancers') or []
    first = load_balancers[0] if load_balancers else {}
    return ServiceState(
        name=service['serviceName'],
        arn=service['serviceArn'],
        status=service.get('status', 'ACTIVE'),
        task_definition_arn=service.get('taskDefinition'),
        desired_count=service.get('desiredCount', 0),
        running_count=service.get('runningCount', 0),
        pending_count=service.get('pendingCount', 0),
        launch_type=service.get('launchType'),
        subnets=tuple(network.get('subnets', [])),
        security_groups=tuple(network.get('securityGroups', [])),
        assign_public_ip=network.get('assignPublicIp') == 'ENABLED',
        target_group_arns=tuple(lb['targetGroupArn'] for lb in load_balancers if lb.get('targetGroupArn')),
        container_port=first.get('containerPort'),
        container_name=first.get('containerName'),
        health_check_grace_period=service.get('healthCheckGracePeriodSeconds'),
    )


class StateObserver:
    """Reads current cloud state through the resource managers."""

    def __init__(self, clusters: ECSClusterManager, task_definitions: TaskDefinitionBuilder,
                 services: ECSServiceManager, load_balancers: LoadBalancerManager):
        self.clusters = clusters
        self.task_definitions = task_definitions
        self.services = services
        self.load_balancers = load_balancers

    def observe(self, spec: DeploymentSpec) -> ObservedState:
        """Snapshot every resource the descriptor declares."""
        cluster = self.clusters.find_cluster(spec.cluster)

        log_group = None
        if spec.log_group_name:
            log_group = self.task_definitions.find_log_group(spec.log_group_name)

        target_group = self.load_balancers.find_target_group(name=spec.target_group_name)
        balancer = self.load_balancers.find_load_balancer(name=spec.load_balancer_name)
        listener = None
        if balancer:
            listener = self.load_balancers.find_listener(
                balancer['LoadBalancerArn'], spec.load_balancer.listener_port)

        task_definition = self.task_definitions.describe_latest(spec.task_family)
        service = self.services.find_service(spec.cluster, spec.service) if cluster else None

        vpc_id = spec.network.vpc_id
        if vpc_id is None:
            vpc_id = target_group['VpcId'] if target_group else \
                self.load_balancers.resolve_vpc(spec.network.subnets[0])

        observed = ObservedState(
            cluster=cluster_state(cluster) if cluster else None,
            log_group=log_group_state(log_group) if log_group else None,
            target_group=target_group_state(target_group) if target_group else None,
            load_balancer=load_balancer_state(balancer) if balancer else None,
            listener=listener_state(listener) if listener else None,
            task_definition=task_definition_state(task_definition) if task_definition else None,
            service=service_state(service) if service else None,
            vpc_id=vpc_id,
        )
        logger.info(f"Observed {spec.cluster}/{spec.service}: {observed.summary()}")
        return observed

    def observe_service_chain(self, cluster_name: str, service_name: str) -> ObservedState:
        """Follow a deployed service to the resources it uses.

        Links the service no longer provides, including the whole chain once an
        earlier teardown has deleted the service, are looked up by the default
        names a descriptor derives from the service name.
        """
        cluster = self.clusters.find_cluster(cluster_name)
        service = self.services.find_service(cluster_name, service_name) if cluster else None
        current = service_state(service) if service else None
        if current is None:
            logger.info(f"Service {service_name} not found in cluster {cluster_name}; "
                        f"looking up its resources by name")

        target_group = None
        balancer = None
        listener = None
        for target_group_arn in (current.target_group_arns if current else ()):
            target_group = self.load_balancers.find_target_group(arn=target_group_arn)
            if target_group:
                break
        if target_group is None:
            target_group = self.load_balancers.find_target_group(name=f"{service_name}-tg")
        if target_group:
            for balancer_arn in target_group.get('LoadBalancerArns', []):
                balancer = self.load_balancers.find_load_balancer(arn=balancer_arn)
                if balancer:
                    break
        if balancer is None:
            balancer = self.load_balancers.find_load_balancer(name=f"{service_name}-alb")
        if balancer and target_group:
            for candidate in self.load_balancers.list_listeners(balancer['LoadBalancerArn']):
                if LoadBalancerManager.forward_target_group(candidate) == target_group['TargetGroupArn']:
                    listener = candidate
                    break

        task_definition: Optional[Dict[str, Any]] = None
        if current and current.task_definition_arn:
            task_definition = self.task_definitions.describe(current.task_definition_arn)
        family = task_definition['family'] if task_definition else service_name
        if task_definition is None:
            task_definition = self.task_definitions.describe_latest(family)
        revisions = tuple(self.task_definitions.list_revisions(family))

        return ObservedState(
            cluster=cluster_state(cluster) if cluster else None,
            target_group=target_group_state(target_group) if target_group else None,
            load_balancer=load_balancer_state(balancer) if balancer else None,
            listener=listener_state(listener) if listener else None,
            task_definition=task_definition_state(task_definition) if task_definition else None,
            service=current,
            vpc_id=target_group.get('VpcId') if target_group else None,
            task_definition_revisions=revisions,
        )
