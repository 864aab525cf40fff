"""
Reconciler: diff a DeploymentSpec against ObservedState and produce a Plan.

Policy:
- declared but absent         -> create
- declared and present, drift -> update (task definitions register a new revision)
- present but not declared    -> left alone; deletes only come from an explicit teardown
Parameters that cannot change in place are reported as plan warnings.
"""
import logging
from typing import Any, Dict, List, Optional

from ecs_deployer.spec.models import DeploymentSpec
from ecs_deployer.state import (
    RESOURCE_ORDER,
    Action,
    ObservedState,
    Operation,
    OutputRef,
    Plan,
    ResourceKind,
)

logger = logging.getLogger(__name__)

# What each resource needs before it can be created or updated
CREATE_DEPENDENCIES = {
    ResourceKind.CLUSTER: (),
    ResourceKind.LOG_GROUP: (),
    ResourceKind.TARGET_GROUP: (),
    ResourceKind.LOAD_BALANCER: (),
    ResourceKind.LISTENER: (ResourceKind.LOAD_BALANCER, ResourceKind.TARGET_GROUP),
    ResourceKind.TASK_DEFINITION: (ResourceKind.LOG_GROUP,),
    ResourceKind.SERVICE: (ResourceKind.CLUSTER, ResourceKind.TASK_DEFINITION,
                           ResourceKind.TARGET_GROUP, ResourceKind.LISTENER),
}

# Teardown runs the graph backwards
DELETE_DEPENDENCIES = {
    ResourceKind.SERVICE: (),
    ResourceKind.LISTENER: (ResourceKind.SERVICE,),
    ResourceKind.LOAD_BALANCER: (ResourceKind.LISTENER,),
    ResourceKind.TARGET_GROUP: (ResourceKind.SERVICE, ResourceKind.LOAD_BALANCER),
    ResourceKind.TASK_DEFINITION: (ResourceKind.SERVICE,),
    ResourceKind.CLUSTER: (ResourceKind.SERVICE,),
}

TEARDOWN_ORDER = [
    ResourceKind.SERVICE,
    ResourceKind.LISTENER,
    ResourceKind.LOAD_BALANCER,
    ResourceKind.TARGET_GROUP,
    ResourceKind.TASK_DEFINITION,
    ResourceKind.CLUSTER,
]


# Desired parameters per resource

def desired_cluster(spec: DeploymentSpec, tags: Dict[str, str]) -> Dict[str, Any]:
    return {'name': spec.cluster, 'container_insights': spec.container_insights, 'tags': tags}


def desired_log_group(spec: DeploymentSpec, tags: Dict[str, str]) -> Optional[Dict[str, Any]]:
    if not spec.logging.enabled:
        return None
    return {'name': spec.log_group_name, 'retention_days': spec.logging.retention_days, 'tags': tags}


def desired_target_group(spec: DeploymentSpec, observed: ObservedState,
                         tags: Dict[str, str]) -> Dict[str, Any]:
    lb = spec.load_balancer
    return {
        'name': spec.target_group_name,
        'port': spec.container_port,
        'protocol': 'HTTP',
        'vpc_id': spec.network.vpc_id or observed.vpc_id,
        'subnet_id': spec.network.subnets[0],
        'target_type': 'ip',
        'health_check_path': lb.health_check_path,
        'health_check_interval': lb.health_check_interval,
        'health_check_timeout': lb.health_check_timeout,
        'healthy_threshold': lb.healthy_threshold,
        'unhealthy_threshold': lb.unhealthy_threshold,
        'matcher': lb.health_check_matcher,
        'tags': tags,
    }


def desired_load_balancer(spec: DeploymentSpec, tags: Dict[str, str]) -> Dict[str, Any]:
    return {
        'name': spec.load_balancer_name,
        'subnets': list(spec.network.subnets),
        'security_groups': spec.load_balancer_security_groups,
        'scheme': spec.load_balancer.scheme,
        'tags': tags,
    }


def desired_listener(spec: DeploymentSpec) -> Dict[str, Any]:
    return {
        'load_balancer_arn': OutputRef(ResourceKind.LOAD_BALANCER),
        'target_group_arn': OutputRef(ResourceKind.TARGET_GROUP),
        'port': spec.load_balancer.listener_port,
        'protocol': spec.load_balancer.listener_protocol,
        'certificate_arn': spec.load_balancer.certificate_arn,
    }


def desired_task_definition(spec: DeploymentSpec, tags: Dict[str, str]) -> Dict[str, Any]:
    return {
        'family': spec.task_family,
        'container_name': spec.container,
        'image': spec.image,
        'cpu': str(spec.cpu),
        'memory': str(spec.memory),
        'container_port': spec.container_port,
        'environment': dict(spec.environment),
        'launch_type': spec.launch_type,
        'execution_role_arn': spec.execution_role_arn,
        'task_role_arn': spec.task_role_arn,
        'log_group': spec.log_group_name,
        'stream_prefix': spec.logging.stream_prefix if spec.logging.enabled else None,
        'tags': tags,
    }


def desired_service(spec: DeploymentSpec, tags: Dict[str, str]) -> Dict[str, Any]:
    return {
        'cluster': spec.cluster,
        'name': spec.service,
        'task_definition_arn': OutputRef(ResourceKind.TASK_DEFINITION),
        'target_group_arn': OutputRef(ResourceKind.TARGET_GROUP),
        'desired_count': spec.desired_count,
        'launch_type': spec.launch_type,
        'subnets': list(spec.network.subnets),
        'security_groups': list(spec.network.security_groups),
        'assign_public_ip': spec.network.assign_public_ip if spec.launch_type == 'FARGATE' else False,
        'container_name': spec.container,
        'container_port': spec.container_port,
        'health_check_grace_period': spec.health_check_grace_period,
        'tags': tags,
    }


def task_definition_fingerprint(params: Dict[str, Any]) -> Dict[str, Any]:
    """Comparable view of a task definition; the observer builds the same view."""
    return {
        'family': params.get('family'),
        'container_name': params.get('container_name'),
        'image': params.get('image'),
        'cpu': str(params.get('cpu')) if params.get('cpu') is not None else None,
        'memory': str(params.get('memory')) if params.get('memory') is not None else None,
        'container_port': params.get('container_port'),
        'environment': sorted((params.get('environment') or {}).items()),
        'launch_type': params.get('launch_type'),
        'execution_role_arn': params.get('execution_role_arn'),
        'task_role_arn': params.get('task_role_arn'),
        'log_group': params.get('log_group'),
        'stream_prefix': params.get('stream_prefix'),
    }


# Drift detection

def _diff(pairs: Dict[str, tuple]) -> List[str]:
    return [name for name, (want, have) in pairs.items() if want != have]


def _cluster_drift(desired, observed) -> List[str]:
    return _diff({'container_insights': (desired['container_insights'], observed.container_insights)})


def _log_group_drift(desired, observed) -> List[str]:
    return _diff({'retention_days': (desired['retention_days'], observed.retention_days)})


def _target_group_drift(desired, observed, warnings: List[str]) -> List[str]:
    immutable = {
        'port': (desired['port'], observed.port),
        'protocol': (desired['protocol'], observed.protocol),
        'target_type': (desired['target_type'], observed.target_type),
    }
    if desired['vpc_id']:
        immutable['vpc_id'] = (desired['vpc_id'], observed.vpc_id)
    for name in _diff(immutable):
        warnings.append(
            f"target group {observed.name}: {name} differs "
            f"({immutable[name][1]} -> {immutable[name][0]}); teardown and redeploy to change it"
        )
    return _diff({
        'health_check_path': (desired['health_check_path'], observed.health_check_path),
        'health_check_interval': (desired['health_check_interval'], observed.health_check_interval),
        'health_check_timeout': (desired['health_check_timeout'], observed.health_check_timeout),
        'healthy_threshold': (desired['healthy_threshold'], observed.healthy_threshold),
        'unhealthy_threshold': (desired['unhealthy_threshold'], observed.unhealthy_threshold),
        'matcher': (desired['matcher'], observed.matcher),
    })


def _load_balancer_drift(desired, observed, warnings: List[str]) -> List[str]:
    if desired['scheme'] != observed.scheme:
        warnings.append(
            f"load balancer {observed.name}: scheme differs "
            f"({observed.scheme} -> {desired['scheme']}); teardown and redeploy to change it"
        )
    drift = _diff({
        'subnets': (sorted(desired['subnets']), sorted(observed.subnets)),
    })
    if desired['security_groups']:
        drift += _diff({
            'security_groups': (sorted(desired['security_groups']), sorted(observed.security_groups)),
        })
    return drift


def _listener_drift(desired, observed, target_group_arn: Optional[str],
                    target_group_changing: bool) -> List[str]:
    drift = _diff({
        'port': (desired['port'], observed.port),
        'protocol': (desired['protocol'], observed.protocol),
        'certificate_arn': (desired['certificate_arn'], observed.certificate_arn),
    })
    if target_group_changing or observed.target_group_arn != target_group_arn:
        drift.append('target_group')
    return drift


def _service_drift(desired, observed, observed_state: ObservedState,
                   task_definition_changing: bool, target_group_changing: bool,
                   warnings: List[str]) -> List[str]:
    if desired['launch_type'] and observed.launch_type and desired['launch_type'] != observed.launch_type:
        warnings.append(
            f"service {observed.name}: launch type differs "
            f"({observed.launch_type} -> {desired['launch_type']}); teardown and redeploy to change it"
        )
    drift = _diff({
        'desired_count': (desired['desired_count'], observed.desired_count),
        'subnets': (sorted(desired['subnets']), sorted(observed.subnets)),
        'security_groups': (sorted(desired['security_groups']), sorted(observed.security_groups)),
        'assign_public_ip': (desired['assign_public_ip'], observed.assign_public_ip),
        'container_name': (desired['container_name'], observed.container_name),
        'container_port': (desired['container_port'], observed.container_port),
    })
    # describe_services omits the grace period when it was never set
    if observed.health_check_grace_period is not None and \
            desired['health_check_grace_period'] != observed.health_check_grace_period:
        drift.append('health_check_grace_period')

    latest = observed_state.task_definition
    if task_definition_changing or latest is None or observed.task_definition_arn != latest.arn:
        drift.append('task_definition')

    target_group = observed_state.target_group
    if target_group_changing or target_group is None or target_group.arn not in observed.target_group_arns:
        drift.append('target_group')
    return drift


def _with_dependencies(operations: Dict[ResourceKind, Operation], table) -> List[Operation]:
    ordered = []
    order = RESOURCE_ORDER if table is CREATE_DEPENDENCIES else TEARDOWN_ORDER
    for kind in order:
        operation = operations.get(kind)
        if operation is None:
            continue
        operation.depends_on = tuple(
            operations[dep].id for dep in table[kind] if dep in operations
        )
        ordered.append(operation)
    return ordered


def build_plan(spec: DeploymentSpec, observed: ObservedState, app_name: str = "ecs-deployer") -> Plan:
    """Compute the create/update operations that move observed state to spec."""
    tags = spec.resource_tags(app_name)
    warnings: List[str] = []
    operations: Dict[ResourceKind, Operation] = {}

    def plan_resource(kind: ResourceKind, desired: Dict[str, Any], current, drift_fn) -> None:
        if current is None:
            operations[kind] = Operation(kind, Action.CREATE, desired, reason="absent")
            return
        drift = drift_fn(desired, current)
        if drift:
            params = dict(desired)
            params['arn'] = current.arn
            operations[kind] = Operation(kind, Action.UPDATE, params,
                                         reason="drift: " + ", ".join(drift))

    cluster = observed.cluster if observed.cluster and observed.cluster.status == 'ACTIVE' else None
    plan_resource(ResourceKind.CLUSTER, desired_cluster(spec, tags), cluster, _cluster_drift)

    log_group = desired_log_group(spec, tags)
    if log_group is not None:
        plan_resource(ResourceKind.LOG_GROUP, log_group, observed.log_group, _log_group_drift)

    plan_resource(ResourceKind.TARGET_GROUP, desired_target_group(spec, observed, tags),
                  observed.target_group,
                  lambda d, c: _target_group_drift(d, c, warnings))
    target_group_changing = (ResourceKind.TARGET_GROUP in operations
                             and operations[ResourceKind.TARGET_GROUP].action == Action.CREATE)

    plan_resource(ResourceKind.LOAD_BALANCER, desired_load_balancer(spec, tags),
                  observed.load_balancer,
                  lambda d, c: _load_balancer_drift(d, c, warnings))

    # A new load balancer has no listeners, so the listener follows it
    listener = observed.listener if ResourceKind.LOAD_BALANCER not in operations or \
        operations[ResourceKind.LOAD_BALANCER].action != Action.CREATE else None
    target_group_arn = observed.target_group.arn if observed.target_group else None
    plan_resource(ResourceKind.LISTENER, desired_listener(spec), listener,
                  lambda d, c: _listener_drift(d, c, target_group_arn, target_group_changing))

    desired_td = desired_task_definition(spec, tags)
    current_td = observed.task_definition
    if current_td is None:
        operations[ResourceKind.TASK_DEFINITION] = Operation(
            ResourceKind.TASK_DEFINITION, Action.CREATE, desired_td, reason="absent")
    else:
        want = task_definition_fingerprint(desired_td)
        drift = [key for key, value in want.items() if current_td.fingerprint.get(key) != value]
        if drift:
            # Revisions are immutable: an update registers a new one
            operations[ResourceKind.TASK_DEFINITION] = Operation(
                ResourceKind.TASK_DEFINITION, Action.UPDATE, desired_td,
                reason=f"drift: {', '.join(drift)} (new revision after {current_td.revision})")
    task_definition_changing = ResourceKind.TASK_DEFINITION in operations

    service = observed.service if observed.service and observed.service.status == 'ACTIVE' else None
    plan_resource(ResourceKind.SERVICE, desired_service(spec, tags), service,
                  lambda d, c: _service_drift(d, c, observed, task_definition_changing,
                                              target_group_changing, warnings))

    plan = Plan(operations=_with_dependencies(operations, CREATE_DEPENDENCIES), warnings=warnings)
    for warning in warnings:
        logger.warning(warning)
    logger.info(f"Plan for {spec.cluster}/{spec.service}: "
                f"{len(plan.operations)} operation(s) {plan.ids()}")
    return plan


def build_teardown_plan(observed: ObservedState, delete_cluster: bool = False) -> Plan:
    """Explicit delete plan for one service chain."""
    operations: Dict[ResourceKind, Operation] = {}
    warnings: List[str] = []

    if observed.service is not None and observed.service.status != 'INACTIVE':
        operations[ResourceKind.SERVICE] = Operation(
            ResourceKind.SERVICE, Action.DELETE,
            {'cluster': observed.cluster.name if observed.cluster else None,
             'name': observed.service.name, 'arn': observed.service.arn},
            reason="teardown")

    if observed.listener is not None:
        operations[ResourceKind.LISTENER] = Operation(
            ResourceKind.LISTENER, Action.DELETE, {'arn': observed.listener.arn}, reason="teardown")

    if observed.load_balancer is not None:
        operations[ResourceKind.LOAD_BALANCER] = Operation(
            ResourceKind.LOAD_BALANCER, Action.DELETE,
            {'arn': observed.load_balancer.arn, 'name': observed.load_balancer.name}, reason="teardown")

    if observed.target_group is not None:
        operations[ResourceKind.TARGET_GROUP] = Operation(
            ResourceKind.TARGET_GROUP, Action.DELETE,
            {'arn': observed.target_group.arn, 'name': observed.target_group.name}, reason="teardown")

    if observed.task_definition_revisions:
        operations[ResourceKind.TASK_DEFINITION] = Operation(
            ResourceKind.TASK_DEFINITION, Action.DELETE,
            {'arns': list(observed.task_definition_revisions)}, reason="teardown")

    if delete_cluster and observed.cluster is not None:
        remaining = observed.cluster.active_services - (1 if ResourceKind.SERVICE in operations else 0)
        if remaining > 0:
            warnings.append(f"cluster {observed.cluster.name} still runs {remaining} other service(s); kept")
        else:
            operations[ResourceKind.CLUSTER] = Operation(
                ResourceKind.CLUSTER, Action.DELETE,
                {'name': observed.cluster.name, 'arn': observed.cluster.arn}, reason="teardown")

    plan = Plan(operations=_with_dependencies(operations, DELETE_DEPENDENCIES), warnings=warnings)
    logger.info(f"Teardown plan: {len(plan.operations)} operation(s) {plan.ids()}")
    return plan
