"""
Observed cloud state, plans and operations.

ObservedState is a read-only snapshot taken once per reconciliation pass.
A Plan is an ordered list of Operations; the apply engine owns their status
while it runs.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ResourceKind(str, Enum):
    """Resource kinds in canonical create order."""
    CLUSTER = "cluster"
    LOG_GROUP = "log_group"
    TARGET_GROUP = "target_group"
    LOAD_BALANCER = "load_balancer"
    LISTENER = "listener"
    TASK_DEFINITION = "task_definition"
    SERVICE = "service"


RESOURCE_ORDER = list(ResourceKind)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class OutputRef:
    """Placeholder for a value another operation produces, e.g. a new ARN."""
    kind: ResourceKind
    key: str = "arn"

    def resolve(self, outputs: Dict[str, Dict[str, Any]]) -> Any:
        try:
            return outputs[self.kind.value][self.key]
        except KeyError:
            raise KeyError(f"output {self.kind.value}.{self.key} is not available yet")


def resolve_params(value: Any, outputs: Dict[str, Dict[str, Any]]) -> Any:
    """Replace every OutputRef inside a parameter structure with its value."""
    if isinstance(value, OutputRef):
        return value.resolve(outputs)
    if isinstance(value, dict):
        return {k: resolve_params(v, outputs) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_params(v, outputs) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_params(v, outputs) for v in value)
    return value


@dataclass
class Operation:
    """A single idempotent control-plane call and the operations it waits on."""
    kind: ResourceKind
    action: Action
    params: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    reason: str = ""
    status: OperationStatus = OperationStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.action.value}:{self.kind.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "action": self.action.value,
            "depends_on": list(self.depends_on),
            "reason": self.reason,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class Plan:
    """Ordered operations plus drift the deployer will not repair on its own."""
    operations: List[Operation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.operations

    def get(self, operation_id: str) -> Operation:
        for operation in self.operations:
            if operation.id == operation_id:
                return operation
        raise KeyError(operation_id)

    def ids(self) -> List[str]:
        return [op.id for op in self.operations]

    def by_status(self, status: OperationStatus) -> List[str]:
        return [op.id for op in self.operations if op.status == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operations": [op.to_dict() for op in self.operations],
            "warnings": list(self.warnings),
        }


# Observed resources. Only the fields the reconciler compares are kept.

@dataclass(frozen=True)
class ClusterState:
    name: str
    arn: str
    status: str
    container_insights: bool = False
    active_services: int = 0


@dataclass(frozen=True)
class LogGroupState:
    name: str
    arn: str
    retention_days: Optional[int] = None


@dataclass(frozen=True)
class TargetGroupState:
    name: str
    arn: str
    port: int
    protocol: str
    vpc_id: str
    target_type: str
    health_check_path: str
    health_check_interval: int
    health_check_timeout: int
    healthy_threshold: int
    unhealthy_threshold: int
    matcher: str
    load_balancer_arns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LoadBalancerState:
    name: str
    arn: str
    dns_name: str
    scheme: str
    state: str
    subnets: Tuple[str, ...] = ()
    security_groups: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ListenerState:
    arn: str
    port: int
    protocol: str
    target_group_arn: Optional[str]
    certificate_arn: Optional[str] = None


@dataclass(frozen=True)
class TaskDefinitionState:
    family: str
    arn: str
    revision: int
    fingerprint: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class ServiceState:
    name: str
    arn: str
    status: str
    task_definition_arn: str
    desired_count: int
    running_count: int = 0
    pending_count: int = 0
    launch_type: Optional[str] = None
    subnets: Tuple[str, ...] = ()
    security_groups: Tuple[str, ...] = ()
    assign_public_ip: bool = False
    target_group_arns: Tuple[str, ...] = ()
    container_port: Optional[int] = None
    container_name: Optional[str] = None
    health_check_grace_period: Optional[int] = None


@dataclass(frozen=True)
class ObservedState:
    """Snapshot of the resources one service depends on; absent ones are None."""
    cluster: Optional[ClusterState] = None
    log_group: Optional[LogGroupState] = None
    target_group: Optional[TargetGroupState] = None
    load_balancer: Optional[LoadBalancerState] = None
    listener: Optional[ListenerState] = None
    task_definition: Optional[TaskDefinitionState] = None
    service: Optional[ServiceState] = None
    vpc_id: Optional[str] = None
    task_definition_revisions: Tuple[str, ...] = ()

    def outputs(self) -> Dict[str, Dict[str, Any]]:
        """Known identifiers keyed like apply-engine outputs."""
        seeds: Dict[str, Dict[str, Any]] = {}
        for kind in ResourceKind:
            resource = getattr(self, kind.value)
            if resource is not None:
                seeds[kind.value] = {"arn": resource.arn}
        if self.load_balancer is not None:
            seeds[ResourceKind.LOAD_BALANCER.value]["dns_name"] = self.load_balancer.dns_name
        if self.log_group is not None:
            seeds[ResourceKind.LOG_GROUP.value]["name"] = self.log_group.name
        return seeds

    def summary(self) -> Dict[str, Any]:
        return {kind.value: getattr(self, kind.value) is not None for kind in ResourceKind}
