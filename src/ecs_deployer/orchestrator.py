"""
Deployment runs: deploy, update, plan, status and teardown.

Each run loads the descriptor, observes the cloud, diffs, applies and waits
for the service to converge, driving the run state machine as it goes:

    Loading -> Diffing -> Applying -> Converging -> Succeeded | Failed | TimedOut
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ecs_deployer.apply_engine import ApplyEngine
from ecs_deployer.deployment_state import DeploymentStateManager, RunPhase
from ecs_deployer.errors import (
    CloudError,
    ConvergenceTimeout,
    DeployerError,
    LockHeldError,
    TransientCloudError,
    ValidationError,
)
from ecs_deployer.locking import ClusterLock
from ecs_deployer.reconciler import build_plan, build_teardown_plan
from ecs_deployer.settings import Settings, get_settings
from ecs_deployer.spec import DeploymentSpec, load_spec
from ecs_deployer.status_reporter import ReportOutcome, StatusReporter
from ecs_deployer.utils.decorators import retry

logger = logging.getLogger(__name__)

EXIT_CODES = {
    'succeeded': 0,
    'failed': 1,
    'timed_out': 2,
    'validation_error': 3,
    'lock_held': 4,
}


@dataclass
class RunSummary:
    """What a run did and how it ended."""
    command: str
    outcome: str = 'failed'
    cluster: Optional[str] = None
    service: Optional[str] = None
    run_id: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    apply: Optional[Dict[str, Any]] = None
    convergence: Optional[Dict[str, Any]] = None
    health: Optional[Dict[str, Any]] = None
    last_run: Optional[Dict[str, Any]] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.outcome, 1)

    def fail(self, error: Exception, outcome: str = 'failed') -> "RunSummary":
        self.outcome = outcome
        self.error = str(error)
        self.error_type = type(error).__name__
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'event': 'summary',
            'command': self.command,
            'outcome': self.outcome,
            'exit_code': self.exit_code,
            'cluster': self.cluster,
            'service': self.service,
        }
        for key in ('run_id', 'plan', 'apply', 'convergence', 'health', 'last_run', 'error', 'error_type'):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.outputs:
            data['outputs'] = self.outputs
        return data


class DeploymentRunner:
    """Runs deployer commands against a cloud provider."""

    def __init__(self, settings: Settings = None, provider=None,
                 progress: Optional[Callable[[Dict[str, Any]], None]] = None,
                 engine: ApplyEngine = None, reporter: StatusReporter = None):
        self.settings = settings or get_settings()
        self._provider = provider
        self.progress = progress
        self._engine = engine
        self._reporter = reporter

    @property
    def provider(self):
        if self._provider is None:
            from ecs_deployer.aws.provider import AwsProvider
            self._provider = AwsProvider(self.settings.aws_region)
        return self._provider

    @property
    def engine(self) -> ApplyEngine:
        if self._engine is None:
            self._engine = ApplyEngine.from_settings(self.provider, self.settings, progress=self.progress)
        return self._engine

    @property
    def reporter(self) -> StatusReporter:
        if self._reporter is None:
            self._reporter = StatusReporter(self.provider,
                                            poll_interval=self.settings.poll_interval,
                                            flap_threshold=self.settings.flap_threshold,
                                            progress=self.progress)
        return self._reporter

    def cancel(self) -> None:
        """Stop waiting for convergence; the run ends Failed."""
        self.reporter.cancel()

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.progress is not None:
            self.progress(event)

    def _read(self, func, *args):
        """Call a read-only provider method, retrying transient failures."""
        policy = self.settings.retry_policy()
        wrapped = retry(exceptions=(TransientCloudError,), logger_name=__name__, **policy)(func)
        return wrapped(*args)

    def _transition(self, state: DeploymentStateManager, phase: RunPhase, **kwargs) -> None:
        state.transition(phase, **kwargs)
        self._emit({'event': 'phase', 'phase': phase.value, 'run_id': state.state.run_id})

    def _lock(self, cluster: str) -> ClusterLock:
        return ClusterLock(self.settings.state_dir, cluster, stale_after=self.settings.lock_stale_after)

    # Spec preparation

    def with_defaults(self, spec: DeploymentSpec) -> DeploymentSpec:
        """Fill in the execution role from the caller's account when the descriptor omits it."""
        if spec.execution_role_arn:
            return spec
        account_id = self._read(self.provider.account_id)
        role_arn = f"arn:aws:iam::{account_id}:role/{self.settings.default_execution_role_name}"
        logger.info(f"Using default execution role {role_arn}")
        return spec.model_copy(update={'execution_role_arn': role_arn})

    def verify_image(self, spec: DeploymentSpec) -> None:
        if not self.settings.verify_image:
            return
        exists = self._read(self.provider.image_exists, spec.image)
        if exists is False:
            raise ValidationError('image', f"{spec.image} was not found in ECR; push it before deploying")

    # Commands

    def deploy(self, spec_path: str, wait: bool = True, timeout: float = None) -> RunSummary:
        """Reconcile the cloud with the descriptor, then wait for the service to converge."""
        return self._reconcile('deploy', spec_path, wait, timeout, require_existing=False)

    def update(self, spec_path: str, wait: bool = True, timeout: float = None) -> RunSummary:
        """Like deploy, but only for a service that already exists."""
        return self._reconcile('update', spec_path, wait, timeout, require_existing=True)

    def plan(self, spec_path: str) -> RunSummary:
        """Dry run: load and diff without applying anything."""
        summary = RunSummary(command='plan')
        try:
            spec = load_spec(spec_path)
            summary.cluster, summary.service = spec.cluster, spec.service
            spec = self.with_defaults(spec)
            self.verify_image(spec)
            observed = self._read(self.provider.observe, spec)
            plan = build_plan(spec, observed, self.settings.app_name)
        except ValidationError as e:
            return summary.fail(e, 'validation_error')
        except DeployerError as e:
            return summary.fail(e)

        summary.plan = plan.to_dict()
        summary.outcome = 'succeeded'
        return summary

    def _reconcile(self, command: str, spec_path: str, wait: bool, timeout: Optional[float],
                   require_existing: bool) -> RunSummary:
        summary = RunSummary(command=command)
        try:
            spec = load_spec(spec_path)
        except ValidationError as e:
            logger.error(f"Invalid deployment descriptor {spec_path}: {e}")
            return summary.fail(e, 'validation_error')

        summary.cluster, summary.service = spec.cluster, spec.service
        timeout = timeout if timeout is not None else self.settings.convergence_timeout

        try:
            with self._lock(spec.cluster):
                state = DeploymentStateManager(self.settings.state_dir, spec.cluster, spec.service)
                summary.run_id = state.start_run(command).run_id
                self._emit({'event': 'phase', 'phase': RunPhase.LOADING.value, 'run_id': summary.run_id})
                try:
                    self._run(state, summary, spec, wait, timeout, require_existing)
                except ValidationError as e:
                    state.fail(str(e))
                    summary.fail(e, 'validation_error')
                except DeployerError as e:
                    state.fail(str(e))
                    summary.fail(e)
        except LockHeldError as e:
            logger.error(str(e))
            return summary.fail(e, 'lock_held')
        return summary

    def _run(self, state: DeploymentStateManager, summary: RunSummary, spec: DeploymentSpec,
             wait: bool, timeout: float, require_existing: bool) -> None:
        # Loading
        spec = self.with_defaults(spec)
        self.verify_image(spec)
        observed = self._read(self.provider.observe, spec)
        self._transition(state, RunPhase.DIFFING)

        # Diffing
        if require_existing and observed.service is None:
            raise CloudError(f"Service {spec.service} does not exist in cluster {spec.cluster}; "
                             f"use deploy to create it")
        plan = build_plan(spec, observed, self.settings.app_name)
        summary.plan = plan.to_dict()
        state.record_plan(summary.plan)
        self._emit({'event': 'plan', **summary.plan})

        if not plan.is_empty():
            self._transition(state, RunPhase.APPLYING)
            result = self.engine.apply(plan, seed_outputs=observed.outputs())
            summary.apply = result.to_dict()
            summary.outputs = {
                'load_balancer_dns': result.outputs.get('load_balancer', {}).get('dns_name'),
                'task_definition_arn': result.outputs.get('task_definition', {}).get('arn'),
            }
            state.record_plan(plan.to_dict())
            result.raise_for_failure()
        elif observed.load_balancer is not None:
            summary.outputs = {'load_balancer_dns': observed.load_balancer.dns_name}

        if not wait:
            self._transition(state, RunPhase.SUCCEEDED)
            summary.outcome = 'succeeded'
            return

        # Converging
        self._transition(state, RunPhase.CONVERGING)
        report = self.reporter.wait_for_convergence(spec.cluster, spec.service, timeout)
        summary.convergence = report.to_dict()
        state.record_details(summary.convergence)

        if report.outcome == ReportOutcome.SUCCEEDED:
            self._transition(state, RunPhase.SUCCEEDED)
            summary.outcome = 'succeeded'
        elif report.outcome == ReportOutcome.TIMED_OUT:
            try:
                report.raise_for_outcome(spec.cluster, spec.service, timeout)
            except ConvergenceTimeout as e:
                self._transition(state, RunPhase.TIMED_OUT, error_message=str(e))
                summary.fail(e, 'timed_out')
        else:
            message = (f"Service {spec.service} is degraded: "
                       f"{report.last.failed_tasks if report.last else 0} task(s) failed to start"
                       if report.outcome == ReportOutcome.DEGRADED
                       else f"Waiting for {spec.service} was cancelled")
            self._transition(state, RunPhase.FAILED, error_message=message)
            summary.outcome = 'failed'
            summary.error = message
            summary.error_type = report.outcome.value

    def status(self, cluster: str, service: str) -> RunSummary:
        """One health reading plus the last recorded run."""
        summary = RunSummary(command='status', cluster=cluster, service=service)
        state = DeploymentStateManager(self.settings.state_dir, cluster, service)
        if state.load_state():
            summary.last_run = state.get_status_summary()

        try:
            health = self._read(self.reporter.snapshot, cluster, service)
        except DeployerError as e:
            return summary.fail(e)

        summary.health = health.to_dict()
        if not health.found:
            summary.outcome = 'failed'
            summary.error = f"Service {service} not found in cluster {cluster}"
            summary.error_type = 'not_found'
        else:
            summary.outcome = 'succeeded'
        return summary

    def teardown(self, cluster: str, service: str, delete_cluster: bool = False) -> RunSummary:
        """Delete the service and the load balancer chain in front of it."""
        summary = RunSummary(command='teardown', cluster=cluster, service=service)
        try:
            with self._lock(cluster):
                state = DeploymentStateManager(self.settings.state_dir, cluster, service)
                summary.run_id = state.start_run('teardown').run_id
                try:
                    observed = self._read(self.provider.observe_service_chain, cluster, service)
                    self._transition(state, RunPhase.DIFFING)
                    plan = build_teardown_plan(observed, delete_cluster=delete_cluster)
                    summary.plan = plan.to_dict()
                    state.record_plan(summary.plan)
                    self._emit({'event': 'plan', **summary.plan})

                    if not plan.is_empty():
                        self._transition(state, RunPhase.APPLYING)
                        result = self.engine.apply(plan, seed_outputs=observed.outputs())
                        summary.apply = result.to_dict()
                        state.record_plan(plan.to_dict())
                        result.raise_for_failure()
                    self._transition(state, RunPhase.SUCCEEDED)
                    summary.outcome = 'succeeded'
                except DeployerError as e:
                    state.fail(str(e))
                    summary.fail(e)
        except LockHeldError as e:
            logger.error(str(e))
            return summary.fail(e, 'lock_held')
        return summary
