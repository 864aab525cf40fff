"""
Status Reporter: poll ECS service stability until convergence or a deadline.

Real-time status checking in the manner of the deployment status monitor:
each poll reads desired/running/pending counts, the rollout of the primary
deployment and target-group health.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ecs_deployer.errors import ConvergenceTimeout, TransientCloudError

logger = logging.getLogger(__name__)


class ReportOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ServiceHealth:
    """One reading of a service's stability."""
    found: bool
    status: str = "MISSING"
    desired: int = 0
    running: int = 0
    pending: int = 0
    deployments: int = 0
    rollout_state: Optional[str] = None
    failed_tasks: int = 0
    healthy_targets: Optional[int] = None
    unhealthy_targets: int = 0

    @property
    def converged(self) -> bool:
        if not self.found or self.status != 'ACTIVE':
            return False
        if self.running != self.desired or self.pending != 0:
            return False
        if self.deployments != 1:
            return False
        if self.rollout_state not in (None, 'COMPLETED'):
            return False
        if self.healthy_targets is not None:
            if self.unhealthy_targets > 0 or self.healthy_targets < self.desired:
                return False
        return True

    def counts(self) -> Dict[str, Any]:
        return {
            'desired': self.desired,
            'running': self.running,
            'pending': self.pending,
            'healthy_targets': self.healthy_targets,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['converged'] = self.converged
        return data


@dataclass
class ConvergenceReport:
    outcome: ReportOutcome
    polls: int
    elapsed: float
    last: Optional[ServiceHealth] = None

    def raise_for_outcome(self, cluster: str, service: str, timeout: float) -> None:
        if self.outcome == ReportOutcome.TIMED_OUT:
            raise ConvergenceTimeout(cluster, service, timeout,
                                     self.last.counts() if self.last else None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'polls': self.polls,
            'elapsed': round(self.elapsed, 3),
            'last': self.last.to_dict() if self.last else None,
        }


class StatusReporter:
    """Polls a provider exposing ``describe_service_health(cluster, service)``."""

    def __init__(self, provider, poll_interval: float = 15.0, flap_threshold: int = 3,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], Any]] = None,
                 progress: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.provider = provider
        self.poll_interval = poll_interval
        self.flap_threshold = flap_threshold
        self.clock = clock
        self.progress = progress
        self._cancelled = threading.Event()
        self._sleep = sleep

    def cancel(self) -> None:
        """Stop an in-progress wait at the next opportunity."""
        self._cancelled.set()

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._cancelled.wait(seconds)

    def snapshot(self, cluster: str, service: str) -> ServiceHealth:
        return self.provider.describe_service_health(cluster, service)

    def wait_for_convergence(self, cluster: str, service: str, timeout: float,
                             reset: bool = True) -> ConvergenceReport:
        """Poll until the service converges, degrades, the caller cancels, or the deadline passes."""
        if reset:
            self._cancelled.clear()
        start = self.clock()
        deadline = start + timeout
        polls = 0
        last: Optional[ServiceHealth] = None
        logger.info(f"Waiting up to {timeout:.0f}s for {cluster}/{service} to converge")

        while True:
            if self._cancelled.is_set():
                outcome = ReportOutcome.CANCELLED
                break

            try:
                last = self.snapshot(cluster, service)
            except TransientCloudError as e:
                logger.warning(f"Health check for {service} failed, will retry: {e}")
            polls += 1

            if last is not None:
                logger.info(f"{service}: {last.running}/{last.desired} running, "
                            f"{last.pending} pending, healthy targets {last.healthy_targets}")
                if self.progress is not None:
                    event = {'event': 'poll', 'service': service, 'poll': polls}
                    event.update(last.to_dict())
                    self.progress(event)

                if last.converged:
                    outcome = ReportOutcome.SUCCEEDED
                    break
                if last.failed_tasks >= self.flap_threshold:
                    logger.error(f"{service}: {last.failed_tasks} tasks failed during rollout")
                    outcome = ReportOutcome.DEGRADED
                    break

            now = self.clock()
            if now >= deadline:
                outcome = ReportOutcome.TIMED_OUT
                break
            self._pause(min(self.poll_interval, deadline - now))

        report = ConvergenceReport(outcome=outcome, polls=polls,
                                   elapsed=self.clock() - start, last=last)
        logger.info(f"Convergence of {cluster}/{service}: {outcome.value} after {polls} poll(s)")
        return report

    def start(self, cluster: str, service: str, timeout: float) -> Future:
        """Run wait_for_convergence on a background thread; cancel() stops it."""
        self._cancelled.clear()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="status")
        future = executor.submit(self.wait_for_convergence, cluster, service, timeout, False)
        executor.shutdown(wait=False)
        return future
