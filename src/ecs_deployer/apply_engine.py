"""
Apply Engine: execute a Plan against the cloud provider.

Operations start only after every operation they depend on is done.
By default operations run one at a time in plan order; with more workers,
independent chains share a bounded thread pool. Transient failures are
retried with exponential backoff. The first permanent failure stops new
operations from starting and everything not yet started is skipped.
"""
import copy
import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ecs_deployer.errors import (
    CloudError,
    PermanentCloudError,
    TransientCloudError,
    classify_client_error,
)
from ecs_deployer.state import Operation, OperationStatus, Plan, resolve_params
from ecs_deployer.utils.decorators import retry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class ApplyResult:
    """Outcome of applying a plan, including partial progress on failure."""
    plan: Plan
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: Optional[PermanentCloudError] = None

    @property
    def completed(self) -> List[str]:
        return self.plan.by_status(OperationStatus.DONE)

    @property
    def failed(self) -> List[str]:
        return self.plan.by_status(OperationStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self.plan.by_status(OperationStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'succeeded': self.succeeded,
            'completed': self.completed,
            'failed': self.failed,
            'skipped': self.skipped,
            'error': str(self.error) if self.error else None,
        }


class ApplyEngine:
    """Runs plan operations through a provider exposing ``execute(kind, action, params)``."""

    def __init__(self, provider, max_attempts: int = 5, delay: float = 1.0,
                 backoff: float = 2.0, max_delay: float = 30.0, max_workers: int = 1,
                 sleep: Callable[[float], Any] = time.sleep,
                 progress: Optional[ProgressCallback] = None):
        self.provider = provider
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay
        self.max_workers = max_workers
        self.sleep = sleep
        self.progress = progress

    @classmethod
    def from_settings(cls, provider, settings, **kwargs) -> "ApplyEngine":
        policy = settings.retry_policy()
        return cls(provider, max_attempts=policy['max_attempts'], delay=policy['delay'],
                   backoff=policy['backoff'], max_delay=policy['max_delay'],
                   max_workers=settings.max_parallel_operations, **kwargs)

    def _emit(self, operation: Operation, **extra) -> None:
        if self.progress is None:
            return
        event = {'event': 'operation', 'id': operation.id, 'status': operation.status.value,
                 'attempts': operation.attempts}
        event.update(extra)
        self.progress(event)

    def _run_operation(self, operation: Operation, params: Dict[str, Any]) -> Dict[str, Any]:
        def record_attempt(attempt: int) -> None:
            operation.attempts = attempt

        @retry(max_attempts=self.max_attempts, delay=self.delay, backoff=self.backoff,
               max_delay=self.max_delay, exceptions=(TransientCloudError,),
               sleep=self.sleep, on_attempt=record_attempt, logger_name=__name__)
        def call() -> Dict[str, Any]:
            try:
                return self.provider.execute(operation.kind, operation.action, params) or {}
            except CloudError as e:
                if e.operation_id is None:
                    e.operation_id = operation.id
                raise
            except Exception as e:
                raise classify_client_error(e, operation.id) from e

        try:
            return call()
        except TransientCloudError as e:
            raise PermanentCloudError(
                f"{operation.id} still failing after {operation.attempts} attempts: {e}",
                operation_id=operation.id, code=e.code, attempts=operation.attempts,
            ) from e

    def _ready(self, plan: Plan, started: set) -> List[Operation]:
        """Pending operations whose dependencies are done.

        Nothing later in plan order starts while an earlier operation is retrying.
        """
        done = set(plan.by_status(OperationStatus.DONE))
        ready = []
        for op in plan.operations:
            if op.status == OperationStatus.RUNNING and op.attempts > 1:
                break
            if (op.status == OperationStatus.PENDING
                    and op.id not in started
                    and all(dep in done for dep in op.depends_on)):
                ready.append(op)
        return ready

    def apply(self, plan: Plan, seed_outputs: Optional[Dict[str, Dict[str, Any]]] = None) -> ApplyResult:
        """Execute every operation of the plan in dependency order."""
        result = ApplyResult(plan=plan, outputs=copy.deepcopy(seed_outputs or {}))
        if plan.is_empty():
            logger.info("Plan is empty, nothing to apply")
            return result

        logger.info(f"Applying {len(plan.operations)} operation(s) with up to {self.max_workers} in parallel")
        started: set = set()
        futures = {}
        aborted = False

        def fail(operation: Operation, error: PermanentCloudError) -> None:
            nonlocal aborted
            operation.status = OperationStatus.FAILED
            operation.error = str(error)
            aborted = True
            if result.error is None:
                result.error = error
            logger.error(f"❌ {operation.id} failed: {error}")
            self._emit(operation, error=str(error))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="apply") as pool:
            while True:
                if not aborted:
                    for operation in self._ready(plan, started):
                        if len(futures) >= self.max_workers:
                            break
                        started.add(operation.id)
                        try:
                            params = resolve_params(operation.params, result.outputs)
                        except KeyError as e:
                            fail(operation, PermanentCloudError(str(e), operation_id=operation.id))
                            break
                        operation.status = OperationStatus.RUNNING
                        logger.info(f"▶ {operation.id} ({operation.reason})")
                        self._emit(operation)
                        futures[pool.submit(self._run_operation, operation, params)] = operation

                if not futures:
                    break

                finished, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in finished:
                    operation = futures.pop(future)
                    try:
                        outputs = future.result()
                    except PermanentCloudError as e:
                        fail(operation, e)
                        continue
                    operation.status = OperationStatus.DONE
                    operation.outputs = dict(outputs)
                    result.outputs.setdefault(operation.kind.value, {}).update(outputs)
                    logger.info(f"✅ {operation.id} done after {operation.attempts} attempt(s)")
                    self._emit(operation)

        for operation in plan.operations:
            if operation.status == OperationStatus.PENDING:
                operation.status = OperationStatus.SKIPPED
                self._emit(operation)

        if result.error is None and result.skipped:
            result.error = PermanentCloudError(
                f"operations with unsatisfied dependencies: {result.skipped}",
                operation_id=result.skipped[0])

        if result.error is not None:
            result.error.completed = result.completed
            result.error.skipped = result.skipped
            logger.error(f"Apply aborted: completed={result.completed} "
                         f"failed={result.failed} skipped={result.skipped}")
        else:
            logger.info(f"Apply finished: {len(result.completed)} operation(s) completed")
        return result
