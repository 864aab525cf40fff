"""
Deployment Run State Management and Tracking
Tracks the phases of one deployer run and persists them to a JSON state file.
"""
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ecs_deployer.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    """Phases of a deployment run."""
    LOADING = "loading"
    DIFFING = "diffing"
    APPLYING = "applying"
    CONVERGING = "converging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_PHASES = frozenset([RunPhase.SUCCEEDED, RunPhase.FAILED, RunPhase.TIMED_OUT])

TRANSITIONS = {
    RunPhase.LOADING: {RunPhase.DIFFING, RunPhase.FAILED},
    # An empty plan skips Applying
    RunPhase.DIFFING: {RunPhase.APPLYING, RunPhase.CONVERGING, RunPhase.SUCCEEDED, RunPhase.FAILED},
    # Succeeded directly when the caller does not wait for convergence
    RunPhase.APPLYING: {RunPhase.CONVERGING, RunPhase.SUCCEEDED, RunPhase.FAILED},
    RunPhase.CONVERGING: {RunPhase.SUCCEEDED, RunPhase.FAILED, RunPhase.TIMED_OUT},
    RunPhase.SUCCEEDED: set(),
    RunPhase.FAILED: set(),
    RunPhase.TIMED_OUT: set(),
}


class PhaseStatus(str, Enum):
    """Status of each recorded phase."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PhaseState:
    """State of a single run phase."""
    phase: str
    status: str
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None


@dataclass
class RunState:
    """Complete run state tracking."""
    run_id: str
    command: str
    cluster: str
    service: str
    started_at: float
    phase: str = RunPhase.LOADING.value
    phases: List[PhaseState] = field(default_factory=list)
    operations: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    completed_at: Optional[float] = None
    total_duration: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return RunPhase(self.phase) in TERMINAL_PHASES


def state_file_for(state_dir: str, cluster: str, service: str) -> Path:
    return Path(state_dir) / f"{cluster}__{service}.json"


def create_run_id(command: str) -> str:
    """Create unique run ID."""
    return f"{command}-{int(time.time())}-{uuid.uuid4().hex[:8]}"


class DeploymentStateManager:
    """Drives the run state machine and keeps the state file current."""

    def __init__(self, state_dir: str, cluster: str, service: str, clock=time.time):
        self.state_file = state_file_for(state_dir, cluster, service)
        self.cluster = cluster
        self.service = service
        self.clock = clock
        self.state: Optional[RunState] = None

    @property
    def phase(self) -> Optional[RunPhase]:
        return RunPhase(self.state.phase) if self.state else None

    def start_run(self, command: str) -> RunState:
        """Start tracking a new run in the Loading phase."""
        now = self.clock()
        self.state = RunState(
            run_id=create_run_id(command),
            command=command,
            cluster=self.cluster,
            service=self.service,
            started_at=now,
            phases=[PhaseState(phase=RunPhase.LOADING.value,
                               status=PhaseStatus.IN_PROGRESS.value, started_at=now)],
        )
        self._save_state()
        logger.info(f"🚀 Started run {self.state.run_id} for {self.cluster}/{self.service}")
        return self.state

    def _current_phase_state(self) -> PhaseState:
        return self.state.phases[-1]

    def transition(self, target: RunPhase, details: Dict[str, Any] = None,
                   error_message: str = None) -> None:
        """Move to the next phase; disconnected phases raise InvalidTransitionError."""
        if not self.state:
            raise InvalidTransitionError("No active run")

        current = RunPhase(self.state.phase)
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot move run from {current.value} to {target.value}")

        now = self.clock()
        finished = self._current_phase_state()
        finished.completed_at = now
        finished.duration_seconds = now - finished.started_at if finished.started_at else None
        failing = target in (RunPhase.FAILED, RunPhase.TIMED_OUT)
        finished.status = PhaseStatus.FAILED.value if failing else PhaseStatus.COMPLETED.value
        if failing:
            finished.error_message = error_message

        self.state.phase = target.value
        if target in TERMINAL_PHASES:
            self.state.completed_at = now
            self.state.total_duration = now - self.state.started_at
            self.state.error_message = error_message
        else:
            self.state.phases.append(PhaseState(phase=target.value,
                                                status=PhaseStatus.IN_PROGRESS.value,
                                                started_at=now, details=dict(details or {})))
        if details and target in TERMINAL_PHASES:
            finished.details.update(details)

        self._save_state()
        if target == RunPhase.SUCCEEDED:
            logger.info(f"🎉 Run {self.state.run_id} succeeded in {self.state.total_duration:.1f}s")
        elif failing:
            logger.error(f"❌ Run {self.state.run_id} {target.value} in {current.value}: {error_message}")
        else:
            duration_str = f" in {finished.duration_seconds:.1f}s" if finished.duration_seconds else ""
            logger.info(f"📋 Phase {current.value} completed{duration_str}, now {target.value}")

    def fail(self, error_message: str) -> None:
        """Move to Failed from any non-terminal phase."""
        self.transition(RunPhase.FAILED, error_message=error_message)

    def record_plan(self, plan_dict: Dict[str, Any]) -> None:
        if not self.state:
            return
        self.state.operations = list(plan_dict.get('operations', []))
        self.state.warnings = list(plan_dict.get('warnings', []))
        self._save_state()

    def record_details(self, details: Dict[str, Any]) -> None:
        if not self.state:
            return
        self._current_phase_state().details.update(details)
        self._save_state()

    def load_state(self) -> Optional[RunState]:
        """Load the last run state from file."""
        if not self.state_file.exists():
            return None
        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
            data['phases'] = [PhaseState(**phase) for phase in data.get('phases', [])]
            self.state = RunState(**data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"⚠️ Failed to load run state {self.state_file}: {e}")
            return None
        logger.debug(f"📋 Loaded run state: {self.state.run_id}")
        return self.state

    def _save_state(self) -> None:
        """Save run state to file."""
        if not self.state:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.state_file.with_suffix('.json.tmp')
            with open(tmp_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
            tmp_file.replace(self.state_file)
        except OSError as e:
            logger.error(f"❌ Failed to save run state: {e}")

    def get_status_summary(self) -> Dict[str, Any]:
        """Get run status summary."""
        if not self.state:
            return {"status": "no_run"}

        return {
            "run_id": self.state.run_id,
            "command": self.state.command,
            "cluster": self.state.cluster,
            "service": self.state.service,
            "phase": self.state.phase,
            "terminal": self.state.is_terminal,
            "started_at": self.state.started_at,
            "duration": self.state.total_duration,
            "error": self.state.error_message,
            "operations": [
                {"id": op.get("id"), "status": op.get("status")} for op in self.state.operations
            ],
            "phases": [
                {
                    "phase": phase.phase,
                    "status": phase.status,
                    "duration": phase.duration_seconds,
                    "error": phase.error_message,
                } for phase in self.state.phases
            ],
        }
