import json

import pytest

from ecs_deployer.deployment_state import DeploymentStateManager, RunPhase, TERMINAL_PHASES
from ecs_deployer.errors import InvalidTransitionError


class Ticker:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        self.now += 1.0
        return self.now


@pytest.fixture
def manager(tmp_path):
    return DeploymentStateManager(str(tmp_path), "lamp-cluster", "lamp-web", clock=Ticker())


class TestRunStateMachine:

    def test_happy_path(self, manager):
        manager.start_run("deploy")
        for phase in (RunPhase.DIFFING, RunPhase.APPLYING, RunPhase.CONVERGING, RunPhase.SUCCEEDED):
            manager.transition(phase)

        assert manager.phase == RunPhase.SUCCEEDED
        assert manager.state.is_terminal
        assert [p.phase for p in manager.state.phases] == ["loading", "diffing", "applying", "converging"]
        assert all(p.status == "completed" for p in manager.state.phases)
        assert manager.state.total_duration > 0

    def test_empty_plan_skips_applying(self, manager):
        manager.start_run("deploy")
        manager.transition(RunPhase.DIFFING)
        manager.transition(RunPhase.CONVERGING)
        manager.transition(RunPhase.SUCCEEDED)

        assert manager.phase == RunPhase.SUCCEEDED

    @pytest.mark.parametrize("source", [RunPhase.LOADING, RunPhase.DIFFING, RunPhase.APPLYING, RunPhase.CONVERGING])
    def test_any_running_phase_can_fail(self, manager, source):
        manager.start_run("deploy")
        path = [RunPhase.DIFFING, RunPhase.APPLYING, RunPhase.CONVERGING]
        for phase in path[:path.index(source) + 1] if source != RunPhase.LOADING else []:
            manager.transition(phase)

        manager.fail("AccessDenied")

        assert manager.phase == RunPhase.FAILED
        assert manager.state.error_message == "AccessDenied"
        assert manager.state.phases[-1].status == "failed"

    def test_only_converging_can_time_out(self, manager):
        manager.start_run("deploy")
        manager.transition(RunPhase.DIFFING)

        with pytest.raises(InvalidTransitionError):
            manager.transition(RunPhase.TIMED_OUT)

    def test_cannot_skip_diffing(self, manager):
        manager.start_run("deploy")

        with pytest.raises(InvalidTransitionError):
            manager.transition(RunPhase.APPLYING)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_PHASES, key=lambda p: p.value))
    def test_terminal_phases_are_final(self, manager, terminal):
        manager.start_run("deploy")
        manager.transition(RunPhase.DIFFING)
        manager.transition(RunPhase.CONVERGING)
        manager.transition(terminal)

        with pytest.raises(InvalidTransitionError):
            manager.fail("again")

    def test_transition_without_run(self, manager):
        with pytest.raises(InvalidTransitionError):
            manager.transition(RunPhase.DIFFING)


class TestPersistence:

    def test_state_file_written_per_service(self, manager, tmp_path):
        manager.start_run("deploy")
        manager.transition(RunPhase.DIFFING)
        manager.record_plan({"operations": [{"id": "create:cluster", "status": "pending"}], "warnings": []})

        data = json.loads((tmp_path / "lamp-cluster__lamp-web.json").read_text())

        assert data["phase"] == "diffing"
        assert data["operations"][0]["id"] == "create:cluster"

    def test_reload_and_summary(self, manager, tmp_path):
        run_id = manager.start_run("update").run_id
        manager.transition(RunPhase.DIFFING)
        manager.transition(RunPhase.CONVERGING)
        manager.transition(RunPhase.TIMED_OUT, error_message="did not converge")

        reloaded = DeploymentStateManager(str(tmp_path), "lamp-cluster", "lamp-web")
        state = reloaded.load_state()
        summary = reloaded.get_status_summary()

        assert state.run_id == run_id
        assert summary["phase"] == "timed_out"
        assert summary["terminal"] is True
        assert summary["error"] == "did not converge"
        assert summary["command"] == "update"

    def test_no_previous_run(self, tmp_path):
        manager = DeploymentStateManager(str(tmp_path), "lamp-cluster", "other")

        assert manager.load_state() is None
        assert manager.get_status_summary() == {"status": "no_run"}

    def test_corrupt_state_file_is_ignored(self, tmp_path):
        (tmp_path / "lamp-cluster__lamp-web.json").write_text("{not json")

        assert DeploymentStateManager(str(tmp_path), "lamp-cluster", "lamp-web").load_state() is None
