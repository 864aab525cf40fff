import json
from pathlib import Path

import pytest

from ecs_deployer.apply_engine import ApplyEngine
from ecs_deployer.deployment_state import DeploymentStateManager
from ecs_deployer.errors import PermanentCloudError
from ecs_deployer.locking import ClusterLock
from ecs_deployer.orchestrator import DeploymentRunner
from ecs_deployer.settings import get_settings
from ecs_deployer.state import Action, ResourceKind
from ecs_deployer.status_reporter import StatusReporter
from tests.consts import TEST_ACCOUNT_ID, TEST_IMAGE, TEST_IMAGE_V2
from tests.fixtures.fake_cloud import healthy, rolling
from tests.fixtures.specs import make_spec


@pytest.fixture
def events():
    return []


@pytest.fixture
def runner(fake_provider, fake_clock, events):
    engine = ApplyEngine(fake_provider, max_attempts=3, delay=0, max_workers=1,
                         sleep=lambda seconds: None, progress=events.append)
    reporter = StatusReporter(fake_provider, poll_interval=10, flap_threshold=3,
                              clock=fake_clock, sleep=fake_clock.sleep, progress=events.append)
    return DeploymentRunner(settings=get_settings(), provider=fake_provider,
                            progress=events.append, engine=engine, reporter=reporter)


def last_run(service="lamp-web"):
    manager = DeploymentStateManager(get_settings().state_dir, "lamp-cluster", service)
    return manager.load_state()


class TestDeploy:

    def test_fresh_deploy_creates_everything_and_converges(self, runner, fake_provider, spec_file, events):
        fake_provider.health = [rolling(running=0), healthy()]

        summary = runner.deploy(spec_file())

        assert summary.outcome == "succeeded"
        assert summary.exit_code == 0
        assert len(fake_provider.calls) == 7
        assert all(call.startswith("create:") for call in fake_provider.calls)
        assert summary.convergence["outcome"] == "succeeded"
        assert summary.outputs["load_balancer_dns"] == "lamp-web-alb.elb.amazonaws.com"
        phases = [e["phase"] for e in events if e["event"] == "phase"]
        assert phases == ["loading", "diffing", "applying", "converging", "succeeded"]
        assert last_run().phase == "succeeded"

    def test_second_deploy_is_a_no_op(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.calls.clear()

        summary = runner.deploy(spec_file())

        assert summary.outcome == "succeeded"
        assert summary.plan["operations"] == []
        assert fake_provider.calls == []

    def test_no_wait_skips_convergence(self, runner, fake_provider, spec_file):
        fake_provider.health = [rolling()]

        summary = runner.deploy(spec_file(), wait=False)

        assert summary.outcome == "succeeded"
        assert summary.convergence is None

    def test_default_execution_role_comes_from_account(self, runner, fake_provider, spec_file):
        path = spec_file(execution_role_arn=None)

        summary = runner.plan(path)

        task_definition = next(op for op in summary.plan["operations"] if op["kind"] == "task_definition")
        assert task_definition["action"] == "create"
        spec = runner.with_defaults(make_spec(execution_role_arn=None))
        assert spec.execution_role_arn == f"arn:aws:iam::{TEST_ACCOUNT_ID}:role/ecsTaskExecutionRole"

    def test_invalid_descriptor_never_touches_the_cloud(self, runner, fake_provider, spec_file):
        summary = runner.deploy(spec_file(container_port=0))

        assert summary.outcome == "validation_error"
        assert summary.exit_code == 3
        assert fake_provider.calls == []
        assert fake_provider.observe_calls == 0

    def test_missing_ecr_image_is_a_validation_error(self, runner, fake_provider, spec_file):
        fake_provider.images[TEST_IMAGE] = False

        summary = runner.deploy(spec_file())

        assert summary.exit_code == 3
        assert "image" in summary.error
        assert fake_provider.calls == []
        assert last_run().phase == "failed"

    def test_permanent_failure_reports_partial_progress(self, runner, fake_provider, spec_file):
        fake_provider.fail(ResourceKind.LOAD_BALANCER, Action.CREATE,
                           PermanentCloudError("AccessDenied", code="AccessDenied"))

        summary = runner.deploy(spec_file())

        assert summary.outcome == "failed"
        assert summary.exit_code == 1
        assert summary.apply["failed"] == ["create:load_balancer"]
        assert summary.apply["completed"] == ["create:cluster", "create:log_group", "create:target_group"]
        assert summary.error_type == "PermanentCloudError"
        state = last_run()
        assert state.phase == "failed"
        assert {op["id"]: op["status"] for op in state.operations}["create:service"] == "skipped"

    def test_rerun_after_partial_failure_finishes_the_job(self, runner, fake_provider, spec_file):
        fake_provider.fail(ResourceKind.LOAD_BALANCER, Action.CREATE, PermanentCloudError("AccessDenied"))
        runner.deploy(spec_file())
        fake_provider.calls.clear()

        summary = runner.deploy(spec_file())

        assert summary.outcome == "succeeded"
        assert fake_provider.calls == ["create:load_balancer", "create:listener",
                                       "create:task_definition", "create:service"]

    def test_convergence_timeout(self, runner, fake_provider, spec_file):
        fake_provider.health = [rolling(running=1)]

        summary = runner.deploy(spec_file(), timeout=30)

        assert summary.outcome == "timed_out"
        assert summary.exit_code == 2
        assert summary.error_type == "ConvergenceTimeout"
        assert "running=1" in summary.error
        assert last_run().phase == "timed_out"

    def test_degraded_rollout_fails(self, runner, fake_provider, spec_file):
        fake_provider.health = [rolling(failed_tasks=5)]

        summary = runner.deploy(spec_file())

        assert summary.outcome == "failed"
        assert summary.error_type == "degraded"
        assert last_run().phase == "failed"

    def test_locked_cluster(self, runner, fake_provider, spec_file):
        with ClusterLock(get_settings().state_dir, "lamp-cluster"):
            summary = runner.deploy(spec_file())

        assert summary.outcome == "lock_held"
        assert summary.exit_code == 4
        assert fake_provider.calls == []


class TestUpdate:

    def test_update_requires_existing_service(self, runner, fake_provider, spec_file):
        summary = runner.update(spec_file())

        assert summary.outcome == "failed"
        assert "does not exist" in summary.error
        assert fake_provider.calls == []

    def test_update_rolls_new_image(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.calls.clear()

        summary = runner.update(spec_file(image=TEST_IMAGE_V2))

        assert summary.outcome == "succeeded"
        assert fake_provider.calls == ["update:task_definition", "update:service"]


class TestPlanStatusTeardown:

    def test_plan_is_a_dry_run(self, runner, fake_provider, spec_file):
        summary = runner.plan(spec_file())

        assert summary.outcome == "succeeded"
        assert len(summary.plan["operations"]) == 7
        assert fake_provider.calls == []
        assert not Path(get_settings().state_dir, "lamp-cluster__lamp-web.json").exists()

    def test_status_reports_health_and_last_run(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.health = [healthy(desired=2)]

        summary = runner.status("lamp-cluster", "lamp-web")

        assert summary.outcome == "succeeded"
        assert summary.health["converged"] is True
        assert summary.last_run["phase"] == "succeeded"
        json.dumps(summary.to_dict())

    def test_status_of_unknown_service(self, runner):
        summary = runner.status("lamp-cluster", "ghost")

        assert summary.exit_code == 1
        assert summary.health["found"] is False

    def test_teardown_deletes_service_chain(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.calls.clear()

        summary = runner.teardown("lamp-cluster", "lamp-web")

        assert summary.outcome == "succeeded"
        assert fake_provider.calls == ["delete:service", "delete:listener", "delete:load_balancer",
                                       "delete:target_group", "delete:task_definition"]
        assert last_run().command == "teardown"

    def test_teardown_with_cluster(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.calls.clear()

        runner.teardown("lamp-cluster", "lamp-web", delete_cluster=True)

        assert fake_provider.calls[-1] == "delete:cluster"

    def test_teardown_failure(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.fail(ResourceKind.LISTENER, Action.DELETE, PermanentCloudError("AccessDenied"))

        summary = runner.teardown("lamp-cluster", "lamp-web")

        assert summary.outcome == "failed"
        assert summary.apply["completed"] == ["delete:service"]
        assert summary.apply["skipped"] == ["delete:load_balancer", "delete:target_group", "delete:task_definition"]
        assert last_run().phase == "failed"

    def test_teardown_rerun_finishes_the_chain(self, runner, fake_provider, spec_file):
        runner.deploy(spec_file())
        fake_provider.fail(ResourceKind.LISTENER, Action.DELETE, PermanentCloudError("AccessDenied"))
        runner.teardown("lamp-cluster", "lamp-web")
        fake_provider.calls.clear()

        summary = runner.teardown("lamp-cluster", "lamp-web")

        assert summary.outcome == "succeeded"
        assert fake_provider.calls == ["delete:listener", "delete:load_balancer",
                                       "delete:target_group", "delete:task_definition"]
        assert last_run().phase == "succeeded"
