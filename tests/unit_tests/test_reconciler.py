import pytest

from ecs_deployer.spec import load_spec_from_dict
from ecs_deployer.reconciler import CREATE_DEPENDENCIES, build_plan, build_teardown_plan
from ecs_deployer.state import (
    Action,
    ClusterState,
    ObservedState,
    OutputRef,
    RESOURCE_ORDER,
    ResourceKind,
)
from tests.consts import TEST_IMAGE_V2, TEST_VPC
from tests.fixtures.specs import converged_state, make_spec, spec_dict


def fresh_state():
    return ObservedState(vpc_id=TEST_VPC)


class TestFreshState:

    def test_one_create_per_declared_resource(self, spec):
        plan = build_plan(spec, fresh_state())

        assert [op.kind for op in plan.operations] == RESOURCE_ORDER
        assert all(op.action == Action.CREATE for op in plan.operations)
        assert len(set(plan.ids())) == len(plan.operations)

    def test_dependencies_precede_dependents(self, spec):
        plan = build_plan(spec, fresh_state())

        position = {op.id: index for index, op in enumerate(plan.operations)}
        for op in plan.operations:
            for dependency in op.depends_on:
                assert position[dependency] < position[op.id]

    def test_declared_dependencies(self, spec):
        plan = build_plan(spec, fresh_state())

        assert plan.get("create:listener").depends_on == ("create:load_balancer", "create:target_group")
        assert plan.get("create:task_definition").depends_on == ("create:log_group",)
        assert set(plan.get("create:service").depends_on) == {
            "create:cluster", "create:task_definition", "create:target_group", "create:listener"}

    def test_no_log_group_when_logging_disabled(self):
        spec = load_spec_from_dict(spec_dict(logging={"enabled": False}))

        plan = build_plan(spec, fresh_state())

        assert ResourceKind.LOG_GROUP not in [op.kind for op in plan.operations]
        assert plan.get("create:task_definition").depends_on == ()
        assert plan.get("create:task_definition").params["log_group"] is None

    def test_new_arns_are_output_references(self, spec):
        plan = build_plan(spec, fresh_state())

        service = plan.get("create:service").params
        assert service["task_definition_arn"] == OutputRef(ResourceKind.TASK_DEFINITION)
        assert service["target_group_arn"] == OutputRef(ResourceKind.TARGET_GROUP)
        listener = plan.get("create:listener").params
        assert listener["load_balancer_arn"] == OutputRef(ResourceKind.LOAD_BALANCER)

    def test_target_group_uses_observed_vpc(self, spec):
        plan = build_plan(spec, fresh_state())

        assert plan.get("create:target_group").params["vpc_id"] == TEST_VPC

    def test_inactive_cluster_is_recreated(self, spec):
        inactive = ObservedState(
            cluster=ClusterState(name=spec.cluster, arn="arn:old", status="INACTIVE"),
            vpc_id=TEST_VPC,
        )

        plan = build_plan(spec, inactive)

        assert plan.get("create:cluster").action == Action.CREATE


class TestConvergedState:

    def test_converged_state_gives_empty_plan(self, spec):
        plan = build_plan(spec, converged_state(spec))

        assert plan.is_empty()
        assert plan.warnings == []

    def test_image_change_registers_new_revision_and_rolls_service(self, spec):
        observed = converged_state(spec)
        updated = load_spec_from_dict(spec_dict(image=TEST_IMAGE_V2))

        plan = build_plan(updated, observed)

        assert plan.ids() == ["update:task_definition", "update:service"]
        assert plan.get("update:service").depends_on == ("update:task_definition",)
        assert "image" in plan.get("update:task_definition").reason
        assert plan.get("update:service").params["task_definition_arn"] == \
            OutputRef(ResourceKind.TASK_DEFINITION)

    def test_desired_count_change_only_updates_service(self, spec):
        observed = converged_state(spec)

        plan = build_plan(make_spec(desired_count=4), observed)

        assert plan.ids() == ["update:service"]
        assert plan.get("update:service").params["arn"] == observed.service.arn

    def test_environment_change_updates_task_definition(self, spec):
        observed = converged_state(spec)

        plan = build_plan(make_spec(environment={"APP_ENV": "staging", "DB_PORT": "3306"}), observed)

        assert plan.ids() == ["update:task_definition", "update:service"]

    def test_health_check_change_updates_target_group_in_place(self, spec):
        observed = converged_state(spec)
        data = spec_dict()
        data["load_balancer"]["health_check_path"] = "/health.php"

        plan = build_plan(load_spec_from_dict(data), observed)

        assert plan.ids() == ["update:target_group"]
        assert plan.get("update:target_group").params["arn"] == observed.target_group.arn

    def test_scheme_change_is_a_warning(self, spec):
        observed = converged_state(spec)
        data = spec_dict()
        data["load_balancer"]["scheme"] = "internal"

        plan = build_plan(load_spec_from_dict(data), observed)

        assert plan.is_empty()
        assert len(plan.warnings) == 1
        assert "scheme" in plan.warnings[0]

    def test_missing_listener_is_recreated(self, spec):
        kinds = set(ResourceKind) - {ResourceKind.LISTENER}
        observed = converged_state(spec, kinds=kinds)

        plan = build_plan(spec, observed)

        assert plan.ids() == ["create:listener"]
        assert plan.get("create:listener").depends_on == ()

    def test_new_load_balancer_brings_new_listener(self, spec):
        kinds = set(ResourceKind) - {ResourceKind.LOAD_BALANCER}
        observed = converged_state(spec, kinds=kinds)

        plan = build_plan(spec, observed)

        assert plan.ids() == ["create:load_balancer", "create:listener"]
        assert plan.get("create:listener").action == Action.CREATE

    def test_observed_extras_are_never_deleted(self, spec):
        observed = converged_state(spec)

        plan = build_plan(make_spec(logging={"enabled": False}), observed)

        assert all(op.action != Action.DELETE for op in plan.operations)


class TestTeardownPlan:

    def test_deletes_in_reverse_dependency_order(self, spec):
        plan = build_teardown_plan(converged_state(spec))

        assert plan.ids() == [
            "delete:service",
            "delete:listener",
            "delete:load_balancer",
            "delete:target_group",
            "delete:task_definition",
        ]
        assert plan.get("delete:load_balancer").depends_on == ("delete:listener",)
        assert set(plan.get("delete:target_group").depends_on) == {"delete:service", "delete:load_balancer"}

    def test_cluster_kept_unless_requested(self, spec):
        plan = build_teardown_plan(converged_state(spec))

        assert "delete:cluster" not in plan.ids()

    def test_cluster_deleted_when_empty(self, spec):
        plan = build_teardown_plan(converged_state(spec), delete_cluster=True)

        assert plan.ids()[-1] == "delete:cluster"
        assert plan.get("delete:cluster").depends_on == ("delete:service",)

    def test_busy_cluster_is_kept_with_warning(self, spec):
        observed = converged_state(spec)
        busy = ObservedState(
            cluster=ClusterState(name=spec.cluster, arn=observed.cluster.arn, status="ACTIVE",
                                 active_services=3),
            service=observed.service,
        )

        plan = build_teardown_plan(busy, delete_cluster=True)

        assert "delete:cluster" not in plan.ids()
        assert "2 other service(s)" in plan.warnings[0]

    def test_nothing_to_delete(self):
        plan = build_teardown_plan(ObservedState())

        assert plan.is_empty()


@pytest.mark.parametrize("kind", list(ResourceKind))
def test_every_kind_has_create_dependencies(kind):
    assert kind in CREATE_DEPENDENCIES
