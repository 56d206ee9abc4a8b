"""Unit tests for the Resource Planner.

Tests cover:
- Dependency ordering and tie-breaking by kind rank and declaration order
- Validation errors (cycles, missing and self references, duplicates)
- Implicit kind edges
- Planning a subset of resources with projected dependencies
"""

import pytest

from src.orchestrator.planner import (
    PlannerConfig,
    ResourcePlanner,
    order_resources,
    plan,
)
from src.providers.base import ValidationError
from src.schemas.desired_state import DesiredState, ResourceDeclaration
from src.schemas.operation import OperationAction


def decl(name, kind, depends_on=None, **spec):
    return ResourceDeclaration(name=name, kind=kind, depends_on=depends_on or [], spec=spec)


def op_ids(operations):
    return [op.operation_id for op in operations]


class TestPlanOrdering:
    """Test operation order produced by plan()."""

    def test_network_before_cluster(self):
        desired = DesiredState(resources=[
            decl("eks", "cluster", ["vpc"]),
            decl("vpc", "network"),
        ])

        operations = ResourcePlanner().plan(desired)

        assert op_ids(operations) == ["create:network/vpc", "create:cluster/eks"]
        assert operations[1].depends_on == ["create:network/vpc"]
        assert [op.rank for op in operations] == [0, 1]
        assert all(op.action == OperationAction.CREATE for op in operations)

    def test_ready_resources_ordered_by_kind_rank(self):
        desired = DesiredState(resources=[
            decl("grafana", "monitoring"),
            decl("api", "workload"),
            decl("db", "database"),
            decl("vpc", "network"),
        ])

        assert op_ids(plan(desired)) == [
            "create:network/vpc",
            "create:database/db",
            "create:workload/api",
            "create:monitoring/grafana",
        ]

    def test_same_kind_keeps_declaration_order(self):
        desired = DesiredState(resources=[
            decl("b-net", "network"),
            decl("a-net", "network"),
            decl("c-net", "network"),
        ])

        assert op_ids(plan(desired)) == [
            "create:network/b-net",
            "create:network/a-net",
            "create:network/c-net",
        ]

    def test_explicit_edge_overrides_rank(self):
        """A network may wait on a cluster when declared to."""
        desired = DesiredState(resources=[
            decl("eks", "cluster"),
            decl("peering", "network", ["eks"]),
        ])

        assert op_ids(plan(desired)) == ["create:cluster/eks", "create:network/peering"]

    def test_full_stack(self):
        desired = DesiredState(resources=[
            decl("vpc", "network"),
            decl("eks", "cluster", ["vpc"]),
            decl("db", "database", ["vpc"]),
            decl("api", "workload", ["eks", "db"]),
            decl("grafana", "monitoring", ["api"]),
        ])

        operations = plan(desired)
        positions = {op.resource.name: i for i, op in enumerate(operations)}

        assert positions["vpc"] < positions["eks"] < positions["api"]
        assert positions["db"] < positions["api"] < positions["grafana"]
        assert sorted(operations[3].depends_on) == ["create:cluster/eks", "create:database/db"]

    def test_specs_are_carried(self):
        desired = DesiredState(resources=[decl("vpc", "network", cidr="10.0.0.0/16")])
        assert plan(desired)[0].spec == {"cidr": "10.0.0.0/16"}

    def test_empty_state_plans_nothing(self):
        assert plan(DesiredState()) == []


class TestPlanValidation:
    """Test ValidationError cases."""

    def test_cycle_detected(self):
        desired = DesiredState(resources=[
            decl("a", "network", ["b"]),
            decl("b", "network", ["a"]),
        ])

        with pytest.raises(ValidationError) as exc_info:
            plan(desired)

        assert exc_info.value.error_code == "DEPENDENCY_CYCLE"
        assert exc_info.value.message == "Dependency cycle detected: a -> b -> a"
        assert exc_info.value.context["cycle"] == ["a", "b", "a"]

    def test_cycle_reported_even_with_acyclic_prefix(self):
        desired = DesiredState(resources=[
            decl("vpc", "network"),
            decl("x", "cluster", ["vpc", "z"]),
            decl("y", "cluster", ["x"]),
            decl("z", "cluster", ["y"]),
        ])

        with pytest.raises(ValidationError) as exc_info:
            plan(desired)

        cycle = exc_info.value.context["cycle"]
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"x", "y", "z"}

    def test_missing_dependency(self):
        desired = DesiredState(resources=[decl("eks", "cluster", ["vpc"])])

        with pytest.raises(ValidationError) as exc_info:
            plan(desired)

        assert exc_info.value.error_code == "MISSING_DEPENDENCY"
        assert exc_info.value.context == {"resource": "eks", "missing": "vpc"}

    def test_self_dependency(self):
        desired = DesiredState(resources=[decl("vpc", "network", ["vpc"])])

        with pytest.raises(ValidationError) as exc_info:
            plan(desired)

        assert exc_info.value.error_code == "SELF_DEPENDENCY"

    def test_duplicate_resource(self):
        with pytest.raises(ValidationError) as exc_info:
            order_resources([decl("vpc", "network"), decl("vpc", "cluster")])

        assert exc_info.value.error_code == "DUPLICATE_RESOURCE"

    def test_duplicate_edges_collapse(self):
        desired = DesiredState(resources=[
            decl("vpc", "network"),
            decl("eks", "cluster", ["vpc", "vpc"]),
        ])
        assert plan(desired)[1].depends_on == ["create:network/vpc"]


class TestImplicitKindEdges:
    """Test PlannerConfig.implicit_kind_edges."""

    def test_adds_edges_from_lower_ranks(self):
        desired = DesiredState(resources=[
            decl("vpc", "network"),
            decl("eks", "cluster"),
            decl("api", "workload"),
        ])

        operations = ResourcePlanner(PlannerConfig(implicit_kind_edges=True)).plan(desired)

        assert operations[0].depends_on == []
        assert operations[1].depends_on == ["create:network/vpc"]
        assert operations[2].depends_on == ["create:network/vpc", "create:cluster/eks"]

    def test_disabled_by_default(self):
        desired = DesiredState(resources=[decl("vpc", "network"), decl("eks", "cluster")])
        assert all(op.depends_on == [] for op in plan(desired))

    def test_backward_edge_becomes_cycle(self):
        desired = DesiredState(resources=[
            decl("eks", "cluster"),
            decl("peering", "network", ["eks"]),
        ])

        with pytest.raises(ValidationError) as exc_info:
            plan(desired, PlannerConfig(implicit_kind_edges=True))

        assert exc_info.value.error_code == "DEPENDENCY_CYCLE"


class TestPlanOperations:
    """Test planning a subset of resources."""

    def test_dependencies_projected_through_unselected(self):
        resources = [
            decl("vpc", "network"),
            decl("eks", "cluster", ["vpc"]),
            decl("api", "workload", ["eks"]),
        ]

        operations = ResourcePlanner().plan_operations(resources, {
            "vpc": OperationAction.UPDATE,
            "api": OperationAction.CREATE,
        })

        assert op_ids(operations) == ["update:network/vpc", "create:workload/api"]
        assert operations[1].depends_on == ["update:network/vpc"]
        assert [op.rank for op in operations] == [0, 1]

    def test_unselected_edges_dropped(self):
        resources = [decl("vpc", "network"), decl("eks", "cluster", ["vpc"])]

        operations = ResourcePlanner().plan_operations(resources, {"eks": OperationAction.UPDATE})

        assert op_ids(operations) == ["update:cluster/eks"]
        assert operations[0].depends_on == []

    def test_empty_actions_still_validate(self):
        resources = [decl("a", "network", ["b"]), decl("b", "network", ["a"])]

        with pytest.raises(ValidationError):
            ResourcePlanner().plan_operations(resources, {})
