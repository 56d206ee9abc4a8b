"""Unit tests for the State Reconciler.

Tests cover the diff rules (create, update, delete), delete ordering,
convergence and the periodic loop.
"""

import threading
from unittest.mock import Mock

import pytest

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.executor import Executor
from src.orchestrator.reconciler import StateReconciler
from src.providers.base import ProviderRegistry, ValidationError
from src.providers.in_memory import InMemoryProvider, build_in_memory_registry
from src.schemas.desired_state import DesiredState, ResourceKind
from src.schemas.operation import OperationAction
from src.schemas.run_log import OperationStatus


def desired_state():
    return DesiredState(resources=[
        {"name": "vpc", "kind": "network", "spec": {"cidr": "10.0.0.0/16"}},
        {"name": "eks", "kind": "cluster", "depends_on": ["vpc"], "spec": {"nodes": 3}},
        {"name": "api", "kind": "workload", "depends_on": ["eks"], "spec": {"image": "api:1"}},
    ])


def make_reconciler(registry, prune=True):
    config = OrchestratorConfig(run_log_dir=None)
    executor = Executor(registry, config, sleep=lambda s: None)
    return StateReconciler(registry, executor=executor, config=config, prune=prune)


def op_ids(operations):
    return [op.operation_id for op in operations]


class TestReconcileDiff:
    """Test the operations produced from a diff."""

    def test_empty_live_state_creates_everything(self):
        reconciler = make_reconciler(build_in_memory_registry())

        operations = reconciler.reconcile(desired_state())

        assert op_ids(operations) == [
            "create:network/vpc",
            "create:cluster/eks",
            "create:workload/api",
        ]
        assert operations[2].depends_on == ["create:cluster/eks"]

    def test_no_drift_after_converge(self):
        reconciler = make_reconciler(build_in_memory_registry())
        desired = desired_state()

        first = reconciler.converge(desired)

        assert first.succeeded is True
        assert reconciler.reconcile(desired) == []
        assert reconciler.converge(desired) is None

    def test_spec_drift_produces_update(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        desired = desired_state()
        reconciler.converge(desired)

        registry.get(ResourceKind.CLUSTER).put("eks", {"nodes": 1})
        operations = reconciler.reconcile(desired)

        assert op_ids(operations) == ["update:cluster/eks"]
        assert operations[0].spec == {"nodes": 3}
        assert operations[0].depends_on == []

    def test_missing_resource_recreated(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        desired = desired_state()
        reconciler.converge(desired)

        registry.get(ResourceKind.WORKLOAD).remove("api")
        operations = reconciler.reconcile(desired)

        assert op_ids(operations) == ["create:workload/api"]
        assert operations[0].action == OperationAction.CREATE

    def test_undeclared_resources_deleted_in_reverse_rank(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        registry.get(ResourceKind.NETWORK).put("old-vpc", {})
        registry.get(ResourceKind.CLUSTER).put("old-eks", {})
        registry.get(ResourceKind.WORKLOAD).put("old-api", {})
        registry.get(ResourceKind.WORKLOAD).put("legacy-api", {})

        operations = reconciler.reconcile(DesiredState())

        assert op_ids(operations) == [
            "delete:workload/legacy-api",
            "delete:workload/old-api",
            "delete:cluster/old-eks",
            "delete:network/old-vpc",
        ]
        # Each rank waits for the rank above it; siblings are independent
        assert operations[0].depends_on == []
        assert operations[1].depends_on == []
        assert operations[2].depends_on == ["delete:workload/legacy-api", "delete:workload/old-api"]
        assert operations[3].depends_on == ["delete:cluster/old-eks"]

    def test_failed_delete_does_not_halt_same_rank_sibling(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        workloads = registry.get(ResourceKind.WORKLOAD)
        workloads.put("old-api", {})
        workloads.put("legacy-api", {})
        registry.get(ResourceKind.NETWORK).put("old-vpc", {})
        workloads.fail_permanent("legacy-api", "ACCESS_DENIED")

        run_log = reconciler.converge(DesiredState())

        assert run_log.entry("delete:workload/legacy-api").status == OperationStatus.FAILED
        assert run_log.entry("delete:workload/old-api").status == OperationStatus.SUCCEEDED
        assert workloads.get("old-api") is None
        assert run_log.entry("delete:network/old-vpc").halted_by == "delete:workload/legacy-api"

    def test_deletes_come_after_creates(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        registry.get(ResourceKind.MONITORING).put("grafana", {})

        operations = reconciler.reconcile(desired_state())

        assert op_ids(operations)[-1] == "delete:monitoring/grafana"
        assert [op.rank for op in operations] == list(range(len(operations)))

    def test_prune_disabled_keeps_undeclared(self):
        registry = build_in_memory_registry()
        registry.get(ResourceKind.NETWORK).put("old-vpc", {})

        operations = make_reconciler(registry, prune=False).reconcile(DesiredState())

        assert operations == []

    def test_unmanaged_kinds_ignored(self):
        """A resource of a kind nobody manages is never observed, so never deleted."""
        registry = ProviderRegistry([InMemoryProvider(ResourceKind.NETWORK)])
        reconciler = make_reconciler(registry)

        operations = reconciler.reconcile(DesiredState(resources=[
            {"name": "vpc", "kind": "network"},
        ]))

        assert op_ids(operations) == ["create:network/vpc"]

    def test_same_name_different_kind_is_not_a_match(self):
        registry = build_in_memory_registry()
        registry.get(ResourceKind.CLUSTER).put("vpc", {"cidr": "10.0.0.0/16"})

        operations = make_reconciler(registry).reconcile(DesiredState(resources=[
            {"name": "vpc", "kind": "network", "spec": {"cidr": "10.0.0.0/16"}},
        ]))

        assert op_ids(operations) == ["create:network/vpc", "delete:cluster/vpc"]

    def test_invalid_desired_state_rejected(self):
        reconciler = make_reconciler(build_in_memory_registry())
        desired = DesiredState(resources=[
            {"name": "a", "kind": "network", "depends_on": ["b"]},
            {"name": "b", "kind": "network", "depends_on": ["a"]},
        ])

        with pytest.raises(ValidationError):
            reconciler.reconcile(desired)


class TestConvergence:
    """Test converge() and run_periodic()."""

    def test_converge_removes_drift(self):
        registry = build_in_memory_registry()
        reconciler = make_reconciler(registry)
        desired = desired_state()
        reconciler.converge(desired)
        registry.get(ResourceKind.NETWORK).put("vpc", {"cidr": "192.168.0.0/16"})
        registry.get(ResourceKind.CLUSTER).put("stray", {})

        run_log = reconciler.converge(desired)

        assert run_log.succeeded is True
        assert run_log.operation_ids == ["update:network/vpc", "delete:cluster/stray"]
        assert registry.get(ResourceKind.NETWORK).get("vpc") == {"cidr": "10.0.0.0/16"}
        assert registry.get(ResourceKind.CLUSTER).get("stray") is None

    def test_run_periodic_max_cycles(self):
        reconciler = make_reconciler(build_in_memory_registry())
        on_cycle = Mock()

        results = reconciler.run_periodic(
            desired_state(),
            interval_seconds=0,
            max_cycles=3,
            on_cycle=on_cycle
        )

        assert len(results) == 3
        assert results[0].succeeded is True
        assert results[1] is None
        assert results[2] is None
        assert [c.args[0] for c in on_cycle.call_args_list] == [0, 1, 2]

    def test_run_periodic_stops_on_event(self):
        reconciler = make_reconciler(build_in_memory_registry())
        stop = threading.Event()

        def stop_after_second(cycle, _run_log):
            if cycle == 1:
                stop.set()

        results = reconciler.run_periodic(
            desired_state(),
            interval_seconds=0,
            stop_event=stop,
            on_cycle=stop_after_second
        )

        assert len(results) == 2

    def test_run_periodic_requires_termination(self):
        reconciler = make_reconciler(build_in_memory_registry())

        with pytest.raises(ValueError):
            reconciler.run_periodic(desired_state())

    def test_run_periodic_rejects_negative_interval(self):
        reconciler = make_reconciler(build_in_memory_registry())

        with pytest.raises(ValueError):
            reconciler.run_periodic(desired_state(), interval_seconds=-1, max_cycles=1)
