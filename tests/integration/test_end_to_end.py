"""Integration tests for the deployment orchestrator.

Tests end-to-end behavior against the in-memory providers, including:
- Provisioning a full environment from a YAML desired state
- Retrying eventual-consistency lag and throttling
- Partial failure: the failed subtree halts while independent branches finish
- Out-of-band drift repaired by reconciliation
- Delivering several services concurrently and reconciling afterwards
- Persisted run logs and pipeline runs
"""

import json
from pathlib import Path

import pytest

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.orchestrator import DeploymentOrchestrator
from src.orchestrator.run_store import RunStore
from src.providers.base import ValidationError
from src.providers.in_memory import build_in_memory_registry
from src.schemas.desired_state import DesiredState, ResourceKind
from src.schemas.pipeline_run import PipelineStage, PipelineStatus
from src.schemas.run_log import OperationStatus, format_failure_report


ENVIRONMENT = """\
name: production
resources:
  - name: vpc
    kind: network
    spec: {cidr: 10.0.0.0/16}
  - name: private-subnets
    kind: network
    depends_on: [vpc]
  - name: eks
    kind: cluster
    depends_on: [private-subnets]
    spec: {version: "1.29", nodes: 3}
  - name: orders-db
    kind: database
    depends_on: [private-subnets]
    spec: {engine: postgres, size: db.t3.medium}
  - name: orders
    kind: workload
    depends_on: [eks, orders-db]
    spec: {replicas: 3}
  - name: billing
    kind: workload
    depends_on: [eks]
    spec: {replicas: 2}
  - name: prometheus
    kind: monitoring
    depends_on: [eks]
services:
  - name: orders-api
    repository: registry.local/orders
    workload: orders
    tag: "2.3.1"
  - name: billing-api
    repository: registry.local/billing
    workload: billing
"""


@pytest.fixture
def desired(tmp_path):
    path = tmp_path / "production.yaml"
    path.write_text(ENVIRONMENT)
    return DesiredState.from_file(path)


@pytest.fixture
def run_dir(tmp_path):
    return tmp_path / "runs"


@pytest.fixture
def orchestrator(desired, run_dir):
    config = OrchestratorConfig(
        max_workers=4,
        operation_timeout_seconds=5.0,
        run_log_dir=str(run_dir),
        poll_interval_seconds=0.01
    )
    return DeploymentOrchestrator(desired, build_in_memory_registry(), config=config)


def provider(orchestrator, kind):
    return orchestrator.registry.get(kind)


class TestProvisioning:
    """Test plan + apply of a whole environment."""

    def test_full_environment(self, orchestrator, run_dir):
        operations = orchestrator.plan()

        assert [op.operation_id for op in operations] == [
            "create:network/vpc",
            "create:network/private-subnets",
            "create:cluster/eks",
            "create:database/orders-db",
            "create:workload/orders",
            "create:workload/billing",
            "create:monitoring/prometheus",
        ]

        run_log = orchestrator.apply(operations)

        assert run_log.succeeded is True
        assert provider(orchestrator, ResourceKind.DATABASE).get("orders-db") == {
            "engine": "postgres",
            "size": "db.t3.medium",
        }

        stored = RunStore(str(run_dir)).load_run_log(run_log.run_id)
        assert stored.succeeded is True
        events = [
            json.loads(line)
            for line in (run_dir / run_log.run_id / "run.log").read_text().splitlines()
        ]
        assert events[0]["event"] == "run_start"
        assert events[0]["operations"] == [op.operation_id for op in operations]
        assert events[-1]["status_counts"] == {"succeeded": 7}

    def test_transient_lag_absorbed_by_retries(self, orchestrator):
        provider(orchestrator, ResourceKind.NETWORK).fail_transient(
            "private-subnets", times=2, error_code="EVENTUAL_CONSISTENCY"
        )
        provider(orchestrator, ResourceKind.CLUSTER).fail_transient(
            "eks", times=1, error_code="CONTROL_PLANE_UNAVAILABLE"
        )

        run_log = orchestrator.apply(orchestrator.plan())

        assert run_log.succeeded is True
        assert run_log.entry("create:network/private-subnets").attempts == 3
        assert run_log.entry("create:cluster/eks").attempts == 2

    def test_database_failure_halts_only_its_subtree(self, orchestrator):
        provider(orchestrator, ResourceKind.DATABASE).fail_permanent("orders-db", "QUOTA_EXCEEDED")

        run_log = orchestrator.apply(orchestrator.plan())

        assert run_log.entry("create:database/orders-db").status == OperationStatus.FAILED
        assert run_log.entry("create:workload/orders").status == OperationStatus.HALTED
        assert run_log.entry("create:workload/orders").halted_by == "create:database/orders-db"
        for op_id in ("create:workload/billing", "create:monitoring/prometheus"):
            assert run_log.entry(op_id).status == OperationStatus.SUCCEEDED

        report = format_failure_report(run_log)
        assert "create:database/orders-db [PermanentError/QUOTA_EXCEEDED]" in report
        assert "halted: create:workload/orders" in report

        # Fixing the fault and reconciling finishes the job
        provider(orchestrator, ResourceKind.DATABASE).clear_faults()
        assert [op.operation_id for op in orchestrator.reconcile()] == [
            "create:database/orders-db",
            "create:workload/orders",
        ]
        assert orchestrator.converge().succeeded is True
        assert orchestrator.reconcile() == []

    def test_slow_operation_times_out(self, desired, run_dir):
        config = OrchestratorConfig(
            operation_timeout_seconds=0.2,
            run_log_dir=str(run_dir),
            poll_interval_seconds=0.01
        )
        orchestrator = DeploymentOrchestrator(desired, build_in_memory_registry(), config=config)
        provider(orchestrator, ResourceKind.CLUSTER).set_latency("eks", 1.0)

        run_log = orchestrator.apply(orchestrator.plan())

        assert run_log.entry("create:cluster/eks").error_code == "OPERATION_TIMEOUT"
        halted = run_log.ids_with_status(OperationStatus.HALTED)
        assert set(halted) == {
            "create:workload/orders",
            "create:workload/billing",
            "create:monitoring/prometheus",
        }
        assert run_log.entry("create:database/orders-db").status == OperationStatus.SUCCEEDED

    def test_invalid_state_applies_nothing(self, run_dir):
        desired = DesiredState(resources=[
            {"name": "eks", "kind": "cluster", "depends_on": ["vpc"]},
        ])
        orchestrator = DeploymentOrchestrator.simulated(
            desired, config=OrchestratorConfig(run_log_dir=str(run_dir))
        )

        with pytest.raises(ValidationError):
            orchestrator.plan()

        assert not Path(run_dir).exists()


class TestDriftAndDelivery:
    """Test reconciliation and pipelines on a provisioned environment."""

    def test_out_of_band_drift_repaired(self, orchestrator):
        orchestrator.apply(orchestrator.plan())
        provider(orchestrator, ResourceKind.CLUSTER).put("eks", {"version": "1.28", "nodes": 1})
        provider(orchestrator, ResourceKind.WORKLOAD).put("debug-pod", {"replicas": 1})
        provider(orchestrator, ResourceKind.MONITORING).remove("prometheus")

        operations = orchestrator.reconcile()

        assert [op.operation_id for op in operations] == [
            "update:cluster/eks",
            "create:monitoring/prometheus",
            "delete:workload/debug-pod",
        ]
        assert operations[1].depends_on == ["update:cluster/eks"]

        run_log = orchestrator.converge()

        assert run_log.succeeded is True
        assert orchestrator.reconcile() == []

    def test_deliver_services_then_reconcile(self, orchestrator, run_dir):
        orchestrator.apply(orchestrator.plan())
        orchestrator.pipeline_runner.registry_client.fail_transient(
            "registry.local/orders:2.3.1", times=1
        )

        runs = orchestrator.run_pipelines(["orders-api", "billing-api"])

        assert all(run.status == PipelineStatus.SUCCEEDED for run in runs.values())
        assert runs["orders-api"].stage(PipelineStage.PUSH).attempts == 2

        workloads = provider(orchestrator, ResourceKind.WORKLOAD)
        assert workloads.get("orders")["image"].startswith("registry.local/orders:2.3.1@sha256:")
        assert workloads.get("billing")["replicas"] == 2

        # Deployed images are part of the converged state
        assert orchestrator.reconcile() == []

        pipeline_files = sorted(p.name for p in run_dir.glob("*/pipeline_*.json"))
        assert pipeline_files == ["pipeline_billing-api.json", "pipeline_orders-api.json"]

    def test_failed_service_does_not_block_others(self, orchestrator):
        orchestrator.apply(orchestrator.plan())
        provider(orchestrator, ResourceKind.WORKLOAD).fail_permanent("orders", "ACCESS_DENIED")

        runs = orchestrator.run_pipelines(["orders-api", "billing-api"])

        failed = runs["orders-api"]
        assert failed.status == PipelineStatus.FAILED
        assert failed.failed_stage == PipelineStage.DEPLOY
        assert failed.stage(PipelineStage.DEPLOY).error_code == "ACCESS_DENIED"
        assert runs["billing-api"].succeeded is True
        # No rollback: the previous workload spec stays in place
        assert provider(orchestrator, ResourceKind.WORKLOAD).get("orders") == {"replicas": 3}
