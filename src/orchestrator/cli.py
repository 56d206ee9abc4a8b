"""Command line interface for the deployment orchestrator.

Every command loads a desired-state file (YAML or JSON) and runs against the
in-memory providers, which makes it a dry run of what the orchestrator would
do against real cloud, registry and cluster APIs.

Exit codes: 0 on success, 1 when an operation or pipeline fails, 2 when the
desired state is invalid.
"""

import json
import logging
import sys

import click
import yaml
from pydantic import ValidationError as SchemaValidationError

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.orchestrator import DeploymentOrchestrator
from src.orchestrator.planner import PlannerConfig
from src.providers.base import ValidationError
from src.providers.in_memory import build_in_memory_registry
from src.schemas.desired_state import DesiredState
from src.schemas.run_log import format_failure_report


logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_INVALID = 2


def _load_state(path: str) -> DesiredState:
    try:
        return DesiredState.from_file(path)
    except (SchemaValidationError, yaml.YAMLError, UnicodeDecodeError) as e:
        click.echo(f"Invalid desired state in {path}:\n{e}", err=True)
        sys.exit(EXIT_INVALID)


def _build(ctx: click.Context, path: str) -> DesiredState:
    desired = _load_state(path)
    ctx.obj["orchestrator"] = DeploymentOrchestrator(
        desired,
        build_in_memory_registry(),
        config=ctx.obj["config"],
        planner_config=ctx.obj["planner_config"]
    )
    return desired


@click.group()
@click.option("--run-log-dir", default="runs", show_default=True,
              help="Directory for persisted run logs ('' disables persistence)")
@click.option("--max-workers", default=4, show_default=True, type=click.IntRange(min=1),
              help="Operations applied concurrently")
@click.option("--timeout", "operation_timeout", default=900.0, show_default=True,
              type=click.FloatRange(min=0, min_open=True),
              help="Per-operation timeout in seconds")
@click.option("--implicit-kind-edges", is_flag=True,
              help="Make every resource depend on all resources of lower kinds")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, run_log_dir, max_workers, operation_timeout, implicit_kind_edges, verbose):
    """Plan, apply and reconcile infrastructure; deliver microservices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = OrchestratorConfig(
        max_workers=max_workers,
        operation_timeout_seconds=operation_timeout,
        run_log_dir=run_log_dir or None
    )
    ctx.obj["planner_config"] = PlannerConfig(implicit_kind_edges=implicit_kind_edges)


@cli.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print operations as JSON")
@click.pass_context
def plan(ctx, state_file, as_json):
    """Print the ordered operation list for STATE_FILE."""
    _build(ctx, state_file)
    try:
        operations = ctx.obj["orchestrator"].plan()
    except ValidationError as e:
        click.echo(f"Plan failed: {e}", err=True)
        sys.exit(EXIT_INVALID)

    if as_json:
        click.echo(json.dumps([op.model_dump(mode="json") for op in operations], indent=2))
        return

    for op in operations:
        deps = f" (after {', '.join(op.depends_on)})" if op.depends_on else ""
        click.echo(f"{op.rank + 1:>3}. {op.operation_id}{deps}")


@cli.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def apply(ctx, state_file):
    """Plan STATE_FILE and apply every operation."""
    _build(ctx, state_file)
    orchestrator = ctx.obj["orchestrator"]
    try:
        run_log = orchestrator.apply(orchestrator.plan())
    except ValidationError as e:
        click.echo(f"Apply failed: {e}", err=True)
        sys.exit(EXIT_INVALID)

    click.echo(format_failure_report(run_log))
    if not run_log.succeeded:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--converge", "do_converge", is_flag=True,
              help="Apply the corrective operations")
@click.option("--cycles", default=1, show_default=True, type=click.IntRange(min=1),
              help="Reconciliation cycles to run when converging")
@click.option("--interval", default=0.0, show_default=True, type=click.FloatRange(min=0),
              help="Seconds between cycles")
@click.pass_context
def reconcile(ctx, state_file, do_converge, cycles, interval):
    """Show (or apply) the operations needed to converge on STATE_FILE."""
    desired = _build(ctx, state_file)
    orchestrator = ctx.obj["orchestrator"]

    try:
        if not do_converge:
            operations = orchestrator.reconcile(desired)
            if not operations:
                click.echo("No drift detected")
            for op in operations:
                click.echo(op.operation_id)
            return

        failed = False
        for cycle, run_log in enumerate(orchestrator.reconciler.run_periodic(
                desired, interval_seconds=interval, max_cycles=cycles)):
            if run_log is None:
                click.echo(f"cycle {cycle + 1}: no drift detected")
                continue
            click.echo(f"cycle {cycle + 1}: {format_failure_report(run_log)}")
            failed = failed or not run_log.succeeded
    except ValidationError as e:
        click.echo(f"Reconcile failed: {e}", err=True)
        sys.exit(EXIT_INVALID)

    if failed:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("services", nargs=-1)
@click.pass_context
def pipeline(ctx, state_file, services):
    """Build, push and deploy SERVICES (all declared services by default)."""
    desired = _build(ctx, state_file)
    orchestrator = ctx.obj["orchestrator"]
    names = list(services) or [s.name for s in desired.services]

    try:
        runs = orchestrator.run_pipelines(names)
    except ValidationError as e:
        click.echo(f"Pipeline failed: {e}", err=True)
        sys.exit(EXIT_INVALID)

    for name in names:
        run = runs[name]
        if run.succeeded:
            click.echo(f"{name}: {run.status.value} ({run.image_ref}@{run.image_digest})")
        else:
            record = run.stage(run.failed_stage)
            click.echo(
                f"{name}: failed at {run.failed_stage.value} "
                f"[{record.error_code}] {record.error_message}"
            )

    if not all(run.succeeded for run in runs.values()):
        sys.exit(EXIT_FAILURE)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
