"""State Reconciler.

Compares the live state reported by providers with a DesiredState and produces
the minimal operation set that converges them:

- declared but not observed            -> create
- observed with a different spec       -> update
- observed in a managed kind, undeclared -> delete

Create and update operations are ordered by the planner. Deletes come last,
highest kind rank first (workloads before clusters before networks). Each
delete waits on every delete of the next higher rank present; deletes of the
same rank are independent. Orphans carry no declared dependencies, so a failed
delete still halts every delete of a lower rank.

With no drift the result is empty, so reconciliation can be run any number
of times.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.executor import Executor
from src.orchestrator.planner import PlannerConfig, ResourcePlanner
from src.providers.base import ProviderRegistry
from src.schemas.desired_state import DesiredState, ObservedResource, ResourceKind
from src.schemas.operation import Operation, OperationAction
from src.schemas.run_log import RunLog


logger = logging.getLogger(__name__)


class StateReconciler:
    """Diffs observed state against desired state and converges them."""

    def __init__(
        self,
        registry: ProviderRegistry,
        executor: Optional[Executor] = None,
        planner: Optional[ResourcePlanner] = None,
        config: Optional[OrchestratorConfig] = None,
        prune: bool = True
    ):
        """Initialize the reconciler.

        Args:
            registry: Providers used to observe live state
            executor: Executor used by converge() (built from registry if omitted)
            planner: Planner used to order create/update operations
            config: Orchestrator configuration
            prune: Whether undeclared live resources are deleted
        """
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.executor = executor or Executor(registry, self.config)
        self.planner = planner or ResourcePlanner(PlannerConfig())
        self.prune = prune

    def reconcile(self, desired: DesiredState) -> List[Operation]:
        """Compute corrective operations for the current drift.

        Args:
            desired: Target state

        Returns:
            Ordered operations; empty when the system is converged

        Raises:
            ValidationError: If the desired state is invalid
        """
        observed: Dict[str, ObservedResource] = {}
        for resource in self.registry.observe_all():
            observed[f"{resource.kind.value}/{resource.name}"] = resource

        actions: Dict[str, OperationAction] = {}
        for declaration in desired.resources:
            live = observed.get(f"{declaration.kind.value}/{declaration.name}")
            if live is None:
                actions[declaration.name] = OperationAction.CREATE
            elif live.spec != declaration.spec:
                actions[declaration.name] = OperationAction.UPDATE

        # Always validates the full desired state, even when nothing drifted
        operations = self.planner.plan_operations(desired.resources, actions)

        if self.prune:
            operations.extend(self._plan_deletes(desired, observed, start_rank=len(operations)))

        if operations:
            logger.info(
                f"Reconcile found {len(operations)} corrective operations: "
                f"{[op.operation_id for op in operations]}"
            )
        else:
            logger.info("Reconcile found no drift")

        return operations

    def _plan_deletes(
        self,
        desired: DesiredState,
        observed: Dict[str, ObservedResource],
        start_rank: int
    ) -> List[Operation]:
        declared = {f"{r.kind.value}/{r.name}" for r in desired.resources}
        managed_kinds = set(self.registry.kinds())

        orphans = [
            resource for key, resource in observed.items()
            if key not in declared and resource.kind in managed_kinds
        ]
        orphans.sort(key=lambda r: (-ResourceKind(r.kind).rank, r.name))

        deletes: List[Operation] = []
        previous_rank: List[str] = []
        current_rank: List[str] = []
        rank = None
        for resource in orphans:
            if ResourceKind(resource.kind).rank != rank:
                rank = ResourceKind(resource.kind).rank
                previous_rank = current_rank
                current_rank = []
            operation = Operation.build(
                action=OperationAction.DELETE,
                resource=resource.reference,
                depends_on=list(previous_rank),
                rank=start_rank + len(deletes)
            )
            deletes.append(operation)
            current_rank.append(operation.operation_id)
        return deletes

    def converge(self, desired: DesiredState) -> Optional[RunLog]:
        """Reconcile and apply the corrective operations.

        Returns:
            RunLog of the applied operations, or None when already converged
        """
        operations = self.reconcile(desired)
        if not operations:
            return None
        return self.executor.apply(operations)

    def run_periodic(
        self,
        desired: DesiredState,
        interval_seconds: Optional[float] = None,
        max_cycles: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        on_cycle: Optional[Callable[[int, Optional[RunLog]], None]] = None
    ) -> List[Optional[RunLog]]:
        """Converge repeatedly until stopped.

        Args:
            desired: Target state
            interval_seconds: Delay between cycles (defaults to config)
            max_cycles: Stop after this many cycles (None runs until stop_event is set)
            stop_event: Event that ends the loop when set
            on_cycle: Callback invoked with (cycle index, run log) after each cycle

        Returns:
            Run logs of every cycle (None for cycles without drift)
        """
        if max_cycles is None and stop_event is None:
            raise ValueError("run_periodic needs max_cycles or stop_event to terminate")
        if interval_seconds is not None and interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")

        interval = (
            interval_seconds if interval_seconds is not None
            else self.config.reconcile_interval_seconds
        )
        stop_event = stop_event or threading.Event()
        results: List[Optional[RunLog]] = []

        cycle = 0
        while not stop_event.is_set():
            run_log = self.converge(desired)
            results.append(run_log)
            if on_cycle:
                on_cycle(cycle, run_log)

            cycle += 1
            if max_cycles is not None and cycle >= max_cycles:
                break
            stop_event.wait(interval)

        return results
