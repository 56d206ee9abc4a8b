"""Resource Planner.

Turns a DesiredState into an ordered list of operations. The order is a
topological sort over the declared ``depends_on`` edges (Kahn's algorithm).
Among resources whose prerequisites are all planned, the one with the lowest
kind rank (network < cluster < database < workload < monitoring) goes next;
ties are broken by declaration order.

Validation failures (cycles, unknown or self references) raise
ValidationError before any operation is produced.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from src.providers.base import ValidationError
from src.schemas.desired_state import DesiredState, ResourceDeclaration
from src.schemas.operation import Operation, OperationAction, make_operation_id


logger = logging.getLogger(__name__)


@dataclass
class PlannerConfig:
    """Planner configuration.

    Attributes:
        implicit_kind_edges: When True, every resource also depends on every
            declared resource of a strictly lower kind rank, so e.g. all
            workloads wait for all clusters even without explicit edges.
    """
    implicit_kind_edges: bool = False


def _dependency_map(
    resources: Sequence[ResourceDeclaration],
    implicit_kind_edges: bool
) -> Dict[str, List[str]]:
    names = {r.name for r in resources}
    deps: Dict[str, List[str]] = {}

    for resource in resources:
        resource_deps: List[str] = []
        for dep in resource.depends_on:
            if dep == resource.name:
                raise ValidationError(
                    "SELF_DEPENDENCY",
                    f"Resource '{resource.name}' depends on itself",
                    {"resource": resource.name}
                )
            if dep not in names:
                raise ValidationError(
                    "MISSING_DEPENDENCY",
                    f"Resource '{resource.name}' depends on undeclared resource '{dep}'",
                    {"resource": resource.name, "missing": dep}
                )
            if dep not in resource_deps:
                resource_deps.append(dep)

        if implicit_kind_edges:
            for other in resources:
                if other.kind.rank < resource.kind.rank and other.name not in resource_deps:
                    resource_deps.append(other.name)

        deps[resource.name] = resource_deps

    return deps


def _find_cycle(deps: Dict[str, List[str]], remaining: Set[str]) -> List[str]:
    """Return one dependency cycle among the unplanned resources."""
    visiting: List[str] = []
    visited: Set[str] = set()

    def visit(name: str) -> Optional[List[str]]:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in visited:
            return None
        visiting.append(name)
        for dep in deps[name]:
            if dep in remaining:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.pop()
        visited.add(name)
        return None

    for name in sorted(remaining):
        cycle = visit(name)
        if cycle:
            return cycle
    return sorted(remaining)


def _effective_dependencies(
    deps: Dict[str, List[str]],
    selected: Set[str]
) -> Dict[str, List[str]]:
    """Project dependencies onto a subset of resources.

    A selected resource depends on every selected resource reachable through
    unselected intermediates; edges into unselected resources are dropped.
    """
    effective: Dict[str, List[str]] = {}
    for name in deps:
        found: List[str] = []
        stack = list(deps[name])
        seen: Set[str] = set()
        while stack:
            dep = stack.pop(0)
            if dep in seen:
                continue
            seen.add(dep)
            if dep in selected:
                found.append(dep)
            else:
                stack.extend(deps[dep])
        effective[name] = found
    return effective


def order_resources(
    resources: Sequence[ResourceDeclaration],
    implicit_kind_edges: bool = False
) -> Tuple[List[ResourceDeclaration], Dict[str, List[str]]]:
    """Topologically order resource declarations.

    Args:
        resources: Declarations in declaration order
        implicit_kind_edges: Add rank-based edges, see PlannerConfig

    Returns:
        Tuple of (ordered declarations, name -> dependency names)

    Raises:
        ValidationError: On duplicate names, missing or self references, cycles
    """
    seen: Set[str] = set()
    for resource in resources:
        if resource.name in seen:
            raise ValidationError(
                "DUPLICATE_RESOURCE",
                f"Resource '{resource.name}' is declared more than once",
                {"resource": resource.name}
            )
        seen.add(resource.name)

    deps = _dependency_map(resources, implicit_kind_edges)
    by_name = {r.name: r for r in resources}
    position = {r.name: index for index, r in enumerate(resources)}

    indegree = {name: len(d) for name, d in deps.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in deps}
    for name, resource_deps in deps.items():
        for dep in resource_deps:
            dependents[dep].append(name)

    ready: List[Tuple[int, int, str]] = []
    for name, count in indegree.items():
        if count == 0:
            heapq.heappush(ready, (by_name[name].kind.rank, position[name], name))

    ordered: List[ResourceDeclaration] = []
    while ready:
        _, _, name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for dependent in dependents[name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(
                    ready,
                    (by_name[dependent].kind.rank, position[dependent], dependent)
                )

    if len(ordered) != len(resources):
        remaining = set(deps) - {r.name for r in ordered}
        cycle = _find_cycle(deps, remaining)
        raise ValidationError(
            "DEPENDENCY_CYCLE",
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            {"cycle": cycle}
        )

    return ordered, deps


class ResourcePlanner:
    """Computes the ordered operation list for a desired state."""

    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()

    def plan(self, desired: DesiredState) -> List[Operation]:
        """Plan create operations for every declared resource.

        Creates are idempotent, so the plan can be applied to a partially
        provisioned environment. Use the StateReconciler for a minimal
        corrective set.

        Args:
            desired: Target state

        Returns:
            Operations in dependency order

        Raises:
            ValidationError: If the desired state has a cycle or a dangling reference
        """
        return self.plan_operations(
            desired.resources,
            {r.name: OperationAction.CREATE for r in desired.resources}
        )

    def plan_operations(
        self,
        resources: Sequence[ResourceDeclaration],
        actions: Dict[str, OperationAction]
    ) -> List[Operation]:
        """Order a subset of resources and emit one operation per entry in ``actions``.

        The full declaration list is ordered so dependency validation covers
        everything; operations only depend on other operations in the set.
        """
        ordered, deps = order_resources(resources, self.config.implicit_kind_edges)

        op_ids = {
            r.name: make_operation_id(actions[r.name], r.reference)
            for r in ordered if r.name in actions
        }
        effective = _effective_dependencies(deps, set(op_ids))

        operations: List[Operation] = []
        for resource in ordered:
            if resource.name not in actions:
                continue
            operations.append(Operation.build(
                action=actions[resource.name],
                resource=resource.reference,
                spec=resource.spec,
                depends_on=[op_ids[d] for d in effective[resource.name]],
                rank=len(operations)
            ))

        logger.debug(f"Planned {len(operations)} operations: {[o.operation_id for o in operations]}")
        return operations


def plan(desired: DesiredState, config: Optional[PlannerConfig] = None) -> List[Operation]:
    """Convenience wrapper around ResourcePlanner.plan()."""
    return ResourcePlanner(config).plan(desired)
