"""Topological planning of resource graphs.

Turns a validated ResourceGraph into an ExecutionPlan where every resource
appears after all of the resources it depends on.

Ordering rules:
- Dependencies first
- Among unconstrained resources, declaration order wins (stable, reproducible)
- Cycles are reported with the resources that form them

Public API:
    plan: Compute an ExecutionPlan for a graph
    ExecutionPlan: Ordered resource ids plus dependency levels
"""

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from azdeploy.graph import ResourceGraph
from azdeploy.models import CycleError, ResourceId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Linear order of resources consistent with their dependencies.

    Attributes:
        order: Resource ids in execution order
        levels: Groups of resources with no path between them, in execution order
    """

    order: tuple[ResourceId, ...]
    levels: tuple[tuple[ResourceId, ...], ...] = field(default=())

    def __iter__(self) -> Iterator[ResourceId]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)

    def reversed(self) -> "ExecutionPlan":
        """Plan for teardown: exact reverse order, levels reversed."""
        return ExecutionPlan(
            order=tuple(reversed(self.order)),
            levels=tuple(tuple(reversed(level)) for level in reversed(self.levels)),
        )

    def as_strings(self) -> list[str]:
        return [str(rid) for rid in self.order]


def _find_cycle(graph: ResourceGraph) -> list[ResourceId] | None:
    """Depth-first search with an explicit recursion stack.

    Returns:
        Resources forming the first cycle found, or None
    """
    visited: set[ResourceId] = set()
    on_stack: set[ResourceId] = set()
    stack: list[ResourceId] = []

    def visit(node: ResourceId) -> list[ResourceId] | None:
        visited.add(node)
        on_stack.add(node)
        stack.append(node)
        for dep in graph.dependencies_of(node):
            if dep in on_stack:
                return stack[stack.index(dep):]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(node)
        return None

    for resource_id in graph.ids:
        if resource_id not in visited:
            cycle = visit(resource_id)
            if cycle:
                return cycle
    return None


def plan(graph: ResourceGraph) -> ExecutionPlan:
    """Compute the execution plan for a resource graph.

    Args:
        graph: Validated resource graph

    Returns:
        ExecutionPlan with dependencies first and declaration order as tie-break

    Raises:
        CycleError: If the graph contains a dependency cycle
    """
    cycle = _find_cycle(graph)
    if cycle:
        raise CycleError(cycle)

    index = {rid: i for i, rid in enumerate(graph.ids)}
    remaining = {rid: len(set(graph.dependencies_of(rid))) for rid in graph.ids}
    dependents: dict[ResourceId, list[ResourceId]] = {rid: [] for rid in graph.ids}
    for rid in graph.ids:
        for dep in set(graph.dependencies_of(rid)):
            dependents[dep].append(rid)

    # Ready queue keyed by declaration index
    ready = [(index[rid], rid) for rid, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    order: list[ResourceId] = []
    while ready:
        _, rid = heapq.heappop(ready)
        order.append(rid)
        for dependent in dependents[rid]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (index[dependent], dependent))

    depth: dict[ResourceId, int] = {}
    for rid in order:
        deps = graph.dependencies_of(rid)
        depth[rid] = 1 + max((depth[d] for d in deps), default=-1)

    levels: list[list[ResourceId]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for rid in order:
        levels[depth[rid]].append(rid)

    logger.debug(
        "Planned %d resources in %d levels: %s",
        len(order),
        len(levels),
        ", ".join(str(rid) for rid in order),
    )
    return ExecutionPlan(order=tuple(order), levels=tuple(tuple(level) for level in levels))
