"""Dependency graph construction.

Builds a ResourceGraph from resource declarations and validates it before any
remote call is made:
- No duplicate (kind, name) identifiers
- Every dependency refers to a declared resource
- No resource depends on itself

Cycle detection is left to the planner, which walks the graph anyway.
"""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from azdeploy.models import DeclarationError, Resource, ResourceId

logger = logging.getLogger(__name__)


@dataclass
class ResourceGraph:
    """Declared resources in declaration order plus their dependency edges."""

    resources: dict[ResourceId, Resource] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.resources

    def get(self, resource_id: ResourceId) -> Resource:
        return self.resources[resource_id]

    @property
    def ids(self) -> list[ResourceId]:
        """Resource ids in declaration order."""
        return list(self.resources)

    def dependencies_of(self, resource_id: ResourceId) -> tuple[ResourceId, ...]:
        return self.resources[resource_id].depends_on

    def transitive_dependencies(self, resource_id: ResourceId) -> set[ResourceId]:
        """All resources reachable through depends_on edges."""
        seen: set[ResourceId] = set()
        stack = list(self.dependencies_of(resource_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies_of(current))
        return seen


def build_graph(resources: Iterable[Resource]) -> ResourceGraph:
    """Build and validate a resource graph.

    Args:
        resources: Resource declarations in declaration order

    Returns:
        ResourceGraph preserving declaration order

    Raises:
        DeclarationError: If identifiers are duplicated or dependencies do not resolve
    """
    graph = ResourceGraph()
    problems: list[str] = []

    declared = list(resources)
    for resource in declared:
        if not resource.name:
            problems.append(f"{resource.kind.value} declared without a name")
            continue
        if resource.id in graph.resources:
            problems.append(f"duplicate resource {resource.id}")
            continue
        graph.resources[resource.id] = resource

    for resource in graph:
        for dep in resource.depends_on:
            if dep == resource.id:
                problems.append(f"{resource.id} depends on itself")
            elif dep not in graph.resources:
                problems.append(f"{resource.id} depends on undeclared resource {dep}")

    if problems:
        raise DeclarationError("Invalid resource declarations", problems)

    logger.debug(f"Built resource graph with {len(graph)} resources")
    return graph
