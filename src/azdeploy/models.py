"""Core data model for declarative resource orchestration.

This module defines the types shared by the graph builder, planner and
executors:
- Resource declarations identified by (kind, name)
- Per-resource runtime state with guarded transitions
- VM power states parsed from Azure instance views
- The orchestrator exception hierarchy

Philosophy:
- Declarations are immutable once made
- State changes only through explicit transitions
- Errors carry enough context to report exactly what happened

Public API:
    Resource: Declared resource with desired properties and dependencies
    ResourceId: (kind, name) identifier
    ResourceKind: Supported resource kinds
    ResourceState: Runtime lifecycle state
    PowerState: VM power state
    OrchestratorError: Base exception
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from azdeploy.executor import ApplyReport, DestroyReport

logger = logging.getLogger(__name__)


# Exceptions
class OrchestratorError(Exception):
    """Base exception for orchestrator operations."""

    pass


class DeclarationError(OrchestratorError):
    """Raised when resource declarations are invalid."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class CycleError(DeclarationError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, participants: list[ResourceId]):
        self.participants = participants
        path = " -> ".join(str(rid) for rid in [*participants, participants[0]])
        super().__init__(f"Dependency cycle detected: {path}")


class RemoteError(OrchestratorError):
    """Raised when a provider call fails.

    Attributes:
        resource_id: Resource the call was made for (None for ad-hoc calls)
        transient: True for throttling, timeouts and server-side errors
    """

    def __init__(self, message: str, resource_id: ResourceId | None = None, transient: bool = False):
        self.resource_id = resource_id
        self.transient = transient
        prefix = f"{resource_id}: " if resource_id else ""
        super().__init__(f"{prefix}{message}")


class StateTransitionError(OrchestratorError):
    """Raised when a resource state change is not allowed."""

    pass


class PartialApplyError(OrchestratorError):
    """Raised when apply did not bring every resource to created."""

    def __init__(self, report: ApplyReport):
        self.report = report
        failed = ", ".join(str(rid) for rid in report.failed) or "none"
        super().__init__(
            f"Apply incomplete: {len(report.succeeded)} created, "
            f"failed: {failed}, not attempted: {len(report.not_attempted)}"
            + (" (cancelled)" if report.cancelled else "")
        )


class PartialDestroyError(OrchestratorError):
    """Raised when destroy could not delete every resource."""

    def __init__(self, report: DestroyReport):
        self.report = report
        failed = ", ".join(str(rid) for rid in report.failed) or "none"
        super().__init__(
            f"Destroy incomplete: {len(report.deleted)} deleted, "
            f"failed: {failed}, blocked: {len(report.blocked)}, "
            f"not attempted: {len(report.not_attempted)}"
            + (" (cancelled)" if report.cancelled else "")
        )


# Enums
class ResourceKind(str, Enum):
    """Kinds of resources the orchestrator can provision."""

    RESOURCE_GROUP = "resource_group"
    AVAILABILITY_SET = "availability_set"
    PUBLIC_IP = "public_ip"
    VIRTUAL_NETWORK = "virtual_network"
    NETWORK_INTERFACE = "network_interface"
    VIRTUAL_MACHINE = "virtual_machine"
    MANAGED_DISK = "managed_disk"


class ResourceState(str, Enum):
    """Runtime state of a resource during apply/destroy."""

    NOT_CREATED = "not_created"
    CREATING = "creating"
    CREATED = "created"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"


_ALLOWED_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.NOT_CREATED: frozenset({ResourceState.CREATING, ResourceState.DELETING}),
    ResourceState.CREATING: frozenset({ResourceState.CREATED, ResourceState.FAILED}),
    ResourceState.CREATED: frozenset({ResourceState.CREATING, ResourceState.DELETING}),
    ResourceState.FAILED: frozenset({ResourceState.CREATING, ResourceState.DELETING}),
    ResourceState.DELETING: frozenset({ResourceState.DELETED, ResourceState.FAILED}),
    ResourceState.DELETED: frozenset({ResourceState.CREATING}),
}


def check_transition(current: ResourceState, target: ResourceState) -> None:
    """Validate a state change.

    Raises:
        StateTransitionError: If the transition is not allowed
    """
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise StateTransitionError(f"Invalid transition {current.value} -> {target.value}")


class PowerState(str, Enum):
    """VM power state as reported by the instance view."""

    RUNNING = "running"
    STOPPED = "stopped"
    DEALLOCATED = "deallocated"
    STARTING = "starting"
    STOPPING = "stopping"
    DEALLOCATING = "deallocating"
    UNKNOWN = "unknown"

    @property
    def in_transition(self) -> bool:
        return self in (PowerState.STARTING, PowerState.STOPPING, PowerState.DEALLOCATING)

    @classmethod
    def from_status_code(cls, code: str | None) -> PowerState:
        """Parse an instance view code such as ``PowerState/running``."""
        if not code or not code.startswith("PowerState/"):
            return cls.UNKNOWN
        try:
            return cls(code.split("/", 1)[1].lower())
        except ValueError:
            logger.debug("Unrecognized power state code: %s", code)
            return cls.UNKNOWN


# Data Models
@dataclass(frozen=True, order=True)
class ResourceId:
    """Identifier of a declared resource."""

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """Parse ``kind/name``.

        Raises:
            DeclarationError: If the string is malformed or the kind is unknown
        """
        kind, sep, name = value.partition("/")
        if not sep or not kind or not name:
            raise DeclarationError(f"Invalid resource reference '{value}', expected kind/name")
        try:
            return cls(ResourceKind(kind), name)
        except ValueError:
            raise DeclarationError(f"Unknown resource kind '{kind}' in '{value}'") from None


@dataclass(frozen=True)
class Resource:
    """A declared resource.

    Attributes:
        kind: Resource kind
        name: Resource name (unique within its kind)
        properties: Desired configuration (location, SKU, address space, ...)
        depends_on: Resources that must exist before this one is created
    """

    kind: ResourceKind
    name: str
    properties: Mapping[str, Any] = field(default_factory=dict, hash=False)
    depends_on: tuple[ResourceId, ...] = ()

    def __post_init__(self) -> None:
        # Freeze the mapping so declarations cannot change mid-run
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def id(self) -> ResourceId:
        return ResourceId(self.kind, self.name)

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    def __str__(self) -> str:
        return str(self.id)
