"""Apply and destroy executors.

This module drives an ExecutionPlan against a provider client:
- ApplyExecutor: dependency-first create-or-update, halting on the first failure
- DestroyExecutor: reverse-order deletion, continuing past independent failures
- PlanProgress: thread-safe per-resource state summary read by the CLI

Execution is sequential by default. With max_workers > 1, resources in the
same dependency level run on a thread pool; a level starts only after the
previous one finished. Cancellation stops new requests but lets in-flight
requests finish and be recorded.

Public API:
    ApplyExecutor, DestroyExecutor
    ApplyReport, DestroyReport
    PlanProgress
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from azdeploy.graph import ResourceGraph
from azdeploy.models import (
    PartialApplyError,
    PartialDestroyError,
    RemoteError,
    ResourceId,
    ResourceState,
    check_transition,
)
from azdeploy.planner import ExecutionPlan, plan
from azdeploy.provider import ProviderClient
from azdeploy.state_store import StateStore

logger = logging.getLogger(__name__)

StateCallback = Callable[[ResourceId, ResourceState], None]


class PlanProgress:
    """Per-resource state records plus the error summary for one run.

    Every state change goes through a single lock, so readers never observe
    a resource between two states.
    """

    def __init__(
        self,
        order: list[ResourceId],
        initial: ResourceState,
        on_change: StateCallback | None = None,
    ):
        self._lock = threading.Lock()
        self._order = list(order)
        self._states = {rid: initial for rid in order}
        self._errors: dict[ResourceId, str] = {}
        self._on_change = on_change

    def transition(self, resource_id: ResourceId, target: ResourceState, error: str | None = None) -> None:
        with self._lock:
            check_transition(self._states[resource_id], target)
            self._states[resource_id] = target
            if error is not None:
                self._errors[resource_id] = error
        logger.debug(f"{resource_id} -> {target.value}")
        if self._on_change:
            self._on_change(resource_id, target)

    def state(self, resource_id: ResourceId) -> ResourceState:
        with self._lock:
            return self._states[resource_id]

    def snapshot(self) -> dict[ResourceId, ResourceState]:
        """Copy of all states in plan order."""
        with self._lock:
            return {rid: self._states[rid] for rid in self._order}

    def errors(self) -> dict[ResourceId, str]:
        with self._lock:
            return dict(self._errors)

    def counts(self) -> dict[ResourceState, int]:
        with self._lock:
            counts: dict[ResourceState, int] = {}
            for state in self._states.values():
                counts[state] = counts.get(state, 0) + 1
            return counts


@dataclass
class ApplyReport:
    """Outcome of an apply run."""

    order: list[ResourceId]
    states: dict[ResourceId, ResourceState]
    errors: dict[ResourceId, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def succeeded(self) -> list[ResourceId]:
        return [rid for rid in self.order if self.states[rid] == ResourceState.CREATED]

    @property
    def failed(self) -> dict[ResourceId, str]:
        return {
            rid: self.errors.get(rid, "unknown error")
            for rid in self.order
            if self.states[rid] == ResourceState.FAILED
        }

    @property
    def not_attempted(self) -> list[ResourceId]:
        return [rid for rid in self.order if self.states[rid] == ResourceState.NOT_CREATED]

    @property
    def all_succeeded(self) -> bool:
        return len(self.succeeded) == len(self.order)


@dataclass
class DestroyReport:
    """Outcome of a destroy run."""

    order: list[ResourceId]
    states: dict[ResourceId, ResourceState]
    errors: dict[ResourceId, str] = field(default_factory=dict)
    blocked: list[ResourceId] = field(default_factory=list)
    already_absent: list[ResourceId] = field(default_factory=list)
    cancelled: bool = False

    @property
    def deleted(self) -> list[ResourceId]:
        return [rid for rid in self.order if self.states[rid] == ResourceState.DELETED]

    @property
    def failed(self) -> dict[ResourceId, str]:
        return {
            rid: self.errors.get(rid, "unknown error")
            for rid in self.order
            if self.states[rid] == ResourceState.FAILED
        }

    @property
    def not_attempted(self) -> list[ResourceId]:
        blocked = set(self.blocked)
        return [
            rid
            for rid in self.order
            if self.states[rid] == ResourceState.CREATED and rid not in blocked
        ]

    @property
    def all_succeeded(self) -> bool:
        return len(self.deleted) == len(self.order)


class _Executor:
    """Shared setup for apply and destroy."""

    def __init__(
        self,
        provider: ProviderClient,
        max_workers: int = 1,
        cancel_event: threading.Event | None = None,
        state_store: StateStore | None = None,
        deployment: str | None = None,
        on_state_change: StateCallback | None = None,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if state_store is not None and not deployment:
            raise ValueError("deployment name is required when a state store is used")

        self.provider = provider
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.state_store = state_store
        self.deployment = deployment
        self.on_state_change = on_state_change
        self.progress: PlanProgress | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop issuing new requests. In-flight requests still complete."""
        logger.warning("Cancellation requested; waiting for in-flight operations")
        self.cancel_event.set()

    @staticmethod
    def _levels(execution_plan: ExecutionPlan) -> list[list[ResourceId]]:
        if execution_plan.levels:
            return [list(level) for level in execution_plan.levels]
        return [[rid] for rid in execution_plan.order]

    def _run_level(self, level: list[ResourceId], task: Callable[[ResourceId], bool]) -> list[bool]:
        """Run one dependency level on the thread pool."""
        results: list[bool] = []
        num_workers = min(self.max_workers, len(level))
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            futures = {}
            for rid in level:
                if self.cancelled:
                    break
                futures[pool.submit(task, rid)] = rid
            for future in as_completed(futures):
                results.append(future.result())
        return results


class ApplyExecutor(_Executor):
    """Create or update every declared resource in dependency order."""

    def apply(self, graph: ResourceGraph, execution_plan: ExecutionPlan | None = None) -> ApplyReport:
        """Apply a resource graph.

        Args:
            graph: Validated resource graph
            execution_plan: Precomputed plan (computed from the graph if omitted)

        Returns:
            ApplyReport with every resource created

        Raises:
            CycleError: If the graph contains a cycle (no remote calls are made)
            PartialApplyError: If any resource failed or the run was cancelled
        """
        execution_plan = execution_plan or plan(graph)
        progress = PlanProgress(list(execution_plan.order), ResourceState.NOT_CREATED, self.on_state_change)
        self.progress = progress

        logger.info(f"Applying {len(execution_plan)} resources")

        def apply_one(rid: ResourceId) -> bool:
            resource = graph.get(rid)
            progress.transition(rid, ResourceState.CREATING)
            try:
                self.provider.create_or_update(resource)
            except RemoteError as e:
                logger.error(f"Failed to create {rid}: {e}")
                progress.transition(rid, ResourceState.FAILED, error=str(e))
                return False
            except Exception as e:
                error = RemoteError(f"Unexpected error: {e}", resource_id=rid)
                logger.error(f"Failed to create {rid}: {error}")
                progress.transition(rid, ResourceState.FAILED, error=str(error))
                return False
            progress.transition(rid, ResourceState.CREATED)
            logger.info(f"Created {rid}")
            return True

        if self.max_workers == 1:
            for rid in execution_plan.order:
                if self.cancelled or not apply_one(rid):
                    break
        else:
            for level in self._levels(execution_plan):
                if self.cancelled:
                    break
                if not all(self._run_level(level, apply_one)):
                    break

        report = ApplyReport(
            order=list(execution_plan.order),
            states=progress.snapshot(),
            errors=progress.errors(),
            cancelled=self.cancelled,
        )

        if not report.all_succeeded:
            raise PartialApplyError(report)

        if self.state_store is not None:
            self.state_store.record_apply(self.deployment, execution_plan)  # type: ignore[arg-type]

        logger.info(f"Apply complete: {len(report.succeeded)} resources created")
        return report


class DestroyExecutor(_Executor):
    """Delete declared resources in reverse dependency order."""

    def destroy_order(self, graph: ResourceGraph) -> ExecutionPlan:
        """Reverse of the last successful apply, or of a fresh plan."""
        fresh = plan(graph).reversed()
        if self.state_store is None:
            return fresh

        record = self.state_store.load(self.deployment)  # type: ignore[arg-type]
        if record is None:
            logger.info("No apply record found; destroying in reverse planned order")
            return fresh

        if set(record.order) != set(graph.ids):
            logger.info("Declaration changed since last apply; destroying in reverse planned order")
            return fresh

        return ExecutionPlan(order=tuple(reversed(record.order)), levels=fresh.levels)

    def destroy(self, graph: ResourceGraph) -> DestroyReport:
        """Destroy a resource graph.

        Returns:
            DestroyReport with every resource deleted

        Raises:
            CycleError: If the graph contains a cycle
            PartialDestroyError: If any deletion failed, was blocked or was not attempted
        """
        execution_plan = self.destroy_order(graph)
        progress = PlanProgress(list(execution_plan.order), ResourceState.CREATED, self.on_state_change)
        self.progress = progress

        blocked: set[ResourceId] = set()
        already_absent: list[ResourceId] = []
        lock = threading.Lock()

        logger.info(f"Destroying {len(execution_plan)} resources")

        def destroy_one(rid: ResourceId) -> bool:
            resource = graph.get(rid)
            progress.transition(rid, ResourceState.DELETING)
            error: RemoteError | None = None
            try:
                existed = self.provider.delete(resource)
            except RemoteError as e:
                error = e
            except Exception as e:
                error = RemoteError(f"Unexpected error: {e}", resource_id=rid)

            if error is not None:
                logger.error(f"Failed to delete {rid}: {error}")
                progress.transition(rid, ResourceState.FAILED, error=str(error))
                # Whatever this resource depends on is still referenced
                with lock:
                    blocked.update(graph.transitive_dependencies(rid))
                return False

            progress.transition(rid, ResourceState.DELETED)
            if not existed:
                with lock:
                    already_absent.append(rid)
                logger.info(f"{rid} already absent")
            else:
                logger.info(f"Deleted {rid}")
            return True

        def is_blocked(rid: ResourceId) -> bool:
            with lock:
                if rid in blocked:
                    logger.warning(f"Skipping {rid}: a dependent resource failed to delete")
                    return True
            return False

        if self.max_workers == 1:
            for rid in execution_plan.order:
                if self.cancelled:
                    break
                if not is_blocked(rid):
                    destroy_one(rid)
        else:
            for level in self._levels(execution_plan):
                if self.cancelled:
                    break
                runnable = [rid for rid in level if not is_blocked(rid)]
                if runnable:
                    self._run_level(runnable, destroy_one)

        states = progress.snapshot()
        report = DestroyReport(
            order=list(execution_plan.order),
            states=states,
            errors=progress.errors(),
            blocked=[rid for rid in execution_plan.order if rid in blocked and states[rid] == ResourceState.CREATED],
            already_absent=already_absent,
            cancelled=self.cancelled,
        )

        if not report.all_succeeded:
            raise PartialDestroyError(report)

        if self.state_store is not None:
            self.state_store.clear(self.deployment)  # type: ignore[arg-type]

        logger.info(f"Destroy complete: {len(report.deleted)} resources deleted")
        return report
