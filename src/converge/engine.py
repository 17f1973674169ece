"""Plan execution.

The engine walks a Plan in three phases and reports one outcome per
resource:

1. teardown: destroys, and the destroy half of destroy-first replacements,
   dependents before dependencies
2. build: creates, updates and replacements, dependencies before dependents
3. cleanup: deletion of instances displaced by create-before-destroy
   replacements, dependents before dependencies

Within a phase, independent resources run concurrently (bounded by a
semaphore). A resource waits for every resource it is ordered behind to
finish, successfully or not. This is a barrier, not a lock.

FAILURE HANDLING:
- A failed provider call marks the resource FAILED and everything ordered
  behind it BLOCKED; independent branches keep going
- Successful calls are written to the state store immediately, so a rerun
  after a partial failure only retries what did not happen
- Nothing already applied is rolled back

Provider SDKs are synchronous. Calls are offloaded to the default executor
and bounded by ``provider_timeout_seconds``; a timeout is a terminal
failure for that resource.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import DEFAULT_MAX_PARALLELISM, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from .differ import Action, PlannedAction
from .fleet import FleetRegistry, clamp
from .health import HealthCheckPolicy
from .models import ID_ATTRIBUTE, ResourceKind, substitute_references
from .plan import Plan
from .providers.base import NotFound, ProviderAdapter, ProviderError
from .rollout import RollingReplacementCoordinator, RolloutFailed
from .state import ObservedStateRecord, RecordStatus, StateError, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OutcomeStatus(str, Enum):
    """Per-resource result of an engine run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    UNCHANGED = "unchanged"


class UnresolvedReference(Exception):
    """A reference could not be resolved from observed state."""

    pass


@dataclass
class ResourceOutcome:
    """What happened to one resource."""

    name: str
    kind: str
    action: Action
    status: OutcomeStatus
    physical_id: str | None = None
    error: str | None = None
    blocked_by: str | None = None
    duration_seconds: float = 0.0

    def describe(self) -> str:
        text = f"{self.status.value:<9} {self.action.value:<8} {self.kind}.{self.name}"
        if self.physical_id:
            text += f" ({self.physical_id})"
        if self.blocked_by:
            text += f": blocked by {self.blocked_by}"
        elif self.error:
            text += f": {self.error}"
        return text


@dataclass
class ApplyReport:
    """Outcomes of one engine run."""

    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def with_status(self, status: OutcomeStatus) -> list[ResourceOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    @property
    def success(self) -> bool:
        """True if nothing failed or was blocked."""
        return not any(
            o.status in (OutcomeStatus.FAILED, OutcomeStatus.BLOCKED)
            for o in self.outcomes.values()
        )

    @property
    def partial(self) -> bool:
        return not self.success

    def summary(self) -> dict[str, int]:
        return {status.value: len(self.with_status(status)) for status in OutcomeStatus}


class ExecutionEngine:
    """Apply plans against a provider adapter, recording into a state store."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        state: StateStore,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        fleets: FleetRegistry | None = None,
        coordinator: RollingReplacementCoordinator | None = None,
    ) -> None:
        self._adapter = adapter
        self._state = state
        self._max_parallelism = max_parallelism
        self._provider_timeout = provider_timeout_seconds
        self._fleets = fleets or FleetRegistry()
        self._coordinator = coordinator

    @property
    def fleets(self) -> FleetRegistry:
        return self._fleets

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def apply(self, plan: Plan) -> ApplyReport:
        """Execute a plan.

        Returns:
            ApplyReport with one outcome per resource in the plan.
        """
        report = ApplyReport()
        run = _Run(plan=plan, report=report, semaphore=asyncio.Semaphore(self._max_parallelism))

        for action in plan.actions:
            if action.action == Action.NO_OP:
                report.outcomes[action.name] = ResourceOutcome(
                    name=action.name,
                    kind=action.kind,
                    action=action.action,
                    status=OutcomeStatus.UNCHANGED,
                    physical_id=action.physical_id,
                )

        # A no-op in the middle of a chain must not break ordering or blocking
        upstream = {name: plan.graph.transitive_dependencies(name) for name in plan.graph.nodes}
        downstream = {name: plan.graph.transitive_dependents(name) for name in plan.graph.nodes}

        def dependencies_of(name: str) -> set[str]:
            return upstream.get(name, set())

        def dependents_of(name: str) -> set[str]:
            return downstream.get(name, set())

        logger.info("Apply started", extra={"summary": plan.summary()})

        await self._run_phase(
            run,
            "teardown",
            plan.teardown_order(),
            waits_on=dependents_of,
            blockers=dependents_of,
            handler=self._teardown,
        )
        await self._run_phase(
            run,
            "build",
            plan.build_order(),
            waits_on=dependencies_of,
            blockers=lambda name: dependencies_of(name) | {name},
            handler=self._build,
        )
        await self._run_phase(
            run,
            "cleanup",
            plan.cleanup_order(),
            waits_on=dependents_of,
            blockers=lambda name: dependents_of(name) | {name},
            handler=self._cleanup,
        )

        report.end_time = datetime.now(UTC)
        log = logger.info if report.success else logger.error
        log(
            "Apply finished",
            extra={
                "success": report.success,
                "outcomes": report.summary(),
                "duration_seconds": report.duration_seconds,
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Phase scheduling
    # -------------------------------------------------------------------------

    async def _run_phase(
        self,
        run: _Run,
        phase: str,
        actions: list[PlannedAction],
        waits_on: Callable[[str], set[str]],
        blockers: Callable[[str], set[str]],
        handler: Callable[[PlannedAction], Awaitable[str | None]],
    ) -> None:
        if not actions:
            return
        names = {action.name for action in actions}
        finished = {action.name: asyncio.Event() for action in actions}

        async def run_one(action: PlannedAction) -> None:
            try:
                for other in sorted(waits_on(action.name) & names):
                    await finished[other].wait()

                blocker = next(
                    (b for b in sorted(blockers(action.name)) if b in run.unsuccessful), None
                )
                if blocker is not None:
                    if blocker == action.name:
                        blocker = "its own earlier phase"
                    run.block(action, blocker)
                    return

                started = time.monotonic()
                async with run.semaphore:
                    try:
                        physical_id = await handler(action)
                    except (
                        ProviderError,
                        RolloutFailed,
                        StateError,
                        UnresolvedReference,
                        TimeoutError,
                    ) as e:
                        run.fail(action, phase, e, time.monotonic() - started)
                        return
                    except Exception as e:
                        logger.exception(
                            "Unexpected error applying resource",
                            extra={"resource": action.name, "phase": phase},
                        )
                        run.fail(action, phase, e, time.monotonic() - started)
                        return
                run.succeed(action, phase, physical_id, time.monotonic() - started)
            finally:
                finished[action.name].set()

        await asyncio.gather(*(run_one(action) for action in actions))

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking provider call with the provider timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args)),
                timeout=self._provider_timeout,
            )
        except TimeoutError:
            logger.error(
                "Provider call timed out",
                extra={
                    "operation": getattr(func, "__name__", str(func)),
                    "timeout_seconds": self._provider_timeout,
                },
            )
            raise

    async def _delete(self, kind: str, physical_id: str, force: bool) -> None:
        try:
            await self._call(self._adapter.delete, kind, physical_id, force)
        except NotFound:
            logger.info(
                "Resource already gone",
                extra={"kind": kind, "physical_id": physical_id},
            )

    def _resolve(self, attributes: dict[str, Any]) -> dict[str, Any]:
        """Substitute references with values from observed state."""

        def lookup(name: str, attribute: str) -> Any:
            record = self._state.get(name)
            if record is None:
                raise UnresolvedReference(f"${{{name}.{attribute}}}: '{name}' is not materialized")
            if attribute == ID_ATTRIBUTE:
                return record.physical_id
            if attribute in record.outputs:
                return record.outputs[attribute]
            if attribute in record.attributes:
                return record.attributes[attribute]
            raise UnresolvedReference(f"${{{name}.{attribute}}}: '{name}' has no '{attribute}'")

        return substitute_references(attributes, lookup)

    # -------------------------------------------------------------------------
    # Phase handlers
    # -------------------------------------------------------------------------

    async def _teardown(self, action: PlannedAction) -> str | None:
        record = self._state.get(action.name)
        if record is None:
            return None
        force = action.force_destroy or record.force_destroy
        for displaced in record.deposed:
            await self._delete(record.kind, displaced, force)
        await self._delete(record.kind, record.physical_id, force)
        self._state.remove(action.name)
        return record.physical_id

    async def _build(self, action: PlannedAction) -> str | None:
        if action.resource is None:
            raise ValueError(f"{action.name}: build without a desired resource")
        if action.resource.kind == ResourceKind.FLEET:
            async with self._fleets.lock(action.name):
                return await self._build_resource(action)
        return await self._build_resource(action)

    async def _build_resource(self, action: PlannedAction) -> str:
        resource = action.resource
        if resource is None:
            raise ValueError(f"{action.name}: build without a desired resource")
        kind = resource.kind.value
        previous = self._state.get(action.name)
        resolved = self._resolve(resource.attributes)

        if action.action == Action.UPDATE and previous is not None:
            if resource.kind == ResourceKind.FLEET:
                self._preserve_scaled_capacity(resolved, resource.attributes, previous)
            outputs = await self._call(
                self._adapter.update, kind, previous.physical_id, resolved
            )
            physical_id = previous.physical_id
            deposed = list(previous.deposed)
            if resource.kind == ResourceKind.FLEET:
                await self._maybe_roll(action.name, physical_id, previous, resolved)
        else:
            physical_id, outputs = await self._call(
                self._adapter.create, kind, action.name, resolved
            )
            deposed = list(previous.deposed) if previous is not None else []
            if previous is not None:
                # Create-before-destroy: the old instance is deleted in cleanup
                deposed.append(previous.physical_id)

        self._state.put(
            ObservedStateRecord(
                name=action.name,
                kind=kind,
                physical_id=physical_id,
                attributes=resource.attributes,
                outputs=outputs,
                status=outputs.get("status", RecordStatus.AVAILABLE),
                dependencies=sorted(resource.dependencies),
                force_destroy=resource.lifecycle.force_destroy,
                deposed=deposed,
            )
        )
        return physical_id

    async def _cleanup(self, action: PlannedAction) -> str | None:
        record = self._state.get(action.name)
        if record is None or not record.deposed:
            return record.physical_id if record else None
        for displaced in list(record.deposed):
            await self._delete(record.kind, displaced, record.force_destroy)
            record.deposed.remove(displaced)
            self._state.put(record)
            logger.info(
                "Deleted displaced instance",
                extra={"resource": action.name, "physical_id": displaced},
            )
        return record.physical_id

    # -------------------------------------------------------------------------
    # Fleets
    # -------------------------------------------------------------------------

    @staticmethod
    def _preserve_scaled_capacity(
        resolved: dict[str, Any], declared: dict[str, Any], previous: ObservedStateRecord
    ) -> None:
        """Keep autoscaler-set capacity when the declared capacity is unchanged."""
        current = previous.outputs.get("desired_capacity")
        if current is None or previous.attributes.get("desired_capacity") != declared.get(
            "desired_capacity"
        ):
            return
        resolved["desired_capacity"] = clamp(
            int(current), int(resolved["min_size"]), int(resolved["max_size"])
        )

    def _health_policy(self, target_group_ids: list[str]) -> HealthCheckPolicy:
        for record in self._state.snapshot().values():
            if (
                record.kind == ResourceKind.TARGET_GROUP.value
                and record.physical_id in target_group_ids
            ):
                return HealthCheckPolicy.from_attributes(record.attributes.get("health_check"))
        return HealthCheckPolicy()

    async def _maybe_roll(
        self,
        name: str,
        fleet_id: str,
        previous: ObservedStateRecord,
        resolved: dict[str, Any],
    ) -> None:
        """Start a rollout if the launch specification changed under members."""
        new_spec = resolved["launch_spec_id"]
        old_spec = previous.outputs.get("launch_spec_id")
        if old_spec == new_spec:
            return
        if self._coordinator is None:
            logger.warning(
                "Launch specification changed but no rollout coordinator is configured",
                extra={"resource": name},
            )
            return
        await self._coordinator.run(
            fleet=name,
            fleet_id=fleet_id,
            launch_spec_id=new_spec,
            desired_capacity=int(resolved["desired_capacity"]),
            min_healthy_percentage=int(resolved.get("min_healthy_percentage", 50)),
            target_group_ids=list(resolved.get("target_group_ids", [])),
            health_policy=self._health_policy(list(resolved.get("target_group_ids", []))),
        )


@dataclass
class _Run:
    """Mutable bookkeeping for one apply."""

    plan: Plan
    report: ApplyReport
    semaphore: asyncio.Semaphore
    # Names that failed or were blocked in any phase
    unsuccessful: set[str] = field(default_factory=set)

    def _record(self, outcome: ResourceOutcome) -> None:
        existing = self.report.outcomes.get(outcome.name)
        if existing is not None and existing.status in (
            OutcomeStatus.FAILED,
            OutcomeStatus.BLOCKED,
        ):
            return
        self.report.outcomes[outcome.name] = outcome

    def succeed(
        self, action: PlannedAction, phase: str, physical_id: str | None, duration: float
    ) -> None:
        logger.info(
            "Resource applied",
            extra={
                "resource": action.name,
                "kind": action.kind,
                "action": action.action.value,
                "phase": phase,
                "physical_id": physical_id,
                "duration_seconds": duration,
            },
        )
        self._record(
            ResourceOutcome(
                name=action.name,
                kind=action.kind,
                action=action.action,
                status=OutcomeStatus.SUCCEEDED,
                physical_id=physical_id,
                duration_seconds=duration,
            )
        )

    def fail(self, action: PlannedAction, phase: str, error: BaseException, duration: float) -> None:
        message = f"{action.action.value} of {action.kind} '{action.name}' failed: {error}"
        logger.error(
            "Resource failed",
            extra={
                "resource": action.name,
                "kind": action.kind,
                "action": action.action.value,
                "phase": phase,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        self.unsuccessful.add(action.name)
        self._record(
            ResourceOutcome(
                name=action.name,
                kind=action.kind,
                action=action.action,
                status=OutcomeStatus.FAILED,
                physical_id=action.physical_id,
                error=message,
                duration_seconds=duration,
            )
        )

    def block(self, action: PlannedAction, blocker: str) -> None:
        logger.warning(
            "Resource blocked",
            extra={
                "resource": action.name,
                "kind": action.kind,
                "action": action.action.value,
                "blocked_by": blocker,
            },
        )
        self.unsuccessful.add(action.name)
        self._record(
            ResourceOutcome(
                name=action.name,
                kind=action.kind,
                action=action.action,
                status=OutcomeStatus.BLOCKED,
                physical_id=action.physical_id,
                blocked_by=blocker,
            )
        )
