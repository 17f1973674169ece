"""Rolling replacement of fleet members.

A rollout starts when a fleet's launch specification changes while the
fleet has members. Members are replaced in batches small enough that the
fleet never drops below its minimum healthy percentage:

    (current_healthy - batch_size) / desired_capacity >= min_healthy_percentage / 100

Each batch is drained (deregistered from the fleet's target groups, then
given the drain delay), terminated, and replaced from the new
specification. The next batch starts only once every replacement reports
healthy. A replacement that never turns healthy is relaunched up to a
bounded number of attempts; after that the rollout fails and stops. There
is no rollback.

STATE MACHINE:
    IDLE -> ROLLING -> COMPLETED | FAILED | CANCELLED
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .config import DEFAULT_DRAIN_SECONDS, DEFAULT_MAX_LAUNCH_ATTEMPTS
from .health import HealthCheckPolicy, HealthResult, poll_until_healthy
from .providers.base import FleetOperations, HealthSignal, Member, NotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RolloutState(str, Enum):
    """Rollout lifecycle."""

    IDLE = "idle"
    ROLLING = "rolling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Rollout:
    """Progress of one rolling replacement."""

    fleet: str
    fleet_id: str
    launch_spec_id: str
    batch_size: int = 0
    state: RolloutState = RolloutState.IDLE
    replaced: list[str] = field(default_factory=list)
    draining: list[str] = field(default_factory=list)
    launched: list[str] = field(default_factory=list)
    batches: int = 0
    error: str | None = None
    cancel_requested: bool = False


class RolloutFailed(Exception):
    """A replacement stayed unhealthy after every launch attempt."""

    def __init__(self, rollout: Rollout, reason: str) -> None:
        self.rollout = rollout
        self.reason = reason
        super().__init__(f"Rollout of fleet '{rollout.fleet}' failed: {reason}")


def compute_batch_size(current_healthy: int, desired_capacity: int, min_healthy_percentage: int) -> int:
    """Largest batch keeping the healthy fraction at or above the minimum.

    Always at least 1, so a 100% minimum still replaces one member at a time.
    """
    if desired_capacity <= 0:
        return 1
    # Integer ceiling of desired * pct / 100
    required_healthy = -(-desired_capacity * min_healthy_percentage // 100)
    return max(1, current_healthy - required_healthy)


class RollingReplacementCoordinator:
    """Drive rollouts against fleet member operations and a health signal."""

    def __init__(
        self,
        fleet_ops: FleetOperations,
        health: HealthSignal,
        drain_seconds: float = DEFAULT_DRAIN_SECONDS,
        max_launch_attempts: int = DEFAULT_MAX_LAUNCH_ATTEMPTS,
        provider_timeout_seconds: float = 600,
    ) -> None:
        if max_launch_attempts < 1:
            raise ValueError("max_launch_attempts must be at least 1")
        self._fleet_ops = fleet_ops
        self._health = health
        self._drain_seconds = drain_seconds
        self._max_launch_attempts = max_launch_attempts
        self._provider_timeout = provider_timeout_seconds
        self._active: dict[str, Rollout] = {}

    @property
    def active(self) -> dict[str, Rollout]:
        """Rollouts in progress, by fleet name."""
        return dict(self._active)

    def cancel(self, fleet: str | None = None) -> None:
        """Stop the rollout of ``fleet``, or every active rollout, before its next batch.

        Rollouts started afterwards are not affected.
        """
        if fleet is None:
            targets = list(self._active.values())
        else:
            targets = [self._active[fleet]] if fleet in self._active else []
        logger.info(
            "Rollout cancellation requested",
            extra={"fleets": sorted(rollout.fleet for rollout in targets)},
        )
        for rollout in targets:
            rollout.cancel_requested = True

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args)),
            timeout=self._provider_timeout,
        )

    async def _healthy_count(self, members: list[Member]) -> int:
        results = await asyncio.gather(
            *(self._call(self._health.is_healthy, m.member_id) for m in members)
        )
        return sum(1 for healthy in results if healthy)

    async def run(
        self,
        fleet: str,
        fleet_id: str,
        launch_spec_id: str,
        desired_capacity: int,
        min_healthy_percentage: int,
        target_group_ids: list[str],
        health_policy: HealthCheckPolicy | None = None,
    ) -> Rollout:
        """Replace every member not launched from ``launch_spec_id``.

        Returns:
            The rollout, COMPLETED or CANCELLED.

        Raises:
            RolloutFailed: If a replacement stays unhealthy after every attempt.
        """
        policy = health_policy or HealthCheckPolicy()
        rollout = Rollout(fleet=fleet, fleet_id=fleet_id, launch_spec_id=launch_spec_id)
        self._active[fleet] = rollout
        rollout.state = RolloutState.ROLLING

        logger.info(
            "Rollout started",
            extra={
                "fleet": fleet,
                "launch_spec_id": launch_spec_id,
                "desired_capacity": desired_capacity,
                "min_healthy_percentage": min_healthy_percentage,
            },
        )

        try:
            while True:
                if rollout.cancel_requested:
                    rollout.state = RolloutState.CANCELLED
                    logger.warning(
                        "Rollout cancelled",
                        extra={"fleet": fleet, "replaced": len(rollout.replaced)},
                    )
                    return rollout

                members = await self._call(self._fleet_ops.list_members, fleet_id)
                outdated = [m for m in members if m.launch_spec_id != launch_spec_id]
                if not outdated:
                    rollout.state = RolloutState.COMPLETED
                    logger.info(
                        "Rollout completed",
                        extra={
                            "fleet": fleet,
                            "replaced": len(rollout.replaced),
                            "batches": rollout.batches,
                        },
                    )
                    return rollout

                healthy = await self._healthy_count(members)
                rollout.batch_size = min(
                    compute_batch_size(healthy, desired_capacity, min_healthy_percentage),
                    len(outdated),
                )
                batch = outdated[: rollout.batch_size]
                await self._replace_batch(rollout, batch, target_group_ids, policy)
                rollout.batches += 1
        except RolloutFailed:
            rollout.state = RolloutState.FAILED
            raise
        finally:
            self._active.pop(fleet, None)

    async def _replace_batch(
        self,
        rollout: Rollout,
        batch: list[Member],
        target_group_ids: list[str],
        policy: HealthCheckPolicy,
    ) -> None:
        rollout.draining = [m.member_id for m in batch]
        logger.info(
            "Draining batch",
            extra={"fleet": rollout.fleet, "members": rollout.draining},
        )
        for member in batch:
            for tg in target_group_ids:
                await self._call(self._fleet_ops.deregister_target, tg, member.member_id)
        if self._drain_seconds > 0:
            await asyncio.sleep(self._drain_seconds)
        for member in batch:
            try:
                await self._call(self._fleet_ops.terminate_member, member.member_id)
            except NotFound:
                logger.debug("Member already gone", extra={"member_id": member.member_id})
        rollout.draining = []

        results = await asyncio.gather(
            *(self._launch_healthy(rollout, target_group_ids, policy) for _ in batch),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        rollout.replaced.extend(m.member_id for m in batch)

    async def _launch_healthy(
        self,
        rollout: Rollout,
        target_group_ids: list[str],
        policy: HealthCheckPolicy,
    ) -> Member:
        last_result: HealthResult | None = None

        for attempt in range(1, self._max_launch_attempts + 1):
            member = await self._call(
                self._fleet_ops.launch_member, rollout.fleet_id, rollout.launch_spec_id
            )
            for tg in target_group_ids:
                await self._call(self._fleet_ops.register_target, tg, member.member_id)

            async def check(member_id: str = member.member_id) -> bool:
                return await self._call(self._health.is_healthy, member_id)

            last_result = await poll_until_healthy(check, policy, member.member_id)
            if last_result == HealthResult.HEALTHY:
                rollout.launched.append(member.member_id)
                return member

            logger.warning(
                "Replacement not healthy, terminating",
                extra={
                    "fleet": rollout.fleet,
                    "member_id": member.member_id,
                    "result": last_result.value,
                    "attempt": attempt,
                    "max_attempts": self._max_launch_attempts,
                },
            )
            for tg in target_group_ids:
                await self._call(self._fleet_ops.deregister_target, tg, member.member_id)
            await self._call(self._fleet_ops.terminate_member, member.member_id)

        assert last_result is not None, "Launch loop completed without a health result"
        reason = (
            f"replacement {last_result.value} after {self._max_launch_attempts} launch attempts"
        )
        rollout.error = reason
        raise RolloutFailed(rollout, reason)
