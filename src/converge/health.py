"""Timeout-bounded health polling.

Polling is a coroutine, so waiting on many members costs no threads. Each
poll returns exactly one terminal result; nothing here loops forever.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
    DEFAULT_HEALTH_CHECK_TIMEOUT_SECONDS,
    DEFAULT_HEALTHY_THRESHOLD,
    DEFAULT_UNHEALTHY_THRESHOLD,
)

logger = logging.getLogger(__name__)


class HealthResult(str, Enum):
    """Terminal result of one health poll."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class HealthCheckPolicy:
    """How long and how often to poll, and how many results count."""

    interval_seconds: float = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
    timeout_seconds: float = DEFAULT_HEALTH_CHECK_TIMEOUT_SECONDS
    healthy_threshold: int = DEFAULT_HEALTHY_THRESHOLD
    unhealthy_threshold: int = DEFAULT_UNHEALTHY_THRESHOLD

    @classmethod
    def from_attributes(cls, health_check: dict[str, Any] | None) -> HealthCheckPolicy:
        """Build from a target group's ``health_check`` attribute."""
        if not health_check:
            return cls()
        return cls(
            interval_seconds=float(
                health_check.get("interval_seconds", DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS)
            ),
            timeout_seconds=float(
                health_check.get("timeout_seconds", DEFAULT_HEALTH_CHECK_TIMEOUT_SECONDS)
            ),
            healthy_threshold=int(
                health_check.get("healthy_threshold", DEFAULT_HEALTHY_THRESHOLD)
            ),
            unhealthy_threshold=int(
                health_check.get("unhealthy_threshold", DEFAULT_UNHEALTHY_THRESHOLD)
            ),
        )


async def poll_until_healthy(
    check: Callable[[], Awaitable[bool]],
    policy: HealthCheckPolicy,
    member_id: str = "",
) -> HealthResult:
    """Poll a member until it settles or the timeout expires.

    A member is HEALTHY after ``healthy_threshold`` consecutive passing
    checks. A member that passed at least once and then fails
    ``unhealthy_threshold`` consecutive checks is UNHEALTHY. A member that
    never settles before ``timeout_seconds`` is TIMED_OUT. Failures before
    the first pass count as boot time, bounded only by the timeout.

    Cancelling the calling task cancels the poll.
    """

    async def poll() -> HealthResult:
        passes = 0
        failures = 0
        seen_healthy = False
        while True:
            if await check():
                passes += 1
                failures = 0
                seen_healthy = True
                if passes >= policy.healthy_threshold:
                    return HealthResult.HEALTHY
            else:
                passes = 0
                if seen_healthy:
                    failures += 1
                    if failures >= policy.unhealthy_threshold:
                        return HealthResult.UNHEALTHY
            await asyncio.sleep(policy.interval_seconds)

    try:
        result = await asyncio.wait_for(poll(), timeout=policy.timeout_seconds)
    except TimeoutError:
        result = HealthResult.TIMED_OUT

    log = logger.info if result == HealthResult.HEALTHY else logger.warning
    log(
        "Health poll finished",
        extra={
            "member_id": member_id,
            "result": result.value,
            "timeout_seconds": policy.timeout_seconds,
        },
    )
    return result
