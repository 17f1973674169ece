"""Tests for timeout-bounded health polling."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from converge.health import HealthCheckPolicy, HealthResult, poll_until_healthy

FAST = {"interval_seconds": 0.001, "timeout_seconds": 1.0}


def scripted(results: list[bool]) -> Callable[[], Awaitable[bool]]:
    """Check returning results in order, then repeating the last one."""
    remaining = list(results)

    async def check() -> bool:
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return check


class TestHealthCheckPolicy:
    def test_defaults(self) -> None:
        policy = HealthCheckPolicy()
        assert policy.healthy_threshold == 2
        assert policy.unhealthy_threshold == 3

    def test_from_attributes(self) -> None:
        policy = HealthCheckPolicy.from_attributes(
            {"path": "/health", "interval_seconds": 5, "healthy_threshold": 4}
        )
        assert policy.interval_seconds == 5.0
        assert policy.healthy_threshold == 4
        assert policy.timeout_seconds == HealthCheckPolicy().timeout_seconds

    def test_from_empty_attributes(self) -> None:
        assert HealthCheckPolicy.from_attributes(None) == HealthCheckPolicy()


class TestPollUntilHealthy:
    """Tests for poll_until_healthy()."""

    @pytest.mark.asyncio
    async def test_healthy_after_threshold(self) -> None:
        policy = HealthCheckPolicy(healthy_threshold=2, **FAST)
        result = await poll_until_healthy(scripted([False, False, True, True]), policy)
        assert result == HealthResult.HEALTHY

    @pytest.mark.asyncio
    async def test_pass_streak_must_be_consecutive(self) -> None:
        calls = 0

        async def check() -> bool:
            nonlocal calls
            calls += 1
            return calls in (1, 3, 4)

        policy = HealthCheckPolicy(healthy_threshold=2, **FAST)
        assert await poll_until_healthy(check, policy) == HealthResult.HEALTHY
        assert calls == 4

    @pytest.mark.asyncio
    async def test_unhealthy_after_passing_once(self) -> None:
        policy = HealthCheckPolicy(healthy_threshold=3, unhealthy_threshold=2, **FAST)
        result = await poll_until_healthy(scripted([True, False, False]), policy)
        assert result == HealthResult.UNHEALTHY

    @pytest.mark.asyncio
    async def test_never_healthy_times_out(self) -> None:
        """Boot-time failures are bounded by the timeout, not the threshold."""
        policy = HealthCheckPolicy(
            interval_seconds=0.001, timeout_seconds=0.05, unhealthy_threshold=1
        )
        result = await poll_until_healthy(scripted([False]), policy)
        assert result == HealthResult.TIMED_OUT
