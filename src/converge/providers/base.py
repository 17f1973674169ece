"""Provider adapter capability set and error taxonomy.

The core never assumes a transport. It needs four operations per resource
kind, plus fleet member operations for rolling replacement, and relies on
the exceptions below to tell outcomes apart.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Base class for provider call failures."""

    pass


class NotFound(ProviderError):
    """The physical resource does not exist."""

    pass


class ResourceNotEmpty(ProviderError):
    """A container still holds child data and the delete was not forced."""

    pass


class ProviderUnavailable(ProviderError):
    """Transient failure; eligible for bounded retry at the adapter boundary."""

    pass


@runtime_checkable
class ProviderAdapter(Protocol):
    """Create/read/update/delete against the target platform."""

    def create(self, kind: str, name: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource, returning (physical_id, provider attributes)."""
        ...

    def read(self, kind: str, physical_id: str) -> dict[str, Any]:
        """Read provider attributes. Raises NotFound."""
        ...

    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Update mutable attributes in place, returning provider attributes."""
        ...

    def delete(self, kind: str, physical_id: str, force: bool = False) -> None:
        """Delete a resource. Raises ResourceNotEmpty unless forced."""
        ...


@dataclass(frozen=True)
class Member:
    """A fleet member as reported by the provider."""

    member_id: str
    fleet_id: str
    launch_spec_id: str


@runtime_checkable
class FleetOperations(Protocol):
    """Member-level operations used by rolling replacement."""

    def list_members(self, fleet_id: str) -> list[Member]:
        ...

    def launch_member(self, fleet_id: str, launch_spec_id: str) -> Member:
        ...

    def terminate_member(self, member_id: str) -> None:
        ...

    def register_target(self, target_group_id: str, member_id: str) -> None:
        ...

    def deregister_target(self, target_group_id: str, member_id: str) -> None:
        ...


@dataclass(frozen=True)
class MetricSample:
    """One observation for an alarm (by logical name)."""

    alarm: str
    timestamp: datetime
    value: float


@runtime_checkable
class MetricSource(Protocol):
    """Periodic metric samples; how they are collected is not our concern."""

    def fetch_samples(self) -> list[MetricSample]:
        ...


@runtime_checkable
class HealthSignal(Protocol):
    """Traffic-health signal from the load balancer's health checks."""

    def is_healthy(self, member_id: str) -> bool:
        ...


class RetryingAdapter:
    """Wrap an adapter with exponential backoff on ProviderUnavailable.

    Retrying lives here, at the adapter boundary, so the engine sees either
    a result or a terminal error. Other provider errors pass through
    untouched.
    """

    def __init__(
        self,
        inner: ProviderAdapter,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._inner = inner
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep

    @property
    def inner(self) -> ProviderAdapter:
        return self._inner

    def __getattr__(self, item: str) -> Any:
        # Fleet operations, health and metrics pass straight through
        return getattr(self._inner, item)

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        last_error: ProviderUnavailable | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return func()
            except ProviderUnavailable as e:
                last_error = e
                if attempt < self._max_attempts:
                    backoff = self._backoff_base * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter
                    logger.warning(
                        "Provider unavailable, retrying",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    self._sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    def create(self, kind: str, name: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        return self._call("create", lambda: self._inner.create(kind, name, attributes))

    def read(self, kind: str, physical_id: str) -> dict[str, Any]:
        return self._call("read", lambda: self._inner.read(kind, physical_id))

    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        return self._call("update", lambda: self._inner.update(kind, physical_id, attributes))

    def delete(self, kind: str, physical_id: str, force: bool = False) -> None:
        self._call("delete", lambda: self._inner.delete(kind, physical_id, force))
