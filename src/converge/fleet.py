"""Fleet capacity: the one counter the engine and the autoscaler share.

Capacity changes from a plan apply and from a scaling dispatch can target
the same fleet at the same time. Each fleet therefore has one
``asyncio.Lock``; whoever changes ``desired_capacity`` holds it for the
whole read-modify-write, provider call included.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .state import ObservedStateRecord

logger = logging.getLogger(__name__)


def clamp(value: int, lower: int, upper: int) -> int:
    """Bound value to [lower, upper]."""
    return max(lower, min(upper, value))


@dataclass
class FleetCapacity:
    """Bounds and desired size of one fleet.

    Invariant: min_size <= desired <= max_size.
    """

    name: str
    physical_id: str
    min_size: int
    max_size: int
    desired: int

    def __post_init__(self) -> None:
        if self.min_size > self.max_size:
            raise ValueError(
                f"Fleet '{self.name}' has min_size {self.min_size} above max_size {self.max_size}"
            )
        self.desired = clamp(self.desired, self.min_size, self.max_size)

    def resize(self, delta: int) -> tuple[int, bool]:
        """Apply a signed adjustment, clamped to the bounds.

        Returns:
            Tuple of (new desired, whether clamping changed the request).
        """
        requested = self.desired + delta
        self.desired = clamp(requested, self.min_size, self.max_size)
        return self.desired, self.desired != requested

    @classmethod
    def from_record(cls, record: ObservedStateRecord) -> FleetCapacity:
        """Current capacity of a materialized fleet.

        Provider-reported values win over the declared snapshot, since the
        autoscaler only ever updates the reported side.
        """

        def current(key: str) -> Any:
            return record.outputs.get(key, record.attributes.get(key))

        return cls(
            name=record.name,
            physical_id=record.physical_id,
            min_size=int(current("min_size")),
            max_size=int(current("max_size")),
            desired=int(current("desired_capacity")),
        )


class FleetRegistry:
    """Per-fleet capacity locks, keyed by logical name."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, name: str) -> asyncio.Lock:
        """Get (creating on first use) the capacity lock for a fleet."""
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def __contains__(self, name: object) -> bool:
        return name in self._locks
