"""Tests for fleet capacity bookkeeping."""

import pytest

from converge.fleet import FleetCapacity, FleetRegistry, clamp
from converge.state import ObservedStateRecord


class TestFleetCapacity:
    """Tests for FleetCapacity."""

    def test_desired_clamped_on_construction(self) -> None:
        capacity = FleetCapacity(name="web", physical_id="fleet-1", min_size=2, max_size=4, desired=9)
        assert capacity.desired == 4

    def test_inverted_bounds_rejected(self) -> None:
        with pytest.raises(ValueError, match="min_size 5 above max_size 2"):
            FleetCapacity(name="web", physical_id="fleet-1", min_size=5, max_size=2, desired=3)

    def test_resize(self) -> None:
        capacity = FleetCapacity(name="web", physical_id="fleet-1", min_size=1, max_size=4, desired=2)
        assert capacity.resize(1) == (3, False)
        assert capacity.resize(3) == (4, True)
        assert capacity.resize(-10) == (1, True)

    def test_from_record_prefers_reported_outputs(self) -> None:
        record = ObservedStateRecord(
            name="web",
            kind="fleet",
            physical_id="fleet-1",
            attributes={"min_size": 1, "max_size": 4, "desired_capacity": 2},
            outputs={"desired_capacity": 3},
        )
        capacity = FleetCapacity.from_record(record)
        assert (capacity.min_size, capacity.max_size, capacity.desired) == (1, 4, 3)


class TestFleetRegistry:
    def test_one_lock_per_fleet(self) -> None:
        registry = FleetRegistry()
        assert "web" not in registry
        lock = registry.lock("web")
        assert registry.lock("web") is lock
        assert registry.lock("api") is not lock
        assert "web" in registry


def test_clamp() -> None:
    assert clamp(5, 1, 4) == 4
    assert clamp(0, 1, 4) == 1
    assert clamp(2, 1, 4) == 2
