"""Tests for provider adapters: retry wrapping, the local sandbox, and selection."""

from __future__ import annotations

from pathlib import Path

import pytest
from provider_mock import MockProvider

from converge.config import Config, ConfigurationError
from converge.providers.base import (
    FleetOperations,
    HealthSignal,
    MetricSource,
    NotFound,
    ProviderAdapter,
    ProviderError,
    ProviderUnavailable,
    ResourceNotEmpty,
    RetryingAdapter,
)
from converge.providers.factory import build_adapter, load_provider
from converge.providers.local import LocalProvider


def retrying(provider: MockProvider, attempts: int = 3) -> tuple[RetryingAdapter, list[float]]:
    sleeps: list[float] = []
    adapter = RetryingAdapter(
        provider, max_attempts=attempts, backoff_base_seconds=1.0, sleep=sleeps.append
    )
    return adapter, sleeps


class TestRetryingAdapter:
    """Tests for RetryingAdapter."""

    def test_retries_transient_failures(self) -> None:
        provider = MockProvider()
        provider.fail_transiently("create", "network", times=2)
        adapter, sleeps = retrying(provider)

        physical_id, outputs = adapter.create("network", "main", {"cidr_block": "10.0.0.0/16"})

        assert outputs["id"] == physical_id
        assert len(provider.calls_for("create")) == 3
        assert len(sleeps) == 2
        # Exponential backoff with up to 20% jitter
        assert 1.0 <= sleeps[0] <= 1.2
        assert 2.0 <= sleeps[1] <= 2.4

    def test_gives_up_after_max_attempts(self) -> None:
        provider = MockProvider()
        provider.fail_transiently("create", "network", times=5)
        adapter, sleeps = retrying(provider, attempts=3)

        with pytest.raises(ProviderUnavailable, match="service unavailable"):
            adapter.create("network", "main", {"cidr_block": "10.0.0.0/16"})

        assert len(provider.calls_for("create")) == 3
        assert len(sleeps) == 2

    def test_other_errors_pass_through(self) -> None:
        provider = MockProvider()
        provider.fail("create", "network")
        adapter, sleeps = retrying(provider)

        with pytest.raises(ProviderError, match="injected create failure"):
            adapter.create("network", "main", {"cidr_block": "10.0.0.0/16"})

        assert len(provider.calls_for("create")) == 1
        assert sleeps == []

    def test_capabilities_pass_through(self) -> None:
        provider = MockProvider()
        adapter, _ = retrying(provider)

        assert adapter.inner is provider
        assert adapter.fetch_samples() == []
        assert adapter.list_members("fleet-unknown") == []

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            RetryingAdapter(MockProvider(), max_attempts=0)


class TestLocalProvider:
    """Tests for the local sandbox provider."""

    def test_implements_every_capability(self) -> None:
        provider = LocalProvider()
        assert isinstance(provider, ProviderAdapter)
        assert isinstance(provider, FleetOperations)
        assert isinstance(provider, HealthSignal)
        assert isinstance(provider, MetricSource)

    def test_create_requires_existing_references(self) -> None:
        provider = LocalProvider()
        with pytest.raises(ProviderError, match="Referenced resource does not exist"):
            provider.create("subnet", "public-a", {"network_id": "net-missing"})

    def test_delete_refuses_referenced_resource(self) -> None:
        provider = LocalProvider()
        network_id, _ = provider.create("network", "main", {"cidr_block": "10.0.0.0/16"})
        subnet_id, _ = provider.create("subnet", "public-a", {"network_id": network_id})

        with pytest.raises(ProviderError, match="still in use"):
            provider.delete("network", network_id)

        provider.delete("subnet", subnet_id)
        provider.delete("network", network_id)
        with pytest.raises(NotFound):
            provider.read("network", network_id)

    def test_bucket_must_be_empty_unless_forced(self) -> None:
        provider = LocalProvider()
        bucket_id, outputs = provider.create("bucket", "assets", {"bucket_name": "assets"})
        assert outputs["arn"] == "arn:local:bucket:::assets"
        provider.put_object(bucket_id, "index.html", "<html/>")

        with pytest.raises(ResourceNotEmpty, match="contains 1 objects"):
            provider.delete("bucket", bucket_id)

        provider.delete("bucket", bucket_id, force=True)
        with pytest.raises(NotFound):
            provider.read("bucket", bucket_id)

    def test_bucket_names_are_unique(self) -> None:
        provider = LocalProvider()
        provider.create("bucket", "assets", {"bucket_name": "assets"})
        with pytest.raises(ProviderError, match="already in use"):
            provider.create("bucket", "assets-copy", {"bucket_name": "assets"})

    def test_fleet_scales_to_desired_capacity(self) -> None:
        provider = LocalProvider()
        spec_id, _ = provider.create("launch_spec", "lt", {"image": "img-1"})
        fleet_id, outputs = provider.create(
            "fleet", "web", {"launch_spec_id": spec_id, "desired_capacity": 3}
        )
        assert len(outputs["member_ids"]) == 3

        outputs = provider.update(
            "fleet", fleet_id, {"launch_spec_id": spec_id, "desired_capacity": 1}
        )
        assert len(outputs["member_ids"]) == 1
        assert all(provider.is_healthy(m) for m in outputs["member_ids"])

    def test_launch_spec_in_use_by_members(self) -> None:
        provider = LocalProvider()
        spec_id, _ = provider.create("launch_spec", "lt", {"image": "img-1"})
        fleet_id, _ = provider.create(
            "fleet", "web", {"launch_spec_id": spec_id, "desired_capacity": 1}
        )
        provider.launch_member(fleet_id, spec_id)
        provider.update("fleet", fleet_id, {"launch_spec_id": "external", "desired_capacity": 2})

        with pytest.raises(ProviderError, match="still used by fleet members"):
            provider.delete("launch_spec", spec_id)

    def test_persistence(self, tmp_path: Path) -> None:
        path = tmp_path / "platform.json"
        provider = LocalProvider(path)
        network_id, _ = provider.create("network", "main", {"cidr_block": "10.0.0.0/16"})

        reloaded = LocalProvider(path)
        assert reloaded.read("network", network_id)["cidr_block"] == "10.0.0.0/16"

    def test_fetch_samples_drains_queue(self) -> None:
        provider = LocalProvider()
        provider.push_sample("cpu-high", 90)
        assert [s.value for s in provider.fetch_samples()] == [90]
        assert provider.fetch_samples() == []


class TestProviderSelection:
    """Tests for load_provider() and build_adapter()."""

    def test_local_provider(self, tmp_path: Path) -> None:
        provider = load_provider(Config(local_provider_path=tmp_path / "platform.json"))
        assert isinstance(provider, LocalProvider)

    def test_factory_path(self) -> None:
        provider = load_provider(Config(provider="provider_mock:create_provider"))
        assert isinstance(provider, MockProvider)

    def test_unknown_factory(self) -> None:
        with pytest.raises(ConfigurationError, match="Cannot load provider factory"):
            load_provider(Config(provider="no_such_module:create"))

    def test_build_adapter_wraps_given_provider(self) -> None:
        provider = MockProvider()
        adapter = build_adapter(Config(provider_retries=2), provider)
        assert adapter.inner is provider
