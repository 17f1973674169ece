"""Tests for the converge CLI."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner, Result
from provider_mock import MockProvider, write_document

from converge.cli import EXIT_INVALID, EXIT_PARTIAL, cli
from converge.main import HANDLER_NAME


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Ignore CONVERGE_* variables from the outer environment and drop our log handler."""
    for key in list(os.environ):
        if key.startswith("CONVERGE_"):
            monkeypatch.delenv(key)
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    write_document(tmp_path / "infrastructure.yaml")
    return tmp_path


def invoke(workspace: Path, *args: str, provider: MockProvider | None = None) -> Result:
    obj = {"provider": provider} if provider is not None else {}
    return CliRunner().invoke(
        cli,
        [
            "--spec",
            str(workspace / "infrastructure.yaml"),
            "--state",
            str(workspace / "converge.state.json"),
            *args,
        ],
        obj=obj,
    )


class TestPlanCommand:
    """Tests for `converge plan`."""

    def test_plan_fresh_state(self, workspace: Path) -> None:
        result = invoke(workspace, "plan")

        assert result.exit_code == 0, result.output
        assert "network.main" in result.output
        assert "12 to create" in result.output
        # Planning is read-only
        assert not (workspace / "converge.state.json").exists()

    def test_plan_after_apply_has_no_changes(self, workspace: Path) -> None:
        assert invoke(workspace, "apply").exit_code == 0

        result = invoke(workspace, "plan")

        assert result.exit_code == 0
        assert "no-op    network.main" in result.output
        assert "0 to create, 0 to update, 0 to replace, 0 to destroy, 12 unchanged" in result.output
        assert "No changes" in result.output

    def test_cycle_exits_invalid(self, workspace: Path) -> None:
        document = {
            "resources": [
                {
                    "kind": "bucket",
                    "name": "a",
                    "attributes": {"bucket_name": "bucket-a"},
                    "dependsOn": ["b"],
                },
                {
                    "kind": "bucket",
                    "name": "b",
                    "attributes": {"bucket_name": "bucket-b"},
                    "dependsOn": ["a"],
                },
            ]
        }
        write_document(workspace / "infrastructure.yaml", document)

        result = invoke(workspace, "plan")

        assert result.exit_code == EXIT_INVALID
        assert "Circular dependency detected" in result.output

    def test_invalid_document_exits_invalid(self, workspace: Path) -> None:
        (workspace / "infrastructure.yaml").write_text("resources: [unclosed")

        result = invoke(workspace, "plan")

        assert result.exit_code == EXIT_INVALID
        assert "Invalid YAML" in result.output

    def test_unknown_reference_exits_invalid(self, workspace: Path) -> None:
        document = {
            "resources": [
                {
                    "kind": "subnet",
                    "name": "orphan",
                    "attributes": {"network_id": "${missing.id}", "cidr_block": "10.0.1.0/24"},
                }
            ]
        }
        write_document(workspace / "infrastructure.yaml", document)

        result = invoke(workspace, "plan")

        assert result.exit_code == EXIT_INVALID
        assert "missing" in result.output


class TestApplyCommand:
    """Tests for `converge apply` and `converge destroy`."""

    def test_apply_succeeds(self, workspace: Path) -> None:
        result = invoke(workspace, "apply")

        assert result.exit_code == 0, result.output
        assert "12 succeeded" in result.output
        state = json.loads((workspace / "converge.state.json").read_text())
        assert len(state["resources"]) == 12
        # The local provider persists next to the state file
        assert (workspace / "converge.state.provider.json").exists()

    def test_partial_failure_exits_partial(self, workspace: Path) -> None:
        provider = MockProvider()
        provider.fail("create", "network")

        result = invoke(workspace, "apply", provider=provider)

        assert result.exit_code == EXIT_PARTIAL
        assert "failed" in result.output
        assert "blocked" in result.output
        state = json.loads((workspace / "converge.state.json").read_text())
        assert list(state["resources"]) == ["assets"]

    def test_destroy(self, workspace: Path) -> None:
        assert invoke(workspace, "apply").exit_code == 0

        result = invoke(workspace, "destroy", "--yes")
        assert result.exit_code == 0, result.output

        listing = invoke(workspace, "state", "list")
        assert "State is empty." in listing.output

    def test_destroy_empty_state(self, workspace: Path) -> None:
        result = invoke(workspace, "destroy", "--yes")
        assert result.exit_code == 0
        assert "Nothing to destroy." in result.output


class TestStateCommands:
    """Tests for `converge state`."""

    def test_list(self, workspace: Path) -> None:
        assert invoke(workspace, "apply").exit_code == 0

        result = invoke(workspace, "state", "list")

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert len(lines) == 12
        assert any(line.startswith("network") and " main " in line for line in lines)

    def test_migrate_v1(self, workspace: Path) -> None:
        (workspace / "converge.state.json").write_text(
            json.dumps(
                {
                    "version": 1,
                    "resources": {
                        "main": {
                            "kind": "network",
                            "id": "net-1",
                            "attributes": {"cidr_block": "10.0.0.0/16"},
                        }
                    },
                }
            )
        )

        result = invoke(workspace, "state", "migrate")
        assert result.exit_code == 0, result.output
        assert "Migrated" in result.output
        assert json.loads((workspace / "converge.state.json").read_text())["version"] == 2

        again = invoke(workspace, "state", "migrate")
        assert "already in the current format" in again.output

    def test_migrate_missing_file(self, workspace: Path) -> None:
        result = invoke(workspace, "state", "migrate")
        assert result.exit_code == 1
        assert "State file not found" in result.output


class TestAutoscaleCommand:
    def test_once_scales_fleet(self, workspace: Path) -> None:
        provider = MockProvider()
        assert invoke(workspace, "apply", provider=provider).exit_code == 0

        start = datetime.now(UTC)
        provider.push_sample("cpu-high", 90, start)
        provider.push_sample("cpu-high", 95, start + timedelta(seconds=60))
        result = invoke(workspace, "autoscale", "--once", provider=provider)

        assert result.exit_code == 0, result.output
        assert "scale-up: web 2 -> 3 (applied)" in result.output

    def test_once_without_samples(self, workspace: Path) -> None:
        provider = MockProvider()
        assert invoke(workspace, "apply", provider=provider).exit_code == 0

        result = invoke(workspace, "autoscale", "--once", provider=provider)

        assert result.exit_code == 0
        assert "No scaling actions." in result.output
