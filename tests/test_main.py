"""Tests for logging setup and runtime wiring."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from provider_mock import MockProvider, web_stack

from converge.config import Config
from converge.main import HANDLER_NAME, JsonFormatter, build_controller, build_runtime, setup_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)
    root.setLevel(level)


class TestJsonFormatter:
    def test_extras_become_fields(self) -> None:
        record = logging.LogRecord(
            name="converge.engine",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Resource %s",
            args=("created",),
            exc_info=None,
        )
        record.resource = "main"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Resource created"
        assert data["level"] == "INFO"
        assert data["logger"] == "converge.engine"
        assert data["resource"] == "main"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data


class TestSetupLogging:
    def test_replaces_only_own_handler(self, restore_root_logger: None) -> None:
        root = logging.getLogger()
        before = len(root.handlers)

        setup_logging("DEBUG", json_logs=True)
        setup_logging("WARNING", json_logs=False)

        ours = [h for h in root.handlers if h.get_name() == HANDLER_NAME]
        assert len(ours) == 1
        assert len(root.handlers) == before + 1
        assert root.level == logging.WARNING


class TestBuildRuntime:
    def test_local_provider_wiring(self, tmp_path: Path) -> None:
        config = Config(
            state_path=tmp_path / "state.json",
            local_provider_path=tmp_path / "platform.json",
        )
        runtime = build_runtime(config)

        assert runtime.coordinator is not None
        assert len(runtime.state) == 0
        assert build_controller(runtime, web_stack()) is not None

    def test_given_provider_wins(self, tmp_path: Path) -> None:
        provider = MockProvider()
        runtime = build_runtime(Config(state_path=tmp_path / "state.json"), provider)
        assert runtime.adapter.inner is provider
