"""Daemon entry point and shared wiring.

Daemon mode runs the reconcile loop and the autoscaling controller side by
side against one state store, one provider and one set of fleet capacity
locks. SIGTERM/SIGINT stop both loops and any rollout in progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .autoscaler import AutoscalingConfig, AutoscalingController
from .config import Config, ConfigurationError
from .engine import ExecutionEngine
from .fleet import FleetRegistry
from .models import Resource
from .providers.base import FleetOperations, HealthSignal, MetricSource, RetryingAdapter
from .providers.factory import build_adapter
from .reconciler import Reconciler
from .rollout import RollingReplacementCoordinator
from .state import StateError, StateStore

HANDLER_NAME = "converge"

# LogRecord attributes that are not structured extras
_STANDARD_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure logging: JSON on stdout for daemons, plain text on stderr otherwise."""
    if json_logs:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    handler.set_name(HANDLER_NAME)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    logging.getLogger("asyncio").setLevel(logging.WARNING)


@dataclass
class Runtime:
    """Components shared by one process."""

    config: Config
    state: StateStore
    adapter: RetryingAdapter
    fleets: FleetRegistry
    engine: ExecutionEngine
    coordinator: RollingReplacementCoordinator | None


def build_runtime(config: Config, provider: Any | None = None) -> Runtime:
    """Wire state store, provider, engine and rollout coordinator.

    Raises:
        ConfigurationError: If the provider cannot be loaded.
        StateError: If the state file cannot be read.
    """
    state = StateStore(config.state_path)
    adapter = build_adapter(config, provider)
    fleets = FleetRegistry()

    coordinator: RollingReplacementCoordinator | None = None
    if isinstance(adapter.inner, FleetOperations) and isinstance(adapter.inner, HealthSignal):
        coordinator = RollingReplacementCoordinator(
            fleet_ops=adapter,
            health=adapter,
            drain_seconds=config.drain_seconds,
            max_launch_attempts=config.max_launch_attempts,
            provider_timeout_seconds=config.provider_timeout_seconds,
        )

    engine = ExecutionEngine(
        adapter,
        state,
        max_parallelism=config.max_parallelism,
        provider_timeout_seconds=config.provider_timeout_seconds,
        fleets=fleets,
        coordinator=coordinator,
    )
    return Runtime(
        config=config,
        state=state,
        adapter=adapter,
        fleets=fleets,
        engine=engine,
        coordinator=coordinator,
    )


def build_controller(
    runtime: Runtime, resources: list[Resource] | None = None
) -> AutoscalingController | None:
    """Autoscaling controller over the runtime's provider, or None without a metric source."""
    if not isinstance(runtime.adapter.inner, MetricSource):
        return None
    return AutoscalingController(
        AutoscalingConfig.from_resources(resources or []),
        runtime.state,
        runtime.adapter,
        runtime.adapter,
        fleets=runtime.fleets,
        interval_seconds=runtime.config.metric_interval_seconds,
        provider_timeout_seconds=runtime.config.provider_timeout_seconds,
    )


async def run_daemon(runtime: Runtime) -> int:
    """Run the reconcile loop and the autoscaler until signalled."""
    logger = logging.getLogger(__name__)
    controller = build_controller(runtime)

    def on_resources(resources: list[Resource]) -> None:
        if controller is None:
            return
        try:
            controller.reconfigure(AutoscalingConfig.from_resources(resources))
        except ValueError as e:
            logger.error("Invalid autoscaling configuration", extra={"error": str(e)})

    reconciler = Reconciler(runtime.config, runtime.engine, runtime.state, on_resources)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()
        if controller is not None:
            controller.shutdown()
        if runtime.coordinator is not None:
            runtime.coordinator.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    tasks = [reconciler.run()]
    if controller is not None:
        tasks.append(controller.run())

    try:
        await asyncio.gather(*tasks)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Daemon stopped")
    return 0


async def main() -> int:
    """Run the daemon from environment configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.json_logs)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting converge daemon",
        extra={
            "spec_path": str(config.spec_path),
            "state_path": str(config.state_path),
            "provider": config.provider,
        },
    )

    try:
        runtime = build_runtime(config)
    except (ConfigurationError, StateError) as e:
        logger.error("Failed to initialize", extra={"error": str(e)})
        return 1

    return await run_daemon(runtime)


def run() -> None:
    """Entry point for the daemon."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
