"""Periodic reconciliation loop.

Each cycle:
1. Load the desired-state document from disk
2. Build a plan against the state store
3. Apply it if anything differs
4. Wait for the next interval (or shutdown)

A circuit breaker stops hammering the provider when cycles keep failing:
after MAX_CONSECUTIVE_FAILURES the loop pauses for
CIRCUIT_BREAKER_RESET_SECONDS before trying again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import CIRCUIT_BREAKER_RESET_SECONDS, MAX_CONSECUTIVE_FAILURES, Config
from .dependency import DependencyError
from .engine import ApplyReport, ExecutionEngine, OutcomeStatus
from .models import Resource
from .plan import build_plan
from .spec_loader import SpecLoadError, load_document
from .state import StateError, StateStore

logger = logging.getLogger(__name__)


class ApplyIncomplete(Exception):
    """An apply finished with failed or blocked resources."""

    def __init__(self, report: ApplyReport) -> None:
        self.report = report
        failed = sorted(
            name
            for name, outcome in report.outcomes.items()
            if outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.BLOCKED)
        )
        super().__init__(f"Apply incomplete, unsuccessful resources: {failed}")


@dataclass
class ReconcileResult:
    """Result of a single reconciliation cycle."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan_summary: dict[str, int] = field(default_factory=dict)
    report: ApplyReport | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def drift_found(self) -> bool:
        return any(count for action, count in self.plan_summary.items() if action != "no-op")

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


class Reconciler:
    """Plan-and-apply control loop over one desired-state document."""

    def __init__(
        self,
        config: Config,
        engine: ExecutionEngine,
        state: StateStore,
        on_resources: Callable[[list[Resource]], None] | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration.
            engine: Engine applying plans.
            state: Observed state store shared with the engine.
            on_resources: Called with each freshly loaded resource set.
        """
        self._config = config
        self._engine = engine
        self._state = state
        self._on_resources = on_resources
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    async def run(self) -> None:
        """Run reconciliation cycles until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "spec_path": str(self._config.spec_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=min(remaining, self._config.reconcile_interval_seconds),
                        )
                    except TimeoutError:
                        pass
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_once()
            self._record(result)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _record(self, result: ReconcileResult) -> None:
        self._log_result(result)
        if result.error is None:
            self._consecutive_failures = 0
            return
        self._consecutive_failures += 1
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    async def reconcile_once(self) -> ReconcileResult:
        """Run one load-plan-apply cycle."""
        result = ReconcileResult()
        try:
            resources = load_document(
                self._config.spec_path, max_resources=self._config.max_resources_per_plan
            )
            if self._on_resources is not None:
                self._on_resources(resources)
            plan = build_plan(resources, self._state)
            result.plan_summary = plan.summary()
            if plan.has_changes:
                result.report = await self._engine.apply(plan)
                if not result.report.success:
                    result.error = ApplyIncomplete(result.report)
        except (SpecLoadError, DependencyError, StateError) as e:
            result.error = e
        except Exception as e:
            logger.exception("Reconciliation failed unexpectedly")
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
        return result

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "drift_found": result.drift_found,
            "plan": result.plan_summary,
        }
        if result.report is not None:
            extra["outcomes"] = result.report.summary()

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
