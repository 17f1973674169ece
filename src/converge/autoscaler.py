"""Closed-loop autoscaling controller.

Metric samples flow through three stages:

1. AlarmEvaluator: per-alarm debounce. OK -> ALARM only after
   ``evaluation_periods`` consecutive breaching samples, ALARM -> OK only
   after as many consecutive clear samples.
2. dispatch: on an ALARM transition, the bound scaling policy adjusts the
   fleet's desired capacity, clamped to [min_size, max_size], and starts the
   policy's cooldown. A dispatch during cooldown is recorded as suppressed.
3. AutoscalingController: fetches samples on an interval, evaluates them and
   commits dispatched capacity through the provider and the state store
   while holding the fleet's capacity lock.

DESIGN:
- Cooldown is keyed by (fleet, direction): at most one policy per direction
  is in cooldown per fleet
- A committed dispatch is shielded from cancellation, so controller
  shutdown never leaves capacity and cooldown half-updated
- The clock is injectable; tests drive cooldown expiry without sleeping
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from .config import DEFAULT_METRIC_INTERVAL_SECONDS, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from .fleet import FleetCapacity, FleetRegistry
from .models import (
    ComparisonOperator,
    FleetAttributes,
    MetricAlarmAttributes,
    Resource,
    ResourceKind,
    ScalingDirection,
    ScalingPolicyAttributes,
    referenced_name,
)
from .providers.base import MetricSample, MetricSource, ProviderAdapter, ProviderError
from .state import StateError, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AlarmState(str, Enum):
    """Alarm state."""

    OK = "OK"
    ALARM = "ALARM"


class Transition(str, Enum):
    """Result of evaluating one sample."""

    NONE = "none"
    TO_ALARM = "to_alarm"
    TO_OK = "to_ok"


@dataclass(frozen=True)
class ScalingPolicy:
    """A capacity adjustment bound to one fleet."""

    name: str
    fleet: str
    direction: ScalingDirection
    adjustment: int
    cooldown_seconds: float

    @property
    def delta(self) -> int:
        """Signed adjustment."""
        return self.adjustment if self.direction == ScalingDirection.UP else -self.adjustment


@dataclass(frozen=True)
class MetricAlarm:
    """A threshold alarm bound to one scaling policy."""

    name: str
    metric_name: str
    comparison: ComparisonOperator
    threshold: float
    evaluation_periods: int
    policy: str

    def breached(self, value: float) -> bool:
        return self.comparison.holds(value, self.threshold)


@dataclass
class AlarmStatus:
    """Debounce counters for one alarm."""

    state: AlarmState = AlarmState.OK
    breaches: int = 0
    clears: int = 0
    last_sample_at: datetime | None = None


class AlarmEvaluator:
    """Debounced threshold evaluation, one status per alarm."""

    def __init__(self) -> None:
        self._status: dict[str, AlarmStatus] = {}

    def status(self, alarm: str) -> AlarmStatus:
        return self._status.setdefault(alarm, AlarmStatus())

    def state(self, alarm: str) -> AlarmState:
        return self.status(alarm).state

    def evaluate(self, alarm: MetricAlarm, sample: MetricSample) -> Transition:
        """Feed one sample, returning the transition it caused."""
        status = self.status(alarm.name)

        if status.last_sample_at is not None and sample.timestamp <= status.last_sample_at:
            logger.debug(
                "Ignoring stale sample",
                extra={"alarm": alarm.name, "timestamp": sample.timestamp.isoformat()},
            )
            return Transition.NONE
        status.last_sample_at = sample.timestamp

        if alarm.breached(sample.value):
            status.breaches += 1
            status.clears = 0
        else:
            status.clears += 1
            status.breaches = 0

        if status.state == AlarmState.OK and status.breaches >= alarm.evaluation_periods:
            status.state = AlarmState.ALARM
            logger.info(
                "Alarm transitioned to ALARM",
                extra={"alarm": alarm.name, "value": sample.value, "threshold": alarm.threshold},
            )
            return Transition.TO_ALARM

        if status.state == AlarmState.ALARM and status.clears >= alarm.evaluation_periods:
            status.state = AlarmState.OK
            logger.info(
                "Alarm transitioned to OK",
                extra={"alarm": alarm.name, "value": sample.value, "threshold": alarm.threshold},
            )
            return Transition.TO_OK

        return Transition.NONE


class CooldownTracker:
    """Cooldown windows keyed by (fleet, direction)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._until: dict[tuple[str, ScalingDirection], float] = {}

    def remaining(self, fleet: str, direction: ScalingDirection) -> float:
        until = self._until.get((fleet, direction))
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def in_cooldown(self, fleet: str, direction: ScalingDirection) -> bool:
        return self.remaining(fleet, direction) > 0

    def start(self, fleet: str, direction: ScalingDirection, seconds: float) -> None:
        self._until[(fleet, direction)] = self._clock() + seconds


class DispatchStatus(str, Enum):
    """What a dispatch did."""

    APPLIED = "applied"
    SUPPRESSED = "suppressed"


@dataclass
class DispatchResult:
    """Record of one policy dispatch."""

    policy: str
    fleet: str
    status: DispatchStatus
    previous: int
    desired: int
    clamped: bool = False
    cooldown_remaining: float = 0.0


def dispatch(
    policy: ScalingPolicy, capacity: FleetCapacity, cooldowns: CooldownTracker
) -> DispatchResult:
    """Apply a policy to a fleet's capacity.

    Sets ``capacity.desired`` to ``clamp(desired + adjustment, min, max)``
    and starts the policy's cooldown. Inside the cooldown window nothing
    changes and the result is SUPPRESSED. Clamping is not an error.
    """
    previous = capacity.desired
    remaining = cooldowns.remaining(policy.fleet, policy.direction)
    if remaining > 0:
        logger.info(
            "Scaling dispatch suppressed by cooldown",
            extra={
                "policy": policy.name,
                "fleet": policy.fleet,
                "desired": previous,
                "cooldown_remaining_seconds": remaining,
            },
        )
        return DispatchResult(
            policy=policy.name,
            fleet=policy.fleet,
            status=DispatchStatus.SUPPRESSED,
            previous=previous,
            desired=previous,
            cooldown_remaining=remaining,
        )

    desired, clamped = capacity.resize(policy.delta)
    cooldowns.start(policy.fleet, policy.direction, policy.cooldown_seconds)
    logger.info(
        "Scaling dispatch applied",
        extra={
            "policy": policy.name,
            "fleet": policy.fleet,
            "previous": previous,
            "desired": desired,
            "clamped": clamped,
        },
    )
    return DispatchResult(
        policy=policy.name,
        fleet=policy.fleet,
        status=DispatchStatus.APPLIED,
        previous=previous,
        desired=desired,
        clamped=clamped,
    )


@dataclass
class AutoscalingConfig:
    """Alarms and policies, by logical name."""

    alarms: dict[str, MetricAlarm] = field(default_factory=dict)
    policies: dict[str, ScalingPolicy] = field(default_factory=dict)

    @classmethod
    def from_resources(cls, resources: Iterable[Resource]) -> AutoscalingConfig:
        """Collect scaling_policy and metric_alarm resources.

        Raises:
            ValueError: If an alarm names a policy that is not declared.
        """
        config = cls()
        resources = list(resources)
        for resource in resources:
            if resource.kind != ResourceKind.SCALING_POLICY:
                continue
            attrs = ScalingPolicyAttributes.model_validate(resource.attributes)
            config.policies[resource.name] = ScalingPolicy(
                name=resource.name,
                fleet=referenced_name(attrs.fleet) or attrs.fleet,
                direction=attrs.direction,
                adjustment=attrs.adjustment,
                cooldown_seconds=attrs.cooldown_seconds,
            )
        for resource in resources:
            if resource.kind != ResourceKind.METRIC_ALARM:
                continue
            attrs = MetricAlarmAttributes.model_validate(resource.attributes)
            policy = referenced_name(attrs.policy) or attrs.policy
            if policy not in config.policies:
                raise ValueError(
                    f"Alarm '{resource.name}' references unknown scaling policy '{policy}'"
                )
            config.alarms[resource.name] = MetricAlarm(
                name=resource.name,
                metric_name=attrs.metric_name,
                comparison=attrs.comparison,
                threshold=attrs.threshold,
                evaluation_periods=attrs.evaluation_periods,
                policy=policy,
            )
        return config


class AutoscalingController:
    """Recurring, cancellable metric evaluation with capacity dispatch."""

    def __init__(
        self,
        config: AutoscalingConfig,
        state: StateStore,
        adapter: ProviderAdapter,
        metrics: MetricSource,
        fleets: FleetRegistry | None = None,
        interval_seconds: float = DEFAULT_METRIC_INTERVAL_SECONDS,
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._state = state
        self._adapter = adapter
        self._metrics = metrics
        self._fleets = fleets or FleetRegistry()
        self._interval = interval_seconds
        self._provider_timeout = provider_timeout_seconds
        self._evaluator = AlarmEvaluator()
        self._cooldowns = CooldownTracker(clock)
        self._history: list[DispatchResult] = []
        self._shutdown_event = asyncio.Event()

    @property
    def evaluator(self) -> AlarmEvaluator:
        return self._evaluator

    @property
    def cooldowns(self) -> CooldownTracker:
        return self._cooldowns

    @property
    def history(self) -> list[DispatchResult]:
        """Every dispatch, applied or suppressed, in order."""
        return list(self._history)

    def reconfigure(self, config: AutoscalingConfig) -> None:
        """Swap in alarms and policies from a freshly loaded document.

        Debounce counters and cooldowns carry over for names that remain.
        """
        if config == self._config:
            return
        logger.info(
            "Autoscaling configuration changed",
            extra={"alarms": sorted(config.alarms), "policies": sorted(config.policies)},
        )
        self._config = config

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args)),
            timeout=self._provider_timeout,
        )

    async def run(self) -> None:
        """Evaluate metrics every interval until shutdown."""
        logger.info(
            "Starting autoscaling controller",
            extra={
                "alarms": sorted(self._config.alarms),
                "interval_seconds": self._interval,
            },
        )
        while not self._shutdown_event.is_set():
            try:
                await self.evaluate_once()
            except (ProviderError, StateError, TimeoutError) as e:
                logger.error("Metric evaluation failed", extra={"error": str(e)})

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        logger.info("Autoscaling controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop after the current evaluation."""
        logger.info("Autoscaling shutdown requested")
        self._shutdown_event.set()

    async def evaluate_once(self) -> list[DispatchResult]:
        """Fetch, evaluate and dispatch one round of samples."""
        samples = await self._call(self._metrics.fetch_samples)
        results: list[DispatchResult] = []
        for sample in sorted(samples, key=lambda s: s.timestamp):
            alarm = self._config.alarms.get(sample.alarm)
            if alarm is None:
                logger.warning("Dropping sample for unknown alarm", extra={"alarm": sample.alarm})
                continue
            if self._evaluator.evaluate(alarm, sample) != Transition.TO_ALARM:
                continue
            policy = self._config.policies[alarm.policy]
            result = await asyncio.shield(self.dispatch_policy(policy))
            if result is not None:
                results.append(result)
        return results

    async def dispatch_policy(self, policy: ScalingPolicy) -> DispatchResult | None:
        """Dispatch a policy and commit the new capacity.

        Returns None if the fleet has not been materialized yet.
        """
        async with self._fleets.lock(policy.fleet):
            record = self._state.get(policy.fleet)
            if record is None:
                logger.warning(
                    "Scaling policy targets a fleet that does not exist yet",
                    extra={"policy": policy.name, "fleet": policy.fleet},
                )
                return None

            capacity = FleetCapacity.from_record(record)
            result = dispatch(policy, capacity, self._cooldowns)
            self._history.append(result)
            if result.status == DispatchStatus.SUPPRESSED or result.desired == result.previous:
                return result

            attributes = {
                key: record.outputs.get(key, record.attributes.get(key))
                for key in FleetAttributes.model_fields
            }
            attributes["desired_capacity"] = capacity.desired
            outputs = await self._call(
                self._adapter.update, ResourceKind.FLEET.value, record.physical_id, attributes
            )
            self._state.update_outputs(policy.fleet, outputs)
            return result
