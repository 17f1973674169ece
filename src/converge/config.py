"""Configuration management with validation.

All tunables are validated at construction time so that a bad value fails
the process at startup instead of in the middle of an apply.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 600
MAX_PROVIDER_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_PARALLELISM = 4
MAX_PARALLELISM = 64

MAX_PROVIDER_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 2.0

# Autoscaling
DEFAULT_METRIC_INTERVAL_SECONDS = 60
MIN_METRIC_INTERVAL_SECONDS = 1

# Rolling replacement
DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS = 10
DEFAULT_HEALTH_CHECK_TIMEOUT_SECONDS = 300
DEFAULT_HEALTHY_THRESHOLD = 2
DEFAULT_UNHEALTHY_THRESHOLD = 3
DEFAULT_DRAIN_SECONDS = 30
MAX_DRAIN_SECONDS = 3600
DEFAULT_MAX_LAUNCH_ATTEMPTS = 3

# Circuit breaker for the reconcile loop
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max desired-state document
MAX_RESOURCES_PER_PLAN = 500

DEFAULT_PROVIDER = "local"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables or CLI options.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    spec_path: Path = field(default_factory=lambda: Path("infrastructure.yaml"))
    state_path: Path = field(default_factory=lambda: Path("converge.state.json"))

    # Provider selection: "local" or a "module:factory" dotted path
    provider: str = DEFAULT_PROVIDER
    local_provider_path: Path | None = None

    # Execution
    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    provider_retries: int = MAX_PROVIDER_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    max_resources_per_plan: int = MAX_RESOURCES_PER_PLAN

    # Reconcile loop
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Autoscaling
    metric_interval_seconds: float = DEFAULT_METRIC_INTERVAL_SECONDS

    # Rolling replacement
    drain_seconds: float = DEFAULT_DRAIN_SECONDS
    max_launch_attempts: int = DEFAULT_MAX_LAUNCH_ATTEMPTS

    # Logging
    json_logs: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.provider:
            errors.append("CONVERGE_PROVIDER is required")
        elif self.provider != DEFAULT_PROVIDER and ":" not in self.provider:
            errors.append(
                f"CONVERGE_PROVIDER must be 'local' or 'module:factory': {self.provider}"
            )

        if not (1 <= self.max_parallelism <= MAX_PARALLELISM):
            errors.append(f"CONVERGE_MAX_PARALLELISM must be between 1 and {MAX_PARALLELISM}")

        if not (1 <= self.provider_timeout_seconds <= MAX_PROVIDER_TIMEOUT_SECONDS):
            errors.append(
                f"CONVERGE_PROVIDER_TIMEOUT must be between 1 and "
                f"{MAX_PROVIDER_TIMEOUT_SECONDS} seconds"
            )

        if self.provider_retries < 1:
            errors.append("CONVERGE_PROVIDER_RETRIES must be at least 1")

        if self.retry_backoff_base_seconds < 0:
            errors.append("CONVERGE_RETRY_BACKOFF_BASE must not be negative")

        if self.max_resources_per_plan < 1:
            errors.append("CONVERGE_MAX_RESOURCES_PER_PLAN must be at least 1")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"CONVERGE_RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.metric_interval_seconds < MIN_METRIC_INTERVAL_SECONDS:
            errors.append(
                f"CONVERGE_METRIC_INTERVAL must be at least {MIN_METRIC_INTERVAL_SECONDS} second"
            )

        if not (0 <= self.drain_seconds <= MAX_DRAIN_SECONDS):
            errors.append(f"CONVERGE_DRAIN_SECONDS must be between 0 and {MAX_DRAIN_SECONDS}")

        if self.max_launch_attempts < 1:
            errors.append("CONVERGE_MAX_LAUNCH_ATTEMPTS must be at least 1")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"CONVERGE_LOG_LEVEL is not a valid level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_SPEC_PATH: Desired-state YAML document (default: infrastructure.yaml)
            CONVERGE_STATE_PATH: Observed state file (default: converge.state.json)
            CONVERGE_PROVIDER: "local" or "module:factory" (default: local)
            CONVERGE_LOCAL_PROVIDER_PATH: Persistence file for the local provider
            CONVERGE_MAX_PARALLELISM: Concurrent provider calls (default: 4)
            CONVERGE_PROVIDER_TIMEOUT: Per-call timeout in seconds (default: 600)
            CONVERGE_PROVIDER_RETRIES: Attempts on ProviderUnavailable (default: 3)
            CONVERGE_RETRY_BACKOFF_BASE: Backoff base in seconds (default: 2)
            CONVERGE_MAX_RESOURCES_PER_PLAN: Upper bound on plan size (default: 500)
            CONVERGE_RECONCILE_INTERVAL: Seconds between reconcile loops (default: 300)
            CONVERGE_METRIC_INTERVAL: Seconds between metric evaluations (default: 60)
            CONVERGE_DRAIN_SECONDS: Connection drain delay during rollouts (default: 30)
            CONVERGE_MAX_LAUNCH_ATTEMPTS: Replacement launch attempts (default: 3)
            CONVERGE_JSON_LOGS: Emit JSON logs (default: true)
            CONVERGE_LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        local_path = os.environ.get("CONVERGE_LOCAL_PROVIDER_PATH")

        return cls(
            spec_path=Path(os.environ.get("CONVERGE_SPEC_PATH", "infrastructure.yaml")),
            state_path=Path(os.environ.get("CONVERGE_STATE_PATH", "converge.state.json")),
            provider=os.environ.get("CONVERGE_PROVIDER", DEFAULT_PROVIDER),
            local_provider_path=Path(local_path) if local_path else None,
            max_parallelism=get_int("CONVERGE_MAX_PARALLELISM", DEFAULT_MAX_PARALLELISM),
            provider_timeout_seconds=get_int(
                "CONVERGE_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            provider_retries=get_int("CONVERGE_PROVIDER_RETRIES", MAX_PROVIDER_RETRIES),
            retry_backoff_base_seconds=get_float(
                "CONVERGE_RETRY_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS
            ),
            max_resources_per_plan=get_int(
                "CONVERGE_MAX_RESOURCES_PER_PLAN", MAX_RESOURCES_PER_PLAN
            ),
            reconcile_interval_seconds=get_int(
                "CONVERGE_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            metric_interval_seconds=get_float(
                "CONVERGE_METRIC_INTERVAL", DEFAULT_METRIC_INTERVAL_SECONDS
            ),
            drain_seconds=get_float("CONVERGE_DRAIN_SECONDS", DEFAULT_DRAIN_SECONDS),
            max_launch_attempts=get_int(
                "CONVERGE_MAX_LAUNCH_ATTEMPTS", DEFAULT_MAX_LAUNCH_ATTEMPTS
            ),
            json_logs=get_bool("CONVERGE_JSON_LOGS", True),
            log_level=os.environ.get("CONVERGE_LOG_LEVEL", "INFO"),
        )
