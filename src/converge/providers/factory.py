"""Provider selection from configuration."""

from __future__ import annotations

import importlib
import logging
from typing import Any

from ..config import DEFAULT_PROVIDER, Config, ConfigurationError
from .base import RetryingAdapter
from .local import LocalProvider

logger = logging.getLogger(__name__)


def load_provider(config: Config) -> Any:
    """Instantiate the configured provider, without retry wrapping.

    ``local`` gives the sandbox provider. Anything else is a
    ``module:factory`` path; the factory is called with the Config and
    must return an object implementing ProviderAdapter.

    Raises:
        ConfigurationError: If the factory cannot be imported.
    """
    if config.provider == DEFAULT_PROVIDER:
        return LocalProvider(path=config.local_provider_path)

    module_name, _, attr = config.provider.partition(":")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load provider factory '{config.provider}': {e}") from e

    logger.info("Loaded provider factory", extra={"provider": config.provider})
    return factory(config)


def build_adapter(config: Config, provider: Any | None = None) -> RetryingAdapter:
    """Wrap the provider with bounded retry on transient failures."""
    return RetryingAdapter(
        provider if provider is not None else load_provider(config),
        max_attempts=config.provider_retries,
        backoff_base_seconds=config.retry_backoff_base_seconds,
    )
