"""Fault-injecting provider for engine, rollout and CLI tests.

This package wraps the local sandbox provider with the failure modes the
engine has to survive, without touching a real platform.

Key Features:
- Permanent failures per (operation, kind) or (operation, logical name)
- Transient ProviderUnavailable failures that clear after N calls
- Scripted member health: new members boot unhealthy for N polls
- A call log and a serving-capacity history for rollout assertions

Usage:
    from provider_mock import MockProvider, web_stack

    provider = MockProvider()
    provider.fail("create", "network")

    report = await engine.apply(build_plan(web_stack(), state))
    assert report.outcomes["main"].status == OutcomeStatus.FAILED
"""

from .provider import MockProvider, ProviderCall, create_provider
from .stacks import NETWORK_DEPENDENTS, WEB_STACK, stack_document, web_stack, write_document

__all__ = [
    "NETWORK_DEPENDENTS",
    "WEB_STACK",
    "MockProvider",
    "ProviderCall",
    "create_provider",
    "stack_document",
    "web_stack",
    "write_document",
]
