"""Desired-versus-observed diffing.

The differ is pure: it looks at one desired resource and its observed
record and decides the action. All provider calls happen in the engine.

Semantic equivalence is normalized before comparison so that declarations
meaning the same thing never produce an update:
1. Empty array [] vs empty object {} vs null vs missing
2. Array ordering for unordered collections (id lists, source CIDRs)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Resource, ResourceKind, immutable_attributes
from .state import ObservedStateRecord

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Per-resource plan actions."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no-op"


class AttributeImmutableConflict(Exception):
    """An immutable attribute changed.

    Planning resolves this automatically as a replace; the exception is
    only raised when diffing in strict mode.
    """

    def __init__(self, name: str, attributes: list[str]) -> None:
        self.name = name
        self.attributes = attributes
        super().__init__(
            f"Resource '{name}' changes immutable attributes {attributes}; replacement required"
        )


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


# Unordered list attributes per kind ("*" applies to every kind)
UNORDERED_ATTRIBUTES: dict[str, frozenset[str]] = {
    "*": frozenset({"subnet_ids", "security_group_ids", "target_group_ids"}),
    ResourceKind.SECURITY_GROUP.value: frozenset({"ingress", "egress"}),
}


@dataclass(frozen=True)
class AttributeChange:
    """One changed top-level attribute."""

    key: str
    before: Any
    after: Any
    immutable: bool = False


@dataclass
class PlannedAction:
    """The action decided for one resource."""

    name: str
    kind: str
    action: Action
    changes: list[AttributeChange] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    force_destroy: bool = False
    create_before_destroy: bool = False
    # Desired resource (absent for destroy)
    resource: Resource | None = None
    # Observed physical id (absent for create)
    physical_id: str | None = None
    # Replaced instances still awaiting deletion
    deposed: list[str] = field(default_factory=list)
    # Why the action was escalated by the planner, if it was
    reason: str | None = None

    @property
    def immutable_changes(self) -> list[str]:
        return [change.key for change in self.changes if change.immutable]

    def describe(self) -> str:
        """One-line human-readable description."""
        text = f"{self.action.value:<8} {self.kind}.{self.name}"
        if self.changes:
            text += f" ({', '.join(change.key for change in self.changes)})"
        if self.reason:
            text += f" [{self.reason}]"
        return text


def _is_empty(value: Any) -> bool:
    return value is None or value == [] or value == {}


def _sort_key(value: Any) -> str:
    if isinstance(value, dict):
        return repr(sorted((k, _sort_key(v)) for k, v in value.items()))
    return repr(value)


def normalize_value(value: Any, kind: str, key: str) -> Any:
    """Normalize one attribute value for comparison."""
    if _is_empty(value):
        return None
    if isinstance(value, dict):
        normalized = {
            k: normalize_value(v, kind, k) for k, v in value.items() if not _is_empty(v)
        }
        return normalized or None
    if isinstance(value, list):
        items = [normalize_value(item, kind, key) for item in value]
        unordered = UNORDERED_ATTRIBUTES["*"] | UNORDERED_ATTRIBUTES.get(kind, frozenset())
        if key in unordered or key == "allowed_sources":
            items.sort(key=_sort_key)
        return items
    return value


def attribute_changes(
    kind: str, desired: dict[str, Any], observed: dict[str, Any]
) -> list[AttributeChange]:
    """Compare two attribute maps after normalization."""
    immutable = immutable_attributes(kind)
    changes: list[AttributeChange] = []
    for key in sorted(set(desired) | set(observed)):
        before = observed.get(key)
        after = desired.get(key)
        if normalize_value(before, kind, key) != normalize_value(after, kind, key):
            changes.append(
                AttributeChange(key=key, before=before, after=after, immutable=key in immutable)
            )
    return changes


def diff(
    desired: Resource,
    observed: ObservedStateRecord | None,
    strict: bool = False,
) -> PlannedAction:
    """Decide the action that brings observed state to the desired resource.

    Args:
        desired: Desired resource.
        observed: Its observed record, or None if it was never created.
        strict: Raise AttributeImmutableConflict instead of planning a replace.

    Returns:
        PlannedAction with action create, update, replace or no-op.
    """
    planned = PlannedAction(
        name=desired.name,
        kind=desired.kind.value,
        action=Action.CREATE,
        dependencies=sorted(desired.dependencies),
        force_destroy=desired.lifecycle.force_destroy,
        create_before_destroy=desired.lifecycle.create_before_destroy,
        resource=desired,
    )

    if observed is None:
        return planned

    planned.physical_id = observed.physical_id
    planned.deposed = list(observed.deposed)
    # Removing the force flag must still let this run tear down what it can
    planned.force_destroy = desired.lifecycle.force_destroy

    if observed.kind != desired.kind.value:
        planned.action = Action.REPLACE
        planned.reason = f"kind changed from {observed.kind}"
        # Displaced instances are deleted as the new kind
        planned.create_before_destroy = False
        if strict:
            raise AttributeImmutableConflict(desired.name, ["kind"])
        return planned

    planned.changes = attribute_changes(desired.kind.value, desired.attributes, observed.attributes)

    if not planned.changes:
        planned.action = Action.NO_OP
    elif planned.immutable_changes:
        if strict:
            raise AttributeImmutableConflict(desired.name, planned.immutable_changes)
        planned.action = Action.REPLACE
    else:
        planned.action = Action.UPDATE

    return planned


def destroy_action(record: ObservedStateRecord) -> PlannedAction:
    """Action for a resource that is no longer desired."""
    return PlannedAction(
        name=record.name,
        kind=record.kind,
        action=Action.DESTROY,
        dependencies=list(record.dependencies),
        force_destroy=record.force_destroy,
        physical_id=record.physical_id,
        deposed=list(record.deposed),
    )
