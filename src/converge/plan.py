"""Plan construction.

A plan is the ordered list of per-resource actions for one engine run.
Creates, updates and replaces are ordered so a resource never precedes
anything it depends on; destroys are ordered the other way round.

Execution happens in three phases, each exposed here as an ordering:

- teardown: destroys, plus the destroy half of replacements that are not
  create-before-destroy, dependents first
- build: creates, updates and the create half of every replacement,
  dependencies first
- cleanup: deletion of instances displaced by create-before-destroy
  replacements (and any left over from earlier runs), dependents first
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from .dependency import DependencyGraph
from .differ import Action, PlannedAction, destroy_action, diff
from .models import Resource, immutable_attributes, index_by_name
from .state import ObservedStateRecord, StateStore

logger = logging.getLogger(__name__)


@dataclass
class Plan:
    """Ordered per-resource actions, owned by one engine run."""

    actions: list[PlannedAction] = field(default_factory=list)
    # Dependency edges among every name the plan touches
    graph: DependencyGraph = field(default_factory=DependencyGraph)

    def get(self, name: str) -> PlannedAction | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    @property
    def has_changes(self) -> bool:
        return any(
            action.action != Action.NO_OP or action.deposed for action in self.actions
        )

    def summary(self) -> dict[str, int]:
        """Count of actions by type."""
        counts = Counter(action.action.value for action in self.actions)
        return {action.value: counts.get(action.value, 0) for action in Action}

    def _topological(self) -> list[str]:
        return self.graph.topological_sort()

    def teardown_order(self) -> list[PlannedAction]:
        """Destroys and destroy-first replacements, dependents first."""
        by_name = {action.name: action for action in self.actions}
        selected = []
        for name in reversed(self._topological()):
            action = by_name.get(name)
            if action is None:
                continue
            if action.action == Action.DESTROY or (
                action.action == Action.REPLACE and not action.create_before_destroy
            ):
                selected.append(action)
        return selected

    def build_order(self) -> list[PlannedAction]:
        """Creates, updates and replacements, dependencies first."""
        by_name = {action.name: action for action in self.actions}
        return [
            by_name[name]
            for name in self._topological()
            if name in by_name
            and by_name[name].action in (Action.CREATE, Action.UPDATE, Action.REPLACE)
        ]

    def cleanup_order(self) -> list[PlannedAction]:
        """Resources with displaced instances to delete, dependents first."""
        by_name = {action.name: action for action in self.actions}
        return [
            by_name[name]
            for name in reversed(self._topological())
            if name in by_name
            and by_name[name].action != Action.DESTROY
            and (
                by_name[name].deposed
                or (
                    by_name[name].action == Action.REPLACE
                    and by_name[name].create_before_destroy
                )
            )
        ]

    def render(self) -> list[str]:
        """Human-readable lines, in plan order."""
        return [action.describe() for action in self.actions]


def _create_first(action: PlannedAction, referrer: str) -> None:
    action.create_before_destroy = True
    note = f"create before destroy, still referenced by {referrer}"
    action.reason = note if action.reason is None else f"{action.reason}; {note}"


def _cascade_replacements(
    planned: dict[str, PlannedAction],
    desired: dict[str, Resource],
    observed: dict[str, ObservedStateRecord],
    order: list[str],
) -> None:
    """Escalate dependents of replaced resources.

    A dependent whose reference to a replaced resource sits in an immutable
    attribute must be replaced too; otherwise an unchanged dependent is
    updated so it re-attaches to the new instance. A replaced resource that
    keeps attached dependents is switched to create-before-destroy, since
    the old instance cannot be deleted while still referenced. The same
    holds under a create-before-destroy replacement, whose old instance
    lives until cleanup.
    """

    def can_create_first(dep: str) -> bool:
        previous = observed.get(dep)
        return (
            planned[dep].action == Action.REPLACE
            and not planned[dep].create_before_destroy
            and previous is not None
            and previous.kind == planned[dep].kind
        )

    for name in order:
        action = planned[name]
        resource = desired[name]
        if action.action in (Action.CREATE, Action.REPLACE):
            continue
        replaced_deps = [
            dep
            for dep in sorted(resource.references)
            if dep in planned and planned[dep].action == Action.REPLACE
        ]
        if not replaced_deps:
            continue
        immutable = immutable_attributes(resource.kind)
        for dep in replaced_deps:
            keys = resource.attributes_referencing(dep)
            if keys & immutable:
                action.action = Action.REPLACE
                action.reason = f"{dep} replaced"
                break
        else:
            if action.action == Action.NO_OP:
                action.action = Action.UPDATE
                action.reason = f"re-attach to replaced {', '.join(replaced_deps)}"
            for dep in replaced_deps:
                if can_create_first(dep):
                    _create_first(planned[dep], name)

    # Dependents first, so the switch travels down whole chains
    for name in reversed(order):
        action = planned[name]
        if action.action != Action.REPLACE or not action.create_before_destroy:
            continue
        for dep in sorted(desired[name].references):
            if dep in planned and can_create_first(dep):
                _create_first(planned[dep], name)


def build_plan(resources: Iterable[Resource], state: StateStore) -> Plan:
    """Diff desired resources against observed state and order the result.

    Raises:
        CycleDetected: If the desired dependency relation has a cycle.
        UnknownReference: If a resource depends on an undeclared name.
    """
    desired = index_by_name(resources)
    desired_graph = DependencyGraph.from_resources(desired.values())
    order = desired_graph.topological_sort()

    observed = state.snapshot()
    planned: dict[str, PlannedAction] = {
        name: diff(desired[name], observed.get(name)) for name in order
    }
    _cascade_replacements(planned, desired, observed, order)

    # Resources in state but no longer desired
    removed = {name: record for name, record in observed.items() if name not in desired}
    for name, record in removed.items():
        planned[name] = destroy_action(record)

    combined = DependencyGraph()
    for name in order:
        combined.add_node(name, list(desired_graph.nodes[name].depends_on))
    removed_graph = DependencyGraph.from_mapping(
        {name: record.dependencies for name, record in observed.items()}
    )
    for name in removed:
        combined.add_node(name, list(removed_graph.nodes[name].depends_on))

    # Destroys first (dependents before dependencies), then the rest in order
    destroy_names = [
        name for name in reversed(removed_graph.topological_sort()) if name in removed
    ]
    actions = [planned[name] for name in destroy_names] + [planned[name] for name in order]

    plan = Plan(actions=actions, graph=combined)
    logger.info("Plan computed", extra={"summary": plan.summary()})
    return plan


def build_destroy_plan(state: StateStore) -> Plan:
    """Plan that destroys every resource in state, dependents first."""
    observed = state.snapshot()
    graph = DependencyGraph.from_mapping(
        {name: record.dependencies for name, record in observed.items()}
    )
    order = list(reversed(graph.topological_sort()))
    plan = Plan(actions=[destroy_action(observed[name]) for name in order], graph=graph)
    logger.info("Destroy plan computed", extra={"summary": plan.summary()})
    return plan
