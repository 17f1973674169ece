"""Tests for plan construction and ordering."""

from __future__ import annotations

from provider_mock import stack_document, web_stack

from converge.differ import Action
from converge.models import Resource
from converge.plan import build_destroy_plan, build_plan
from converge.state import ObservedStateRecord, StateStore


def materialize(state: StateStore, resources: list[Resource]) -> None:
    """Record resources as if a previous apply created them."""
    for resource in resources:
        state.put(
            ObservedStateRecord(
                name=resource.name,
                kind=resource.kind.value,
                physical_id=f"{resource.kind.value}-{resource.name}",
                attributes=resource.attributes,
                dependencies=sorted(resource.dependencies),
                force_destroy=resource.lifecycle.force_destroy,
            )
        )


def names(actions: list) -> list[str]:
    return [action.name for action in actions]


class TestBuildPlan:
    """Tests for build_plan()."""

    def test_all_creates_in_dependency_order(self) -> None:
        plan = build_plan(web_stack(), StateStore())

        assert plan.summary()["create"] == 12
        assert plan.has_changes
        order = names(plan.build_order())
        assert order.index("main") < order.index("public-a") < order.index("web-lt")
        assert order.index("web-lt") < order.index("web") < order.index("scale-up")
        assert plan.teardown_order() == []
        assert plan.cleanup_order() == []

    def test_unchanged_state_is_all_no_op(self) -> None:
        resources = web_stack()
        state = StateStore()
        materialize(state, resources)

        plan = build_plan(resources, state)
        assert not plan.has_changes
        assert plan.summary()["no-op"] == len(resources)
        assert plan.build_order() == []

    def test_removed_resources_destroyed_first(self) -> None:
        """Destroys lead the plan, dependents before dependencies."""
        state = StateStore()
        materialize(state, web_stack())

        plan = build_plan(web_stack(without={"scale-up", "cpu-high", "assets"}), state)
        destroys = [a for a in plan.actions if a.action == Action.DESTROY]
        assert names(plan.actions[: len(destroys)]) == names(destroys)
        assert set(names(destroys)) == {"scale-up", "cpu-high", "assets"}
        teardown = names(plan.teardown_order())
        assert teardown.index("cpu-high") < teardown.index("scale-up")

    def test_pending_deposed_counts_as_change(self) -> None:
        resources = web_stack()
        state = StateStore()
        materialize(state, resources)
        record = state.get("web-lt")
        assert record is not None
        record.deposed = ["lt-old"]
        state.put(record)

        plan = build_plan(resources, state)
        assert plan.has_changes
        assert names(plan.cleanup_order()) == ["web-lt"]

    def test_render(self) -> None:
        plan = build_plan(web_stack(), StateStore())
        lines = plan.render()
        assert len(lines) == 12
        assert all(line.startswith("create") for line in lines)


class TestReplacementCascade:
    """Tests for escalation of dependents of replaced resources."""

    def test_immutable_reference_cascades_replace(self) -> None:
        """A subnet pins its network, so a new network replaces the subnet."""
        state = StateStore()
        materialize(state, web_stack())

        document = stack_document(main={"cidr_block": "10.1.0.0/16"})
        plan = build_plan(web_stack(document), state)

        actions = {action.name: action for action in plan.actions}
        assert actions["main"].action == Action.REPLACE
        assert actions["public-a"].action == Action.REPLACE
        assert actions["public-a"].reason.startswith("main replaced")  # type: ignore[union-attr]
        assert actions["web-sg"].action == Action.REPLACE
        assert actions["web-lb"].action == Action.UPDATE
        assert actions["assets"].action == Action.NO_OP

    def test_create_first_travels_down_chains(self) -> None:
        """Old instances under a create-first replacement outlive it."""
        state = StateStore()
        materialize(state, web_stack())

        document = stack_document(main={"cidr_block": "10.1.0.0/16"})
        plan = build_plan(web_stack(document), state)

        actions = {action.name: action for action in plan.actions}
        # The load balancer keeps pointing at the subnet until it is updated
        assert actions["public-a"].create_before_destroy is True
        # and so does the network the old subnet sits in
        assert actions["main"].create_before_destroy is True
        # Nothing keeps the route table attached
        assert actions["public-rt"].create_before_destroy is False
        assert names(plan.teardown_order()) == ["public-rt"]
        cleanup = names(plan.cleanup_order())
        assert cleanup.index("public-a") < cleanup.index("main")

    def test_mutable_reference_reattaches_and_creates_first(self) -> None:
        """A new launch spec keeps the fleet, which re-attaches to it."""
        state = StateStore()
        materialize(state, web_stack())

        document = stack_document(**{"web-lt": {"image": "img-2"}})
        plan = build_plan(web_stack(document), state)

        launch_spec = plan.get("web-lt")
        fleet = plan.get("web")
        assert launch_spec is not None and fleet is not None
        assert launch_spec.action == Action.REPLACE
        assert launch_spec.create_before_destroy is True
        assert launch_spec.reason == "create before destroy, still referenced by web"
        assert fleet.action == Action.UPDATE
        assert fleet.reason == "re-attach to replaced web-lt"

        assert "web-lt" not in names(plan.teardown_order())
        build = names(plan.build_order())
        assert build.index("web-lt") < build.index("web")
        assert names(plan.cleanup_order()) == ["web-lt"]

    def test_declared_create_before_destroy(self) -> None:
        state = StateStore()
        materialize(state, web_stack())

        document = stack_document(assets={"bucket_name": "converge-assets-v2"})
        for resource in document["resources"]:
            if resource["name"] == "assets":
                resource["lifecycle"] = {"createBeforeDestroy": True}
        plan = build_plan(web_stack(document), state)

        assets = plan.get("assets")
        assert assets is not None
        assert assets.action == Action.REPLACE
        assert "assets" not in names(plan.teardown_order())
        assert names(plan.cleanup_order()) == ["assets"]

    def test_destroy_first_replace(self) -> None:
        state = StateStore()
        materialize(state, web_stack())

        document = stack_document(assets={"bucket_name": "converge-assets-v2"})
        plan = build_plan(web_stack(document), state)

        assert names(plan.teardown_order()) == ["assets"]
        assert "assets" in names(plan.build_order())
        assert plan.cleanup_order() == []


class TestBuildDestroyPlan:
    """Tests for build_destroy_plan()."""

    def test_dependents_first(self) -> None:
        state = StateStore()
        materialize(state, web_stack())

        plan = build_destroy_plan(state)
        order = names(plan.actions)
        assert len(order) == 12
        assert all(a.action == Action.DESTROY for a in plan.actions)
        assert order.index("cpu-high") < order.index("scale-up") < order.index("web")
        assert order.index("web") < order.index("web-lt") < order.index("public-a")
        assert order.index("main") > order.index("public-a")

    def test_empty_state(self) -> None:
        plan = build_destroy_plan(StateStore())
        assert plan.actions == []
        assert not plan.has_changes
