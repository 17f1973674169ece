"""converge CLI.

Plan and apply desired infrastructure, inspect state, and run the
autoscaling controller.

Usage:
    converge plan                 # Show the computed action sequence
    converge apply                # Execute the plan
    converge destroy --yes        # Destroy everything in state
    converge state list           # Show observed state
    converge state migrate        # Upgrade the state file format
    converge autoscale --once     # Evaluate queued metric samples once
    converge run                  # Reconcile loop + autoscaler daemon

Exit codes:
    0  success (plan computed, apply fully succeeded)
    1  partial failure, or a state/configuration/provider problem
    2  invalid desired state (validation error, unknown reference, cycle)
"""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

import click

from .config import DEFAULT_PROVIDER, Config, ConfigurationError
from .dependency import CycleDetected, DependencyError
from .engine import ApplyReport, OutcomeStatus
from .main import Runtime, build_controller, build_runtime, run_daemon, setup_logging
from .models import Resource
from .plan import Plan, build_destroy_plan, build_plan
from .spec_loader import SpecLoadError, load_document
from .state import StateError, StateStore

EXIT_PARTIAL = 1
EXIT_INVALID = 2

ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "magenta",
    "destroy": "red",
    "no-op": None,
}


class InvalidDesiredState(click.ClickException):
    """The desired-state document is invalid or its graph cannot be ordered."""

    exit_code = EXIT_INVALID


OUTCOME_COLORS = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.BLOCKED: "yellow",
    OutcomeStatus.UNCHANGED: None,
}


def default_local_store(state_path: Path) -> Path:
    """Local provider persistence file kept next to the state file."""
    return state_path.with_name(f"{state_path.stem}.provider.json")


def get_config(ctx: click.Context) -> Config:
    config = ctx.obj["config"]
    assert isinstance(config, Config)
    return config


def get_runtime(ctx: click.Context) -> Runtime:
    """Build (once per invocation) the runtime from the resolved config."""
    runtime = ctx.obj.get("runtime")
    if runtime is None:
        try:
            runtime = build_runtime(get_config(ctx), ctx.obj.get("provider"))
        except (ConfigurationError, StateError) as e:
            raise click.ClickException(str(e)) from e
        ctx.obj["runtime"] = runtime
    return runtime


def load_resources(ctx: click.Context) -> list[Resource]:
    config = get_config(ctx)
    try:
        return load_document(config.spec_path, max_resources=config.max_resources_per_plan)
    except SpecLoadError as e:
        raise InvalidDesiredState(str(e)) from e


def compute_plan(resources: list[Resource], state: StateStore) -> Plan:
    try:
        return build_plan(resources, state)
    except CycleDetected as e:
        raise InvalidDesiredState(
            f"{e}\nFix the declared references so no resource depends on itself."
        ) from e
    except DependencyError as e:
        raise InvalidDesiredState(str(e)) from e


def print_plan(plan: Plan) -> None:
    for action in plan.actions:
        click.secho(f"  {action.describe()}", fg=ACTION_COLORS.get(action.action.value))
    summary = plan.summary()
    click.echo(
        "\nPlan: "
        + ", ".join(f"{count} to {name}" for name, count in summary.items() if name != "no-op")
        + f", {summary['no-op']} unchanged"
    )


def print_report(report: ApplyReport) -> None:
    for outcome in report.outcomes.values():
        click.secho(f"  {outcome.describe()}", fg=OUTCOME_COLORS.get(outcome.status))
    summary = report.summary()
    click.echo("\nApply: " + ", ".join(f"{count} {name}" for name, count in summary.items()))


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(path_type=Path),
    help="Desired-state YAML document (default: $CONVERGE_SPEC_PATH or infrastructure.yaml)",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    help="Observed state file (default: $CONVERGE_STATE_PATH or converge.state.json)",
)
@click.option("--provider", help="'local' or a 'module:factory' provider path")
@click.option(
    "--local-store",
    "local_store",
    type=click.Path(path_type=Path),
    help="Persistence file for the local provider (default: next to the state file)",
)
@click.option("--parallelism", type=int, help="Maximum concurrent provider calls")
@click.option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--json-logs/--plain-logs", default=False, help="Emit JSON logs")
@click.pass_context
def cli(
    ctx: click.Context,
    spec_path: Path | None,
    state_path: Path | None,
    provider: str | None,
    local_store: Path | None,
    parallelism: int | None,
    log_level: str | None,
    json_logs: bool,
) -> None:
    """converge: declarative infrastructure reconciliation.

    \b
    Quick Start:
        converge plan      # Preview changes
        converge apply     # Apply them
        converge state list
    """
    ctx.ensure_object(dict)
    try:
        config = Config.from_env()
        overrides: dict[str, object] = {"json_logs": json_logs}
        if spec_path is not None:
            overrides["spec_path"] = spec_path
        if state_path is not None:
            overrides["state_path"] = state_path
        if provider is not None:
            overrides["provider"] = provider
        if parallelism is not None:
            overrides["max_parallelism"] = parallelism
        if log_level is not None:
            overrides["log_level"] = log_level
        config = dataclasses.replace(config, **overrides)
        if config.provider == DEFAULT_PROVIDER and config.local_provider_path is None:
            config = dataclasses.replace(
                config,
                local_provider_path=local_store or default_local_store(config.state_path),
            )
        elif local_store is not None:
            config = dataclasses.replace(config, local_provider_path=local_store)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_level if log_level else "WARNING", config.json_logs)
    ctx.obj["config"] = config


# =============================================================================
# Plan / Apply / Destroy
# =============================================================================


@cli.command()
@click.pass_context
def plan(ctx: click.Context) -> None:
    """Show the actions needed to reach the desired state (read-only)."""
    resources = load_resources(ctx)
    try:
        state = StateStore(get_config(ctx).state_path)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    computed = compute_plan(resources, state)
    print_plan(computed)
    if not computed.has_changes:
        click.echo("No changes. Infrastructure matches the desired state.")


@cli.command()
@click.pass_context
def apply(ctx: click.Context) -> None:
    """Apply the plan; exits 1 if any resource failed or was blocked."""
    resources = load_resources(ctx)
    runtime = get_runtime(ctx)
    computed = compute_plan(resources, runtime.state)
    if not computed.has_changes:
        click.echo("No changes. Infrastructure matches the desired state.")
        return

    print_plan(computed)
    click.echo("")
    report = asyncio.run(runtime.engine.apply(computed))
    print_report(report)
    if not report.success:
        click.secho("Apply finished with failures; rerun apply to retry.", fg="red", err=True)
        ctx.exit(EXIT_PARTIAL)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Destroy every resource in state, dependents first."""
    runtime = get_runtime(ctx)
    computed = build_destroy_plan(runtime.state)
    if not computed.actions:
        click.echo("Nothing to destroy.")
        return

    print_plan(computed)
    if not yes:
        click.confirm("\nDestroy these resources?", abort=True)
    report = asyncio.run(runtime.engine.apply(computed))
    print_report(report)
    if not report.success:
        ctx.exit(EXIT_PARTIAL)


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and maintain the observed state file."""
    pass


@state.command("list")
@click.pass_context
def state_list(ctx: click.Context) -> None:
    """List resources recorded in state."""
    try:
        store = StateStore(get_config(ctx).state_path)
    except StateError as e:
        raise click.ClickException(str(e)) from e

    if len(store) == 0:
        click.echo("State is empty.")
        return
    for name, record in sorted(store.snapshot().items()):
        line = f"{record.kind:<15} {name:<30} {record.physical_id:<24} {record.status}"
        if record.deposed:
            line += f" (deposed: {', '.join(record.deposed)})"
        click.echo(line)


@state.command("migrate")
@click.pass_context
def state_migrate(ctx: click.Context) -> None:
    """Rewrite the state file in the current format version."""
    path = get_config(ctx).state_path
    if not path.exists():
        raise click.ClickException(f"State file not found: {path}")
    try:
        store = StateStore(path)
        if store.migrated:
            store.save()
    except StateError as e:
        raise click.ClickException(str(e)) from e

    if store.migrated:
        click.secho(f"Migrated {path} ({len(store)} resources)", fg="green")
    else:
        click.echo(f"{path} is already in the current format")


# =============================================================================
# Autoscaling / Daemon
# =============================================================================


@cli.command()
@click.option("--once", is_flag=True, help="Evaluate queued samples once and exit")
@click.pass_context
def autoscale(ctx: click.Context, once: bool) -> None:
    """Run the autoscaling controller against the configured provider."""
    resources = load_resources(ctx)
    runtime = get_runtime(ctx)
    try:
        controller = build_controller(runtime, resources)
    except ValueError as e:
        raise InvalidDesiredState(str(e)) from e
    if controller is None:
        raise click.ClickException("The configured provider does not supply metric samples")

    if once:
        results = asyncio.run(controller.evaluate_once())
        for result in results:
            click.echo(
                f"  {result.policy}: {result.fleet} {result.previous} -> {result.desired} "
                f"({result.status.value}{', clamped' if result.clamped else ''})"
            )
        if not results:
            click.echo("No scaling actions.")
        return

    try:
        asyncio.run(controller.run())
    except KeyboardInterrupt:
        controller.shutdown()


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the reconcile loop and autoscaler until interrupted."""
    config = get_config(ctx)
    setup_logging(config.log_level, json_logs=True)
    runtime = get_runtime(ctx)
    ctx.exit(asyncio.run(run_daemon(runtime)))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
