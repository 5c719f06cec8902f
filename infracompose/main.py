"""
infracompose — CLI entrypoint.

Usage:
    infracompose --help
    infracompose plan
    infracompose deploy --stacks Infrastructure
    infracompose pipeline run ServerDeploy/server
    infracompose status
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

import click

from infracompose import __version__
from infracompose.core.observability.logging_config import resolve_level, setup_logging

_STATUS_COLORS = {
    "ok": "green",
    "completed": "green",
    "materialized": "green",
    "succeeded": "green",
    "partial": "yellow",
    "skipped": "yellow",
    "cancelled": "yellow",
    "running": "yellow",
    "failed": "red",
}


def _split_stacks(values: tuple[str, ...]) -> list[str] | None:
    """Accept both ``--stacks A --stacks B`` and ``--stacks A,B``."""
    names = [n.strip() for value in values for n in value.split(",") if n.strip()]
    return names or None


def _emit_json(data: dict[str, Any], exit_code: int) -> None:
    click.echo(json.dumps(data, indent=2, default=str))
    if exit_code:
        sys.exit(exit_code)


def _fail(message: str, exit_code: int) -> None:
    click.secho(f"❌ {message}", fg="red")
    sys.exit(exit_code)


@click.group()
@click.version_option(version=__version__, prog_name="infracompose")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to infra.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """infracompose — compose, order and deploy infrastructure stacks."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("IC_LOG_FILE"),
        log_file_level=os.environ.get("IC_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


# ── Plan / deploy / destroy ─────────────────────────────────────────


@cli.command()
@click.option("--stacks", "-s", "stacks", multiple=True, help="Stacks to include (repeat or comma-separate).")
@click.option("--destroy", is_flag=True, help="Plan a teardown instead of a deploy.")
@click.option("--cascade", is_flag=True, help="With --destroy, include stacks that import from the selected ones.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    stacks: tuple[str, ...],
    destroy: bool,
    cascade: bool,
    as_json: bool,
) -> None:
    """Show what deploy (or destroy) would do, in order."""
    from infracompose.core.use_cases.deploy import plan_stacks

    result = plan_stacks(
        config_path=ctx.obj.get("config_path"),
        stacks=_split_stacks(stacks),
        destroy=destroy,
        cascade=cascade,
    )

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.error:
        _fail(result.error, result.exit_code)

    the_plan = result.plan
    assert the_plan is not None
    verb = "Destroy" if destroy else "Deploy"
    click.secho(
        f"\n📋 {verb} plan ({len(the_plan.order)} stacks, {the_plan.total_resources} resources)",
        fg="cyan",
        bold=True,
    )
    if not the_plan.order:
        click.echo("   Nothing to do.")

    action_marks = {"create": "+", "update": "~", "unchanged": "=", "destroy": "-"}
    action_colors = {"create": "green", "update": "yellow", "unchanged": None, "destroy": "red"}
    for position, name in enumerate(the_plan.order, start=1):
        click.secho(f"\n   {position}. {name}", bold=True)
        for item in the_plan.resources.get(name, []):
            mark = action_marks[item.action]
            condition = f"  (when {item.condition})" if item.condition else ""
            click.secho(f"     {mark} {item.resource_id}", fg=action_colors[item.action], nl=False)
            click.echo(f" [{item.kind}]{condition}")
    click.echo()


def _print_report(ctx: click.Context, result: Any, verb: str) -> None:
    report = result.report
    assert report is not None
    mock_label = "[mock] " if ctx.obj.get("mock") else ""
    click.secho(f"\n⚡ {mock_label}{verb} — {report.operation_id}", fg="cyan", bold=True)

    for outcome in report.outcomes.values():
        color = _STATUS_COLORS.get(outcome.status, "white")
        marker = {"completed": "✓", "failed": "✗"}.get(outcome.status, "⊘")
        click.secho(f"\n   {marker} {outcome.name}", fg=color, bold=True, nl=False)
        click.echo(f"  {outcome.status}")

        for receipt in outcome.receipts:
            timing = f" ({receipt.duration_ms}ms)" if receipt.duration_ms else ""
            if receipt.ok:
                label = "=" if receipt.metadata.get("reused") else "✓"
                click.secho(f"     {label} {receipt.resource_id}", fg="green", nl=False)
                click.echo(timing)
                if ctx.obj.get("verbose") and receipt.output:
                    click.echo(f"       │ {receipt.output}")
            elif receipt.failed:
                click.secho(f"     ✗ {receipt.resource_id}", fg="red", nl=False)
                click.echo(timing)
                if receipt.error:
                    for line in receipt.error.split("\n")[:5]:
                        click.echo(f"       │ {line}")
            else:
                click.secho(f"     ⊘ {receipt.resource_id} ", fg="yellow", nl=False)
                click.echo(f"({receipt.output})")

        if outcome.error and not outcome.receipts:
            click.echo(f"       │ {outcome.error}")

    click.echo()
    color = _STATUS_COLORS.get(report.status, "white")
    click.secho(f"   Status: {report.status}", fg=color, bold=True, nl=False)
    click.echo(
        f" | completed {len(report.completed)}"
        f" | failed {len(report.failed)}"
        f" | skipped {len(report.skipped)}"
        f" | {report.duration_ms}ms"
    )
    click.echo()


@cli.command()
@click.option("--stacks", "-s", "stacks", multiple=True, help="Stacks to deploy (repeat or comma-separate).")
@click.option("--mock", is_flag=True, help="Use the mock adapter (nothing is provisioned).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(ctx: click.Context, stacks: tuple[str, ...], mock: bool, as_json: bool) -> None:
    """Deploy stacks in dependency order.

    Stacks the selected ones import from are deployed too. Resources
    that are unchanged since the last successful deploy are reused.

    Examples:

        infracompose deploy

        infracompose deploy --stacks ServerDeploy,UIDeploy

        infracompose deploy --mock
    """
    from infracompose.core.use_cases.deploy import deploy_stacks

    ctx.obj["mock"] = mock
    result = deploy_stacks(
        config_path=ctx.obj.get("config_path"),
        stacks=_split_stacks(stacks),
        mock_mode=mock,
    )

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.report is None:
        _fail(result.error or "Deploy failed", result.exit_code)

    _print_report(ctx, result, "deploy")
    if result.exit_code:
        sys.exit(result.exit_code)


@cli.command()
@click.option("--stacks", "-s", "stacks", multiple=True, help="Stacks to destroy (repeat or comma-separate).")
@click.option("--mock", is_flag=True, help="Use the mock adapter (nothing is deleted).")
@click.option("--cascade", is_flag=True, help="Also destroy stacks that import from the selected ones.")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(
    ctx: click.Context,
    stacks: tuple[str, ...],
    mock: bool,
    cascade: bool,
    yes: bool,
    as_json: bool,
) -> None:
    """Destroy deployed stacks, dependents first.

    Refuses when a deployed stack still imports from one being
    destroyed; include it in --stacks, pass --cascade, or destroy it
    first.
    """
    from infracompose.core.use_cases.deploy import destroy_stacks

    names = _split_stacks(stacks)
    if not yes and not as_json:
        target = ", ".join(names) if names else "ALL deployed stacks"
        if names and cascade:
            target += " and their dependents"
        click.confirm(f"Destroy {target}?", abort=True)

    ctx.obj["mock"] = mock
    result = destroy_stacks(
        config_path=ctx.obj.get("config_path"),
        stacks=names,
        mock_mode=mock,
        cascade=cascade,
    )

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.report is None:
        _fail(result.error or "Destroy failed", result.exit_code)

    _print_report(ctx, result, "destroy")
    if result.exit_code:
        sys.exit(result.exit_code)


# ── Status ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show declared stacks and their deployment state."""
    from infracompose.core.use_cases.status import get_status

    result = get_status(config_path=ctx.obj.get("config_path"))

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.error:
        _fail(result.error, result.exit_code)

    composition = result.composition
    assert composition is not None
    quiet = ctx.obj.get("quiet", False)

    if not quiet:
        click.secho(f"\n📋 {composition.project_name}", fg="cyan", bold=True)
        if composition.description:
            click.echo(f"   {composition.description}")
        click.echo(f"   Environment: {composition.settings.environment}")
        click.echo()

    click.secho(f"   Stacks: {len(result.stacks)}", fg="white", bold=True)
    for row in result.stacks:
        color = _STATUS_COLORS.get(row.status, "white")
        undeclared = "  (no longer declared)" if not row.declared else ""
        click.echo(f"     • {row.name} ", nl=False)
        click.secho(row.status, fg=color, nl=False)
        click.echo(f"  {row.resources_live}/{row.resources_total} live{undeclared}")
        if row.last_error and row.status == "failed":
            click.echo(f"       │ {row.last_error}")

    if result.adapters and not quiet:
        click.echo()
        click.secho(f"   Adapters: {len(result.adapters)}", fg="white", bold=True)
        for name, info in result.adapters.items():
            icon = "✅" if info["available"] else "❌"
            click.echo(f"     {icon} {name} ({', '.join(info['kinds'])})")

    manifest = result.manifest
    if manifest and manifest.last_operation.operation_id:
        op = manifest.last_operation
        click.echo()
        click.secho("   Last operation:", fg="white", bold=True)
        click.echo(f"     {op.command} {op.operation_id} — ", nl=False)
        click.secho(op.status, fg=_STATUS_COLORS.get(op.status, "white"))
        if op.ended_at:
            click.echo(f"     at {op.ended_at}")

    click.echo()


# ── Pipelines ───────────────────────────────────────────────────────


@cli.group()
def pipeline() -> None:
    """Build/deploy pipeline commands."""


@pipeline.command("run")
@click.argument("key")
@click.option("--mock", is_flag=True, help="Use the mock stage runner.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def pipeline_run(ctx: click.Context, key: str, mock: bool, as_json: bool) -> None:
    """Run pipeline KEY ('stack/pipeline') stage by stage."""
    from infracompose.core.use_cases.pipeline import run_stack_pipeline

    result = run_stack_pipeline(key, config_path=ctx.obj.get("config_path"), mock_mode=mock)

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.run is None:
        _fail(result.error or "Pipeline failed", result.exit_code)

    run = result.run
    assert run is not None
    click.secho(f"\n🚀 {key} — {result.operation_id}", fg="cyan", bold=True)
    for stage in run.stages:
        color = _STATUS_COLORS.get(stage.status.value, "white")
        marker = {"succeeded": "✓", "failed": "✗"}.get(stage.status.value, "⊘")
        click.secho(f"   {marker} {stage.stage.name}", fg=color, nl=False)
        attempts = f" ({stage.attempts} attempts)" if stage.attempts > 1 else ""
        click.echo(f"  [{stage.stage.action.value}] {stage.status.value}{attempts}")
        if stage.output and ctx.obj.get("verbose"):
            click.echo(f"     │ {stage.output.location}")
        if stage.error:
            click.echo(f"     │ {stage.error}")
    click.echo()

    if result.exit_code:
        sys.exit(result.exit_code)


@pipeline.command("status")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def pipeline_status(ctx: click.Context, as_json: bool) -> None:
    """Show every pipeline and its last run."""
    from infracompose.core.use_cases.pipeline import get_pipeline_status

    result = get_pipeline_status(config_path=ctx.obj.get("config_path"))

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if result.error:
        _fail(result.error, result.exit_code)

    if not result.pipelines:
        click.echo("No pipelines declared.")
        return

    click.secho(f"\n🚀 Pipelines: {len(result.pipelines)}", fg="cyan", bold=True)
    for item in result.pipelines:
        click.echo(f"   • {item['key']} ", nl=False)
        click.secho(item["status"], fg=_STATUS_COLORS.get(item["status"], "white"))
        for name in item["stages"]:
            click.echo(f"       {name}: {item['stage_status'].get(name, 'pending')}")
        if item["error"]:
            click.echo(f"       │ {item['error']}")
    click.echo()


# ── Config ──────────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Composition file commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate infra.yml and the stack dependency graph."""
    from infracompose.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        _emit_json(result.to_dict(), result.exit_code)
        return

    if not result.valid:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")
        click.echo()
        sys.exit(result.exit_code)

    composition = result.composition
    assert composition is not None
    click.secho("✅ Configuration is valid", fg="green", bold=True)
    click.echo(f"   Project: {composition.project_name}")
    click.echo(f"   Stacks: {len(composition.stacks)}")
    click.echo(f"   Deploy order: {' → '.join(result.order)}")
    pipelines = [p.key for s in composition.stacks for p in s.pipelines]
    if pipelines:
        click.echo(f"   Pipelines: {', '.join(pipelines)}")
    click.echo()


if __name__ == "__main__":
    cli()
