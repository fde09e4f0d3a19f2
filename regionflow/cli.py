"""
CLI interface for regionflow.

Rolls infrastructure out to (or removes it from) a list of regions. Every
mutation is shown as a change set summary and needs an interactive
confirmation; anything other than an explicit "yes" rejects it.
"""

import asyncio
import getpass
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from regionflow import __version__
from regionflow.domain.components.approval_gate import ApprovalGate
from regionflow.domain.errors import (
    ConfigurationError,
    OrchestratorError,
    RolloutFailedError,
    StaleApprovalError,
)
from regionflow.domain.models.approval import ApprovalDecision
from regionflow.domain.models.change_set import ChangeSet
from regionflow.domain.models.run_result import RolloutReport, RunOutcome
from regionflow.infrastructure.config.settings import OrchestratorSettings
from regionflow.orchestrator import RegionOrchestrator

EXIT_ALL_FAILED = 1
EXIT_CONFIGURATION = 2

_OUTCOME_MARK = {
    RunOutcome.Succeeded: "✓",
    RunOutcome.Failed: "✗",
    RunOutcome.Skipped: "-",
}


def _default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class ConsoleApprover:
    """Asks the operator to approve each change set on the terminal."""

    def __init__(self, actor: str) -> None:
        self.actor = actor

    def render(self, change_set: ChangeSet) -> str:
        lines = [
            "",
            f"Region:    {change_set.region}",
            f"Operation: {change_set.operation.value}",
            f"Change set {change_set.content_hash[:12]} (state version {change_set.state_version})",
        ]
        summary = change_set.summary()
        lines.append(
            "  " + ", ".join(f"{count} to {action}" for action, count in summary.items() if count)
            if any(summary.values())
            else "  no changes"
        )
        for change in change_set.changes:
            lines.append(f"    {change.action.value:<7} {change.resource}")
        provenance = change_set.parameters.provenance()
        if provenance:
            lines.append("Parameters:")
            for name, source in provenance.items():
                lines.append(f"    {name} ({source})")
        return "\n".join(lines)

    def _confirm(self, change_set: ChangeSet) -> bool:
        click.echo(self.render(change_set))
        try:
            return click.confirm(
                f"Approve {change_set.operation.value} of {change_set.region} as {self.actor}?",
                default=False,
            )
        except click.Abort:
            return False

    async def __call__(self, gate: ApprovalGate, pending_id: str, change_set: ChangeSet) -> None:
        approved = await asyncio.to_thread(self._confirm, change_set)
        decision = ApprovalDecision.Approved if approved else ApprovalDecision.Rejected
        try:
            await gate.decide(pending_id, self.actor, decision)
        except StaleApprovalError as e:
            click.echo(f"✗ {e}", err=True)


def _echo_report(report: RolloutReport) -> None:
    click.echo("")
    click.echo(f"{report.operation.value} summary:")
    for result in report.results:
        line = f"  {_OUTCOME_MARK[result.outcome]} {result.region:<20} {result.outcome.value}"
        if result.workspace_status is not None:
            line += f" [{result.workspace_status.value}]"
        if result.error:
            line += f": {result.error}"
        elif result.detail.get("reason"):
            line += f" ({result.detail['reason']})"
        click.echo(line)
        if result.unresolved_resources:
            click.echo(f"      unresolved: {', '.join(result.unresolved_resources)}")
        for hook_error in result.detail.get("hook_errors", []):
            click.echo(f"      hook failed: {hook_error}")


def _load_settings(ctx: click.Context) -> OrchestratorSettings:
    overrides = {key: value for key, value in ctx.obj["overrides"].items() if value is not None}
    try:
        return OrchestratorSettings(**overrides)
    except ValidationError as e:
        click.echo(f"✗ Invalid configuration: {e}", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e


def _build(ctx: click.Context, **kwargs: Any) -> RegionOrchestrator:
    factory = ctx.obj.get("factory", RegionOrchestrator)
    try:
        return factory(config=_load_settings(ctx), **kwargs)
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e


async def _run_operation(
    orchestrator: RegionOrchestrator,
    operation: str,
    regions: tuple[str, ...],
) -> RolloutReport:
    async with orchestrator:
        if operation == "destroy":
            return await orchestrator.destroy_all(regions)
        return await orchestrator.rollout(regions)


def _mutate(ctx: click.Context, operation: str, regions: tuple[str, ...], actor: str) -> None:
    orchestrator = _build(ctx, approver=ConsoleApprover(actor))
    try:
        report = asyncio.run(_run_operation(orchestrator, operation, regions))
    except RolloutFailedError as e:
        _echo_report(e.report)
        click.echo(f"\n✗ {e}", err=True)
        raise SystemExit(EXIT_ALL_FAILED) from e
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e
    except OrchestratorError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_ALL_FAILED) from e

    _echo_report(report)
    if any(result.outcome == RunOutcome.Failed for result in report.results):
        click.echo(f"\n{len(report.failed)} of {len(report.results)} regions failed", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="regionflow")
@click.option("--values-dir", type=click.Path(path_type=Path), help="Directory of values documents")
@click.option("--module-dir", type=click.Path(path_type=Path), help="Terraform root module")
@click.option("--state-backend", type=click.Choice(["memory", "redis"]), help="State backend")
@click.option("--redis-url", help="Redis URL for the redis state backend")
@click.option("--log-level", help="Logging level")
@click.option("--console-logs", is_flag=True, default=None, help="Human-readable logs instead of JSON")
@click.pass_context
def main(ctx, values_dir, module_dir, state_backend, redis_url, log_level, console_logs):
    """
    regionflow - approval-gated multi-region infrastructure rollouts.

    Settings come from REGIONFLOW_* environment variables; options override them.
    """
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "values_dir": values_dir,
        "terraform_module_dir": module_dir,
        "state_backend": state_backend,
        "redis_url": redis_url,
        "log_level": log_level,
        "json_logs": False if console_logs else None,
    }


@main.command("rollout")
@click.argument("regions", nargs=-1, required=True)
@click.option("--actor", envvar="REGIONFLOW_ACTOR", default=_default_actor, help="Approving operator")
@click.pass_context
def rollout(ctx, regions, actor):
    """Plan, approve and apply REGIONS one after another."""
    _mutate(ctx, "apply", regions, actor)


@main.command("destroy-all")
@click.argument("regions", nargs=-1, required=True)
@click.option("--actor", envvar="REGIONFLOW_ACTOR", default=_default_actor, help="Approving operator")
@click.pass_context
def destroy_all(ctx, regions, actor):
    """Destroy REGIONS, each behind its own approval."""
    _mutate(ctx, "destroy", regions, actor)


@main.command("status")
@click.argument("region")
@click.pass_context
def status(ctx, region):
    """Show the workspace status of REGION."""
    orchestrator = _build(ctx)

    async def _status():
        async with orchestrator:
            return await orchestrator.status(region)

    try:
        workspace = asyncio.run(_status())
    except OrchestratorError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_ALL_FAILED) from e
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e

    click.echo(f"region:        {workspace.region}")
    click.echo(f"status:        {workspace.status.value}")
    click.echo(f"partition key: {workspace.partition_key}")
    click.echo(f"locked:        {'yes' if workspace.is_locked else 'no'}")
    click.echo(f"updated at:    {workspace.updated_at.isoformat()}")


@main.command("regions")
@click.pass_context
def regions(ctx):
    """List regions that have a workspace."""
    orchestrator = _build(ctx)

    async def _regions():
        async with orchestrator:
            return await orchestrator.regions()

    try:
        known = asyncio.run(_regions())
    except OrchestratorError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_ALL_FAILED) from e

    if not known:
        click.echo("No workspaces yet.")
        return
    for region in known:
        click.echo(region)


if __name__ == "__main__":
    sys.exit(main())
