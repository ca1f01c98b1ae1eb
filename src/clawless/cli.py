"""Clawless command line interface."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import typer
from loguru import logger

from clawless.app.bootstrap import build_runtime, serve
from clawless.config import load_settings
from clawless.errors import ClawlessError, describe_error
from clawless.logging_utils import configure_logging
from clawless.scheduler.store import ScheduleStore, ScheduleType

app = typer.Typer(name="clawless", help="Bridge chat conversations to an ACP coding agent.", add_completion=False)
schedule_app = typer.Typer(help="Manage scheduled agent jobs.", add_completion=False)
app.add_typer(schedule_app, name="schedule")


def _workspace(workspace: Path | None) -> Path:
    return (workspace or Path.cwd()).resolve()


def _open_store(workspace: Path | None) -> ScheduleStore:
    settings = load_settings(_workspace(workspace))
    return ScheduleStore(settings.resolve_home() / "schedules.json", timezone=settings.timezone)


@app.command()
def gateway(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    platform: str | None = typer.Option(None, "--platform", help="telegram or discord"),
    agent: str | None = typer.Option(None, "--agent", help="gemini, opencode or custom"),
    model: str | None = typer.Option(None, "--model", help="Model passed to the agent"),
) -> None:
    """Serve the configured chat platform until interrupted."""
    configure_logging(profile="default")
    try:
        runtime = build_runtime(_workspace(workspace), agent=agent, model=model, platform=platform)
        asyncio.run(serve(runtime))
    except ClawlessError as exc:
        logger.error("gateway.failed error={}", describe_error(exc))
        raise typer.Exit(1) from exc
    except KeyboardInterrupt:
        logger.info("gateway.interrupted")


@app.command()
def run(
    message: str = typer.Argument(..., help="Prompt sent to the agent"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    agent: str | None = typer.Option(None, "--agent", help="gemini, opencode or custom"),
    model: str | None = typer.Option(None, "--model", help="Model passed to the agent"),
) -> None:
    """Run one prompt in a fresh agent session and stream the reply."""
    configure_logging(profile="chat")

    async def _run() -> str:
        runtime = build_runtime(_workspace(workspace), agent=agent, model=model)

        async def _echo(chunk: str) -> None:
            typer.echo(chunk, nl=False)

        return await runtime.run_prompt(message, _echo, label=f"{runtime.agent.log_token()}-cli")

    try:
        asyncio.run(_run())
    except ClawlessError as exc:
        typer.echo("")
        typer.echo(f"error: {describe_error(exc)}", err=True)
        raise typer.Exit(1) from exc
    typer.echo("")


@schedule_app.command("list")
def list_schedules(
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Show stored schedules."""
    schedules = _open_store(workspace).list()
    if not schedules:
        typer.echo("(no schedules)")
        return
    for schedule in schedules:
        trigger = schedule.cron_expression if schedule.type is ScheduleType.RECURRING else schedule.run_at
        last_run = schedule.last_run_at.isoformat() if schedule.last_run_at else "-"
        typer.echo(f"{schedule.id}  {schedule.type}  {trigger}  last_run={last_run}  {schedule.label}")


@schedule_app.command("add")
def add_schedule(
    message: str = typer.Argument(..., help="Task for the agent"),
    cron: str | None = typer.Option(None, "--cron", help="Crontab expression for a recurring job"),
    at: datetime | None = typer.Option(None, "--at", help="Run once at this ISO date and time"),  # noqa: B008
    description: str = typer.Option("", "--description", "-d"),
    chat_id: str | None = typer.Option(None, "--chat-id", help="Chat recorded with the job"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Add a schedule. A running gateway picks it up on its next start."""
    if (cron is None) == (at is None):
        typer.echo("error: pass exactly one of --cron or --at", err=True)
        raise typer.Exit(2)
    metadata = {"chat_id": chat_id} if chat_id else {}
    try:
        schedule = _open_store(workspace).create(
            message,
            type=ScheduleType.RECURRING if cron else ScheduleType.ONE_TIME,
            description=description,
            cron_expression=cron,
            run_at=at,
            metadata=metadata,
        )
    except ClawlessError as exc:
        typer.echo(f"error: {describe_error(exc)}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"created {schedule.id}")


@schedule_app.command("remove")
def remove_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Delete a schedule."""
    try:
        _open_store(workspace).delete(schedule_id)
    except ClawlessError as exc:
        typer.echo(f"error: {describe_error(exc)}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"removed {schedule_id}")
