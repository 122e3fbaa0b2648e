"""CLI commands for renderflow using Typer and Rich.

Commands:
- import-plan: Load an approved plan from YAML
- render: Queue and execute a render run for a plan version
- retry: Re-queue a failed, canceled or QA-failed run
- status: Show detailed run information
- list: List runs in a table
- verify: Check a run's artifacts on disk
- recover: Sweep runs left running by a crashed process
- steps: Show the canonical step order and weights
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from renderflow import __version__, validate_dependencies
from renderflow.config import settings
from renderflow.db import async_session, init_database, shutdown
from renderflow.orchestrator.pipeline import RenderFlags
from renderflow.orchestrator.scheduler import RunScheduler, SchedulerError, create_scheduler
from renderflow.orchestrator.state import (
    STEP_MESSAGES,
    STEP_WEIGHTS,
    STEPS,
    RunStatus,
    can_retry,
    is_terminal,
    parse_status,
    parse_step,
)
from renderflow.schemas.run_state import parse_artifacts, parse_logs, parse_resume_state
from renderflow.services.events import InMemoryBroadcaster
from renderflow.services.plan_import import import_plan, load_plan_document
from renderflow.services.run_store import RunStore
from renderflow.services.verify import verify_artifacts

app = typer.Typer(name="renderflow", help="Render pipeline orchestrator for narrated vertical videos")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Configure process logging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@app.command(name="import-plan")
def import_plan_command(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML plan file"),
):
    """Import an approved plan (project, hook, outline and scenes) from YAML."""
    try:
        document = load_plan_document(path)
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid plan file {path}")
        console.print(str(e))
        raise typer.Exit(code=1)

    async def _import():
        await init_database()
        try:
            return await import_plan(async_session, document)
        finally:
            await shutdown()

    plan = asyncio.run(_import())
    console.print(f"[green]Imported plan version:[/green] {plan.id}")
    console.print(f"[green]Project:[/green] {plan.project_id}")
    console.print(f"Render it with: renderflow render {plan.id}")


@app.command()
def render(
    plan_version_id: str = typer.Argument(..., help="Plan version to render"),
    dry_run: Optional[bool] = typer.Option(
        None, "--dry-run/--no-dry-run", help="Use placeholder artifacts instead of paid calls"
    ),
    fail_step: Optional[str] = typer.Option(None, "--fail-step", help="Dry-run only: force this step to fail"),
    step_delay_ms: Optional[int] = typer.Option(None, "--step-delay-ms", help="Dry-run only: delay before each step"),
):
    """Queue a render run for a plan version and follow it to completion."""
    flags = _flags(dry_run, fail_step, step_delay_ms)
    if not flags.dry_run:
        # Fail-fast dependency validation
        try:
            validate_dependencies()
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)
    else:
        console.print("[yellow]Dry run:[/yellow] no provider calls, no MP4")

    asyncio.run(_with_scheduler(flags, lambda s: _render_async(s, plan_version_id)))


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Run to retry"),
    from_step: Optional[str] = typer.Option(
        None, "--from-step", help="Restart from this step (default: from the beginning)"
    ),
    dry_run: Optional[bool] = typer.Option(None, "--dry-run/--no-dry-run", help="Override dry-run mode"),
):
    """Re-queue a failed, canceled or QA-failed run and follow it."""
    if from_step and parse_step(from_step) is None:
        console.print(f"[yellow]Unknown step {from_step!r}, retrying from the beginning[/yellow]")
    flags = _flags(dry_run, None, None)
    asyncio.run(_with_scheduler(flags, lambda s: _retry_async(s, run_id, from_step)))


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run ID"),
    logs: int = typer.Option(10, "--logs", "-n", help="Number of recent log entries to show"),
):
    """Show detailed run status and information."""
    asyncio.run(_status_async(run_id, logs))


@app.command(name="list")
def list_runs(
    status_filter: Optional[str] = typer.Option(None, "--status", "-s", help="Only show runs in this status"),
    limit: int = typer.Option(50, "--limit", help="Maximum rows"),
):
    """List render runs, oldest first."""
    statuses = None
    if status_filter:
        try:
            statuses = [parse_status(status_filter)]
        except ValueError:
            console.print(f"[red]Error:[/red] Unknown status: {status_filter}")
            console.print(f"Allowed: {', '.join(s.value for s in RunStatus)}")
            raise typer.Exit(code=1)
    asyncio.run(_list_async(statuses, limit))


@app.command()
def verify(
    run_id: str = typer.Argument(..., help="Run ID"),
):
    """Verify a run's artifacts on disk."""
    passed = asyncio.run(_verify_async(run_id))
    if not passed:
        raise typer.Exit(code=1)


@app.command()
def recover():
    """Mark runs left running by a previous process as failed."""
    asyncio.run(_with_scheduler(RenderFlags.from_settings(), _recover_async))


@app.command()
def steps():
    """Show the canonical step order and progress weights."""
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim")
    table.add_column("Step")
    table.add_column("Weight", justify="right")
    table.add_column("Banner")
    for i, step in enumerate(STEPS, start=1):
        table.add_row(str(i), step.value, f"{STEP_WEIGHTS[step]}%", STEP_MESSAGES[step])
    console.print(table)


@app.command()
def version():
    """Show the renderflow version."""
    console.print(f"renderflow {__version__}")


def _flags(dry_run: Optional[bool], fail_step: Optional[str], step_delay_ms: Optional[int]) -> RenderFlags:
    """Resolve render flags from settings plus command-line overrides."""
    overrides = {}
    if dry_run is not None:
        overrides["dry_run"] = dry_run
    if fail_step is not None:
        overrides["dry_run_fail_step"] = fail_step
    if step_delay_ms is not None:
        overrides["dry_run_step_delay_ms"] = step_delay_ms
    flags = RenderFlags.from_settings(settings.render.model_copy(update=overrides))
    if (fail_step or step_delay_ms) and not flags.dry_run:
        console.print("[yellow]--fail-step and --step-delay-ms only apply with --dry-run[/yellow]")
    return flags


async def _with_scheduler(flags: RenderFlags, action) -> None:
    """Run an async action against a fresh scheduler, then dispose the engine."""
    await init_database()
    scheduler = create_scheduler(RunStore(async_session), broadcaster=InMemoryBroadcaster(), flags=flags)
    try:
        await action(scheduler)
    finally:
        await shutdown()


async def _follow(scheduler: RunScheduler, run_id: str) -> None:
    """Show live step and progress updates until the scheduler is idle."""
    queue = scheduler.broadcaster.subscribe(run_id)
    label = {"step": "Waiting...", "progress": 0}

    with console.status("[bold green]Waiting...") as spinner:

        async def consume():
            while True:
                event = await queue.get()
                if event.kind == "step":
                    label["step"] = event.data["message"]
                elif event.kind in ("progress", "state"):
                    label["progress"] = event.data.get("progress", label["progress"])
                elif event.kind == "log" and event.data["log"]["level"] != "info":
                    console.print(f"  {event.data['log']['message']}")
                spinner.update(f"[bold green]{label['step']} [dim]({label['progress']}%)")

        consumer = asyncio.create_task(consume())
        try:
            await scheduler.wait_idle()
        finally:
            consumer.cancel()
            scheduler.broadcaster.unsubscribe(run_id, queue)

    await _print_outcome(scheduler.store, run_id)


async def _print_outcome(store: RunStore, run_id: str) -> None:
    run = await store.find(run_id)
    if run is None:
        return
    if run.status == RunStatus.DONE.value:
        console.print(f"[green]✓[/green] Render complete: {run_id}")
        artifacts = parse_artifacts(run.artifacts_json, run_id)
        if artifacts.get("mp4Path"):
            console.print(f"[green]Output:[/green] {artifacts['mp4Path']}")
    elif not is_terminal(parse_status(run.status)):
        console.print(f"[yellow]Run is still {run.status}[/yellow] ({run_id})")
    else:
        color = _get_status_color(run.status)
        console.print(f"[{color}]✗ Run {run.status}[/{color}] ({run_id})")
        console.print(f"[yellow]You can retry with:[/yellow] renderflow retry {run_id}")


async def _render_async(scheduler: RunScheduler, plan_version_id: str) -> None:
    try:
        run = await scheduler.request_render(plan_version_id)
    except (SchedulerError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Created run:[/green] {run.id}")
    try:
        await _follow(scheduler, run.id)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Render interrupted. Recover and retry this run later with:[/yellow]")
        console.print(f"  renderflow recover && renderflow retry {run.id}")
        raise typer.Exit(code=130)


async def _retry_async(scheduler: RunScheduler, run_id: str, from_step: Optional[str]) -> None:
    try:
        await scheduler.retry(run_id, from_step)
    except SchedulerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[yellow]Retrying run:[/yellow] {run_id}")
    await _follow(scheduler, run_id)


async def _recover_async(scheduler: RunScheduler) -> None:
    report = await scheduler.recover()
    for run_id in report.failed:
        console.print(f"[red]Marked failed:[/red] {run_id}")
    if report.requeued:
        console.print(f"[yellow]Resuming {len(report.requeued)} queued run(s)...[/yellow]")
        await scheduler.wait_idle()
        for run_id in report.requeued:
            await _print_outcome(scheduler.store, run_id)
    if not report.failed and not report.requeued:
        console.print("[green]Nothing to recover[/green]")


async def _status_async(run_id: str, log_count: int) -> None:
    """Async implementation of status command."""
    await init_database()
    try:
        store = RunStore(async_session)
        run = await store.find(run_id)
        if not run:
            console.print(f"[red]Error:[/red] Run not found: {run_id}")
            raise typer.Exit(code=1)

        resume = parse_resume_state(run.resume_state_json, run.id)
        artifacts = parse_artifacts(run.artifacts_json, run.id)
        color = _get_status_color(run.status)

        info_lines = [
            f"[bold]ID:[/bold] {run.id}",
            f"[bold]Project:[/bold] {run.project_id}",
            f"[bold]Plan Version:[/bold] {run.plan_version_id}",
            f"[bold]Status:[/bold] [{color}]{run.status}[/{color}]",
            f"[bold]Progress:[/bold] {run.progress}%",
            f"[bold]Current Step:[/bold] {run.current_step or '-'}",
            f"[bold]Completed Steps:[/bold] {', '.join(s.value for s in resume.completed_steps) or '-'}",
            f"[bold]Created:[/bold] {run.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"[bold]Updated:[/bold] {run.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        ]

        cost = artifacts.get("costEstimate")
        if cost:
            info_lines.append(f"[bold]Estimated Cost:[/bold] ${cost.get('estimatedUsd', 0):.2f}")
        if artifacts.get("mp4Path"):
            info_lines.append(f"[bold]Output:[/bold] [green]{artifacts['mp4Path']}[/green]")
        qa = artifacts.get("qaResult")
        if qa and not qa.get("passed"):
            info_lines.append(f"[bold]QA:[/bold] [red]{qa.get('details')}[/red]")
        if can_retry(parse_status(run.status)):
            info_lines.append(f"[dim]Resume with: renderflow retry {run.id} --from-step <step>[/dim]")

        console.print(Panel("\n".join(info_lines), title="[bold]Run Status[/bold]", border_style="blue"))

        entries = parse_logs(run.logs_json, run.id)[-log_count:] if log_count > 0 else []
        for entry in entries:
            level_color = {"info": "white", "warn": "yellow", "error": "red"}[entry.level]
            console.print(f"[dim]{entry.timestamp}[/dim] [{level_color}]{entry.message}[/{level_color}]")
    finally:
        await shutdown()


async def _list_async(statuses, limit: int) -> None:
    """Async implementation of list command."""
    await init_database()
    try:
        runs = await RunStore(async_session).list_runs(statuses, limit=limit)
    finally:
        await shutdown()

    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Plan Version", style="dim")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Step")
    table.add_column("Created")

    for run in runs:
        color = _get_status_color(run.status)
        table.add_row(
            run.id[:8] + "...",
            run.plan_version_id[:8] + "...",
            f"[{color}]{run.status}[/{color}]",
            f"{run.progress}%",
            run.current_step or "-",
            run.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


async def _verify_async(run_id: str) -> bool:
    """Async implementation of verify command."""
    await init_database()
    try:
        store = RunStore(async_session)
        run = await store.find(run_id)
        if not run:
            console.print(f"[red]Error:[/red] Run not found: {run_id}")
            raise typer.Exit(code=1)
        project, _plan, scenes = await store.load_plan(run.plan_version_id)
    finally:
        await shutdown()

    artifacts = parse_artifacts(run.artifacts_json, run.id)
    result = await verify_artifacts(
        artifacts,
        scene_count=len(scenes),
        target_length_sec=project.target_length_sec,
        dry_run=bool(artifacts.get("dryRun")),
    )

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Message")
    for check in result.checks:
        mark = "[green]✓[/green]" if check.passed else "[red]✗[/red]"
        table.add_row(check.name, mark, check.message)
    console.print(table)
    console.print(
        f"{result.summary.passed}/{result.summary.total} checks passed"
        + ("" if result.passed else f", [red]{result.summary.failed} failed[/red]")
    )
    return result.passed


def _get_status_color(status: str) -> str:
    """Get Rich color for a run status.

    Color coding:
    - done: green
    - failed, qa_failed: red
    - running, queued: yellow
    - canceled: dim
    """
    if status == RunStatus.DONE.value:
        return "green"
    elif status in (RunStatus.FAILED.value, RunStatus.QA_FAILED.value):
        return "red"
    elif status in (RunStatus.RUNNING.value, RunStatus.QUEUED.value):
        return "yellow"
    elif status == RunStatus.CANCELED.value:
        return "dim"
    else:
        return "white"
