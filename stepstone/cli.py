"""Command line interface for inspecting stepstone runs and jobs."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from .config import load_config
from .logging import configure_logging
from .persistence import get_repository
from .poller import ProgressPoller
from .progress import get_activity_log, get_progress_store

app = typer.Typer(help="CLI for stepstone workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting workflow runs")
job_app = typer.Typer(help="Commands for reading job progress")

app.add_typer(run_app, name="run")
app.add_typer(job_app, name="job")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """Stepstone CLI entry point."""
    config = load_config()
    configure_logging(log_level or config.log_level, json_output=config.log_json)


@run_app.command("list")
def run_list(
    status: Optional[str] = typer.Option(
        None, help="Only show runs in this status (running, completed, ...)"
    ),
) -> None:
    """
    List workflow runs with their current status.

    Example:
        stepstone run list
        # Output: 0b6c...e1    deep-research    running
        stepstone run list --status failed
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_name}\t{run.status}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run and the steps it has checkpointed.

    Example:
        stepstone run show 0b6c...e1
        # Output: Run 0b6c...e1 (deep-research): running
        #         Deadline: 2024-01-01 10:05:00+00:00
        #         - surface-research (1 attempt)
    """
    repo = get_repository()

    async def _load():
        run = await repo.get_run(run_id)
        steps = await repo.list_steps(run_id) if run else []
        return run, steps

    run, steps = asyncio.run(_load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id} ({run.workflow_name}): {run.status}")
    if run.job_id:
        typer.echo(f"Job: {run.job_id}")
    typer.echo(f"Deadline: {run.timeout_at}")
    if run.cancel_requested and not run.is_terminal:
        typer.echo("Cancellation requested")
    if run.error:
        typer.echo(f"Error: {run.error}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output)}")
    for record in steps:
        plural = "" if record.attempts == 1 else "s"
        typer.echo(f"- {record.step_name} ({record.attempts} attempt{plural})")


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Request cancellation; the run stops before its next step."""
    repo = get_repository()
    if not asyncio.run(repo.request_cancel(run_id)):
        typer.secho("Run not found or already finished", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Cancellation requested for {run_id}")


@job_app.command("show")
def job_show(job_id: str) -> None:
    """Print a job's progress snapshot and activities."""
    poller = ProgressPoller(get_progress_store(), get_activity_log())
    view = asyncio.run(poller.read(job_id))
    if view.snapshot is None:
        typer.echo("Job not found")
        raise typer.Exit(code=1)
    _echo_snapshot(view.snapshot)
    for activity in view.activities:
        _echo_activity(activity)


@job_app.command("watch")
def job_watch(
    job_id: str,
    interval: float = typer.Option(1.0, help="Seconds between polls"),
) -> None:
    """Poll a job until it reaches a terminal status."""
    poller = ProgressPoller(get_progress_store(), get_activity_log(), interval=interval)

    async def _watch():
        seen: dict[str, str] = {}
        last = None
        async for view in poller.poll(job_id):
            if view.snapshot is None:
                continue
            line = f"{view.snapshot.status} {view.snapshot.progress}%"
            if line != last:
                _echo_snapshot(view.snapshot)
                last = line
            for activity in view.activities:
                if seen.get(activity.id) != activity.status:
                    seen[activity.id] = activity.status
                    _echo_activity(activity)
        return last

    asyncio.run(_watch())


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Serve the progress read API with uvicorn."""
    import uvicorn

    from .server import create_app

    api = create_app(get_progress_store(), get_activity_log(), get_repository())
    uvicorn.run(api, host=host, port=port)


def _echo_snapshot(snapshot) -> None:
    typer.echo(f"Job {snapshot.job_id}: {snapshot.status} ({snapshot.progress}%)")
    if snapshot.title:
        typer.echo(f"Title: {snapshot.title}")
    if snapshot.error:
        typer.echo(f"Error: {snapshot.error}")
    if snapshot.sources:
        typer.echo(f"Sources: {len(snapshot.sources)}")


def _echo_activity(activity) -> None:
    typer.echo(f"- [{activity.status}] {activity.kind}: {activity.label}")


if __name__ == "__main__":
    app()
