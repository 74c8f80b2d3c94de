"""Saved-session commands for the renderq CLI.

Subcommands:
- ``renderq session show``     display the saved snapshot
- ``renderq session discard``  archive completed work to history and clear it
- ``renderq session restore``  resolve unconfirmed submissions and continue
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from renderq.core.config import RenderqConfig
from renderq.orchestrator.core import Orchestrator
from renderq.state.autosave import SnapshotAutosaver

from ..helpers import create_backend, create_stores, load_config
from ..output import (
    console,
    create_jobs_table,
    create_recovery_panel,
    create_tasks_table,
    format_timestamp,
)
from ._shared import drive, finish_session, has_unfinished_work, print_summary

session_app = typer.Typer(
    name="session",
    help="Inspect, discard or restore the saved session.",
    no_args_is_help=True,
)

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML configuration file")


@session_app.command("show")
def show(config_file: Path | None = _CONFIG_OPTION) -> None:
    """Show the saved session."""
    config = load_config(config_file)
    asyncio.run(_show(config))


async def _show(config: RenderqConfig) -> None:
    _, snapshots = create_stores(config)
    snapshot = await snapshots.load()
    if snapshot is None or snapshot.is_empty:
        console.print("[dim]No saved session.[/dim]")
        return

    console.print(
        f"[bold]Session[/bold] {snapshot.session_id} "
        f"[dim](saved {format_timestamp(snapshot.saved_at)})[/dim]"
    )
    console.print(create_jobs_table(snapshot.jobs, title=None))
    if snapshot.submitted_tasks:
        console.print(create_tasks_table(snapshot.submitted_tasks))
    if snapshot.recovery.is_paused:
        console.print(create_recovery_panel(snapshot.recovery))
    console.print(f"Queued batches: {len(snapshot.queue)}")


@session_app.command("discard")
def discard(
    config_file: Path | None = _CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Archive completed images to history and clear the saved session."""
    config = load_config(config_file)
    if not yes and not typer.confirm("Discard the saved session?", default=False):
        raise typer.Exit(0)
    archived = asyncio.run(_discard(config))
    console.print(f"Session discarded; {archived} batch(es) archived to history.")


async def _discard(config: RenderqConfig) -> int:
    _, snapshots = create_stores(config)
    return await snapshots.discard()


@session_app.command("restore")
def restore(
    config_file: Path | None = _CONFIG_OPTION,
    no_live: bool = typer.Option(
        False,
        "--no-live",
        help="Print the job table once at the end instead of a live view",
    ),
) -> None:
    """Restore the saved session and continue its queued work."""
    config = load_config(config_file)
    asyncio.run(_restore(config, live=not no_live))


async def _restore(config: RenderqConfig, *, live: bool) -> None:
    history, snapshots = create_stores(config)
    snapshot = await snapshots.load()
    if snapshot is None or snapshot.is_empty:
        console.print("[dim]No saved session to restore.[/dim]")
        return

    backend = create_backend(config)
    orchestrator = Orchestrator(backend, config, history=history)
    autosaver = SnapshotAutosaver(
        orchestrator.store,
        snapshots,
        orchestrator.capture_snapshot,
        debounce=config.snapshot.debounce_seconds,
    )

    try:
        if snapshot.submitted_tasks:
            console.print(
                f"Checking {len(snapshot.submitted_tasks)} unconfirmed submission(s)..."
            )
        await orchestrator.restore(snapshot)
        autosaver.start()
        autosaver.schedule()
        await drive(orchestrator, live=live)
    finally:
        jobs = list(orchestrator.jobs)
        unfinished = has_unfinished_work(orchestrator)
        await finish_session(orchestrator, autosaver, backend)
    print_summary(jobs, unfinished=unfinished)
