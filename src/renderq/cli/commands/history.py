"""History archive commands for the renderq CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from renderq.core.config import RenderqConfig
from renderq.core.errors import StorageError
from renderq.state.history import HistoryStats

from ..helpers import create_stores, load_config
from ..output import console, create_history_panel

history_app = typer.Typer(
    name="history",
    help="Inspect or clear the archive of finished batches.",
    no_args_is_help=True,
)

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML configuration file")


@history_app.command("stats")
def stats(config_file: Path | None = _CONFIG_OPTION) -> None:
    """Show archive statistics."""
    config = load_config(config_file)
    result = asyncio.run(_stats(config))
    console.print(create_history_panel(result))


async def _stats(config: RenderqConfig) -> HistoryStats:
    history, _ = create_stores(config)
    return await history.stats()


@history_app.command("clear")
def clear(
    config_file: Path | None = _CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete every archived batch."""
    config = load_config(config_file)
    if not yes and not typer.confirm("Delete the whole history archive?", default=False):
        raise typer.Exit(0)
    try:
        asyncio.run(_clear(config))
    except StorageError as e:
        console.print(f"[red]Could not clear history:[/red] {e}")
        raise typer.Exit(1) from None
    console.print("History cleared.")


async def _clear(config: RenderqConfig) -> None:
    history, _ = create_stores(config)
    await history.clear()
