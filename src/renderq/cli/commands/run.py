"""Run command for the renderq CLI.

Submits one batch per prompt and drives the orchestrator until both
queues drain. State is autosaved while running, so an interrupted run can
be continued with ``renderq session restore``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from renderq.core.config import RenderqConfig
from renderq.orchestrator.core import Orchestrator
from renderq.state.autosave import SnapshotAutosaver

from ..helpers import create_backend, create_stores, load_config
from ..output import console
from ._shared import drive, finish_session, has_unfinished_work, print_summary


def run(
    prompts: list[str] = typer.Argument(
        ...,
        help="Prompt(s) to render; each becomes one batch",
    ),
    count: int | None = typer.Option(
        None,
        "--count",
        "-n",
        min=1,
        help="Images per prompt (default: generation.batch_size)",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file",
    ),
    upscale: bool = typer.Option(
        False,
        "--upscale",
        help="Post-process every image as soon as it completes",
    ),
    no_live: bool = typer.Option(
        False,
        "--no-live",
        help="Print the job table once at the end instead of a live view",
    ),
) -> None:
    """Render images for the given prompts."""
    config = load_config(config_file)
    if upscale:
        config.queue.auto_postprocess = True
    asyncio.run(_run_prompts(config, prompts, count, live=not no_live))


async def _run_prompts(
    config: RenderqConfig,
    prompts: list[str],
    count: int | None,
    *,
    live: bool,
) -> None:
    history, snapshots = create_stores(config)
    existing = await snapshots.load()
    if existing is not None and not existing.is_empty:
        console.print(
            "[yellow]A saved session exists.[/yellow] Continue it with "
            "[bold]renderq session restore[/bold] or archive it with "
            "[bold]renderq session discard[/bold]."
        )
        raise typer.Exit(1)

    backend = create_backend(config)
    orchestrator = Orchestrator(backend, config, history=history)
    autosaver = SnapshotAutosaver(
        orchestrator.store,
        snapshots,
        orchestrator.capture_snapshot,
        debounce=config.snapshot.debounce_seconds,
    )
    autosaver.start()

    try:
        for prompt in prompts:
            batch = orchestrator.submit(prompt, count=count)
            console.print(f"Queued batch {batch.batch_id} ({batch.source_request_id}): {prompt}")
        await drive(orchestrator, live=live)
    finally:
        jobs = list(orchestrator.jobs)
        unfinished = has_unfinished_work(orchestrator)
        await finish_session(orchestrator, autosaver, backend)
    print_summary(jobs, unfinished=unfinished)
