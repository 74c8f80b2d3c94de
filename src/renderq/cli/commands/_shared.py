"""Execution loop shared by ``run`` and ``session restore``.

Both commands end up with a live orchestrator that must be driven until
its queues drain, answering connectivity-loss pauses along the way, and
then torn down in the same order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import typer
from rich.live import Live

from renderq.backends.base import ComputeBackend
from renderq.core.logging import get_logger
from renderq.core.models import Job, JobStatus
from renderq.orchestrator.core import Orchestrator
from renderq.orchestrator.store import StoreEvent
from renderq.state.autosave import SnapshotAutosaver

from ..output import console, create_jobs_table, create_recovery_panel, summarize_jobs

_logger = get_logger("cli")


async def _confirm(message: str) -> bool:
    # typer.confirm blocks on stdin; keep the event loop running meanwhile
    return await asyncio.to_thread(typer.confirm, message, default=True)


async def drive(orchestrator: Orchestrator, *, live: bool = True) -> None:
    """Wait for the orchestrator to go idle, handling pauses until it stops.

    A paused batch is offered for resume; declining cancels its remaining
    jobs and lets the rest of the queue continue.
    """
    while True:
        if live and console.is_terminal:
            with Live(
                create_jobs_table(orchestrator.jobs),
                console=console,
                refresh_per_second=4,
            ) as display:

                def _refresh(_event: StoreEvent) -> None:
                    display.update(create_jobs_table(orchestrator.jobs))

                sub_id = orchestrator.store.subscribe(_refresh)
                try:
                    await orchestrator.wait_idle()
                finally:
                    orchestrator.store.unsubscribe(sub_id)
                display.update(create_jobs_table(orchestrator.jobs))
        else:
            await orchestrator.wait_idle()
            console.print(create_jobs_table(orchestrator.jobs))

        recovery = orchestrator.recovery
        if not recovery.is_paused:
            return

        console.print(create_recovery_panel(recovery))
        if await _confirm(f"Resume the remaining {recovery.remaining_count} job(s)?"):
            requeued = orchestrator.resume()
            _logger.info("cli.resumed", batch_id=recovery.paused_batch_id, jobs=len(requeued))
        else:
            removed = orchestrator.cancel_remaining()
            console.print(f"[yellow]Cancelled {len(removed)} paused job(s).[/yellow]")


def has_unfinished_work(orchestrator: Orchestrator) -> bool:
    return any(not job.is_terminal for job in orchestrator.jobs) or orchestrator.recovery.is_paused


async def finish_session(
    orchestrator: Orchestrator,
    autosaver: SnapshotAutosaver,
    backend: ComputeBackend,
) -> None:
    """Tear down in order: stop draining, persist, close the backend.

    A session whose jobs all reached a terminal state is archived and its
    snapshot cleared; anything unfinished stays saved for ``session restore``.
    """
    try:
        idle = not (orchestrator.is_generation_active or orchestrator.is_postprocess_active)
        if idle and not has_unfinished_work(orchestrator):
            archived = await orchestrator.discard_session()
            _logger.debug("cli.session_archived", batches=archived)
    finally:
        await orchestrator.shutdown()
        await autosaver.close(flush=True)
        await backend.close()


def print_summary(jobs: Sequence[Job], *, unfinished: bool) -> None:
    console.print(f"\n[bold]Done:[/bold] {summarize_jobs(jobs)}")
    failed = [j for j in jobs if j.status in (JobStatus.FAILED, JobStatus.TIMEOUT)]
    for job in failed:
        console.print(f"  [red]{job.id}[/red]: {job.error or job.status.value}")
    if unfinished:
        console.print(
            "[yellow]Unfinished work was saved.[/yellow] "
            "Continue it with [bold]renderq session restore[/bold]."
        )
