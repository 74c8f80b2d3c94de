"""Rich output formatting for the renderq CLI.

Status colours, the job table shown while queues drain, and the panels
used for the pause prompt and for history statistics all live here so
every command renders the same state the same way.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from renderq.core.models import Job, JobStatus, PostProcessStatus, RecoveryState, SubmittedTask
from renderq.state.history import HistoryStats

# Command modules print through this console
console = Console()


class StatusColors:
    """Colour per status value."""

    JOB_STATUS: dict[JobStatus, str] = {
        JobStatus.QUEUE: "yellow",
        JobStatus.GENERATING: "blue",
        JobStatus.REVEALING: "cyan",
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.PAUSED: "magenta",
        JobStatus.RECOVERING: "bright_blue",
        JobStatus.TIMEOUT: "red",
    }

    POST_STATUS: dict[PostProcessStatus, str] = {
        PostProcessStatus.NONE: "dim",
        PostProcessStatus.QUEUED: "yellow",
        PostProcessStatus.UPSCALING: "blue",
        PostProcessStatus.COMPLETED: "green",
    }

    @classmethod
    def get_job_color(cls, status: JobStatus) -> str:
        return cls.JOB_STATUS.get(status, "white")


def format_status(status: JobStatus) -> str:
    color = StatusColors.get_job_color(status)
    return f"[{color}]{status.value}[/{color}]"


def format_post_status(job: Job) -> str:
    if job.post_status is PostProcessStatus.NONE:
        return "-"
    color = StatusColors.POST_STATUS[job.post_status]
    text = job.post_status.value
    if job.post_status is PostProcessStatus.UPSCALING:
        text = f"{text} {job.post_progress}%"
    return f"[{color}]{text}[/{color}]"


def format_timestamp(dt: datetime | None) -> str:
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def _job_detail(job: Job) -> str:
    if job.status is JobStatus.COMPLETED and job.output_ref is not None:
        ref = job.output_ref
        return f"{ref.subfolder}/{ref.filename}" if ref.subfolder else ref.filename
    if job.error:
        return f"[red]{job.error}[/red]"
    return ""


def create_jobs_table(jobs: Sequence[Job], title: str | None = "Jobs") -> Table:
    """Table of jobs in batch order with status, progress and artifact."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Batch", justify="right", style="dim")
    table.add_column("Job", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Seed", justify="right", style="dim")
    table.add_column("Upscale")
    table.add_column("Output")

    for job in sorted(jobs, key=lambda j: (j.batch_id, j.index)):
        progress = f"{job.progress}%" if job.status is JobStatus.GENERATING else ""
        table.add_row(
            str(job.batch_id),
            job.id,
            format_status(job.status),
            progress,
            str(job.seed) if job.seed is not None else "-",
            format_post_status(job),
            _job_detail(job),
        )
    return table


def create_tasks_table(tasks: Sequence[SubmittedTask]) -> Table:
    table = Table(title="Unconfirmed submissions", show_header=True, header_style="bold")
    table.add_column("External id", style="cyan")
    table.add_column("Batch", justify="right")
    table.add_column("Jobs")
    table.add_column("Status")
    for task in tasks:
        table.add_row(
            task.external_job_id,
            str(task.batch_id),
            ", ".join(task.job_ids),
            task.ack_status.value,
        )
    return table


def create_recovery_panel(recovery: RecoveryState) -> Panel:
    """Panel describing a batch frozen by connectivity loss."""
    lines = [
        f"[bold]Batch:[/bold] {recovery.paused_batch_id}",
        f"[bold]Remaining jobs:[/bold] {recovery.remaining_count}",
    ]
    if recovery.saved_params is not None:
        lines.append(f"[bold]Prompt:[/bold] {recovery.saved_params.prompt}")
    if recovery.reason:
        lines.append(f"[bold]Reason:[/bold] {recovery.reason}")
    return Panel(
        "\n".join(lines),
        title="[magenta]Connection lost[/magenta]",
        border_style="magenta",
    )


def create_history_panel(stats: HistoryStats) -> Panel:
    lines = [
        f"[bold]Batches:[/bold] {stats.total_batches}",
        f"[bold]Artifacts:[/bold] {stats.total_artifacts}",
        f"[bold]Oldest:[/bold] {format_timestamp(stats.oldest)}",
        f"[bold]Newest:[/bold] {format_timestamp(stats.newest)}",
    ]
    return Panel("\n".join(lines), title="History", border_style="blue")


def summarize_jobs(jobs: Sequence[Job]) -> str:
    """One-line count of jobs per status, e.g. ``3 completed, 1 failed``."""
    counts: dict[JobStatus, int] = {}
    for job in jobs:
        counts[job.status] = counts.get(job.status, 0) + 1
    if not counts:
        return "no jobs"
    return ", ".join(
        f"{count} {status.value}" for status, count in counts.items()
    )


__all__ = [
    "StatusColors",
    "console",
    "create_history_panel",
    "create_jobs_table",
    "create_recovery_panel",
    "create_tasks_table",
    "format_post_status",
    "format_status",
    "format_timestamp",
    "summarize_jobs",
]
