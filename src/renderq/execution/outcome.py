"""Outcomes of one job execution and the sink that records them.

The Connection Adapter and the Backup Poller never touch the job store
directly. They write through an ``ExecutionTarget``, which the orchestrator
implements once per queue (generation jobs and post-processing sub-states
evolve differently but react to the same backend signals).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

from renderq.core.errors import OutcomeKind
from renderq.core.models import OutputRef


@dataclass(frozen=True)
class Completed:
    output_ref: OutputRef

    @property
    def kind(self) -> OutcomeKind:
        return OutcomeKind.COMPLETED


@dataclass(frozen=True)
class Failed:
    """The backend rejected or failed the job. Terminal, surfaced to the user."""

    reason: str

    @property
    def kind(self) -> OutcomeKind:
        return OutcomeKind.FAILED


@dataclass(frozen=True)
class ConnectivityLost:
    """The backend could not be reached or the channel dropped. Recoverable."""

    reason: str

    @property
    def kind(self) -> OutcomeKind:
        return OutcomeKind.CONNECTIVITY_LOST


Outcome = Union[Completed, Failed, ConnectivityLost]


class ExecutionTarget(Protocol):
    """State sink for one executing unit of work."""

    @property
    def job_id(self) -> str: ...

    def is_terminal(self) -> bool:
        """Whether the unit already reached a terminal state locally."""
        ...

    def on_channel_open(self) -> None: ...

    def mark_started(self) -> None: ...

    def mark_progress(self, percent: int) -> None: ...

    def record_submission(self, external_job_id: str) -> None: ...

    def confirm_submission(self, external_job_id: str) -> None: ...

    async def finalize(self, output_ref: OutputRef) -> None:
        """Apply the success transitions, including any display delay."""
        ...

    def mark_failed(self, reason: str) -> None: ...

    def mark_timeout(self) -> None: ...


__all__ = [
    "Completed",
    "ConnectivityLost",
    "ExecutionTarget",
    "Failed",
    "Outcome",
]
