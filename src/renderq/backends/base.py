"""Abstract base for compute backends.

A compute backend exposes four things the orchestrator relies on: a
submission call, a per-client event channel, a durable status-by-id
lookup, and best-effort cancellation. Implementations raise
``BackendTransportError`` when the backend cannot be reached and
``BackendRejectedError`` when it refuses a request; nothing else is
expected to escape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from renderq.core.models import OutputRef


@dataclass(frozen=True)
class ExecutionStarted:
    """The backend began executing a submitted job."""

    external_job_id: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    """Step progress reported by one processing node."""

    value: int
    max: int
    node_id: str | None = None
    external_job_id: str | None = None

    @property
    def percent(self) -> int:
        """Progress as an integer percentage clamped to 0..100."""
        if self.max <= 0:
            return 0
        return max(0, min(100, (self.value * 100) // self.max))


@dataclass(frozen=True)
class ExecutingEvent:
    """The backend moved to ``node``; ``node`` is None once the job is done."""

    node: str | None
    external_job_id: str | None = None

    @property
    def is_completion(self) -> bool:
        return self.node is None


@dataclass(frozen=True)
class ExecutionErrorEvent:
    """The backend failed a job it had accepted."""

    message: str
    external_job_id: str | None = None
    node_id: str | None = None


BackendEvent = Union[ExecutionStarted, ProgressEvent, ExecutingEvent, ExecutionErrorEvent]


@dataclass
class StatusResult:
    """Answer of the durable status lookup for one external job id.

    An empty ``outputs`` list means the job is unknown to the backend or has
    not finished yet; the lookup does not distinguish the two.
    """

    external_job_id: str
    outputs: list[OutputRef] = field(default_factory=list)
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return bool(self.outputs)

    @property
    def first_output(self) -> OutputRef | None:
        return self.outputs[0] if self.outputs else None


class EventChannel(ABC):
    """Stream of events for one client session.

    Iterating yields ``BackendEvent`` objects. Iteration ends (or raises
    ``BackendTransportError``) when the channel closes for any reason, and
    the consumer treats a clean close like a dropped connection: both mean
    no further events will arrive.
    """

    def __aiter__(self) -> EventChannel:
        return self

    @abstractmethod
    async def __anext__(self) -> BackendEvent:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class ComputeBackend(ABC):
    """Abstract base class for compute backends."""

    @abstractmethod
    async def open_channel(self, client_id: str) -> EventChannel:
        """Open the event channel for ``client_id``.

        Raises:
            BackendTransportError: The channel could not be opened.
        """
        ...

    @abstractmethod
    async def submit(self, payload: dict[str, Any], client_id: str) -> str:
        """Submit a work payload and return the backend's job id.

        Events for the job are delivered on the channel opened with the
        same ``client_id``.

        Raises:
            BackendTransportError: The submission did not reach the backend.
            BackendRejectedError: The backend refused the payload.
        """
        ...

    @abstractmethod
    async def get_status(self, external_job_id: str) -> StatusResult:
        """Look up a job by id. Idempotent and safe to poll."""
        ...

    @abstractmethod
    async def interrupt(self) -> None:
        """Stop whatever the backend is currently executing."""
        ...

    @abstractmethod
    async def dequeue(self, external_job_ids: Sequence[str]) -> None:
        """Remove not-yet-started jobs from the backend's queue."""
        ...

    async def health_check(self) -> bool:
        """Whether the backend currently answers requests."""
        return True

    async def close(self) -> None:
        """Release client resources held by the backend."""
        return None

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""
        ...


__all__ = [
    "BackendEvent",
    "ComputeBackend",
    "EventChannel",
    "ExecutingEvent",
    "ExecutionErrorEvent",
    "ExecutionStarted",
    "ProgressEvent",
    "StatusResult",
]
