"""Shared test helpers for renderq tests.

``FakeBackend`` is a scriptable in-memory compute backend. Each submission
consumes one behaviour from ``plan`` (falling back to ``default``):

    COMPLETE  started, progress and completion events; status has an output
    SILENT    no events at all, but the status lookup has an output
    DROP      the event channel closes right after submission
    ERROR     started, then an execution error event
    HANG      nothing happens and the status lookup stays empty
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from renderq.backends.base import (
    BackendEvent,
    ComputeBackend,
    EventChannel,
    ExecutingEvent,
    ExecutionErrorEvent,
    ExecutionStarted,
    ProgressEvent,
    StatusResult,
)
from renderq.backends.workflow import SAMPLER_NODE, UPSCALE_LOAD_NODE
from renderq.core.config import (
    GenerationConfig,
    QueueConfig,
    RenderqConfig,
    TimeoutConfig,
)
from renderq.core.models import (
    Job,
    JobStatus,
    OutputRef,
    SavedParams,
)
from renderq.orchestrator.store import JobStore, StoreEvent

COMPLETE = "complete"
SILENT = "silent"
DROP = "drop"
ERROR = "error"
HANG = "hang"

_CLOSED = object()


class FakeChannel(EventChannel):
    """Event channel fed by the test through ``push``."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, *events: BackendEvent) -> None:
        for event in events:
            self._queue.put_nowait(event)

    def drop(self) -> None:
        """Close from the backend side; queued events are still delivered."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __anext__(self) -> BackendEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.drop()


class FakeBackend(ComputeBackend):
    """Scriptable compute backend recording every call."""

    def __init__(self, plan: Sequence[str] = (), *, default: str = COMPLETE) -> None:
        self.plan = list(plan)
        self.default = default
        self.channels: list[FakeChannel] = []
        self.submissions: list[tuple[str, dict[str, Any]]] = []
        self.statuses: dict[str, StatusResult] = {}
        self.status_calls: list[str] = []
        self.open_errors: list[BaseException] = []
        self.submit_errors: list[BaseException] = []
        self.status_errors: list[BaseException] = []
        self.interrupt_error: BaseException | None = None
        self.interrupts = 0
        self.dequeued: list[list[str]] = []
        self.closed = False
        self._counter = 0

    @property
    def name(self) -> str:
        return "fake"

    async def open_channel(self, client_id: str) -> EventChannel:
        if self.open_errors:
            raise self.open_errors.pop(0)
        channel = FakeChannel(client_id)
        self.channels.append(channel)
        return channel

    async def submit(self, payload: dict[str, Any], client_id: str) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self._counter += 1
        external_job_id = f"ext-{self._counter}"
        self.submissions.append((external_job_id, payload))
        behaviour = self.plan.pop(0) if self.plan else self.default
        channel = next(c for c in reversed(self.channels) if c.client_id == client_id)
        self._apply(behaviour, external_job_id, channel)
        return external_job_id

    def _apply(self, behaviour: str, external_job_id: str, channel: FakeChannel) -> None:
        if behaviour == COMPLETE:
            self.complete(external_job_id)
            channel.push(
                ExecutionStarted(external_job_id=external_job_id),
                ProgressEvent(value=5, max=10, node_id=SAMPLER_NODE, external_job_id=external_job_id),
                ExecutingEvent(node=None, external_job_id=external_job_id),
            )
        elif behaviour == SILENT:
            self.complete(external_job_id)
        elif behaviour == DROP:
            channel.drop()
        elif behaviour == ERROR:
            channel.push(
                ExecutionStarted(external_job_id=external_job_id),
                ExecutionErrorEvent(message="sampler exploded", external_job_id=external_job_id),
            )
        elif behaviour != HANG:
            raise ValueError(f"unknown behaviour {behaviour!r}")

    @staticmethod
    def output_for(external_job_id: str) -> OutputRef:
        return OutputRef(filename=f"{external_job_id}.png", subfolder="renderq")

    def complete(self, external_job_id: str) -> None:
        self.statuses[external_job_id] = StatusResult(
            external_job_id=external_job_id,
            outputs=[self.output_for(external_job_id)],
        )

    async def get_status(self, external_job_id: str) -> StatusResult:
        self.status_calls.append(external_job_id)
        if self.status_errors:
            raise self.status_errors.pop(0)
        return self.statuses.get(external_job_id, StatusResult(external_job_id=external_job_id))

    async def interrupt(self) -> None:
        self.interrupts += 1
        if self.interrupt_error is not None:
            raise self.interrupt_error

    async def dequeue(self, external_job_ids: Sequence[str]) -> None:
        self.dequeued.append(list(external_job_ids))

    async def close(self) -> None:
        self.closed = True

    # ─── Inspection ─────────────────────────────────────────────────────

    def payload_kinds(self) -> list[str]:
        """'generate' or 'upscale' per submission, in submission order."""
        kinds = []
        for _, payload in self.submissions:
            if UPSCALE_LOAD_NODE in payload:
                kinds.append("upscale")
            else:
                kinds.append("generate")
        return kinds

    def seeds(self) -> list[int]:
        return [
            payload[SAMPLER_NODE]["inputs"]["seed"]
            for _, payload in self.submissions
            if SAMPLER_NODE in payload
        ]


class StatusWatcher:
    """Records status changes and the peak number of generating jobs."""

    def __init__(self, store: JobStore) -> None:
        self.store = store
        self.max_generating = 0
        self.started: list[str] = []
        self.events: list[StoreEvent] = []
        store.subscribe(self._on_event)

    def _on_event(self, event: StoreEvent) -> None:
        self.events.append(event)
        generating = len(self.store.jobs_with_status(JobStatus.GENERATING))
        self.max_generating = max(self.max_generating, generating)
        if event["event"] == "job.generating" and event["job_id"] is not None:
            self.started.append(event["job_id"])

    def transitions_for(self, job_id: str) -> list[str]:
        return [e["event"] for e in self.events if e["job_id"] == job_id]


def fast_config(
    *,
    queue: dict[str, Any] | None = None,
    generation: dict[str, Any] | None = None,
    timeouts: dict[str, Any] | None = None,
) -> RenderqConfig:
    """Config with short intervals so tests finish in milliseconds."""
    timing: dict[str, Any] = {
        "execution_seconds": 5.0,
        "poll_interval_seconds": 0.01,
        "poll_ceiling_seconds": 2.0,
        "recovery_poll_interval_seconds": 0.01,
        "recovery_ceiling_seconds": 1.0,
        "reveal_delay_seconds": 0.0,
    }
    timing.update(timeouts or {})
    return RenderqConfig(
        timeouts=TimeoutConfig(**timing),
        queue=QueueConfig(**(queue or {})),
        generation=GenerationConfig(**(generation or {})),
    )


def make_job(
    batch_id: int = 1,
    index: int = 0,
    *,
    status: JobStatus = JobStatus.QUEUE,
    source: str = "p1",
    prompt: str = "a lighthouse at dusk",
    **fields: Any,
) -> Job:
    return Job(
        id=Job.make_id(source, batch_id, index),
        batch_id=batch_id,
        source_request_id=source,
        index=index,
        status=status,
        saved_params=SavedParams(prompt=prompt),
        **fields,
    )
