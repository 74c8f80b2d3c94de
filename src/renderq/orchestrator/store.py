"""Authoritative Job/Batch collection.

The JobStore is the single source of truth for every job, batch,
submitted task and the recovery record. Mutations go through its methods,
each of which completes synchronously and then notifies subscribers, so no
two updates to the same job can interleave under the cooperative scheduler.
Read-only consumers (the CLI's live table, the snapshot autosaver) subscribe
instead of keeping copies.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from typing import Any, TypedDict

from renderq.core.errors import OrchestratorError
from renderq.core.logging import get_logger
from renderq.core.models import (
    AckStatus,
    Batch,
    Job,
    JobStatus,
    RecoveryState,
    SubmittedTask,
)

_logger = get_logger("store")

_MAX_CONSECUTIVE_FAILURES = 10


class StoreEvent(TypedDict):
    """Change notification delivered to subscribers."""

    event: str
    job_id: str | None
    batch_id: int | None


StoreCallback = Callable[[StoreEvent], Any]
StoreFilter = Callable[[StoreEvent], bool] | None


class _Subscriber:
    __slots__ = ("callback", "event_filter", "consecutive_failures")

    def __init__(self, callback: StoreCallback, event_filter: StoreFilter) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.consecutive_failures = 0


class JobStore:
    """In-memory job state with synchronous change notification."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.next_batch_id = 1
        self._jobs: dict[str, Job] = {}
        self._batches: dict[int, Batch] = {}
        self._tasks: dict[str, SubmittedTask] = {}
        self._recovery = RecoveryState.cleared()
        self._subscribers: dict[str, _Subscriber] = {}

    # ─── Subscriptions ──────────────────────────────────────────────────

    def subscribe(self, callback: StoreCallback, *, event_filter: StoreFilter = None) -> str:
        """Register a synchronous change callback. Returns a subscription id."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = _Subscriber(callback, event_filter)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._subscribers.pop(sub_id, None) is not None

    def notify(self, event: str, *, job_id: str | None = None, batch_id: int | None = None) -> None:
        """Deliver a change event to every matching subscriber."""
        payload: StoreEvent = {"event": event, "job_id": job_id, "batch_id": batch_id}
        for sub_id, sub in list(self._subscribers.items()):
            if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(payload):
                    continue
                sub.callback(payload)
                sub.consecutive_failures = 0
            except Exception:
                sub.consecutive_failures += 1
                _logger.warning(
                    "store.subscriber_error",
                    subscriber_id=sub_id,
                    event_type=event,
                    consecutive_failures=sub.consecutive_failures,
                    exc_info=True,
                )

    # ─── Batches and jobs ───────────────────────────────────────────────

    def allocate_batch_id(self) -> int:
        batch_id = self.next_batch_id
        self.next_batch_id += 1
        return batch_id

    def add_batch(self, batch: Batch, jobs: Iterable[Job]) -> None:
        if batch.batch_id in self._batches:
            raise OrchestratorError(f"Batch {batch.batch_id} already exists")
        self._batches[batch.batch_id] = batch
        for job in jobs:
            self._jobs[job.id] = job
        self.notify("batch.added", batch_id=batch.batch_id)

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise OrchestratorError(f"Unknown job: {job_id}")
        return job

    def get_batch(self, batch_id: int) -> Batch | None:
        return self._batches.get(batch_id)

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    @property
    def batches(self) -> list[Batch]:
        return list(self._batches.values())

    def jobs_in_batch(self, batch_id: int, *statuses: JobStatus) -> list[Job]:
        """Jobs of ``batch_id`` in insertion order, optionally filtered by status."""
        return [
            job for job in self._jobs.values()
            if job.batch_id == batch_id and (not statuses or job.status in statuses)
        ]

    def jobs_with_status(self, *statuses: JobStatus) -> list[Job]:
        return [job for job in self._jobs.values() if job.status in statuses]

    def update(self, job_id: str, mutate: Callable[[Job], Any], *, event: str = "job.updated") -> Job:
        """Apply ``mutate`` to a job and notify subscribers.

        ``mutate`` runs synchronously; it must not await.
        """
        job = self.require(job_id)
        mutate(job)
        self.notify(event, job_id=job_id, batch_id=job.batch_id)
        return job

    def transition(self, job_id: str, target: JobStatus, **changes: Any) -> Job:
        """Move a job to ``target`` and set any extra fields in one step."""
        def _apply(job: Job) -> None:
            job.transition(target)
            for name, value in changes.items():
                setattr(job, name, value)

        return self.update(job_id, _apply, event=f"job.{target.value}")

    def remove_job(self, job_id: str) -> Job | None:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return None
        if not self.jobs_in_batch(job.batch_id):
            self._batches.pop(job.batch_id, None)
        self.notify("job.removed", job_id=job_id, batch_id=job.batch_id)
        return job

    # ─── Submitted tasks ────────────────────────────────────────────────

    def record_task(self, task: SubmittedTask) -> None:
        self._tasks[task.external_job_id] = task
        self.notify("task.recorded", batch_id=task.batch_id)

    def confirm_task(self, external_job_id: str) -> SubmittedTask | None:
        """Drop a task once its outcome is known locally."""
        task = self._tasks.pop(external_job_id, None)
        if task is not None:
            task.ack_status = AckStatus.CONFIRMED
            self.notify("task.confirmed", batch_id=task.batch_id)
        return task

    def tasks_for_job(self, job_id: str) -> list[SubmittedTask]:
        return [task for task in self._tasks.values() if job_id in task.job_ids]

    @property
    def pending_tasks(self) -> list[SubmittedTask]:
        return [t for t in self._tasks.values() if t.ack_status is AckStatus.PENDING]

    # ─── Recovery record ────────────────────────────────────────────────

    @property
    def recovery(self) -> RecoveryState:
        return self._recovery

    def set_recovery(self, state: RecoveryState) -> None:
        self._recovery = state
        self.notify("recovery.changed", batch_id=state.paused_batch_id)

    # ─── Bulk operations ────────────────────────────────────────────────

    @property
    def is_empty(self) -> bool:
        return not self._jobs and not self._tasks and not self._recovery.is_paused

    def load(
        self,
        *,
        session_id: str,
        next_batch_id: int,
        batches: Iterable[Batch],
        jobs: Iterable[Job],
        tasks: Iterable[SubmittedTask],
        recovery: RecoveryState,
    ) -> None:
        """Replace the whole state. Used only by session restore."""
        self.session_id = session_id
        self._batches = {b.batch_id: b for b in batches}
        self._jobs = {j.id: j for j in jobs}
        self._tasks = {t.external_job_id: t for t in tasks}
        self._recovery = recovery
        known = max(self._batches, default=0)
        self.next_batch_id = max(next_batch_id, known + 1)
        self.notify("store.loaded")

    def clear(self, *, new_session: bool = True) -> None:
        self._jobs.clear()
        self._batches.clear()
        self._tasks.clear()
        self._recovery = RecoveryState.cleared()
        if new_session:
            self.session_id = uuid.uuid4().hex[:12]
            self.next_batch_id = 1
        self.notify("store.cleared")


__all__ = ["JobStore", "StoreCallback", "StoreEvent"]
