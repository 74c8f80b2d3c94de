"""Session snapshot: minimized, crash-consistent projection of live state.

Only what a later process needs to continue safely is persisted: jobs that
completed with a usable artifact, jobs still waiting to run, jobs whose
submission outcome is unknown, the generation queue, the submitted-task
list and the recovery record. Failed and timed-out jobs, the
post-processing queue and all transient progress are dropped.

A snapshot that fails validation is discarded whole and storage cleared;
it is never partially trusted.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from renderq.core.errors import (
    SnapshotValidationError,
    StorageError,
    StorageQuotaExceededError,
)
from renderq.core.logging import get_logger
from renderq.core.models import (
    AckStatus,
    Batch,
    Job,
    JobStatus,
    PostProcessStatus,
    QueueEntry,
    RecoveryState,
    SubmittedTask,
)
from renderq.state.history import HistoryRecord, HistoryStore
from renderq.state.storage import KeyValueStorage
from renderq.utils.time import utc_now

_logger = get_logger("snapshot")

SNAPSHOT_KEY = "renderq.session"
SNAPSHOT_VERSION = 3

# Statuses whose jobs survive minimization (completed ones need an artifact too)
_KEPT_PENDING = frozenset({JobStatus.QUEUE, JobStatus.PAUSED})
_KEPT_IN_FLIGHT = frozenset({JobStatus.GENERATING, JobStatus.REVEALING, JobStatus.RECOVERING})


class SaveResult(str, Enum):
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"


class SessionSnapshot(BaseModel):
    """Persisted projection of one session."""

    version: int = SNAPSHOT_VERSION
    saved_at: datetime = Field(default_factory=utc_now)
    session_id: str
    next_batch_id: int = 1
    session_seed: int | None = None
    batches: list[Batch] = Field(default_factory=list)
    jobs: list[Job] = Field(default_factory=list)
    queue: list[QueueEntry] = Field(default_factory=list)
    submitted_tasks: list[SubmittedTask] = Field(default_factory=list)
    recovery: RecoveryState = Field(default_factory=RecoveryState.cleared)

    @property
    def is_empty(self) -> bool:
        return not self.jobs and not self.submitted_tasks and not self.recovery.is_paused

    def completed_jobs(self) -> list[Job]:
        return [j for j in self.jobs if j.status is JobStatus.COMPLETED]

    def history_records(self) -> list[HistoryRecord]:
        """Completed work of this snapshot, grouped per batch for archiving."""
        records = []
        for batch in self.batches:
            record = HistoryRecord.from_jobs(self.session_id, batch, self.jobs)
            if record is not None:
                records.append(record)
        return records


def _minimize_job(job: Job) -> Job | None:
    if job.status is JobStatus.COMPLETED:
        if job.output_ref is None or job.load_error:
            return None
        kept = job.model_copy(deep=True)
        kept.is_loading = False
        if kept.post_status is not PostProcessStatus.COMPLETED:
            kept.post_status = PostProcessStatus.NONE
            kept.post_progress = 0
        return kept
    if job.status in _KEPT_PENDING:
        return job.model_copy(
            deep=True, update={"progress": 0, "is_loading": False, "error": None},
        )
    if job.status in _KEPT_IN_FLIGHT:
        return job.model_copy(deep=True, update={"is_loading": False})
    return None


def capture(
    *,
    session_id: str,
    next_batch_id: int,
    batches: Iterable[Batch],
    jobs: Iterable[Job],
    queue: Iterable[QueueEntry],
    submitted_tasks: Iterable[SubmittedTask],
    recovery: RecoveryState,
    session_seed: int | None = None,
) -> SessionSnapshot:
    """Build a minimized snapshot from live state."""
    kept_jobs = [m for m in (_minimize_job(j) for j in jobs) if m is not None]
    kept_batch_ids = {j.batch_id for j in kept_jobs}
    kept_job_ids = {j.id for j in kept_jobs}
    return SessionSnapshot(
        session_id=session_id,
        next_batch_id=next_batch_id,
        session_seed=session_seed,
        batches=[b.model_copy() for b in batches if b.batch_id in kept_batch_ids],
        jobs=kept_jobs,
        queue=[e.model_copy(deep=True) for e in queue if e.batch_id in kept_batch_ids],
        submitted_tasks=[
            t.model_copy(deep=True) for t in submitted_tasks
            if t.ack_status is AckStatus.PENDING and kept_job_ids.intersection(t.job_ids)
        ],
        recovery=recovery.model_copy(deep=True),
    )


def validate_snapshot(snapshot: SessionSnapshot) -> None:
    """Cross-check references inside a decoded snapshot.

    Raises:
        SnapshotValidationError: The snapshot is inconsistent.
    """
    if snapshot.version != SNAPSHOT_VERSION:
        raise SnapshotValidationError(
            f"Snapshot version {snapshot.version} is not supported (expected {SNAPSHOT_VERSION})"
        )
    job_batches = {j.batch_id for j in snapshot.jobs}
    for entry in snapshot.queue:
        if entry.batch_id not in job_batches:
            raise SnapshotValidationError(
                f"Queue entry for batch {entry.batch_id} has no job records"
            )
    job_ids = [j.id for j in snapshot.jobs]
    if len(job_ids) != len(set(job_ids)):
        raise SnapshotValidationError("Duplicate job ids in snapshot")
    recovery = snapshot.recovery
    if recovery.is_paused and recovery.paused_batch_id is None:
        raise SnapshotValidationError("Recovery record is paused without a batch id")


def reconcile(snapshot: SessionSnapshot) -> SessionSnapshot:
    """Map restored jobs onto exactly one named state each.

    - completed stays completed
    - any unfinished job covered by a pending submitted task becomes recovering
    - queue and paused stay as they are
    - generating, revealing or recovering without a pending task goes back to queue
    - every batch with queued jobs gets exactly one queue entry
    """
    result = snapshot.model_copy(deep=True)
    pending_ids = {
        job_id for task in result.submitted_tasks
        if task.ack_status is AckStatus.PENDING
        for job_id in task.job_ids
    }

    paused_batch = result.recovery.paused_batch_id if result.recovery.is_paused else None
    for job in result.jobs:
        # Paused jobs outside the recorded batch can only be requeued
        if job.status is JobStatus.PAUSED and job.batch_id != paused_batch:
            job.status = JobStatus.QUEUE

    recovering_ids: set[str] = set()
    for job in result.jobs:
        if job.status is JobStatus.COMPLETED or job.status is JobStatus.PAUSED:
            continue
        if job.id in pending_ids:
            job.status = JobStatus.RECOVERING
            recovering_ids.add(job.id)
        elif job.status in _KEPT_IN_FLIGHT:
            job.status = JobStatus.QUEUE
            job.progress = 0
            job.output_ref = None
        job.is_loading = False

    result.submitted_tasks = [
        t for t in result.submitted_tasks if recovering_ids.intersection(t.job_ids)
    ]

    queued_batches = {j.batch_id for j in result.jobs if j.status is JobStatus.QUEUE}
    entries: list[QueueEntry] = []
    seen: set[int] = set()
    for entry in result.queue:
        if entry.batch_id in queued_batches and entry.batch_id not in seen:
            entries.append(entry)
            seen.add(entry.batch_id)
    for batch_id in sorted(queued_batches - seen):
        first = next(j for j in result.jobs if j.batch_id == batch_id)
        entries.append(QueueEntry(
            batch_id=batch_id,
            payload={"source_request_id": first.source_request_id},
            saved_params=first.saved_params,
        ))
    result.queue = entries

    paused = [
        j for j in result.jobs
        if j.status is JobStatus.PAUSED and j.batch_id == paused_batch
    ]
    if result.recovery.is_paused and not paused:
        result.recovery = RecoveryState.cleared()
    elif result.recovery.is_paused:
        result.recovery.remaining_count = len(paused)
    return result


class SessionSnapshotStore:
    """save/load/clear of the session snapshot in durable storage.

    Saving is best-effort: on quota exhaustion the oldest history is
    evicted and the write retried once; any remaining failure is logged and
    reported through the SaveResult, never raised.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        history: HistoryStore | None = None,
        *,
        evict_keep_batches: int = 25,
    ) -> None:
        self.storage = storage
        self.history = history
        self.evict_keep_batches = evict_keep_batches

    async def save(self, snapshot: SessionSnapshot) -> SaveResult:
        payload = snapshot.model_dump_json()
        try:
            await self.storage.set_item(SNAPSHOT_KEY, payload)
            return SaveResult.OK
        except StorageQuotaExceededError as e:
            _logger.warning("snapshot.quota_exceeded", error=str(e), bytes=len(payload))
        except StorageError as e:
            _logger.error("snapshot.save_failed", error=str(e))
            return SaveResult.FAILED

        if self.history is not None:
            try:
                await self.history.evict_oldest(self.evict_keep_batches)
            except StorageError as e:
                _logger.warning("snapshot.evict_failed", error=str(e))
        try:
            await self.storage.set_item(SNAPSHOT_KEY, payload)
        except StorageQuotaExceededError:
            _logger.error("snapshot.save_skipped", reason="quota exceeded after eviction")
            return SaveResult.QUOTA_EXCEEDED
        except StorageError as e:
            _logger.error("snapshot.save_failed", error=str(e))
            return SaveResult.FAILED
        _logger.info("snapshot.saved_after_eviction", bytes=len(payload))
        return SaveResult.OK

    async def load(self) -> SessionSnapshot | None:
        """Return the stored snapshot, or None if absent or invalid.

        An invalid snapshot is removed from storage.
        """
        try:
            raw = await self.storage.get_item(SNAPSHOT_KEY)
        except StorageError as e:
            _logger.warning("snapshot.read_failed", error=str(e))
            return None
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            version = data.get("version") if isinstance(data, dict) else None
            if version != SNAPSHOT_VERSION:
                raise SnapshotValidationError(f"Unsupported snapshot version: {version!r}")
            snapshot = SessionSnapshot.model_validate(data)
            validate_snapshot(snapshot)
        except (ValueError, ValidationError, SnapshotValidationError) as e:
            _logger.warning("snapshot.discarded", error=str(e))
            await self.clear()
            return None
        return snapshot

    async def clear(self) -> None:
        try:
            await self.storage.remove_item(SNAPSHOT_KEY)
        except (StorageError, OSError) as e:
            _logger.warning("snapshot.clear_failed", error=str(e))

    async def discard(self) -> int:
        """Archive the stored snapshot's completed work and clear it.

        Returns the number of batches archived.
        """
        snapshot = await self.load()
        archived = 0
        if snapshot is not None and self.history is not None:
            records = snapshot.history_records()
            if await self.history.archive(records):
                archived = len(records)
        await self.clear()
        return archived


__all__ = [
    "SNAPSHOT_KEY",
    "SNAPSHOT_VERSION",
    "SaveResult",
    "SessionSnapshot",
    "SessionSnapshotStore",
    "capture",
    "reconcile",
    "validate_snapshot",
]
