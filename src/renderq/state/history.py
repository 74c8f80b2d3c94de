"""Archive of finished batches.

Completed batches move here when every job of the batch is done, and when
a session is discarded. The archive is capped and is the first thing the
snapshot store sacrifices when storage runs out of room.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel, Field, ValidationError

from renderq.core.errors import StorageError
from renderq.core.logging import get_logger
from renderq.core.models import Batch, Job, JobStatus, OutputRef
from renderq.state.storage import KeyValueStorage
from renderq.utils.time import utc_now

_logger = get_logger("history")

HISTORY_KEY = "renderq.history"


class ArchivedArtifact(BaseModel):
    job_id: str
    seed: int | None = None
    output_ref: OutputRef
    post_output_ref: OutputRef | None = None


class HistoryRecord(BaseModel):
    """One archived batch."""

    session_id: str
    batch_id: int
    source_request_id: str
    prompt: str = ""
    created_at: datetime
    archived_at: datetime = Field(default_factory=utc_now)
    artifacts: list[ArchivedArtifact] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, int]:
        return (self.session_id, self.batch_id)

    @classmethod
    def from_jobs(cls, session_id: str, batch: Batch, jobs: Iterable[Job]) -> HistoryRecord | None:
        """Build a record from a batch's completed jobs, or None if none completed."""
        jobs = [j for j in jobs if j.batch_id == batch.batch_id]
        artifacts = [
            ArchivedArtifact(
                job_id=job.id,
                seed=job.seed,
                output_ref=job.output_ref,
                post_output_ref=job.post_output_ref,
            )
            for job in jobs
            if job.status is JobStatus.COMPLETED and job.output_ref is not None
        ]
        if not artifacts:
            return None
        first = jobs[0]
        return cls(
            session_id=session_id,
            batch_id=batch.batch_id,
            source_request_id=batch.source_request_id,
            prompt=first.saved_params.prompt,
            created_at=batch.created_at,
            artifacts=artifacts,
        )


class HistoryStats(BaseModel):
    total_batches: int = 0
    total_artifacts: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None


class HistoryStore:
    """Capped, deduplicated archive persisted under one storage key."""

    def __init__(self, storage: KeyValueStorage, *, max_batches: int = 50) -> None:
        self.storage = storage
        self.max_batches = max_batches

    async def load(self) -> list[HistoryRecord]:
        """Records oldest first. A corrupt archive reads as empty."""
        try:
            raw = await self.storage.get_item(HISTORY_KEY)
        except StorageError as e:
            _logger.warning("history.read_failed", error=str(e))
            return []
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            return [HistoryRecord.model_validate(item) for item in data]
        except (ValueError, TypeError, ValidationError) as e:
            _logger.warning("history.corrupt", error=str(e))
            return []

    async def _write(self, records: list[HistoryRecord]) -> None:
        payload = json.dumps([r.model_dump(mode="json") for r in records])
        await self.storage.set_item(HISTORY_KEY, payload)

    async def archive(self, records: Iterable[HistoryRecord]) -> bool:
        """Append records, replacing any with the same session and batch.

        Returns False if the archive could not be written.
        """
        incoming = list(records)
        if not incoming:
            return True
        existing = await self.load()
        replaced = {r.key for r in incoming}
        merged = [r for r in existing if r.key not in replaced] + incoming
        merged.sort(key=lambda r: r.archived_at)
        if len(merged) > self.max_batches:
            merged = merged[-self.max_batches:]
        try:
            await self._write(merged)
        except StorageError as e:
            _logger.warning("history.write_failed", error=str(e), records=len(incoming))
            return False
        _logger.info("history.archived", batches=len(incoming), total=len(merged))
        return True

    async def evict_oldest(self, keep: int) -> int:
        """Drop all but the newest ``keep`` records. Returns how many were dropped."""
        records = await self.load()
        if len(records) <= keep:
            return 0
        dropped = len(records) - keep
        kept = records[-keep:] if keep > 0 else []
        if kept:
            await self._write(kept)
        else:
            await self.storage.remove_item(HISTORY_KEY)
        _logger.info("history.evicted", dropped=dropped, kept=len(kept))
        return dropped

    async def stats(self) -> HistoryStats:
        records = await self.load()
        if not records:
            return HistoryStats()
        return HistoryStats(
            total_batches=len(records),
            total_artifacts=sum(len(r.artifacts) for r in records),
            oldest=min(r.archived_at for r in records),
            newest=max(r.archived_at for r in records),
        )

    async def clear(self) -> None:
        await self.storage.remove_item(HISTORY_KEY)


__all__ = [
    "ArchivedArtifact",
    "HISTORY_KEY",
    "HistoryRecord",
    "HistoryStats",
    "HistoryStore",
]
