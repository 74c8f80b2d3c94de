"""Pause/Resume controller.

Connectivity loss during a job freezes that job's batch: its queued and
generating jobs become ``paused`` and the RecoveryState singleton records
which batch, how many jobs and why. Only ``ConnectivityLost`` outcomes get
here; semantic failures never pause anything.

Resume is two-phase. ``resume()`` re-queues the paused jobs and marks a
resume as in progress; the RecoveryState stays set until a new adapter for
that batch reports its channel open (``confirm_channel_open``). If that
retry loses connectivity again before opening, the batch simply pauses again
with the record intact.
"""

from __future__ import annotations

from renderq.core.errors import OrchestratorError
from renderq.core.logging import get_logger
from renderq.core.models import Job, JobStatus, RecoveryState
from renderq.orchestrator.store import JobStore

_logger = get_logger("pause")

PAUSABLE_STATUSES = (JobStatus.QUEUE, JobStatus.GENERATING)


class PauseController:
    def __init__(self, store: JobStore) -> None:
        self.store = store
        self._resume_batch_id: int | None = None

    @property
    def is_paused(self) -> bool:
        return self.store.recovery.is_paused

    @property
    def resume_in_progress(self) -> bool:
        return self._resume_batch_id is not None

    @property
    def blocks_generation(self) -> bool:
        """Whether the generation queue must stay idle."""
        return self.is_paused and not self.resume_in_progress

    def pause(self, batch_id: int, reason: str) -> RecoveryState:
        """Freeze ``batch_id`` after connectivity loss.

        Returns the populated RecoveryState.
        """
        affected = self.store.jobs_in_batch(batch_id, *PAUSABLE_STATUSES)
        for job in affected:
            self.store.transition(job.id, JobStatus.PAUSED, is_loading=False, progress=0)

        paused = self.store.jobs_in_batch(batch_id, JobStatus.PAUSED)
        batch = self.store.get_batch(batch_id)
        state = RecoveryState(
            is_paused=True,
            paused_batch_id=batch_id,
            source_request_id=batch.source_request_id if batch else None,
            remaining_count=len(paused),
            saved_params=paused[0].saved_params if paused else None,
            reason=reason,
        )
        self._resume_batch_id = None
        self.store.set_recovery(state)
        _logger.warning(
            "pause.batch_paused",
            batch_id=batch_id,
            remaining_count=state.remaining_count,
            reason=reason,
        )
        return state

    def resume(self) -> list[Job]:
        """Return the paused jobs to ``queue`` in their original order.

        Raises:
            OrchestratorError: Nothing is paused.
        """
        state = self.store.recovery
        if not state.is_paused or state.paused_batch_id is None:
            raise OrchestratorError("Nothing is paused")

        batch_id = state.paused_batch_id
        requeued = []
        for job in self.store.jobs_in_batch(batch_id, JobStatus.PAUSED):
            requeued.append(self.store.transition(job.id, JobStatus.QUEUE))
        self._resume_batch_id = batch_id
        _logger.info("pause.resume_requested", batch_id=batch_id, count=len(requeued))
        return requeued

    def confirm_channel_open(self, batch_id: int) -> None:
        """Clear the record once a retry for the paused batch is connected."""
        if self._resume_batch_id is None or batch_id != self._resume_batch_id:
            return
        self._resume_batch_id = None
        self.store.set_recovery(RecoveryState.cleared())
        _logger.info("pause.resumed", batch_id=batch_id)

    def cancel_remaining(self) -> list[str]:
        """Discard the paused jobs and clear the record unconditionally.

        Returns the ids of the removed jobs.
        """
        state = self.store.recovery
        removed: list[str] = []
        if state.paused_batch_id is not None:
            for job in self.store.jobs_in_batch(state.paused_batch_id, JobStatus.PAUSED):
                self.store.remove_job(job.id)
                removed.append(job.id)
        self._resume_batch_id = None
        self.store.set_recovery(RecoveryState.cleared())
        _logger.info(
            "pause.cancelled_remaining",
            batch_id=state.paused_batch_id,
            removed=len(removed),
        )
        return removed

    def reset(self) -> None:
        self._resume_batch_id = None


__all__ = ["PAUSABLE_STATUSES", "PauseController"]
