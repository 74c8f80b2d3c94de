"""Execution targets: how adapter and poller signals land in the JobStore.

GenerationTarget drives a job's main status. PostProcessTarget drives the
post-processing sub-state of an already completed job; it never touches
the main status and never triggers a pause.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from renderq.core.logging import get_logger
from renderq.core.models import (
    Job,
    JobStatus,
    OutputRef,
    PostProcessStatus,
    SubmittedTask,
)
from renderq.orchestrator.pause import PauseController
from renderq.orchestrator.store import JobStore
from renderq.utils.time import epoch_ms

_logger = get_logger("targets")


class GenerationTarget:
    """Sink for a generation job (live or being recovered after restore)."""

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        *,
        reveal_delay: float,
        pause: PauseController | None = None,
        on_completed: Callable[[Job], None] | None = None,
    ) -> None:
        self.store = store
        self._job_id = job_id
        self.reveal_delay = reveal_delay
        self._pause = pause
        self._on_completed = on_completed

    @property
    def job_id(self) -> str:
        return self._job_id

    def _job(self) -> Job | None:
        return self.store.get(self._job_id)

    def is_terminal(self) -> bool:
        job = self._job()
        return job is None or job.is_terminal

    def on_channel_open(self) -> None:
        job = self._job()
        if job is not None and self._pause is not None:
            self._pause.confirm_channel_open(job.batch_id)

    def mark_started(self) -> None:
        if self._job() is not None:
            self.store.update(self._job_id, lambda j: setattr(j, "is_loading", True))

    def mark_progress(self, percent: int) -> None:
        job = self._job()
        if job is None or job.status is not JobStatus.GENERATING:
            return

        def _apply(j: Job) -> None:
            j.progress = max(j.progress, percent)
            j.is_loading = False

        self.store.update(self._job_id, _apply, event="job.progress")

    def record_submission(self, external_job_id: str) -> None:
        job = self._job()
        if job is None:
            return
        self.store.record_task(SubmittedTask(
            external_job_id=external_job_id,
            batch_id=job.batch_id,
            job_ids=[job.id],
            submitted_at=epoch_ms(),
        ))

    def confirm_submission(self, external_job_id: str) -> None:
        self.store.confirm_task(external_job_id)

    async def finalize(self, output_ref: OutputRef) -> None:
        job = self._job()
        if job is None or job.is_terminal:
            return

        if job.status is JobStatus.RECOVERING:
            # Restored jobs skip the reveal animation
            self.store.transition(
                self._job_id, JobStatus.COMPLETED,
                output_ref=output_ref, progress=100, is_loading=False,
            )
        else:
            self.store.transition(
                self._job_id, JobStatus.REVEALING,
                output_ref=output_ref, progress=100, is_loading=False,
            )
            await asyncio.sleep(self.reveal_delay)
            job = self._job()
            if job is None or job.status is not JobStatus.REVEALING:
                return
            self.store.transition(self._job_id, JobStatus.COMPLETED)

        completed = self._job()
        if completed is not None and self._on_completed is not None:
            self._on_completed(completed)

    def mark_failed(self, reason: str) -> None:
        job = self._job()
        if job is not None and job.status is JobStatus.RECOVERING:
            # Recovery ends in completed or timeout; the backend's reason is kept
            self.store.transition(self._job_id, JobStatus.TIMEOUT, error=reason, is_loading=False)
            return
        if job is None or not job.can_transition(JobStatus.FAILED):
            _logger.debug("targets.fail_ignored", job_id=self._job_id, reason=reason)
            return
        self.store.transition(self._job_id, JobStatus.FAILED, error=reason, is_loading=False)

    def mark_timeout(self) -> None:
        job = self._job()
        if job is None or not job.can_transition(JobStatus.TIMEOUT):
            return
        self.store.transition(
            self._job_id, JobStatus.TIMEOUT,
            error="timed out waiting for the backend", is_loading=False,
        )


class PostProcessTarget:
    """Sink for the post-processing sub-state of a completed job."""

    def __init__(self, store: JobStore, job_id: str) -> None:
        self.store = store
        self._job_id = job_id
        self.external_job_id: str | None = None

    @property
    def job_id(self) -> str:
        return self._job_id

    def _job(self) -> Job | None:
        return self.store.get(self._job_id)

    def is_terminal(self) -> bool:
        job = self._job()
        return job is None or job.post_status is not PostProcessStatus.UPSCALING

    def on_channel_open(self) -> None:
        return None

    def mark_started(self) -> None:
        return None

    def mark_progress(self, percent: int) -> None:
        if self.is_terminal():
            return
        self.store.update(
            self._job_id,
            lambda j: setattr(j, "post_progress", max(j.post_progress, percent)),
            event="job.post_progress",
        )

    def record_submission(self, external_job_id: str) -> None:
        self.external_job_id = external_job_id

    def confirm_submission(self, external_job_id: str) -> None:
        if self.external_job_id == external_job_id:
            self.external_job_id = None

    async def finalize(self, output_ref: OutputRef) -> None:
        if self.is_terminal():
            return

        def _apply(j: Job) -> None:
            j.transition_post(PostProcessStatus.COMPLETED)
            j.post_output_ref = output_ref
            j.post_progress = 100

        self.store.update(self._job_id, _apply, event="job.post_completed")

    def revert(self, reason: str) -> None:
        """Fall back to ``none`` so the job can be post-processed again."""
        if self.is_terminal():
            return

        def _apply(j: Job) -> None:
            j.transition_post(PostProcessStatus.NONE)
            j.post_progress = 0

        self.store.update(self._job_id, _apply, event="job.post_reverted")
        _logger.warning("targets.postprocess_reverted", job_id=self._job_id, reason=reason)

    def mark_failed(self, reason: str) -> None:
        self.revert(reason)

    def mark_timeout(self) -> None:
        self.revert("timed out waiting for the backend")


__all__ = ["GenerationTarget", "PostProcessTarget"]
