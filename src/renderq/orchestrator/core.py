"""Orchestrator: queues, single-flight drains and the public entry points.

The UI (here, the CLI) mutates state only through ``submit``/``enqueue``,
``cancel_queued``, ``resume``, ``cancel_remaining``, ``queue_postprocess``
and ``cancel_postprocess``; everything else reads the JobStore.

Draining:
    Each queue has a SingleFlightGuard. ``_kick_*`` acquires it
    synchronously, claims the next unit of work (moving the job to its
    running state before any await), then hands it to a fresh
    ConnectionAdapter in a background task. The task releases the guard in
    ``finally`` and kicks the queue again.

Arbitration:
    With ``queue.prioritize_generation`` the post-processing queue does not
    start while generation is active or has runnable work. A paused
    generation queue has no runnable work.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from typing import Any

from renderq.backends.base import ComputeBackend
from renderq.backends.workflow import (
    DEFAULT_GENERATION_GRAPH,
    DEFAULT_UPSCALE_GRAPH,
    build_generation_workflow,
    build_postprocess_workflow,
    load_template,
)
from renderq.core.config import RenderqConfig
from renderq.core.errors import BackendError, OrchestratorError
from renderq.core.logging import ExecutionContext, get_logger, with_context
from renderq.core.models import (
    Batch,
    Job,
    JobStatus,
    PostProcessEntry,
    PostProcessStatus,
    QueueEntry,
    RecoveryState,
    SavedParams,
)
from renderq.execution.adapter import ConnectionAdapter
from renderq.execution.latch import CompletionLatch
from renderq.execution.outcome import Completed, ConnectivityLost, Failed, Outcome
from renderq.execution.poller import BackupPoller
from renderq.orchestrator.guard import GuardTicket, SingleFlightGuard
from renderq.orchestrator.pause import PauseController
from renderq.orchestrator.queues import WorkQueue
from renderq.orchestrator.seeds import SeedAllocator
from renderq.orchestrator.store import JobStore
from renderq.orchestrator.targets import GenerationTarget, PostProcessTarget
from renderq.state.history import HistoryRecord, HistoryStore
from renderq.state.snapshot import SessionSnapshot, capture, reconcile
from renderq.utils.tasks import spawn

_logger = get_logger("orchestrator")


class Orchestrator:
    """Client-side job orchestrator for one compute backend."""

    def __init__(
        self,
        backend: ComputeBackend,
        config: RenderqConfig | None = None,
        *,
        store: JobStore | None = None,
        seeds: SeedAllocator | None = None,
        history: HistoryStore | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or RenderqConfig()
        self.store = store or JobStore()
        gen = self.config.generation
        self.seeds = seeds or SeedAllocator(gen.seed_mode, gen.fixed_seed, gen.first_fixed_seed)
        self.history = history
        self.pause = PauseController(self.store)

        self.generation_queue: WorkQueue[QueueEntry] = WorkQueue("generation")
        self.postprocess_queue: WorkQueue[PostProcessEntry] = WorkQueue("postprocess")
        self._generation_guard = SingleFlightGuard("generation")
        self._postprocess_guard = SingleFlightGuard("postprocess")

        self._generation_template = load_template(
            self.config.backend.generation_workflow, DEFAULT_GENERATION_GRAPH,
        )
        self._postprocess_template = load_template(
            self.config.backend.postprocess_workflow, DEFAULT_UPSCALE_GRAPH,
        )

        self._tasks: set[asyncio.Task[Any]] = set()
        self._active_post: PostProcessTarget | None = None
        self._restoring = False
        self._closing = False
        self._idle = asyncio.Event()
        self._idle.set()

    # ─── Read-only views ────────────────────────────────────────────────

    @property
    def jobs(self) -> list[Job]:
        return self.store.jobs

    @property
    def recovery(self) -> RecoveryState:
        return self.store.recovery

    @property
    def is_generation_active(self) -> bool:
        return self._generation_guard.active

    @property
    def is_postprocess_active(self) -> bool:
        return self._postprocess_guard.active

    def capture_snapshot(self) -> SessionSnapshot:
        return capture(
            session_id=self.store.session_id,
            next_batch_id=self.store.next_batch_id,
            batches=self.store.batches,
            jobs=self.store.jobs,
            queue=self.generation_queue,
            submitted_tasks=self.store.pending_tasks,
            recovery=self.store.recovery,
            session_seed=self.seeds.session_seed,
        )

    # ─── Submission ─────────────────────────────────────────────────────

    def submit(
        self,
        prompt: str,
        *,
        count: int | None = None,
        params: SavedParams | None = None,
        source_request_id: str | None = None,
    ) -> Batch:
        """Create a batch of ``count`` jobs for ``prompt`` and enqueue it."""
        if self._closing:
            raise OrchestratorError("Orchestrator is shutting down")
        if count is None:
            count = self.config.generation.batch_size
        if count < 1:
            raise OrchestratorError("A batch needs at least one job")
        saved = params or self.config.generation.freeze(prompt)
        source = source_request_id or f"p{uuid.uuid4().hex[:8]}"

        batch_id = self.store.allocate_batch_id()
        batch = Batch(
            batch_id=batch_id, source_request_id=source, session_id=self.store.session_id,
        )
        jobs = [
            Job(
                id=Job.make_id(source, batch_id, index),
                batch_id=batch_id,
                source_request_id=source,
                index=index,
                saved_params=saved,
            )
            for index in range(count)
        ]
        self.store.add_batch(batch, jobs)
        _logger.info("orchestrator.batch_submitted", batch_id=batch_id, count=count)
        self.enqueue(QueueEntry(
            batch_id=batch_id,
            payload={"source_request_id": source},
            saved_params=saved,
        ))
        return batch

    def enqueue(self, entry: QueueEntry) -> None:
        """Append a generation entry. One entry per batch is kept."""
        if self.generation_queue.find(lambda e: e.batch_id == entry.batch_id) is None:
            self.generation_queue.enqueue(entry)
            self.store.notify("queue.changed", batch_id=entry.batch_id)
        self._kick_generation()

    # ─── Cancellation and pause control ─────────────────────────────────

    def cancel_queued(self, job_id: str) -> bool:
        """Remove a job that has not started. Idempotent.

        Returns True if a job was removed.

        Raises:
            OrchestratorError: The job exists but already left the queue.
        """
        job = self.store.get(job_id)
        if job is None:
            return False
        if job.status is not JobStatus.QUEUE:
            raise OrchestratorError(
                f"Job {job_id} is {job.status.value}; only queued jobs can be cancelled"
            )
        self.store.remove_job(job_id)
        if not self.store.jobs_in_batch(job.batch_id, JobStatus.QUEUE):
            if self.generation_queue.remove_where(lambda e: e.batch_id == job.batch_id):
                self.store.notify("queue.changed", batch_id=job.batch_id)
        _logger.info("orchestrator.job_cancelled", job_id=job_id, batch_id=job.batch_id)
        self._refresh_idle()
        return True

    def resume(self) -> list[Job]:
        """Re-queue the paused batch ahead of everything else and start draining."""
        requeued = self.pause.resume()
        if requeued:
            first = requeued[0]
            self.generation_queue.remove_where(lambda e: e.batch_id == first.batch_id)
            self.generation_queue.enqueue_front(QueueEntry(
                batch_id=first.batch_id,
                payload={"source_request_id": first.source_request_id},
                saved_params=first.saved_params,
            ))
            self.store.notify("queue.changed", batch_id=first.batch_id)
        self._kick_generation()
        return requeued

    def cancel_remaining(self) -> list[str]:
        """Drop the paused jobs, clear the recovery record and continue with other batches."""
        removed = self.pause.cancel_remaining()
        self._kick_generation()
        self._kick_postprocess()
        return removed

    # ─── Post-processing ────────────────────────────────────────────────

    def queue_postprocess(self, job_id: str) -> None:
        """Queue a completed job for post-processing.

        Raises:
            OrchestratorError: The job is not completed, has no artifact, or
                is already queued or processed.
        """
        job = self.store.require(job_id)
        if job.status is not JobStatus.COMPLETED or job.output_ref is None:
            raise OrchestratorError(f"Job {job_id} has no completed artifact to post-process")
        if job.post_status is not PostProcessStatus.NONE:
            raise OrchestratorError(f"Job {job_id} post-processing is {job.post_status.value}")

        self.store.update(
            job_id,
            lambda j: j.transition_post(PostProcessStatus.QUEUED),
            event="job.post_queued",
        )
        self.postprocess_queue.enqueue(PostProcessEntry(job_id=job_id))
        self._kick_postprocess()

    def cancel_postprocess(self, job_id: str) -> bool:
        """Withdraw a queued post-processing request.

        Returns False if the job is not in the ``queued`` sub-state; work that
        is already upscaling is committed to the backend and stays.
        """
        job = self.store.get(job_id)
        if job is None or job.post_status is not PostProcessStatus.QUEUED:
            return False
        self.postprocess_queue.remove_where(lambda e: e.job_id == job_id)

        def _apply(j: Job) -> None:
            j.transition_post(PostProcessStatus.NONE)
            j.post_progress = 0

        self.store.update(job_id, _apply, event="job.post_cancelled")
        self._refresh_idle()
        return True

    # ─── Artifact loading ───────────────────────────────────────────────

    def record_load_failure(self, job_id: str) -> bool:
        """Count a failed artifact load. Returns True while another retry is allowed."""
        job = self.store.require(job_id)
        limit = self.config.generation.max_load_retries
        if job.retry_count >= limit:
            if not job.load_error:
                self.store.update(job_id, lambda j: setattr(j, "load_error", True))
            return False

        def _apply(j: Job) -> None:
            j.retry_count += 1
            j.load_error = j.retry_count >= limit

        job = self.store.update(job_id, _apply, event="job.load_failed")
        return not job.load_error

    def record_load_success(self, job_id: str) -> None:
        def _apply(j: Job) -> None:
            j.retry_count = 0
            j.load_error = False

        self.store.update(job_id, _apply, event="job.load_succeeded")

    # ─── Generation drain ───────────────────────────────────────────────

    def _next_generation_job(self) -> tuple[QueueEntry, Job] | None:
        while (entry := self.generation_queue.peek()) is not None:
            queued = self.store.jobs_in_batch(entry.batch_id, JobStatus.QUEUE)
            if not queued:
                self.generation_queue.pop()
                continue
            if len(queued) == 1:
                # Claiming the last queued job drains the batch
                self.generation_queue.pop()
            return entry, queued[0]
        return None

    def _kick_generation(self) -> None:
        if self._closing or self._restoring or self.pause.blocks_generation:
            self._refresh_idle()
            self._kick_postprocess()
            return
        ticket = self._generation_guard.try_acquire()
        if ticket is None:
            return

        claimed = self._next_generation_job()
        if claimed is None:
            ticket.release()
            self._refresh_idle()
            self._kick_postprocess()
            return

        entry, job = claimed
        self.store.transition(job.id, JobStatus.GENERATING, progress=0)
        self.store.notify("queue.changed", batch_id=entry.batch_id)
        self._idle.clear()
        task = spawn(
            self._run_generation(ticket, job.id),
            name=f"generate-{job.id}",
            logger=_logger,
            event="orchestrator.generation_crashed",
        )
        # A task cancelled before its first step never enters the ticket
        task.add_done_callback(lambda _: ticket.release())
        self._track(task)

    async def _run_generation(self, ticket: GuardTicket, job_id: str) -> None:
        try:
            with ticket:
                job = self.store.require(job_id)
                if job.seed is None:
                    seed = self.seeds.next_seed()
                    self.store.update(job_id, lambda j: j.assign_seed(seed), event="job.seeded")
                job = self.store.require(job_id)
                assert job.seed is not None

                payload = build_generation_workflow(
                    job.saved_params, job.seed, job.id, self._generation_template,
                )
                target = GenerationTarget(
                    self.store,
                    job_id,
                    reveal_delay=self.config.timeouts.reveal_delay_seconds,
                    pause=self.pause,
                    on_completed=self._on_job_completed,
                )
                ctx = ExecutionContext(
                    queue="generation",
                    batch_id=job.batch_id,
                    job_id=job_id,
                    session_id=self.store.session_id,
                )
                with with_context(ctx):
                    outcome = await self._execute(
                        target, payload, progress_nodes=self.config.generation.progress_nodes,
                    )
                    self._apply_generation_outcome(job_id, job.batch_id, outcome)
        finally:
            self._kick_generation()

    async def _execute(
        self,
        target: GenerationTarget | PostProcessTarget,
        payload: dict[str, Any],
        *,
        progress_nodes: Sequence[str] = (),
    ) -> Outcome:
        timeouts = self.config.timeouts
        adapter = ConnectionAdapter(
            self.backend,
            target,
            payload,
            execution_timeout=timeouts.execution_seconds,
            poll_interval=timeouts.poll_interval_seconds,
            poll_ceiling=timeouts.poll_ceiling_seconds,
            progress_nodes=progress_nodes,
        )
        try:
            return await adapter.execute()
        except Exception as e:
            # Unexpected errors keep the work recoverable
            _logger.exception("orchestrator.adapter_crashed", error=str(e))
            return ConnectivityLost(f"internal error: {e}")

    def _apply_generation_outcome(self, job_id: str, batch_id: int, outcome: Outcome) -> None:
        if isinstance(outcome, Completed):
            _logger.info("orchestrator.job_completed", filename=outcome.output_ref.filename)
        elif isinstance(outcome, Failed):
            _logger.warning("orchestrator.job_failed", reason=outcome.reason)
            self._archive_if_finished(batch_id)
        else:
            # Forget the lost submission; the job will be resubmitted on resume
            orphaned = [t.external_job_id for t in self.store.tasks_for_job(job_id)]
            for external_job_id in orphaned:
                self.store.confirm_task(external_job_id)
            if orphaned:
                self._track(spawn(
                    self._dequeue_quietly(orphaned),
                    name=f"dequeue-{job_id}",
                    logger=_logger,
                    event="orchestrator.dequeue_crashed",
                ))
            self.pause.pause(batch_id, outcome.reason)

    def _on_job_completed(self, job: Job) -> None:
        if self.config.queue.auto_postprocess and job.post_status is PostProcessStatus.NONE:
            self.queue_postprocess(job.id)
        self._archive_if_finished(job.batch_id)

    def _archive_if_finished(self, batch_id: int) -> None:
        if self.history is None:
            return
        jobs = self.store.jobs_in_batch(batch_id)
        batch = self.store.get_batch(batch_id)
        if batch is None or not jobs or not all(j.is_terminal for j in jobs):
            return
        record = HistoryRecord.from_jobs(self.store.session_id, batch, jobs)
        if record is None:
            return
        self._track(spawn(
            self.history.archive([record]),
            name=f"archive-{batch_id}",
            logger=_logger,
            event="orchestrator.archive_crashed",
        ))

    # ─── Post-processing drain ──────────────────────────────────────────

    def _generation_busy(self) -> bool:
        if self._generation_guard.active or self._restoring:
            return True
        return bool(self.generation_queue) and not self.pause.blocks_generation

    def _kick_postprocess(self) -> None:
        if self._closing:
            return
        if self.config.queue.prioritize_generation and self._generation_busy():
            return
        ticket = self._postprocess_guard.try_acquire()
        if ticket is None:
            return

        job: Job | None = None
        while (entry := self.postprocess_queue.pop()) is not None:
            candidate = self.store.get(entry.job_id)
            if candidate is not None and candidate.post_status is PostProcessStatus.QUEUED:
                job = candidate
                break
        if job is None:
            ticket.release()
            self._refresh_idle()
            return

        self.store.update(
            job.id,
            lambda j: j.transition_post(PostProcessStatus.UPSCALING),
            event="job.post_started",
        )
        self._idle.clear()
        task = spawn(
            self._run_postprocess(ticket, job.id),
            name=f"postprocess-{job.id}",
            logger=_logger,
            event="orchestrator.postprocess_crashed",
        )
        task.add_done_callback(lambda _: ticket.release())
        self._track(task)

    async def _run_postprocess(self, ticket: GuardTicket, job_id: str) -> None:
        target = PostProcessTarget(self.store, job_id)
        self._active_post = target
        try:
            job = self.store.require(job_id)
            assert job.output_ref is not None
            payload = build_postprocess_workflow(job.output_ref, job_id, self._postprocess_template)
            ctx = ExecutionContext(
                queue="postprocess",
                batch_id=job.batch_id,
                job_id=job_id,
                session_id=self.store.session_id,
            )
            with with_context(ctx):
                outcome = await self._execute(target, payload)
                if not isinstance(outcome, Completed):
                    # Never pauses; the job can simply be queued again
                    target.revert(outcome.reason)
        finally:
            self._active_post = None
            ticket.release()
            self._kick_postprocess()
            self._refresh_idle()

    # ─── Session lifecycle ──────────────────────────────────────────────

    async def restore(self, snapshot: SessionSnapshot) -> None:
        """Load a saved session and resolve its unconfirmed submissions.

        Draining resumes only after every pending submission has been
        resolved by status lookup (or timed out).
        """
        if self.store.jobs or self._generation_guard.active:
            raise OrchestratorError("restore() requires an empty orchestrator")

        plan = reconcile(snapshot)
        self._restoring = True
        self._idle.clear()
        try:
            self.store.load(
                session_id=plan.session_id,
                next_batch_id=plan.next_batch_id,
                batches=plan.batches,
                jobs=plan.jobs,
                tasks=plan.submitted_tasks,
                recovery=plan.recovery,
            )
            self.seeds.restore_session_seed(plan.session_seed)
            self.generation_queue.clear()
            for entry in plan.queue:
                self.generation_queue.enqueue(entry)
            _logger.info(
                "orchestrator.restored",
                jobs=len(plan.jobs),
                queued_batches=len(plan.queue),
                pending_tasks=len(plan.submitted_tasks),
                paused=plan.recovery.is_paused,
            )
            await asyncio.gather(*(
                self._recover_task(task.external_job_id, job_id)
                for task in plan.submitted_tasks
                for job_id in task.job_ids
            ))
        finally:
            self._restoring = False
        self._kick_generation()
        self._kick_postprocess()
        self._refresh_idle()

    async def _recover_task(self, external_job_id: str, job_id: str) -> None:
        job = self.store.get(job_id)
        if job is None or job.status is not JobStatus.RECOVERING:
            self.store.confirm_task(external_job_id)
            return
        target = GenerationTarget(
            self.store,
            job_id,
            reveal_delay=0.0,
            on_completed=self._on_job_completed,
        )
        timeouts = self.config.timeouts
        poller = BackupPoller(
            self.backend,
            target,
            CompletionLatch(),
            external_job_id,
            interval=timeouts.recovery_poll_interval_seconds,
            ceiling=timeouts.recovery_ceiling_seconds,
            immediate=True,
        )
        ctx = ExecutionContext(
            queue="recovery",
            batch_id=job.batch_id,
            job_id=job_id,
            external_job_id=external_job_id,
            session_id=self.store.session_id,
        )
        with with_context(ctx):
            outcome = await poller.watch()
        _logger.info(
            "orchestrator.recovered",
            job_id=job_id,
            outcome=outcome.kind.value if outcome is not None else None,
        )

    async def discard_session(self) -> int:
        """Archive completed work, clear all state and start a new session.

        Returns the number of batches archived.

        Raises:
            OrchestratorError: A queue is still executing.
        """
        if self._generation_guard.active or self._postprocess_guard.active:
            raise OrchestratorError("Cannot discard the session while jobs are executing")
        records = self.capture_snapshot().history_records()
        archived = 0
        if self.history is not None and records:
            if await self.history.archive(records):
                archived = len(records)
        self.generation_queue.clear()
        self.postprocess_queue.clear()
        self.pause.reset()
        self.seeds.reset_session()
        self.store.clear()
        self._refresh_idle()
        _logger.info("orchestrator.session_discarded", archived_batches=archived)
        return archived

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until nothing is running or runnable.

        A paused generation queue counts as idle.
        """
        if timeout is None:
            await self._idle.wait()
        else:
            async with asyncio.timeout(timeout):
                await self._idle.wait()

    async def shutdown(self) -> None:
        """Stop draining, release backend work and cancel background tasks.

        Pending submissions are interrupted and dequeued on a best-effort
        basis; failures are logged and swallowed.
        """
        self._closing = True
        pending = [t.external_job_id for t in self.store.pending_tasks]
        if self._active_post is not None and self._active_post.external_job_id:
            pending.append(self._active_post.external_job_id)
        if pending:
            await self._release_backend_work(pending)

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_idle()
        _logger.info("orchestrator.shutdown", released=len(pending), cancelled_tasks=len(tasks))

    async def _release_backend_work(self, external_job_ids: Sequence[str]) -> None:
        try:
            await self.backend.interrupt()
        except BackendError as e:
            _logger.warning("orchestrator.interrupt_failed", error=str(e))
        await self._dequeue_quietly(external_job_ids)

    async def _dequeue_quietly(self, external_job_ids: Sequence[str]) -> None:
        try:
            await self.backend.dequeue(external_job_ids)
        except BackendError as e:
            _logger.warning("orchestrator.dequeue_failed", error=str(e), count=len(external_job_ids))

    # ─── Internals ──────────────────────────────────────────────────────

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _generation_runnable(self) -> bool:
        return bool(self.generation_queue) and not self.pause.blocks_generation and not self._closing

    def _refresh_idle(self) -> None:
        busy = (
            self._generation_guard.active
            or self._postprocess_guard.active
            or self._restoring
            or self._generation_runnable()
            or (bool(self.postprocess_queue) and not self._closing)
        )
        if busy:
            self._idle.clear()
        else:
            self._idle.set()


__all__ = ["Orchestrator"]
