"""End-to-end orchestrator scenarios against FakeBackend.

Covers queue ordering and single-flight execution, cancellation, the
pause/resume protocol, poller-only completion, failure handling, seed
assignment, post-processing arbitration and teardown cleanup.
"""

from __future__ import annotations

import asyncio

import pytest

from renderq.core.errors import (
    BackendRejectedError,
    BackendTransportError,
    OrchestratorError,
)
from renderq.core.models import JobStatus, PostProcessStatus
from renderq.orchestrator.core import Orchestrator
from renderq.state.history import HistoryStore
from renderq.state.storage import MemoryStorage
from tests.helpers import (
    COMPLETE,
    DROP,
    ERROR,
    HANG,
    SILENT,
    FakeBackend,
    StatusWatcher,
    fast_config,
)


def _orchestrator(backend: FakeBackend, **config) -> Orchestrator:
    return Orchestrator(backend, fast_config(**config))


# ─── Ordering and single flight ───────────────────────────────────────


class TestQueueDraining:
    """FIFO order and at most one generating job."""

    @pytest.mark.asyncio
    async def test_batch_of_three_gets_distinct_seeds(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, generation={"seed_mode": "random", "batch_size": 3})
        watcher = StatusWatcher(orch.store)

        batch = orch.submit("a lighthouse at dusk")
        await orch.wait_idle(timeout=5)

        jobs = orch.store.jobs_in_batch(batch.batch_id)
        assert len(jobs) == 3
        assert all(j.status is JobStatus.COMPLETED for j in jobs)
        assert len({j.seed for j in jobs}) == 3
        assert sorted(backend.seeds()) == sorted(j.seed for j in jobs)
        assert watcher.max_generating == 1

    @pytest.mark.asyncio
    async def test_batches_drain_in_submission_order(self):
        backend = FakeBackend()
        orch = _orchestrator(backend)
        watcher = StatusWatcher(orch.store)

        batches = [orch.submit(prompt, count=2) for prompt in ("one", "two", "three")]
        await orch.wait_idle(timeout=5)

        expected = [
            job.id for batch in batches for job in orch.store.jobs_in_batch(batch.batch_id)
        ]
        assert watcher.started == expected
        assert watcher.max_generating == 1

    @pytest.mark.asyncio
    async def test_one_queue_entry_per_batch(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)

        orch.submit("one", count=3)
        orch.submit("two", count=2)

        assert [e.batch_id for e in orch.generation_queue] == [1, 2]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_first_job_claimed_synchronously(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)

        batch = orch.submit("one", count=2)

        statuses = [j.status for j in orch.store.jobs_in_batch(batch.batch_id)]
        assert statuses == [JobStatus.GENERATING, JobStatus.QUEUE]
        assert orch.is_generation_active
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_saved_params_reach_the_payload(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, generation={"steps": 14, "aspect_ratio": "portrait"})

        batch = orch.submit("a heron")
        orch.config.generation.steps = 40
        await orch.wait_idle(timeout=5)

        _, payload = backend.submissions[0]
        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert payload["4"]["inputs"]["steps"] == 14
        assert payload["7"]["inputs"]["width"] == 720
        assert payload["9"]["inputs"]["filename_prefix"] == f"renderq/{job.id}"

    @pytest.mark.asyncio
    async def test_first_fixed_seed_shared_across_batches(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, generation={"seed_mode": "first-fixed"})

        orch.submit("one", count=2)
        orch.submit("two")
        await orch.wait_idle(timeout=5)

        assert len(set(backend.seeds())) == 1

    @pytest.mark.asyncio
    async def test_submit_rejects_empty_batch(self):
        orch = _orchestrator(FakeBackend())
        with pytest.raises(OrchestratorError):
            orch.submit("nothing", count=0)


# ─── Cancellation ─────────────────────────────────────────────────────


class TestCancelQueued:
    @pytest.mark.asyncio
    async def test_cancel_removes_only_that_job(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        batch = orch.submit("one", count=3)
        first, second, third = orch.store.jobs_in_batch(batch.batch_id)

        assert orch.cancel_queued(second.id) is True

        assert orch.store.get(second.id) is None
        assert orch.store.get(third.id).status is JobStatus.QUEUE
        assert [e.batch_id for e in orch.generation_queue] == [batch.batch_id]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_drained_batch_loses_its_queue_entry(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        batch = orch.submit("one", count=3)
        _, second, third = orch.store.jobs_in_batch(batch.batch_id)

        orch.cancel_queued(second.id)
        orch.cancel_queued(third.id)

        assert len(orch.generation_queue) == 0
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        batch = orch.submit("one", count=2)
        second = orch.store.jobs_in_batch(batch.batch_id)[1]

        assert orch.cancel_queued(second.id) is True
        assert orch.cancel_queued(second.id) is False
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_generating_job_cannot_be_cancelled_locally(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        batch = orch.submit("one")
        job = orch.store.jobs_in_batch(batch.batch_id)[0]

        with pytest.raises(OrchestratorError, match="only queued jobs"):
            orch.cancel_queued(job.id)
        await orch.shutdown()


# ─── Failures ─────────────────────────────────────────────────────────


class TestSemanticFailure:
    """Failed outcomes are terminal for the job and never pause."""

    @pytest.mark.asyncio
    async def test_execution_error_fails_job_and_queue_continues(self):
        backend = FakeBackend([ERROR, COMPLETE])
        orch = _orchestrator(backend)
        batch = orch.submit("one", count=2)

        await orch.wait_idle(timeout=5)

        failed, completed = orch.store.jobs_in_batch(batch.batch_id)
        assert failed.status is JobStatus.FAILED
        assert failed.error == "sampler exploded"
        assert completed.status is JobStatus.COMPLETED
        assert orch.recovery.is_paused is False

    @pytest.mark.asyncio
    async def test_rejected_submission_fails_job(self):
        backend = FakeBackend()
        backend.submit_errors.append(BackendRejectedError("unknown sampler"))
        orch = _orchestrator(backend)
        batch = orch.submit("one")

        await orch.wait_idle(timeout=5)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.FAILED
        assert job.error == "unknown sampler"
        assert orch.recovery.is_paused is False

    @pytest.mark.asyncio
    async def test_poller_ceiling_times_job_out(self):
        backend = FakeBackend([HANG])
        orch = _orchestrator(
            backend,
            timeouts={"poll_interval_seconds": 0.01, "poll_ceiling_seconds": 0.05},
        )
        batch = orch.submit("one")

        await orch.wait_idle(timeout=5)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.TIMEOUT
        assert orch.recovery.is_paused is False
        assert orch.store.pending_tasks == []


# ─── Poller safety net ────────────────────────────────────────────────


class TestPollerCompletion:
    @pytest.mark.asyncio
    async def test_silent_channel_completes_via_status_lookup(self):
        backend = FakeBackend([SILENT])
        orch = _orchestrator(backend)
        batch = orch.submit("one")
        loop = asyncio.get_running_loop()
        started = loop.time()

        await orch.wait_idle(timeout=5)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.COMPLETED
        assert job.output_ref == FakeBackend.output_for("ext-1")
        assert backend.status_calls
        assert loop.time() - started < orch.config.timeouts.poll_ceiling_seconds
        assert orch.store.pending_tasks == []


# ─── Pause / resume ───────────────────────────────────────────────────


class TestPauseResume:
    """Connectivity loss freezes the batch; resume continues it."""

    @pytest.mark.asyncio
    async def test_channel_drop_pauses_batch(self):
        backend = FakeBackend([DROP])
        orch = _orchestrator(backend)
        batch = orch.submit("one")

        await orch.wait_idle(timeout=5)
        await asyncio.sleep(0)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.PAUSED
        recovery = orch.recovery
        assert recovery.is_paused is True
        assert recovery.paused_batch_id == batch.batch_id
        assert recovery.total_count == 1
        assert recovery.saved_params == job.saved_params
        assert orch.store.pending_tasks == []
        assert backend.dequeued == [["ext-1"]]

    @pytest.mark.asyncio
    async def test_resume_requeues_then_completes(self):
        backend = FakeBackend([DROP, COMPLETE])
        orch = _orchestrator(backend)
        watcher = StatusWatcher(orch.store)
        batch = orch.submit("one")
        await orch.wait_idle(timeout=5)
        job_id = orch.store.jobs_in_batch(batch.batch_id)[0].id

        requeued = orch.resume()

        assert [j.id for j in requeued] == [job_id]
        # Cleared only once the retry's channel is open
        assert orch.recovery.is_paused is True

        await orch.wait_idle(timeout=5)

        assert orch.store.require(job_id).status is JobStatus.COMPLETED
        assert orch.recovery.is_paused is False
        transitions = watcher.transitions_for(job_id)
        paused_at = transitions.index("job.paused")
        assert transitions[paused_at + 1] == "job.queue"
        assert "job.completed" in transitions[paused_at:]

    @pytest.mark.asyncio
    async def test_pause_freezes_remaining_jobs_in_order(self):
        backend = FakeBackend([COMPLETE, DROP])
        orch = _orchestrator(backend)
        batch = orch.submit("one", count=3)
        await orch.wait_idle(timeout=5)

        first, second, third = orch.store.jobs_in_batch(batch.batch_id)
        assert first.status is JobStatus.COMPLETED
        assert second.status is JobStatus.PAUSED
        assert third.status is JobStatus.PAUSED
        assert orch.recovery.remaining_count == 2

        requeued = orch.resume()
        assert [j.id for j in requeued] == [second.id, third.id]
        await orch.wait_idle(timeout=5)
        assert all(
            j.status is JobStatus.COMPLETED for j in orch.store.jobs_in_batch(batch.batch_id)
        )

    @pytest.mark.asyncio
    async def test_pause_holds_other_batches(self):
        backend = FakeBackend([DROP])
        orch = _orchestrator(backend)
        orch.submit("one")
        other = orch.submit("two")

        await orch.wait_idle(timeout=5)

        assert orch.store.jobs_in_batch(other.batch_id)[0].status is JobStatus.QUEUE
        assert len(backend.submissions) == 1

    @pytest.mark.asyncio
    async def test_resumed_batch_runs_before_later_batches(self):
        backend = FakeBackend([DROP])
        orch = _orchestrator(backend)
        watcher = StatusWatcher(orch.store)
        paused = orch.submit("one")
        later = orch.submit("two")
        await orch.wait_idle(timeout=5)

        orch.resume()
        await orch.wait_idle(timeout=5)

        paused_job = orch.store.jobs_in_batch(paused.batch_id)[0]
        later_job = orch.store.jobs_in_batch(later.batch_id)[0]
        assert watcher.started == [paused_job.id, paused_job.id, later_job.id]

    @pytest.mark.asyncio
    async def test_failed_retry_keeps_recovery_record(self):
        backend = FakeBackend([DROP])
        orch = _orchestrator(backend)
        batch = orch.submit("one")
        await orch.wait_idle(timeout=5)

        backend.open_errors.append(BackendTransportError("still offline"))
        orch.resume()
        await orch.wait_idle(timeout=5)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.PAUSED
        assert orch.recovery.is_paused is True
        assert orch.recovery.reason == "still offline"

    @pytest.mark.asyncio
    async def test_cancel_remaining_drops_paused_and_continues(self):
        backend = FakeBackend([DROP])
        orch = _orchestrator(backend)
        paused = orch.submit("one", count=2)
        later = orch.submit("two")
        await orch.wait_idle(timeout=5)

        removed = orch.cancel_remaining()
        await orch.wait_idle(timeout=5)

        assert len(removed) == 2
        assert orch.store.jobs_in_batch(paused.batch_id) == []
        assert orch.recovery.is_paused is False
        assert orch.store.jobs_in_batch(later.batch_id)[0].status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_without_pause_raises(self):
        orch = _orchestrator(FakeBackend())
        with pytest.raises(OrchestratorError, match="Nothing is paused"):
            orch.resume()

    @pytest.mark.asyncio
    async def test_deadline_during_reveal_does_not_pause(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, timeouts={
            "execution_seconds": 0.3,
            "poll_ceiling_seconds": 0.25,
            "reveal_delay_seconds": 0.5,
        })
        batch = orch.submit("x", count=2)

        await orch.wait_idle(timeout=5)

        jobs = orch.store.jobs_in_batch(batch.batch_id)
        assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert orch.recovery.is_paused is False
        assert len(backend.submissions) == 2


# ─── Post-processing ──────────────────────────────────────────────────


class TestPostProcessing:
    """Second queue, arbitration and failure handling."""

    @pytest.mark.asyncio
    async def test_auto_postprocess_upscales_each_job(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, queue={"auto_postprocess": True})
        batch = orch.submit("one", count=2)

        await orch.wait_idle(timeout=5)

        for job in orch.store.jobs_in_batch(batch.batch_id):
            assert job.post_status is PostProcessStatus.COMPLETED
            assert job.post_output_ref is not None
        assert backend.payload_kinds().count("upscale") == 2

    @pytest.mark.asyncio
    async def test_prioritized_generation_runs_first(self):
        backend = FakeBackend()
        orch = _orchestrator(
            backend, queue={"auto_postprocess": True, "prioritize_generation": True},
        )
        orch.submit("one", count=2)
        orch.submit("two")

        await orch.wait_idle(timeout=5)

        assert backend.payload_kinds() == [
            "generate", "generate", "generate", "upscale", "upscale", "upscale",
        ]

    @pytest.mark.asyncio
    async def test_upscale_payload_points_at_artifact(self):
        backend = FakeBackend()
        orch = _orchestrator(backend)
        batch = orch.submit("one")
        await orch.wait_idle(timeout=5)
        job = orch.store.jobs_in_batch(batch.batch_id)[0]

        orch.queue_postprocess(job.id)
        await orch.wait_idle(timeout=5)

        _, payload = backend.submissions[-1]
        assert payload["1145"]["inputs"]["image"] == "renderq/ext-1.png [output]"
        assert payload["1150"]["inputs"]["filename_prefix"] == f"renderq-hq/{job.id}"

    @pytest.mark.asyncio
    async def test_failed_upscale_reverts_without_pausing(self):
        backend = FakeBackend([COMPLETE, DROP])
        orch = _orchestrator(backend, queue={"auto_postprocess": True})
        batch = orch.submit("one")

        await orch.wait_idle(timeout=5)

        job = orch.store.jobs_in_batch(batch.batch_id)[0]
        assert job.status is JobStatus.COMPLETED
        assert job.post_status is PostProcessStatus.NONE
        assert orch.recovery.is_paused is False

    @pytest.mark.asyncio
    async def test_cancel_queued_postprocess(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, queue={"prioritize_generation": True})
        done = orch.submit("one")
        await orch.wait_idle(timeout=5)
        job = orch.store.jobs_in_batch(done.batch_id)[0]

        backend.default = HANG
        orch.submit("two")
        orch.queue_postprocess(job.id)
        assert job.post_status is PostProcessStatus.QUEUED

        assert orch.cancel_postprocess(job.id) is True
        assert job.post_status is PostProcessStatus.NONE
        assert orch.cancel_postprocess(job.id) is False
        assert len(orch.postprocess_queue) == 0
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_queue_postprocess_requires_completed_artifact(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        batch = orch.submit("one")
        job = orch.store.jobs_in_batch(batch.batch_id)[0]

        with pytest.raises(OrchestratorError):
            orch.queue_postprocess(job.id)
        await orch.shutdown()


# ─── Artifact loading ─────────────────────────────────────────────────


class TestLoadRetries:
    @pytest.mark.asyncio
    async def test_retries_until_limit(self):
        backend = FakeBackend()
        orch = _orchestrator(backend, generation={"max_load_retries": 2})
        batch = orch.submit("one")
        await orch.wait_idle(timeout=5)
        job = orch.store.jobs_in_batch(batch.batch_id)[0]

        assert orch.record_load_failure(job.id) is True
        assert orch.record_load_failure(job.id) is False
        assert job.load_error is True
        assert orch.record_load_failure(job.id) is False
        assert job.retry_count == 2

        orch.record_load_success(job.id)
        assert job.retry_count == 0
        assert job.load_error is False


# ─── History and teardown ─────────────────────────────────────────────


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_finished_batch_is_archived(self):
        backend = FakeBackend()
        history = HistoryStore(MemoryStorage())
        orch = Orchestrator(backend, fast_config(), history=history)
        batch = orch.submit("one", count=2)

        await orch.wait_idle(timeout=5)
        await asyncio.sleep(0.05)

        records = await history.load()
        assert [r.batch_id for r in records] == [batch.batch_id]
        assert len(records[0].artifacts) == 2

    @pytest.mark.asyncio
    async def test_discard_session_archives_and_clears(self):
        backend = FakeBackend()
        history = HistoryStore(MemoryStorage())
        orch = Orchestrator(backend, fast_config(), history=history)
        old_session = orch.store.session_id
        orch.submit("one")
        await orch.wait_idle(timeout=5)

        archived = await orch.discard_session()

        assert archived == 1
        assert orch.store.jobs == []
        assert orch.store.session_id != old_session
        assert orch.store.next_batch_id == 1

    @pytest.mark.asyncio
    async def test_discard_refused_while_executing(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        orch.submit("one")

        with pytest.raises(OrchestratorError):
            await orch.discard_session()
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_and_dequeues_pending(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        orch.submit("one")
        while not backend.submissions:
            await asyncio.sleep(0)

        await orch.shutdown()

        assert backend.interrupts == 1
        assert backend.dequeued == [["ext-1"]]
        with pytest.raises(OrchestratorError):
            orch.submit("late")

    @pytest.mark.asyncio
    async def test_shutdown_swallows_backend_errors(self):
        backend = FakeBackend(default=HANG)
        backend.interrupt_error = BackendTransportError("gone")
        orch = _orchestrator(backend)
        orch.submit("one")
        while not backend.submissions:
            await asyncio.sleep(0)

        await orch.shutdown()

        assert backend.dequeued == [["ext-1"]]

    @pytest.mark.asyncio
    async def test_shutdown_before_first_step_releases_guard(self):
        backend = FakeBackend(default=HANG)
        orch = _orchestrator(backend)
        orch.submit("one")
        assert orch.is_generation_active

        await orch.shutdown()

        assert orch.is_generation_active is False
        assert backend.submissions == []
