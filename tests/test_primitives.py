"""Tests for the small concurrency primitives.

Covers CompletionLatch (single terminal writer), SingleFlightGuard
(synchronous size-1 mutex), WorkQueue ordering and SeedAllocator modes.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from renderq.core.models import OutputRef
from renderq.execution.latch import CompletionLatch
from renderq.execution.outcome import Completed, Failed
from renderq.orchestrator.guard import SingleFlightGuard
from renderq.orchestrator.queues import WorkQueue
from renderq.orchestrator.seeds import MAX_SEED, SeedAllocator


# ─── CompletionLatch ──────────────────────────────────────────────────


class TestCompletionLatch:
    def test_first_claim_wins(self):
        latch = CompletionLatch()
        assert latch.claim("adapter") is True
        assert latch.claim("poller") is False
        assert latch.owner == "adapter"

    def test_settle_requires_claim(self):
        with pytest.raises(RuntimeError):
            CompletionLatch().settle(Failed("x"))

    @pytest.mark.asyncio
    async def test_waiters_receive_owner_outcome(self):
        latch = CompletionLatch()
        latch.claim("poller")
        waiter = asyncio.create_task(latch.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        outcome = Completed(OutputRef(filename="a.png"))
        latch.settle(outcome)
        assert await waiter is outcome


# ─── SingleFlightGuard ────────────────────────────────────────────────


class TestSingleFlightGuard:
    def test_second_acquire_fails_while_held(self):
        guard = SingleFlightGuard("generation")
        ticket = guard.try_acquire()
        assert ticket is not None
        assert guard.active
        assert guard.try_acquire() is None

    def test_context_manager_releases_on_error(self):
        guard = SingleFlightGuard("generation")
        ticket = guard.try_acquire()
        assert ticket is not None
        with pytest.raises(ValueError):
            with ticket:
                raise ValueError("boom")
        assert not guard.active
        assert guard.try_acquire() is not None

    def test_release_is_idempotent(self):
        guard = SingleFlightGuard("postprocess")
        first = guard.try_acquire()
        assert first is not None
        first.release()
        second = guard.try_acquire()
        # A stale ticket must not release the new holder
        first.release()
        assert second is not None
        assert guard.active


# ─── WorkQueue ────────────────────────────────────────────────────────


class TestWorkQueue:
    def test_fifo_order(self):
        queue: WorkQueue[int] = WorkQueue("q")
        for n in (1, 2, 3):
            queue.enqueue(n)
        assert [queue.pop(), queue.pop(), queue.pop()] == [1, 2, 3]
        assert queue.pop() is None

    def test_enqueue_front(self):
        queue: WorkQueue[str] = WorkQueue("q")
        queue.enqueue("b")
        queue.enqueue_front("a")
        assert list(queue) == ["a", "b"]

    def test_remove_where_and_find(self):
        queue: WorkQueue[int] = WorkQueue("q")
        for n in range(6):
            queue.enqueue(n)
        assert queue.remove_where(lambda n: n % 2 == 0) == 3
        assert list(queue) == [1, 3, 5]
        assert queue.find(lambda n: n > 2) == 3
        assert queue.find(lambda n: n > 10) is None

    def test_iteration_is_a_copy(self):
        queue: WorkQueue[int] = WorkQueue("q")
        queue.enqueue(1)
        for _ in queue:
            queue.enqueue(2)
        assert len(queue) == 2


# ─── SeedAllocator ────────────────────────────────────────────────────


class TestSeedAllocator:
    def test_random_mode_draws_fresh_seeds(self):
        seeds = SeedAllocator("random", rng=random.Random(1))
        drawn = {seeds.next_seed() for _ in range(5)}
        assert len(drawn) == 5
        assert all(0 <= s < MAX_SEED for s in drawn)

    def test_fixed_mode_uses_configured_seed(self):
        seeds = SeedAllocator("fixed", fixed_seed=77)
        assert [seeds.next_seed() for _ in range(3)] == [77, 77, 77]

    def test_fixed_mode_without_seed_draws_per_job(self):
        seeds = SeedAllocator("fixed", rng=random.Random(2))
        assert seeds.next_seed() != seeds.next_seed()

    def test_first_fixed_reuses_first_draw(self):
        seeds = SeedAllocator("first-fixed", rng=random.Random(3))
        first = seeds.next_seed()
        assert seeds.next_seed() == first
        assert seeds.session_seed == first

    def test_first_fixed_prefers_configured_seed(self):
        seeds = SeedAllocator("first-fixed", first_fixed_seed=5)
        assert seeds.next_seed() == 5

    def test_reset_session_draws_again(self):
        seeds = SeedAllocator("first-fixed", rng=random.Random(4))
        first = seeds.next_seed()
        seeds.reset_session()
        assert seeds.session_seed is None
        assert seeds.next_seed() != first

    def test_restore_session_seed(self):
        seeds = SeedAllocator("first-fixed", rng=random.Random(5))
        seeds.restore_session_seed(999)
        assert seeds.next_seed() == 999
