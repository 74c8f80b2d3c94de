"""Backup Poller: detect completions the event channel failed to report.

The event channel is a best-effort notification path; the backend's
status-by-id lookup is the source of truth. A poller runs beside every
Connection Adapter once submission succeeds, and on its own after a session
restore for jobs whose outcome was never confirmed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from renderq.backends.base import ComputeBackend, StatusResult
from renderq.core.errors import BackendError
from renderq.core.logging import get_logger
from renderq.execution.latch import CompletionLatch
from renderq.execution.outcome import Completed, ExecutionTarget, Failed, Outcome

_logger = get_logger("poller")

POLLER_OWNER = "poller"


class BackupPoller:
    """Poll one external job until it completes, fails or hits the ceiling.

    Args:
        backend: Backend providing the status lookup.
        target: Sink for state transitions.
        latch: Token shared with the adapter, if one is running.
        external_job_id: Backend job id to watch.
        interval: Seconds between lookups.
        ceiling: Seconds after which the job is marked timeout.
        on_detected: Called after the poller claims the latch, to close the
            stale event channel so the adapter stops waiting on it.
        immediate: Perform the first lookup before sleeping.
    """

    def __init__(
        self,
        backend: ComputeBackend,
        target: ExecutionTarget,
        latch: CompletionLatch,
        external_job_id: str,
        *,
        interval: float,
        ceiling: float,
        on_detected: Callable[[], Awaitable[None]] | None = None,
        immediate: bool = False,
    ) -> None:
        self.backend = backend
        self.target = target
        self.latch = latch
        self.external_job_id = external_job_id
        self.interval = interval
        self.ceiling = ceiling
        self._on_detected = on_detected
        self._immediate = immediate
        self._log = _logger.bind(external_job_id=external_job_id, job_id=target.job_id)

    def _stand_down(self) -> bool:
        return self.latch.is_claimed or self.target.is_terminal()

    async def watch(self) -> Outcome | None:
        """Run until resolved. Returns None if the adapter won the race."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ceiling
        first = True

        while True:
            if not (first and self._immediate):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.interval, remaining))
            first = False

            if self._stand_down():
                return None
            try:
                status = await self.backend.get_status(self.external_job_id)
            except BackendError as e:
                self._log.debug("poller.lookup_failed", error=str(e))
                continue
            # The adapter may have resolved the job while we awaited the lookup
            if self._stand_down():
                return None

            if status.is_complete or status.error:
                return await self._resolve(status)

        return await self._expire()

    async def _resolve(self, status: StatusResult) -> Outcome | None:
        if not self.latch.claim(POLLER_OWNER):
            return None
        await self._close_stale_channel()

        outcome: Outcome
        if status.is_complete:
            output_ref = status.first_output
            assert output_ref is not None
            self._log.info("poller.detected_completion", filename=output_ref.filename)
            await self.target.finalize(output_ref)
            outcome = Completed(output_ref)
        else:
            reason = status.error or "execution error"
            self._log.warning("poller.detected_failure", reason=reason)
            self.target.mark_failed(reason)
            outcome = Failed(reason)

        self.target.confirm_submission(self.external_job_id)
        self.latch.settle(outcome)
        return outcome

    async def _expire(self) -> Outcome | None:
        if not self.latch.claim(POLLER_OWNER):
            return None
        self._log.warning("poller.ceiling_reached", ceiling_seconds=self.ceiling)
        await self._close_stale_channel()
        self.target.mark_timeout()
        self.target.confirm_submission(self.external_job_id)
        outcome = Failed(f"no result after {self.ceiling:g}s")
        self.latch.settle(outcome)
        return outcome

    async def _close_stale_channel(self) -> None:
        if self._on_detected is not None:
            await self._on_detected()


__all__ = ["BackupPoller", "POLLER_OWNER"]
