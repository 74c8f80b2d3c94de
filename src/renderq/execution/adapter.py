"""Connection Adapter: one logical execution of one job.

The adapter opens the backend's event channel, submits the payload,
interprets the event sequence and returns exactly one Outcome. It is the
only place where backend exceptions are classified into semantic failure
versus connectivity loss; callers react to the Outcome alone.

Event handling:
    ExecutionStarted      -> target.mark_started()
    ProgressEvent         -> target.mark_progress() (filtered by node id)
    ExecutingEvent(None)  -> fetch output via status lookup, finalize
    ExecutionErrorEvent   -> target.mark_failed()
    channel end / error   -> ConnectivityLost, unless the poller resolved the job
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from typing import Any

from renderq.backends.base import (
    BackendEvent,
    ComputeBackend,
    EventChannel,
    ExecutingEvent,
    ExecutionErrorEvent,
    ExecutionStarted,
    ProgressEvent,
)
from renderq.core.errors import BackendError, OutcomeKind, classify_exception
from renderq.core.logging import get_current_context, get_logger, with_context
from renderq.core.models import OutputRef
from renderq.execution.latch import CompletionLatch
from renderq.execution.outcome import (
    Completed,
    ConnectivityLost,
    ExecutionTarget,
    Failed,
    Outcome,
)
from renderq.execution.poller import BackupPoller
from renderq.utils.tasks import spawn

_logger = get_logger("adapter")

ADAPTER_OWNER = "adapter"


class ConnectionAdapter:
    """Execute one job against a compute backend.

    A fresh adapter is created per job; it is not reusable.
    """

    def __init__(
        self,
        backend: ComputeBackend,
        target: ExecutionTarget,
        payload: dict[str, Any],
        *,
        execution_timeout: float,
        poll_interval: float,
        poll_ceiling: float,
        progress_nodes: Iterable[str] = (),
        client_id: str | None = None,
    ) -> None:
        self.backend = backend
        self.target = target
        self.payload = payload
        self.execution_timeout = execution_timeout
        self.poll_interval = poll_interval
        self.poll_ceiling = poll_ceiling
        self.progress_nodes = frozenset(progress_nodes)
        self.client_id = client_id or uuid.uuid4().hex
        self.latch = CompletionLatch()
        self.external_job_id: str | None = None
        self._channel: EventChannel | None = None
        self._poller_task: asyncio.Task[Outcome | None] | None = None
        self._completing: str | None = None
        self._finalize_task: asyncio.Future[None] | None = None
        self._output_ref: OutputRef | None = None
        self._used = False

    async def execute(self) -> Outcome:
        """Run the job to a single outcome. Never raises BackendError."""
        if self._used:
            raise RuntimeError("ConnectionAdapter.execute() may only be called once")
        self._used = True

        try:
            async with asyncio.timeout(self.execution_timeout):
                return await self._run()
        except TimeoutError:
            if self._completing is not None:
                # Completion was already claimed; the deadline no longer applies
                _logger.info("adapter.deadline_during_completion")
                return await self._finish_completion(self._completing)
            if self.latch.is_claimed and self.latch.owner != ADAPTER_OWNER:
                return await self.latch.wait()
            # Claim so a late poller cannot write after we give up
            self.latch.claim(ADAPTER_OWNER)
            _logger.warning("adapter.execution_timeout", timeout_seconds=self.execution_timeout)
            return ConnectivityLost(f"execution timed out after {self.execution_timeout:g}s")
        finally:
            await self._teardown()

    async def _run(self) -> Outcome:
        try:
            self._channel = await self.backend.open_channel(self.client_id)
        except BackendError as e:
            return self._classify(e, stage="open_channel")

        _logger.info("adapter.channel_opened", client_id=self.client_id)
        self.target.on_channel_open()

        try:
            external_job_id = await self.backend.submit(self.payload, self.client_id)
        except BackendError as e:
            outcome = self._classify(e, stage="submit")
            if isinstance(outcome, Failed) and self.latch.claim(ADAPTER_OWNER):
                self.target.mark_failed(outcome.reason)
                self.latch.settle(outcome)
            return outcome

        self.external_job_id = external_job_id
        self.target.record_submission(external_job_id)

        ctx = get_current_context()
        if ctx is not None:
            with with_context(ctx.with_external_id(external_job_id)):
                return await self._supervise(external_job_id)
        return await self._supervise(external_job_id)

    async def _supervise(self, external_job_id: str) -> Outcome:
        _logger.info("adapter.submitted", external_job_id=external_job_id)
        poller = BackupPoller(
            self.backend,
            self.target,
            self.latch,
            external_job_id,
            interval=self.poll_interval,
            ceiling=self.poll_ceiling,
            on_detected=self._close_channel,
        )
        self._poller_task = spawn(
            poller.watch(),
            name=f"poller-{external_job_id}",
            logger=_logger,
            event="adapter.poller_crashed",
        )

        assert self._channel is not None
        try:
            async for event in self._channel:
                if self.latch.is_claimed:
                    break
                outcome = await self._handle(event, external_job_id)
                if outcome is not None:
                    return outcome
        except BackendError as e:
            _logger.warning("adapter.channel_error", error=str(e))

        if self.latch.is_claimed:
            return await self.latch.wait()
        _logger.warning("adapter.channel_closed", external_job_id=external_job_id)
        return ConnectivityLost("event channel closed before the job finished")

    async def _handle(self, event: BackendEvent, external_job_id: str) -> Outcome | None:
        if event.external_job_id is not None and event.external_job_id != external_job_id:
            return None

        if isinstance(event, ExecutionStarted):
            self.target.mark_started()
        elif isinstance(event, ProgressEvent):
            if self.progress_nodes and event.node_id not in self.progress_nodes:
                return None
            self.target.mark_progress(event.percent)
        elif isinstance(event, ExecutingEvent) and event.is_completion:
            if event.external_job_id is None:
                return None
            return await self._complete(external_job_id)
        elif isinstance(event, ExecutionErrorEvent):
            if not self.latch.claim(ADAPTER_OWNER):
                return await self.latch.wait()
            self._cancel_poller()
            _logger.warning("adapter.execution_error", message=event.message)
            self.target.mark_failed(event.message)
            self.target.confirm_submission(external_job_id)
            outcome = Failed(event.message)
            self.latch.settle(outcome)
            return outcome
        return None

    async def _complete(self, external_job_id: str) -> Outcome:
        if not self.latch.claim(ADAPTER_OWNER):
            return await self.latch.wait()
        self._cancel_poller()
        self._completing = external_job_id
        return await self._finish_completion(external_job_id)

    async def _finish_completion(self, external_job_id: str) -> Outcome:
        """Fetch the output and finalize. Safe to re-enter after the deadline fires."""
        if self._finalize_task is None:
            try:
                status = await self.backend.get_status(external_job_id)
            except BackendError as e:
                outcome = self._classify(e, stage="get_status")
                if isinstance(outcome, Failed):
                    self.target.mark_failed(outcome.reason)
                    self.target.confirm_submission(external_job_id)
                self.latch.settle(outcome)
                return outcome

            output_ref = status.first_output
            if output_ref is None:
                reason = status.error or "backend reported completion without outputs"
                self.target.mark_failed(reason)
                self.target.confirm_submission(external_job_id)
                failed = Failed(reason)
                self.latch.settle(failed)
                return failed

            _logger.info("adapter.completed", filename=output_ref.filename)
            self._output_ref = output_ref
            self._finalize_task = asyncio.ensure_future(self.target.finalize(output_ref))

        # The reveal must finish even if the execution deadline expires mid-delay
        await asyncio.shield(self._finalize_task)
        assert self._output_ref is not None
        self.target.confirm_submission(external_job_id)
        completed = Completed(self._output_ref)
        self.latch.settle(completed)
        return completed

    def _classify(self, exc: BackendError, *, stage: str) -> Outcome:
        kind = classify_exception(exc)
        _logger.warning(
            "adapter.backend_error",
            stage=stage,
            outcome=kind.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if kind is OutcomeKind.FAILED:
            return Failed(str(exc))
        return ConnectivityLost(str(exc))

    def _cancel_poller(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()

    async def _close_channel(self) -> None:
        if self._channel is not None and not self._channel.closed:
            await self._channel.close()

    async def _teardown(self) -> None:
        self._cancel_poller()
        if self._poller_task is not None:
            await asyncio.gather(self._poller_task, return_exceptions=True)
        await self._close_channel()


__all__ = ["ADAPTER_OWNER", "ConnectionAdapter"]
