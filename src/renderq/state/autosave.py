"""Debounced snapshot autosave.

Subscribes to JobStore changes and writes a fresh snapshot once no change
has arrived for ``debounce`` seconds. An empty state clears the stored
snapshot instead of writing an empty one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from renderq.core.logging import get_logger
from renderq.orchestrator.store import JobStore, StoreEvent
from renderq.state.snapshot import SaveResult, SessionSnapshot, SessionSnapshotStore
from renderq.utils.tasks import spawn

_logger = get_logger("autosave")

# Progress ticks change nothing that is persisted
_IGNORED_EVENTS = frozenset({"job.progress", "job.post_progress"})


class SnapshotAutosaver:
    def __init__(
        self,
        store: JobStore,
        snapshots: SessionSnapshotStore,
        capture: Callable[[], SessionSnapshot],
        *,
        debounce: float = 1.0,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self._capture = capture
        self.debounce = debounce
        self._timer: asyncio.Task[None] | None = None
        self._sub_id: str | None = None
        self.saves = 0
        self.last_result: SaveResult | None = None

    def start(self) -> None:
        if self._sub_id is None:
            self._sub_id = self.store.subscribe(
                self._on_change,
                event_filter=lambda e: e["event"] not in _IGNORED_EVENTS,
            )

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _on_change(self, event: StoreEvent) -> None:
        self.schedule()

    def schedule(self) -> None:
        """(Re)start the debounce timer."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = spawn(
            self._delayed_save(),
            name="snapshot-autosave",
            logger=_logger,
            event="autosave.crashed",
        )

    async def _delayed_save(self) -> None:
        await asyncio.sleep(self.debounce)
        await self.save_now()

    async def save_now(self) -> SaveResult | None:
        """Persist the current state immediately. Returns None when it cleared storage."""
        snapshot = self._capture()
        if snapshot.is_empty:
            await self.snapshots.clear()
            self.last_result = None
            return None
        result = await self.snapshots.save(snapshot)
        self.saves += 1
        self.last_result = result
        _logger.debug("autosave.saved", result=result.value, jobs=len(snapshot.jobs))
        return result

    async def flush(self) -> None:
        """Run any pending save now instead of waiting for the debounce."""
        if self.pending:
            assert self._timer is not None
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            await self.save_now()

    async def close(self, *, flush: bool = True) -> None:
        if self._sub_id is not None:
            self.store.unsubscribe(self._sub_id)
            self._sub_id = None
        if flush:
            await self.flush()
        elif self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)


__all__ = ["SnapshotAutosaver"]
