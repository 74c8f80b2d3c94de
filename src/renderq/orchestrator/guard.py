"""Single-flight guard: at most one execution per queue.

``try_acquire()`` is synchronous. A trigger either gets a ticket before any
``await`` happens, or learns immediately that a drain is already running,
so two triggers can never both observe an idle queue and start draining.
The ticket is a context manager and releases on every exit path.
"""

from __future__ import annotations

from types import TracebackType

from renderq.core.logging import get_logger

_logger = get_logger("guard")


class GuardTicket:
    """Proof of holding a SingleFlightGuard. Release is idempotent."""

    __slots__ = ("_guard", "_released")

    def __init__(self, guard: SingleFlightGuard) -> None:
        self._guard = guard
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._guard._release()

    def __enter__(self) -> GuardTicket:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class SingleFlightGuard:
    """Size-1 mutex with a non-blocking acquire."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._held = False

    @property
    def active(self) -> bool:
        return self._held

    def try_acquire(self) -> GuardTicket | None:
        if self._held:
            return None
        self._held = True
        _logger.debug("guard.acquired", guard=self.name)
        return GuardTicket(self)

    def _release(self) -> None:
        self._held = False
        _logger.debug("guard.released", guard=self.name)


__all__ = ["GuardTicket", "SingleFlightGuard"]
