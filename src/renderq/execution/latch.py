"""Single-writer token shared by a Connection Adapter and its Backup Poller.

Both watchers race on the same job. Whichever calls ``claim()`` first owns
the terminal transition; the loser must not mutate terminal state and may
``wait()`` for the winner's outcome instead. ``claim()`` is synchronous, so
under the cooperative scheduler the check and the set cannot interleave.
"""

from __future__ import annotations

import asyncio

from renderq.execution.outcome import Outcome


class CompletionLatch:
    """Claim-once token carrying the winner's outcome."""

    def __init__(self) -> None:
        self._owner: str | None = None
        self._outcome: Outcome | None = None
        self._settled = asyncio.Event()

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def is_claimed(self) -> bool:
        return self._owner is not None

    def claim(self, owner: str) -> bool:
        """Take the token. Returns False if someone else already holds it."""
        if self._owner is not None:
            return False
        self._owner = owner
        return True

    def settle(self, outcome: Outcome) -> None:
        """Publish the owner's outcome to anyone waiting."""
        if self._owner is None:
            raise RuntimeError("settle() called on an unclaimed latch")
        self._outcome = outcome
        self._settled.set()

    async def wait(self) -> Outcome:
        await self._settled.wait()
        assert self._outcome is not None
        return self._outcome


__all__ = ["CompletionLatch"]
