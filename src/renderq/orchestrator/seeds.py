"""Seed allocation for generation jobs.

Modes:
    random       a fresh seed for every job
    fixed        the configured seed for every job; a fresh one per job if unset
    first-fixed  the first seed drawn in the session (configured or random)
                 is reused until the session is discarded
"""

from __future__ import annotations

import random

from renderq.core.config import SeedMode

MAX_SEED = 10**15


class SeedAllocator:
    def __init__(
        self,
        mode: SeedMode = "random",
        fixed_seed: int | None = None,
        first_fixed_seed: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.mode = mode
        self.fixed_seed = fixed_seed
        self.first_fixed_seed = first_fixed_seed
        self._rng = rng or random.Random()
        self._session_seed: int | None = None

    @property
    def session_seed(self) -> int | None:
        return self._session_seed

    def _draw(self) -> int:
        return self._rng.randrange(MAX_SEED)

    def next_seed(self) -> int:
        if self.mode == "fixed":
            return self.fixed_seed if self.fixed_seed is not None else self._draw()
        if self.mode == "first-fixed":
            if self._session_seed is None:
                self._session_seed = (
                    self.first_fixed_seed if self.first_fixed_seed is not None else self._draw()
                )
            return self._session_seed
        return self._draw()

    def restore_session_seed(self, seed: int | None) -> None:
        self._session_seed = seed

    def reset_session(self) -> None:
        """Forget the first-fixed seed so the next session draws a new one."""
        self._session_seed = None


__all__ = ["MAX_SEED", "SeedAllocator"]
