"""Shared utilities for renderq."""

from renderq.utils.tasks import log_task_exception, spawn
from renderq.utils.time import epoch_ms, utc_now

__all__ = ["epoch_ms", "log_task_exception", "spawn", "utc_now"]
