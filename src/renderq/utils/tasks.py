"""Helpers for asyncio.Task lifecycle.

``log_task_exception`` is attached as a done-callback to every background
task the orchestrator spawns (queue drains, pollers, autosave timers) so an
exception escaping one of them is logged instead of disappearing with the
task object.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Args:
        task: The completed task to inspect.
        logger: A structlog-style logger with ``.error()``/``.warning()``.
        event: Event name to log under (e.g. ``"queue.drain_crashed"``).
        level: Log method name, ``"error"`` (default) or ``"warning"``.

    Returns:
        The exception if one was raised, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), error_type=type(exc).__name__, task_name=task.get_name())
    return exc


def spawn(
    coro: Any,
    *,
    name: str,
    logger: Any,
    event: str,
) -> asyncio.Task[Any]:
    """Create a named task whose failure is logged via ``log_task_exception``."""
    task = asyncio.create_task(coro, name=name)
    callback: Callable[[asyncio.Task[Any]], Any] = lambda t: log_task_exception(t, logger, event)
    task.add_done_callback(callback)
    return task
