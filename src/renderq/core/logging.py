"""Structured logging for renderq.

Built on structlog over the stdlib ``logging`` module. Every component gets
a ``RenderqLogger`` bound to its name; while a job executes, an
``ExecutionContext`` held in a ContextVar adds the batch, job and backend
identifiers to each event so adapter, poller and queue output can be
correlated after the fact.

Example usage:
    from renderq.core.logging import configure_logging, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("adapter")

    with with_context(ExecutionContext(batch_id=3, job_id="p1-3-0", queue="generation")):
        logger.info("adapter.channel_opened")  # includes batch_id, job_id, queue
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Keys whose values never reach a log sink
SENSITIVE_PATTERNS = frozenset({
    "token",
    "secret",
    "password",
    "credential",
    "auth",
    "bearer",
    "authorization",
    "api_key",
})


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation identifiers for one unit of work.

    Attributes:
        queue: Which queue is executing ("generation" or "postprocess").
        batch_id: Batch the job belongs to.
        job_id: Local job identifier.
        external_job_id: Identifier assigned by the backend after submission.
        session_id: Session the job was created in.
    """

    queue: str | None = None
    batch_id: int | None = None
    job_id: str | None = None
    external_job_id: str | None = None
    session_id: str | None = None

    def with_external_id(self, external_job_id: str) -> ExecutionContext:
        return replace(self, external_job_id=external_job_id)

    def to_dict(self) -> dict[str, Any]:
        """Context fields for logging, omitting unset values."""
        fields = {
            "queue": self.queue,
            "batch_id": self.batch_id,
            "job_id": self.job_id,
            "external_job_id": self.external_job_id,
            "session_id": self.session_id,
        }
        return {k: v for k, v in fields.items() if v is not None}


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "renderq_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Set ``ctx`` as the current ExecutionContext for the block.

    ContextVars are copied into tasks created inside the block, so a poller
    spawned by an adapter inherits the adapter's identifiers.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact values whose keys look like credentials (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Merge the current ExecutionContext; explicit keys take precedence."""
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class RenderqLogger:
    """Component logger wrapping structlog.

    The structlog logger is fetched on every call so that loggers created at
    import time still follow a ``configure_logging()`` issued later.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> RenderqLogger:
        """Return a new logger with additional bound context."""
        new_logger = RenderqLogger.__new__(RenderqLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log with traceback; call from inside an ``except`` block."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 20,
    backup_count: int = 3,
    include_timestamps: bool = True,
) -> None:
    """Configure renderq logging once at startup.

    Args:
        level: Minimum log level to capture.
        format: "console" for coloured human-readable output on stderr,
            "json" for one JSON object per line.
        file_path: When given, log lines also go to a size-rotated file.
        max_file_size_mb: Rotation threshold for ``file_path``.
        backup_count: Number of rotated files to keep.
        include_timestamps: Add an ISO8601 UTC timestamp to each event.
    """
    log_level = getattr(logging, level)

    handlers: list[logging.Handler] = []
    stream = logging.StreamHandler(sys.stderr if format == "console" else sys.stdout)
    stream.setLevel(log_level)
    handlers.append(stream)

    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    # cache_logger_on_first_use=False keeps import-time loggers reconfigurable
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> RenderqLogger:
    """Get a logger bound to ``component``."""
    return RenderqLogger(component, **initial_context)


__all__ = [
    "ExecutionContext",
    "RenderqLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
