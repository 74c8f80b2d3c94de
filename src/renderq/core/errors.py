"""Exception hierarchy for renderq.

All renderq exceptions inherit from RenderqError so callers can catch
broadly or narrowly. Backend exceptions carry the only distinction the
orchestrator cares about: transport failures (connectivity loss, worth
pausing and retrying) versus rejections (semantic failure, surfaced to the
user immediately). ``classify_exception`` is the single place a raw
exception is mapped onto that distinction.
"""

from __future__ import annotations

from enum import Enum


class RenderqError(Exception):
    """Base exception for all renderq errors."""


class BackendError(RenderqError):
    """Base for errors raised by a compute backend implementation."""


class BackendTransportError(BackendError):
    """The backend could not be reached or the channel dropped.

    Examples: connection refused, event channel closed unexpectedly,
    HTTP 5xx, request timeout.
    """


class BackendRejectedError(BackendError):
    """The backend understood the request and refused it.

    Examples: workflow validation failure on submission, an
    ``execution_error`` event for a submitted job.
    """


class StorageError(RenderqError):
    """Durable client storage could not complete an operation."""


class StorageQuotaExceededError(StorageError):
    """A write would exceed the storage capacity."""


class SnapshotValidationError(RenderqError):
    """A persisted snapshot is malformed or from an incompatible version."""


class OrchestratorError(RenderqError):
    """An orchestrator operation was invoked in a state that forbids it."""


class OutcomeKind(str, Enum):
    """Terminal classification of one job execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    CONNECTIVITY_LOST = "connectivity_lost"


def classify_exception(exc: BaseException) -> OutcomeKind:
    """Map an exception raised while executing a job onto an outcome kind.

    Rejections are semantic failures. Transport errors and timeouts are
    connectivity loss. Anything unexpected is treated as connectivity loss
    too, so a bug in a transport never discards queued work.
    """
    if isinstance(exc, BackendRejectedError):
        return OutcomeKind.FAILED
    return OutcomeKind.CONNECTIVITY_LOST


__all__ = [
    "BackendError",
    "BackendRejectedError",
    "BackendTransportError",
    "OrchestratorError",
    "OutcomeKind",
    "RenderqError",
    "SnapshotValidationError",
    "StorageError",
    "StorageQuotaExceededError",
    "classify_exception",
]
