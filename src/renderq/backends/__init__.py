"""Compute backends."""

from renderq.backends.base import (
    BackendEvent,
    ComputeBackend,
    EventChannel,
    ExecutingEvent,
    ExecutionErrorEvent,
    ExecutionStarted,
    ProgressEvent,
    StatusResult,
)
from renderq.backends.http import HttpComputeBackend

__all__ = [
    "BackendEvent",
    "ComputeBackend",
    "EventChannel",
    "ExecutingEvent",
    "ExecutionErrorEvent",
    "ExecutionStarted",
    "HttpComputeBackend",
    "ProgressEvent",
    "StatusResult",
]
