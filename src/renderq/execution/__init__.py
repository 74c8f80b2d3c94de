"""Single-job execution: Connection Adapter, Backup Poller and outcomes."""

from renderq.execution.adapter import ConnectionAdapter
from renderq.execution.latch import CompletionLatch
from renderq.execution.outcome import (
    Completed,
    ConnectivityLost,
    ExecutionTarget,
    Failed,
    Outcome,
)
from renderq.execution.poller import BackupPoller

__all__ = [
    "BackupPoller",
    "Completed",
    "CompletionLatch",
    "ConnectionAdapter",
    "ConnectivityLost",
    "ExecutionTarget",
    "Failed",
    "Outcome",
]
