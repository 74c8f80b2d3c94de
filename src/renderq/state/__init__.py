"""Durable client storage, session snapshots and the history archive."""

from renderq.state.history import HistoryRecord, HistoryStats, HistoryStore
from renderq.state.snapshot import (
    SaveResult,
    SessionSnapshot,
    SessionSnapshotStore,
)
from renderq.state.storage import FileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    "FileStorage",
    "HistoryRecord",
    "HistoryStats",
    "HistoryStore",
    "KeyValueStorage",
    "MemoryStorage",
    "SaveResult",
    "SessionSnapshot",
    "SessionSnapshotStore",
]
