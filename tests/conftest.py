"""Pytest fixtures for renderq tests."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from renderq.core.models import OutputRef
from renderq.orchestrator.store import JobStore
from renderq.state.history import HistoryStore
from renderq.state.snapshot import SessionSnapshotStore
from renderq.state.storage import MemoryStorage

from tests.helpers import FakeBackend


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset CLI logging state, structlog and root handlers around each test."""
    from renderq.cli import helpers as cli_helpers

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store() -> JobStore:
    return JobStore(session_id="sess-test")


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def history(storage: MemoryStorage) -> HistoryStore:
    return HistoryStore(storage, max_batches=10)


@pytest.fixture
def snapshots(storage: MemoryStorage, history: HistoryStore) -> SessionSnapshotStore:
    return SessionSnapshotStore(storage, history, evict_keep_batches=2)


@pytest.fixture
def output_ref() -> OutputRef:
    return OutputRef(filename="ext-1.png", subfolder="renderq")


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """YAML config pointing storage at a temp dir with fast timings."""
    path = tmp_path / "renderq.yaml"
    path.write_text(
        "backend:\n"
        "  base_url: http://127.0.0.1:8188\n"
        "timeouts:\n"
        "  execution_seconds: 5\n"
        "  poll_interval_seconds: 0.01\n"
        "  poll_ceiling_seconds: 2\n"
        "  recovery_poll_interval_seconds: 0.01\n"
        "  recovery_ceiling_seconds: 1\n"
        "  reveal_delay_seconds: 0\n"
        "snapshot:\n"
        f"  storage_dir: {tmp_path / 'storage'}\n"
        "  debounce_seconds: 0\n"
    )
    return path
