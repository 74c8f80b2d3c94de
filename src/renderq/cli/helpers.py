"""Shared state and factories for the renderq CLI.

Global logging options are collected by the typer callbacks into one
``CliLoggingConfig`` and applied once via ``configure_global_logging``.
Commands build their collaborators (config, storage, stores, backend)
through the factories below so tests can patch a single seam.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from renderq.backends.http import HttpComputeBackend
from renderq.core.config import RenderqConfig
from renderq.core.logging import configure_logging
from renderq.state.history import HistoryStore
from renderq.state.snapshot import SessionSnapshotStore
from renderq.state.storage import FileStorage, KeyValueStorage

from .output import console as default_console

# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """Logging options gathered from the global CLI flags."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()


def get_log_level() -> str:
    return _log_config.level


def set_log_level(level: str) -> None:
    """Set the log level (DEBUG, INFO, WARNING, ERROR)."""
    _log_config.level = level.upper()  # type: ignore[assignment]


def get_log_file() -> Path | None:
    return _log_config.file


def set_log_file(path: Path | None) -> None:
    _log_config.file = path


def get_log_format() -> str:
    return _log_config.format


def set_log_format(fmt: str) -> None:
    """Set the log format (json, console)."""
    _log_config.format = fmt.lower()  # type: ignore[assignment]


def configure_global_logging(console: Console) -> None:
    """Apply the collected logging options. Only configures once per process.

    Raises:
        typer.Exit: The options are invalid.
    """
    if _log_config.configured:
        return
    if _log_config.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        console.print(f"[red]Invalid log level:[/red] {_log_config.level}")
        raise typer.Exit(1)
    if _log_config.format not in ("json", "console"):
        console.print(f"[red]Invalid log format:[/red] {_log_config.format}")
        raise typer.Exit(1)
    configure_logging(
        level=_log_config.level,
        format=_log_config.format,
        file_path=_log_config.file,
    )
    _log_config.configured = True


def reset_logging_state() -> None:
    """Reset logging state so tests can reconfigure."""
    _log_config.level = "WARNING"
    _log_config.file = None
    _log_config.format = "console"
    _log_config.configured = False


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CONFIG_FILE = Path("~/.renderq/config.yaml")


def load_config(config_file: Path | None, console: Console | None = None) -> RenderqConfig:
    """Load the configuration file, falling back to defaults.

    An explicitly given file must exist. Without one, the default location
    is used when present.

    Raises:
        typer.Exit: The file is missing or invalid.
    """
    out = console or default_console
    if config_file is not None:
        path = config_file.expanduser()
        if not path.exists():
            out.print(f"[red]Config file not found:[/red] {path}")
            raise typer.Exit(1)
    else:
        path = DEFAULT_CONFIG_FILE.expanduser()
        if not path.exists():
            return RenderqConfig()

    try:
        return RenderqConfig.from_yaml(path)
    except yaml.YAMLError as e:
        out.print(f"[red]Invalid YAML in {path}:[/red] {e}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        out.print(f"[red]Invalid configuration in {path}:[/red]\n{e}")
        raise typer.Exit(1) from None


# =============================================================================
# Collaborator factories
# =============================================================================


def create_storage(config: RenderqConfig) -> KeyValueStorage:
    snap = config.snapshot
    return FileStorage(snap.storage_dir, quota_bytes=snap.quota_bytes)


def create_stores(config: RenderqConfig) -> tuple[HistoryStore, SessionSnapshotStore]:
    """History archive and snapshot store sharing one storage."""
    storage = create_storage(config)
    history = HistoryStore(storage, max_batches=config.snapshot.max_history_batches)
    snapshots = SessionSnapshotStore(
        storage, history, evict_keep_batches=config.snapshot.evict_keep_batches,
    )
    return history, snapshots


def create_backend(config: RenderqConfig) -> HttpComputeBackend:
    backend = config.backend
    return HttpComputeBackend(
        base_url=backend.base_url,
        ws_path=backend.ws_path,
        timeout=backend.request_timeout_seconds,
        auth_token=backend.auth_token,
    )


__all__ = [
    "CliLoggingConfig",
    "DEFAULT_CONFIG_FILE",
    "configure_global_logging",
    "create_backend",
    "create_storage",
    "create_stores",
    "get_log_file",
    "get_log_format",
    "get_log_level",
    "load_config",
    "reset_logging_state",
    "set_log_file",
    "set_log_format",
    "set_log_level",
]
