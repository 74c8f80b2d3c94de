"""renderq CLI.

Package structure:
    cli/
    ├── __init__.py       app assembly and global options
    ├── helpers.py        logging state, config loading, collaborator factories
    ├── output.py         rich tables and panels
    └── commands/
        ├── _shared.py    drive loop and teardown shared by run/restore
        ├── run.py        run
        ├── session.py    session show / discard / restore
        └── history.py    history stats / clear
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from renderq import __version__

from . import helpers as helpers
from .commands import history_app, run, session_app
from .helpers import (
    configure_global_logging,
    set_log_file,
    set_log_format,
    set_log_level,
)
from .output import console

app = typer.Typer(
    name="renderq",
    help="Queue and supervise image generation jobs on a remote backend",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"renderq v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="RENDERQ_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Also write logs to this file (rotated)",
            envvar="RENDERQ_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: console or json",
            envvar="RENDERQ_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """renderq - client-side job orchestrator for image generation backends."""
    configure_global_logging(console)


app.command()(run)
app.add_typer(session_app)
app.add_typer(history_app)


__all__ = ["app", "helpers"]
