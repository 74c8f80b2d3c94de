# renderq/cli/commands: command modules for the renderq CLI.

from .history import history_app
from .run import run
from .session import session_app

__all__ = [
    "history_app",
    "run",
    "session_app",
]
