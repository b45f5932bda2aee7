"""CLI command implementations for convoy.

This package contains the implementation of each CLI command,
separated from the CLI framework setup in cli.py.
"""

from .audit import audit
from .deploy import deploy
from .init import init
from .lock import lock_app
from .proxy import proxy_app
from .services import services_app

__all__ = [
    "audit",
    "deploy",
    "init",
    "lock_app",
    "proxy_app",
    "services_app",
]
