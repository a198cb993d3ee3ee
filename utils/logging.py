# utils/logging.py
from __future__ import annotations
import logging
import os

from rich.console import Console
from rich.logging import RichHandler

ROOT_NAME = "coin_dashboard"
LEVEL_ENV = "COIN_DASHBOARD_LOG_LEVEL"

_configured = False


def _configure_root() -> logging.Logger:
    global _configured
    root = logging.getLogger(ROOT_NAME)
    if _configured:
        return root
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(_env_level())
    _configured = True
    return root


def _env_level() -> int:
    name = os.environ.get(LEVEL_ENV, "WARNING").strip().upper()
    level = logging.getLevelName(name)
    # unknown names come back as the string "Level <name>"
    return level if isinstance(level, int) else logging.WARNING


def get_logger(name: str) -> logging.Logger:
    """Return a child of the dashboard logger, e.g. ``coin_dashboard.coingecko``."""
    _configure_root()
    return logging.getLogger(f"{ROOT_NAME}.{name}")


def set_level(level: int | str) -> None:
    _configure_root().setLevel(level)
