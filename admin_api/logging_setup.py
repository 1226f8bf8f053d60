"""Root logger setup shared by the API process and the package builder CLI.

``ADMIN_LOG_LEVEL`` takes a level name (``debug``, ``WARNING``, ...) or a
number. ``ADMIN_DEBUG`` switches to DEBUG when no explicit level is set and
also lets SQLAlchemy engine and Alembic logs through.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_TRUTHY = {"1", "true", "yes", "on"}
_NOISY_LOGGERS = ("sqlalchemy.engine", "alembic.runtime.migration", "multipart")


def _level_from_env(default_level: int) -> int:
    raw = os.getenv("ADMIN_LOG_LEVEL", "").strip()
    if raw:
        if raw.isdigit():
            return int(raw)
        named = logging.getLevelName(raw.upper())
        if isinstance(named, int):
            return named
        logging.getLogger(__name__).warning("Ignoring unknown ADMIN_LOG_LEVEL=%r", raw)
    if debug_enabled():
        return logging.DEBUG
    return default_level


def debug_enabled() -> bool:
    return os.getenv("ADMIN_DEBUG", "").strip().lower() in _TRUTHY


def configure_root(default_level: int = logging.INFO) -> int:
    """Install a stream handler on the root logger and return the level used."""
    level = _level_from_env(default_level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level)

    quiet_level = logging.NOTSET if debug_enabled() else max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return level
