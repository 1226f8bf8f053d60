"""Environment-driven configuration for the admin API.

All values are read once when :func:`AppConfig.from_env` is called, which
``admin_api.app`` does at import time. Tests reload the app module after
setting the variables below with ``monkeypatch.setenv``.

Variables
---------
ADMIN_APP_ROOT
    Live application tree that update payloads are overlaid on.
ADMIN_DATABASE_URL
    SQLAlchemy URL of the settings database.
ADMIN_ALEMBIC_INI
    Alembic configuration used by the migration runner.
ADMIN_SUPER_ADMIN_KEYS
    Comma separated API keys that carry the ``Super Admin`` role.
ADMIN_SETTINGS_CACHE_KEY
    Cache region holding the system settings.
ADMIN_HOME_URL
    Redirect target for denied index page access.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_SETTINGS_CACHE_KEY = "systemSettings"
REPOSITORY_ROOT = Path(__file__).resolve().parents[1]


def _split_csv(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class AppConfig:
    """Resolved runtime configuration."""

    app_root: Path
    database_url: str
    alembic_ini: Path
    super_admin_keys: Tuple[str, ...] = field(default_factory=tuple)
    settings_cache_key: str = DEFAULT_SETTINGS_CACHE_KEY
    home_url: str = "/"

    @property
    def staging_dir(self) -> Path:
        """Temporary directory that receives uploaded packages."""
        return self.app_root / "update" / "tmp"

    @classmethod
    def from_env(cls) -> "AppConfig":
        app_root = Path(os.getenv("ADMIN_APP_ROOT", "") or os.getcwd()).expanduser().resolve()
        database_url = os.getenv("ADMIN_DATABASE_URL", "").strip()
        if not database_url:
            database_url = f"sqlite:///{(app_root / 'admin.sqlite3').as_posix()}"
        alembic_ini = Path(
            os.getenv("ADMIN_ALEMBIC_INI", "") or (REPOSITORY_ROOT / "alembic.ini")
        ).expanduser()
        return cls(
            app_root=app_root,
            database_url=database_url,
            alembic_ini=alembic_ini,
            super_admin_keys=_split_csv(os.getenv("ADMIN_SUPER_ADMIN_KEYS")),
            settings_cache_key=os.getenv("ADMIN_SETTINGS_CACHE_KEY", "").strip()
            or DEFAULT_SETTINGS_CACHE_KEY,
            home_url=os.getenv("ADMIN_HOME_URL", "").strip() or "/",
        )
