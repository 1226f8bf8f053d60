"""Schema migration and installation seeding used after an update is applied.

The installer only depends on the :class:`SchemaMigrator` protocol, so tests
inject fakes and deployments use :class:`AlembicMigrator`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from alembic import command
from alembic.config import Config

from admin_api.settings_store import SYSTEM_VERSION_KEY, SettingsStore

DEFAULT_SYSTEM_VERSION = "1.0.0"

WIZARD_CHECKMARK_NAMES = (
    "wizard_checkMark",
    "system_settings_wizard_checkMark",
    "notification_settings_wizard_checkMark",
    "email_settings_wizard_checkMark",
    "verify_email_wizard_checkMark",
    "email_template_settings_wizard_checkMark",
    "payment_settings_wizard_checkMark",
    "third_party_api_settings_wizard_checkMark",
)


def installation_defaults() -> List[Dict[str, object]]:
    """Rows written by the installation seeder when they are missing."""
    rows: List[Dict[str, object]] = [
        {"name": SYSTEM_VERSION_KEY, "data": DEFAULT_SYSTEM_VERSION, "type": "string"},
    ]
    rows.extend({"name": name, "data": 0, "type": "integer"} for name in WIZARD_CHECKMARK_NAMES)
    return rows


class SchemaMigrator(Protocol):
    """Capability the installer calls once the payload has been applied."""

    def apply_pending_changes(self) -> None:
        ...

    def seed_installation_defaults(self) -> None:
        ...


class InstallationSeeder:
    """Insert default settings without touching rows that already exist."""

    def __init__(self, store: SettingsStore, *, logger: Optional[logging.Logger] = None) -> None:
        self._store = store
        self.log = logger or logging.getLogger("admin_api.migrations")

    def run(self) -> List[str]:
        inserted = self._store.insert_missing(installation_defaults())
        if inserted:
            self.log.info("Installation seeder inserted: %s", ", ".join(inserted))
        return inserted


class AlembicMigrator:
    """Run ``alembic upgrade head`` and the installation seeder."""

    def __init__(
        self,
        *,
        alembic_ini: Path,
        database_url: str,
        seeder: InstallationSeeder,
        revision: str = "head",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._alembic_ini = Path(alembic_ini)
        self._database_url = database_url
        self._seeder = seeder
        self._revision = revision
        self.log = logger or logging.getLogger("admin_api.migrations")

    def _config(self) -> Config:
        cfg = Config(str(self._alembic_ini))
        script_location = cfg.get_main_option("script_location") or "alembic"
        if not Path(script_location).is_absolute():
            cfg.set_main_option("script_location", str(self._alembic_ini.parent / script_location))
        cfg.set_main_option("sqlalchemy.url", self._database_url)
        cfg.attributes["configure_logger"] = False
        return cfg

    def apply_pending_changes(self) -> None:
        self.log.info("Applying pending migrations up to %s", self._revision)
        command.upgrade(self._config(), self._revision)

    def seed_installation_defaults(self) -> None:
        self._seeder.run()


class NullMigrator:
    """Seeder-only runner for deployments without an Alembic configuration."""

    def __init__(self, seeder: Optional[InstallationSeeder] = None) -> None:
        self._seeder = seeder
        self.log = logging.getLogger("admin_api.migrations")

    def apply_pending_changes(self) -> None:
        self.log.info("No Alembic configuration found; skipping schema migrations")

    def seed_installation_defaults(self) -> None:
        if self._seeder is not None:
            self._seeder.run()
