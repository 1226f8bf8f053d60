"""Key/value settings store backed by the ``system_settings`` table.

The update installer reads and writes ``system_version`` here and upserts
the onboarding wizard flags once an update succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from admin_api.db import SystemSetting

SYSTEM_VERSION_KEY = "system_version"


@dataclass(frozen=True)
class SettingRecord:
    """Detached snapshot of one settings row."""

    name: str
    data: Optional[str]
    type: Optional[str] = None


def _normalize_row(row: Mapping[str, object]) -> SettingRecord:
    name = str(row.get("name") or "").strip()
    if not name:
        raise ValueError("Setting rows require a non-empty name")
    data = row.get("data")
    kind = row.get("type")
    return SettingRecord(
        name=name,
        data=None if data is None else str(data),
        type=None if kind is None else str(kind),
    )


class SettingsStore:
    """Read and mutate named settings through short-lived sessions."""

    def __init__(self, session_factory: sessionmaker, *, logger: Optional[logging.Logger] = None) -> None:
        self._session_factory = session_factory
        self.log = logger or logging.getLogger("admin_api.settings_store")

    def get(self, name: str) -> Optional[SettingRecord]:
        """Return one setting by name, or ``None`` when absent."""
        with self._session_factory() as session:
            row = session.scalars(select(SystemSetting).where(SystemSetting.name == name)).first()
            if row is None:
                return None
            return SettingRecord(name=row.name, data=row.data, type=row.type)

    def get_value(self, name: str, default: Optional[str] = None) -> Optional[str]:
        record = self.get(name)
        if record is None or record.data is None:
            return default
        return record.data

    def update_data(self, name: str, data: object) -> int:
        """Set ``data`` on an existing row and return the affected row count."""
        with self._session_factory() as session:
            result = session.execute(
                update(SystemSetting).where(SystemSetting.name == name).values(data=str(data))
            )
            session.commit()
            return int(result.rowcount or 0)

    def upsert_many(self, rows: Iterable[Mapping[str, object]]) -> None:
        """Insert rows or update ``data`` and ``type`` of rows matched by ``name``."""
        records = [_normalize_row(row) for row in rows]
        with self._session_factory() as session:
            existing = self._rows_by_name(session, [record.name for record in records])
            for record in records:
                row = existing.get(record.name)
                if row is None:
                    session.add(SystemSetting(name=record.name, data=record.data, type=record.type))
                    continue
                row.data = record.data
                row.type = record.type
            session.commit()
        self.log.debug("Upserted %d settings", len(records))

    def insert_missing(self, rows: Iterable[Mapping[str, object]]) -> List[str]:
        """Insert rows whose name is not stored yet; never overwrite.

        Returns the names that were inserted.
        """
        records = [_normalize_row(row) for row in rows]
        inserted: List[str] = []
        with self._session_factory() as session:
            existing = self._rows_by_name(session, [record.name for record in records])
            for record in records:
                if record.name in existing:
                    continue
                session.add(SystemSetting(name=record.name, data=record.data, type=record.type))
                inserted.append(record.name)
            session.commit()
        return inserted

    def as_dict(self) -> Dict[str, Optional[str]]:
        """Return all settings as ``name -> data``."""
        with self._session_factory() as session:
            rows = session.scalars(select(SystemSetting).order_by(SystemSetting.name)).all()
            return {row.name: row.data for row in rows}

    @staticmethod
    def _rows_by_name(session: Session, names: List[str]) -> Dict[str, SystemSetting]:
        if not names:
            return {}
        rows = session.scalars(select(SystemSetting).where(SystemSetting.name.in_(names))).all()
        return {row.name: row for row in rows}


__all__ = ["SYSTEM_VERSION_KEY", "SettingRecord", "SettingsStore"]
