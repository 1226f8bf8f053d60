"""
Database Base Configuration

Declarative base, the ``system_settings`` model and sync engine/session
helpers used by the settings store.

Usage:
    from admin_api.db import create_db_engine, make_session_factory, init_db

    engine = create_db_engine("sqlite:///admin.sqlite3")
    init_db(engine)
    session_factory = make_session_factory(engine)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SystemSetting(Base):
    """One named system setting (``system_version``, wizard flags, ...)."""

    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(191), unique=True, index=True, nullable=False)
    data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<SystemSetting name={self.name!r} data={self.data!r}>"


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create a sync engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """
    Create tables that don't exist yet.

    Used on startup and in tests; deployed databases are migrated with
    Alembic (see ``alembic/versions``).
    """
    Base.metadata.create_all(engine)
