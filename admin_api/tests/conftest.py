"""Shared fixtures for installer, store and API tests."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Callable, Dict, List, Optional
import zipfile

import pytest

from admin_api.cache import SettingsCache
from admin_api.db import create_db_engine, init_db, make_session_factory
from admin_api.settings_store import SettingsStore
from admin_api.update_service import SystemUpdateService


class FakeMigrator:
    """Record migration calls; optionally fail on schema changes."""

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.calls: List[str] = []
        self.fail_with = fail_with

    def apply_pending_changes(self) -> None:
        self.calls.append("migrate")
        if self.fail_with is not None:
            raise self.fail_with

    def seed_installation_defaults(self) -> None:
        self.calls.append("seed")


def _zip_bytes(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, payload in entries.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


def build_update_package(
    directory: Path,
    *,
    current_version: str = "1.2.0",
    update_version: str = "1.3.0",
    payload_files: Optional[Dict[str, bytes]] = None,
    payload_bytes: Optional[bytes] = None,
    include_manifest: bool = True,
    include_payload: bool = True,
    manifest_text: Optional[str] = None,
    name: str = "update.zip",
) -> Path:
    """Create a synthetic update package ZIP for installer tests."""
    entries: Dict[str, bytes] = {}
    if include_manifest:
        text = manifest_text
        if text is None:
            text = (
                "<?php\n\nreturn [\n"
                f"    'current_version' => '{current_version}',\n"
                f"    'update_version' => '{update_version}',\n"
                "];\n"
            )
        entries["version_info.php"] = text.encode("utf-8")
    if include_payload:
        if payload_bytes is None:
            files = payload_files if payload_files is not None else {"app/marker.txt": b"marker v1.3.0\n"}
            payload_bytes = _zip_bytes(files)
        entries["source_code.zip"] = payload_bytes

    directory.mkdir(parents=True, exist_ok=True)
    package_path = directory / name
    package_path.write_bytes(_zip_bytes(entries))
    return package_path


@pytest.fixture
def package_factory(tmp_path: Path) -> Callable[..., Path]:
    """Return a builder that writes update packages below ``tmp_path/packages``."""

    def _factory(**kwargs) -> Path:
        return build_update_package(tmp_path / "packages", **kwargs)

    return _factory


@pytest.fixture
def store() -> SettingsStore:
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield SettingsStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app_root"
    root.mkdir()
    return root


@pytest.fixture
def migrator() -> FakeMigrator:
    return FakeMigrator()


@pytest.fixture
def cache() -> SettingsCache:
    return SettingsCache()


@pytest.fixture
def service(app_root: Path, store: SettingsStore, migrator: FakeMigrator, cache: SettingsCache) -> SystemUpdateService:
    return SystemUpdateService(
        app_root=app_root,
        staging_dir=app_root / "update" / "tmp",
        store=store,
        migrator=migrator,
        cache=cache,
        cache_region="systemSettings",
    )


@pytest.fixture
def migrator_factory() -> Callable[..., FakeMigrator]:
    return FakeMigrator
