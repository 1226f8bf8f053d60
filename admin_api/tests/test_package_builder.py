"""Tests for the update package builder tool."""

from __future__ import annotations

import io
from pathlib import Path
import zipfile

import pytest

from admin_api.auth import SUPER_ADMIN_ROLE
from admin_api.package_builder import build_update_package, main
from admin_api.update_service import SUCCESS_MESSAGE
from admin_api.version_manifest import VersionManifest, parse_version_manifest


def _release_tree(root: Path) -> Path:
    (root / "app").mkdir(parents=True)
    (root / "app" / "marker.txt").write_text("release\n", encoding="utf-8")
    (root / "__pycache__").mkdir()
    (root / "__pycache__" / "junk.pyc").write_bytes(b"\x00")
    return root


def test_build_update_package_layout(tmp_path: Path) -> None:
    source = _release_tree(tmp_path / "release")
    output = build_update_package(
        source,
        tmp_path / "dist" / "update.zip",
        current_version="1.2.0",
        update_version="1.3.0",
    )

    with zipfile.ZipFile(output) as archive:
        assert sorted(archive.namelist()) == ["source_code.zip", "version_info.php"]
        manifest = parse_version_manifest(archive.read("version_info.php").decode("utf-8"))
        payload = zipfile.ZipFile(io.BytesIO(archive.read("source_code.zip")))

    assert manifest == VersionManifest("1.2.0", "1.3.0")
    assert payload.namelist() == ["app/marker.txt"]


def test_build_update_package_requires_source_dir(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        build_update_package(
            tmp_path / "missing",
            tmp_path / "update.zip",
            current_version="1.0.0",
            update_version="1.1.0",
        )


def test_cli_returns_error_code_for_missing_source(tmp_path: Path) -> None:
    code = main(
        [str(tmp_path / "missing"), str(tmp_path / "u.zip"), "--from-version", "1", "--to-version", "2"]
    )
    assert code == 2


def test_built_package_installs(service, store, app_root, tmp_path: Path) -> None:
    store.upsert_many([{"name": "system_version", "data": "1.2.0", "type": "string"}])
    package = build_update_package(
        _release_tree(tmp_path / "release"),
        tmp_path / "update.zip",
        current_version="1.2.0",
        update_version="1.3.0",
    )

    with package.open("rb") as handle:
        message = service.install(
            requester_roles=(SUPER_ADMIN_ROLE,),
            upload_name=package.name,
            upload_stream=handle,
        )

    assert message == SUCCESS_MESSAGE
    assert (app_root / "app" / "marker.txt").read_text(encoding="utf-8") == "release\n"
    assert not (app_root / "__pycache__").exists()
    assert store.get_value("system_version") == "1.3.0"
