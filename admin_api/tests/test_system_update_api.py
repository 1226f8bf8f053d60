"""Contract tests for the system update REST endpoints."""

from __future__ import annotations

import importlib
from pathlib import Path
import sys

from fastapi import Form
from fastapi.testclient import TestClient
import pytest

from admin_api.update_service import INTERNAL_FAULT_MESSAGE, SUCCESS_MESSAGE

ADMIN_KEY = "super-secret"
ADMIN_HEADERS = {"X-Api-Key": ADMIN_KEY}


@pytest.fixture
def app_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, migrator_factory):
    """Reload ``admin_api.app`` against a temporary app root and database."""
    app_root = tmp_path / "app_root"
    app_root.mkdir()
    monkeypatch.setenv("ADMIN_APP_ROOT", str(app_root))
    monkeypatch.setenv("ADMIN_DATABASE_URL", f"sqlite:///{(tmp_path / 'admin.sqlite3').as_posix()}")
    monkeypatch.setenv("ADMIN_ALEMBIC_INI", str(tmp_path / "missing-alembic.ini"))
    monkeypatch.setenv("ADMIN_SUPER_ADMIN_KEYS", f"{ADMIN_KEY}, other-key")
    monkeypatch.setenv("ADMIN_HOME_URL", "/home")

    sys.modules.pop("admin_api.app", None)
    module = importlib.import_module("admin_api.app")
    module.UPDATE_SERVICE.migrator = migrator_factory()
    yield module
    module.ENGINE.dispose()


@pytest.fixture
def api_client(app_module):
    with TestClient(app_module.app) as client:
        app_module.SETTINGS_STORE.upsert_many(
            [{"name": "system_version", "data": "1.2.0", "type": "string"}]
        )
        yield client


def _post_package(client: TestClient, package_path: Path, headers=ADMIN_HEADERS, content_type="application/zip"):
    with package_path.open("rb") as handle:
        return client.post(
            "/system-update",
            files={"file": (package_path.name, handle, content_type)},
            headers=headers,
        )


def test_post_update_succeeds(api_client: TestClient, app_module, package_factory) -> None:
    """A valid package updates the version and returns the success payload."""
    response = _post_package(api_client, package_factory())

    assert response.status_code == 200
    assert response.json() == {"error": False, "message": SUCCESS_MESSAGE}
    assert app_module.SETTINGS_STORE.get_value("system_version") == "1.3.0"
    assert (app_module.CONFIG.app_root / "app" / "marker.txt").is_file()


def test_post_update_without_key_is_forbidden(api_client: TestClient, app_module, package_factory) -> None:
    response = _post_package(api_client, package_factory(), headers={})

    assert response.status_code == 403
    payload = response.json()
    assert payload["error"] is True
    assert payload["code"] == "update.permission_denied"
    assert not (app_module.CONFIG.app_root / "update").exists()


def test_post_update_requires_file_field(api_client: TestClient) -> None:
    response = api_client.post("/system-update", headers=ADMIN_HEADERS)

    assert response.status_code == 422
    assert response.json() == {
        "error": True,
        "message": "The file field is required.",
        "code": "update.validation_failed",
    }


def test_post_update_rejects_non_zip(api_client: TestClient, tmp_path: Path) -> None:
    text_file = tmp_path / "notes.txt"
    text_file.write_text("hello", encoding="utf-8")

    response = _post_package(api_client, text_file, content_type="text/plain")

    assert response.status_code == 422
    assert response.json()["message"] == "The file must be a file of type: zip."


def test_post_update_version_mismatch(api_client: TestClient, app_module, package_factory) -> None:
    response = _post_package(api_client, package_factory(current_version="1.0.0", update_version="1.1.0"))

    assert response.status_code == 409
    payload = response.json()
    assert payload["error"] is True
    assert payload["code"] == "update.version_mismatch"
    assert payload["current_version"] == "1.2.0"
    assert payload["message"] == "1.2.0 Please update nearest version first"
    assert not (app_module.CONFIG.app_root / "version_info.php").exists()


def test_post_update_migration_failure_is_generic(
    api_client: TestClient, app_module, package_factory, migrator_factory
) -> None:
    app_module.UPDATE_SERVICE.migrator = migrator_factory(fail_with=RuntimeError("disk I/O error"))

    response = _post_package(api_client, package_factory())

    assert response.status_code == 500
    assert response.json() == {
        "error": True,
        "message": INTERNAL_FAULT_MESSAGE,
        "code": "update.internal_error",
    }
    assert app_module.SETTINGS_STORE.get_value("system_version") == "1.2.0"


def test_index_shows_version_for_super_admin(api_client: TestClient) -> None:
    response = api_client.get("/system-update", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"error": False, "system_version": "1.2.0"}


def test_index_redirects_non_admin_home(api_client: TestClient) -> None:
    response = api_client.get("/system-update", headers={"X-Api-Key": "unknown"}, follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"].startswith("/home?error=")


def test_index_reflects_update_after_cache_invalidation(api_client: TestClient, package_factory) -> None:
    assert api_client.get("/system-update", headers=ADMIN_HEADERS).json()["system_version"] == "1.2.0"

    assert _post_package(api_client, package_factory()).status_code == 200

    assert api_client.get("/system-update", headers=ADMIN_HEADERS).json()["system_version"] == "1.3.0"


def test_health(api_client: TestClient) -> None:
    assert api_client.get("/health").json()["ok"] is True


def test_post_update_text_field_is_not_a_file(api_client: TestClient) -> None:
    response = api_client.post("/system-update", data={"file": "not-a-file"}, headers=ADMIN_HEADERS)

    assert response.status_code == 422
    assert response.json() == {
        "error": True,
        "message": "The file must be a file.",
        "code": "update.validation_failed",
    }


def test_post_update_text_field_checks_permission_first(api_client: TestClient) -> None:
    response = api_client.post("/system-update", data={"file": "not-a-file"})

    assert response.status_code == 403
    assert response.json()["code"] == "update.permission_denied"


def test_request_validation_errors_keep_error_shape(api_client: TestClient, app_module) -> None:
    @app_module.app.post("/form-count")
    def _form_count(count: int = Form(...)):
        return {"count": count}

    denied = api_client.post("/form-count", data={"count": "many"})
    rejected = api_client.post("/form-count", data={"count": "many"}, headers=ADMIN_HEADERS)

    assert denied.status_code == 403
    assert denied.json()["code"] == "update.permission_denied"
    assert rejected.status_code == 422
    assert rejected.json() == {
        "error": True,
        "message": "The file must be a file.",
        "code": "update.validation_failed",
    }
