"""FastAPI surface for the admin system-update workflow.

Module-level singletons are built from :class:`admin_api.config.AppConfig`
at import time. Route handlers look them up on every call, so tests can
swap ``UPDATE_SERVICE`` or ``ROLE_RESOLVER`` on the module.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Optional, Union
from urllib.parse import urlencode

from fastapi import FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from admin_api import __version__
from admin_api.auth import SUPER_ADMIN_ROLE, ApiKeyRoleResolver, has_role
from admin_api.cache import SettingsCache
from admin_api.config import AppConfig
from admin_api.db import create_db_engine, init_db, make_session_factory
from admin_api.logging_setup import configure_root
from admin_api.migrations import AlembicMigrator, InstallationSeeder, NullMigrator, SchemaMigrator
from admin_api.settings_store import SettingsStore
from admin_api.update_service import (
    PermissionDenied,
    SystemUpdateService,
    UpdateError,
    UpdateValidationError,
)

configure_root()
log = logging.getLogger("admin_api.app")

CONFIG = AppConfig.from_env()
ENGINE = create_db_engine(CONFIG.database_url)
SETTINGS_STORE = SettingsStore(make_session_factory(ENGINE))
SETTINGS_CACHE = SettingsCache()
ROLE_RESOLVER = ApiKeyRoleResolver.for_super_admins(CONFIG.super_admin_keys)


def _build_migrator() -> SchemaMigrator:
    seeder = InstallationSeeder(SETTINGS_STORE)
    if CONFIG.alembic_ini.is_file():
        return AlembicMigrator(
            alembic_ini=CONFIG.alembic_ini,
            database_url=CONFIG.database_url,
            seeder=seeder,
        )
    log.warning("Alembic config %s not found; migrations disabled", CONFIG.alembic_ini)
    return NullMigrator(seeder)


MIGRATOR = _build_migrator()

UPDATE_SERVICE = SystemUpdateService(
    app_root=CONFIG.app_root,
    staging_dir=CONFIG.staging_dir,
    store=SETTINGS_STORE,
    migrator=MIGRATOR,
    cache=SETTINGS_CACHE,
    cache_region=CONFIG.settings_cache_key,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if isinstance(MIGRATOR, AlembicMigrator):
        MIGRATOR.apply_pending_changes()
    else:
        init_db(ENGINE)
    log.info("Admin API ready (app_root=%s)", CONFIG.app_root)
    try:
        yield
    finally:
        ENGINE.dispose()


app = FastAPI(title="Admin Update API", version=__version__, lifespan=lifespan)


class UpdateResponse(BaseModel):
    error: bool
    message: str
    code: Optional[str] = None


class SystemVersionView(BaseModel):
    error: bool = False
    system_version: Optional[str] = None


def _error_response(exc: UpdateError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Keep the error body shape for malformed requests; permission is checked first."""
    roles = ROLE_RESOLVER.roles_for(request.headers.get("x-api-key"))
    if not has_role(roles, SUPER_ADMIN_ROLE):
        return _error_response(PermissionDenied())
    log.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    return _error_response(UpdateValidationError("The file must be a file."))


@app.get("/health")
def health():
    return {"ok": True, "version": __version__}


@app.get("/system-update", response_model=SystemVersionView)
def system_update_index(x_api_key: Optional[str] = Header(None)):
    """Show the stored system version; non-admins are redirected home."""
    roles = ROLE_RESOLVER.roles_for(x_api_key)
    try:
        version = UPDATE_SERVICE.current_version(roles)
    except PermissionDenied as exc:
        query = urlencode({"error": exc.message})
        return RedirectResponse(url=f"{CONFIG.home_url}?{query}", status_code=303)
    return SystemVersionView(system_version=version)


@app.post("/system-update", response_model=UpdateResponse, response_model_exclude_none=True)
def system_update(
    file: Union[UploadFile, str, None] = File(None),
    x_api_key: Optional[str] = Header(None),
):
    """Install an uploaded update package synchronously.

    A plain text ``file`` field is handed to the installer as-is so the role
    check runs before it is rejected.
    """
    roles = ROLE_RESOLVER.roles_for(x_api_key)
    if file is None or isinstance(file, str):
        upload_name, upload_stream = None, file
    else:
        upload_name, upload_stream = file.filename, file.file
    try:
        message = UPDATE_SERVICE.install(
            requester_roles=roles,
            upload_name=upload_name,
            upload_stream=upload_stream,
        )
    except UpdateError as exc:
        return _error_response(exc)
    return UpdateResponse(error=False, message=message)
