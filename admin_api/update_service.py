"""System self-update installer.

This module encapsulates the upload-and-apply workflow used by
``admin_api.app``. It owns:

- role and upload validation,
- staging of the uploaded package,
- the structural check and relocation of ``version_info.php`` and
  ``source_code.zip``,
- the sequential version gate,
- shadow extraction and journaled overlay of the payload,
- migration, version bump, wizard flags and cache invalidation.

Installs run synchronously inside the request. One install per application
root may run at a time.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import os
from pathlib import Path
import shutil
import threading
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Tuple, Union
import uuid
import zipfile

from admin_api.archive import UnsafeArchiveError, extract_archive, overlay_tree
from admin_api.auth import NO_PERMISSION_MESSAGE, SUPER_ADMIN_ROLE, has_role
from admin_api.cache import SettingsCache
from admin_api.migrations import WIZARD_CHECKMARK_NAMES, SchemaMigrator
from admin_api.settings_store import SYSTEM_VERSION_KEY, SettingsStore
from admin_api.version_manifest import (
    MANIFEST_FILENAME,
    ManifestError,
    VersionManifest,
    load_version_manifest,
)

PAYLOAD_FILENAME = "source_code.zip"
ZIP_SIGNATURES: Tuple[bytes, ...] = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
STAGING_DIR_MODE = 0o777

SUCCESS_MESSAGE = "System Updated Successfully"
INTERNAL_FAULT_MESSAGE = "An error occurred during the update process"

WIZARD_CHECKMARKS: Tuple[Dict[str, object], ...] = tuple(
    {"name": name, "data": 1, "type": "integer"} for name in WIZARD_CHECKMARK_NAMES
)


class UpdateError(RuntimeError):
    """Typed installer error with stable API code, message and HTTP status."""

    code = "update.error"
    default_message = "Update failed"
    status_code = 400

    def __init__(self, message: Optional[str] = None, *, hint: str = "") -> None:
        text = message or self.default_message
        super().__init__(text)
        self.message = text
        self.hint = str(hint or "")

    def to_dict(self) -> Dict[str, object]:
        """Return the JSON body used by the HTTP layer."""
        return {"error": True, "message": self.message, "code": self.code}


class PermissionDenied(UpdateError):
    code = "update.permission_denied"
    default_message = NO_PERMISSION_MESSAGE
    status_code = 403


class UpdateValidationError(UpdateError):
    code = "update.validation_failed"
    default_message = "The file must be a file of type: zip."
    status_code = 422


class StagingPermissionError(UpdateError):
    code = "update.staging_permission"
    default_message = "Permission Error while creating Temp Directory"
    status_code = 500


class ArchiveOpenError(UpdateError):
    code = "update.archive_open_failed"
    default_message = "Something went wrong. Please try again."


class MalformedPackageError(UpdateError):
    code = "update.malformed_package"
    default_message = "Zip File is not Uploaded to Correct Path"


class MoveError(UpdateError):
    code = "update.move_failed"
    default_message = "Error Occurred while moving a Zip File"
    status_code = 500


class VersionRecordMissing(UpdateError):
    code = "update.version_record_missing"
    default_message = "Current system version not found"
    status_code = 500


class VersionMismatch(UpdateError):
    code = "update.version_mismatch"
    status_code = 409

    def __init__(self, current_version: str, *, hint: str = "") -> None:
        super().__init__(f"{current_version} Please update nearest version first", hint=hint)
        self.current_version = current_version

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload["current_version"] = self.current_version
        return payload


class PayloadExtractionError(UpdateError):
    code = "update.payload_extraction_failed"
    default_message = "Source Code Zip Extraction Failed"


class UpdateInProgress(UpdateError):
    code = "update.locked"
    default_message = "Another update is already in progress"
    status_code = 409


class InternalFault(UpdateError):
    """Catch-all whose message never carries internal detail."""

    code = "update.internal_error"
    default_message = INTERNAL_FAULT_MESSAGE
    status_code = 500

    def __init__(self) -> None:
        super().__init__(INTERNAL_FAULT_MESSAGE)


_INSTALL_LOCKS: Dict[str, threading.Lock] = {}
_INSTALL_LOCKS_GUARD = threading.Lock()


def install_lock_for(app_root: Path) -> threading.Lock:
    """Return the process-wide install lock for one application root."""
    key = str(Path(app_root).resolve())
    with _INSTALL_LOCKS_GUARD:
        lock = _INSTALL_LOCKS.get(key)
        if lock is None:
            lock = _INSTALL_LOCKS[key] = threading.Lock()
        return lock


class SystemUpdateService:
    """Validate, stage and apply uploaded system update packages."""

    def __init__(
        self,
        *,
        app_root: Path,
        staging_dir: Path,
        store: SettingsStore,
        migrator: SchemaMigrator,
        cache: SettingsCache,
        cache_region: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.log = logger or logging.getLogger("admin_api.update_service")
        self.app_root = Path(app_root)
        self.staging_dir = Path(staging_dir)
        self.store = store
        self.migrator = migrator
        self.cache = cache
        self.cache_region = cache_region

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def install(
        self,
        *,
        requester_roles: Iterable[str],
        upload_name: Optional[str],
        upload_stream: Union[BinaryIO, str, None],
    ) -> str:
        """Apply one uploaded update package and return the success message."""
        self._authorize(requester_roles)
        original_name, header = self._validate_upload(upload_name, upload_stream)

        lock = install_lock_for(self.app_root)
        if not lock.acquire(blocking=False):
            raise UpdateInProgress()
        try:
            return self._run_install(original_name, header, upload_stream)
        except UpdateError as exc:
            self.log.warning("System update failed: %s (%s)", exc.message, exc.code)
            raise
        except Exception as exc:
            self.log.exception("Unexpected system update failure")
            raise InternalFault() from exc
        finally:
            lock.release()

    def current_version(self, requester_roles: Iterable[str]) -> Optional[str]:
        """Return the stored system version for the update index page."""
        self._authorize(requester_roles)
        settings = self.cache.remember(self.cache_region, self.store.as_dict)
        return settings.get(SYSTEM_VERSION_KEY)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _run_install(self, original_name: str, header: bytes, upload_stream: BinaryIO) -> str:
        self._prepare_staging_dir()
        uploaded = self._receive_upload(original_name, header, upload_stream)
        self._extract_outer(uploaded)
        manifest_src, payload_src = self._check_structure()

        with self._relocated_package(manifest_src, payload_src) as (manifest_path, payload_path):
            manifest = self._load_manifest(manifest_path)
            self._gate_version(manifest)
            applied = self._apply_payload(payload_path)
            self.log.info(
                "Applied %d file(s) for update %s -> %s",
                len(applied),
                manifest.current_version,
                manifest.update_version,
            )
            self.migrator.apply_pending_changes()
            self.migrator.seed_installation_defaults()

        self.store.update_data(SYSTEM_VERSION_KEY, manifest.update_version)
        self.store.upsert_many(WIZARD_CHECKMARKS)
        self.cache.forget(self.cache_region)
        self.log.info("System updated to version %s", manifest.update_version)
        return SUCCESS_MESSAGE

    def _authorize(self, requester_roles: Iterable[str]) -> None:
        if not has_role(requester_roles, SUPER_ADMIN_ROLE):
            raise PermissionDenied()

    def _validate_upload(
        self,
        upload_name: Optional[str],
        upload_stream: Union[BinaryIO, str, None],
    ) -> Tuple[str, bytes]:
        """Check presence, file-ness and zip type; return basename and header bytes."""
        if upload_stream is None:
            raise UpdateValidationError("The file field is required.")
        if isinstance(upload_stream, (str, bytes)):
            raise UpdateValidationError("The file must be a file.")
        original_name = Path(str(upload_name or "").replace("\\", "/")).name
        if not original_name:
            raise UpdateValidationError("The file field is required.")
        header = upload_stream.read(4)
        if not header:
            raise UpdateValidationError("The file must be a file.")
        if not original_name.lower().endswith(".zip") or header not in ZIP_SIGNATURES:
            raise UpdateValidationError("The file must be a file of type: zip.")
        return original_name, header

    def _prepare_staging_dir(self) -> None:
        """Create an empty staging directory, discarding leftovers of earlier runs."""
        shutil.rmtree(self.staging_dir, ignore_errors=True)
        try:
            self.staging_dir.mkdir(mode=STAGING_DIR_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            self.log.error("Could not create staging directory %s: %s", self.staging_dir, exc)
        if not self.staging_dir.is_dir():
            raise StagingPermissionError()

    def _receive_upload(self, original_name: str, header: bytes, upload_stream: BinaryIO) -> Path:
        target = self.staging_dir / original_name
        with target.open("wb") as handle:
            handle.write(header)
            shutil.copyfileobj(upload_stream, handle)
        self.log.info("Received update package %s (%d bytes)", original_name, target.stat().st_size)
        return target

    def _extract_outer(self, uploaded: Path) -> None:
        try:
            extract_archive(uploaded, self.staging_dir)
        except zipfile.BadZipFile as exc:
            raise ArchiveOpenError(hint=str(exc)) from exc
        except UnsafeArchiveError as exc:
            raise MalformedPackageError("Update package contains an unsafe entry", hint=exc.entry) from exc
        finally:
            uploaded.unlink(missing_ok=True)

    def _check_structure(self) -> Tuple[Path, Path]:
        manifest_src = self.staging_dir / MANIFEST_FILENAME
        payload_src = self.staging_dir / PAYLOAD_FILENAME
        if not manifest_src.is_file() or not payload_src.is_file():
            raise MalformedPackageError(
                hint=f"Place {MANIFEST_FILENAME} and {PAYLOAD_FILENAME} at the ZIP root.",
            )
        return manifest_src, payload_src

    @contextmanager
    def _relocated_package(self, manifest_src: Path, payload_src: Path) -> Iterator[Tuple[Path, Path]]:
        """Move manifest and payload into the app root; always remove them on exit."""
        manifest_path = self.app_root / MANIFEST_FILENAME
        payload_path = self.app_root / PAYLOAD_FILENAME
        try:
            try:
                self._move(manifest_src, manifest_path)
                self._move(payload_src, payload_path)
            except OSError as exc:
                raise MoveError(hint=str(exc)) from exc
            yield manifest_path, payload_path
        finally:
            for path in (payload_path, manifest_path):
                path.unlink(missing_ok=True)

    def _move(self, source: Path, target: Path) -> None:
        if target.exists():
            self.log.warning("Replacing leftover %s from an earlier update", target)
        os.replace(source, target)

    def _load_manifest(self, manifest_path: Path) -> VersionManifest:
        try:
            return load_version_manifest(manifest_path)
        except ManifestError as exc:
            raise MalformedPackageError(f"{MANIFEST_FILENAME} is invalid", hint=str(exc)) from exc

    def _gate_version(self, manifest: VersionManifest) -> str:
        """Allow only packages built for the live version (or already applied)."""
        record = self.store.get(SYSTEM_VERSION_KEY)
        if record is None:
            raise VersionRecordMissing()
        current = str(record.data or "").strip()
        if current == manifest.update_version:
            self.log.info("System already at %s; re-applying package", current)
            return current
        if current != manifest.current_version:
            raise VersionMismatch(
                current,
                hint=f"Package expects {manifest.current_version}.",
            )
        return current

    def _apply_payload(self, payload_path: Path) -> List[str]:
        """Extract the payload into a shadow tree, then overlay it on the app root."""
        work_id = uuid.uuid4().hex
        shadow_dir = self.app_root / f".update-shadow-{work_id}"
        backup_dir = self.app_root / f".update-backup-{work_id}"
        try:
            try:
                extract_archive(payload_path, shadow_dir)
            except (zipfile.BadZipFile, UnsafeArchiveError) as exc:
                raise PayloadExtractionError(hint=str(exc)) from exc
            try:
                return overlay_tree(shadow_dir, self.app_root, backup_dir)
            except OSError as exc:
                raise PayloadExtractionError(hint=str(exc)) from exc
        finally:
            shutil.rmtree(shadow_dir, ignore_errors=True)
            shutil.rmtree(backup_dir, ignore_errors=True)


__all__ = [
    "ArchiveOpenError",
    "INTERNAL_FAULT_MESSAGE",
    "InternalFault",
    "MalformedPackageError",
    "MoveError",
    "PayloadExtractionError",
    "PermissionDenied",
    "SUCCESS_MESSAGE",
    "StagingPermissionError",
    "SystemUpdateService",
    "UpdateError",
    "UpdateInProgress",
    "UpdateValidationError",
    "VersionMismatch",
    "VersionRecordMissing",
    "WIZARD_CHECKMARKS",
    "install_lock_for",
]
