"""Secure ZIP extraction and journaled directory overlay.

``extract_archive`` unpacks into a private directory while rejecting entries
that would escape it. ``overlay_tree`` then moves the extracted files onto a
live tree one rename at a time, keeping displaced files aside so a failed
overlay can be undone.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
import shutil
from typing import List, Optional, Tuple
import zipfile

log = logging.getLogger("admin_api.archive")

_SYMLINK_MODE = 0o120000
_FILE_TYPE_MASK = 0o170000


class UnsafeArchiveError(ValueError):
    """Raised when a ZIP entry would be written outside the destination."""

    def __init__(self, message: str, entry: str) -> None:
        super().__init__(f"{message}: {entry}")
        self.entry = entry


def _safe_entry_path(entry: zipfile.ZipInfo) -> Optional[PurePosixPath]:
    name = entry.filename.replace("\\", "/")
    if not name:
        return None
    pure = PurePosixPath(name)
    if pure.is_absolute() or any(part in ("", "..") for part in pure.parts):
        raise UnsafeArchiveError("Unsafe ZIP entry path detected", name)
    if (entry.external_attr >> 16) & _FILE_TYPE_MASK == _SYMLINK_MODE:
        raise UnsafeArchiveError("ZIP archive contains symlink entry", name)
    return pure


def extract_archive(archive_path: Path, destination: Path) -> List[str]:
    """Extract a ZIP archive into ``destination`` and return extracted file names.

    Raises
    ------
    zipfile.BadZipFile
        If the archive cannot be opened or an entry fails its CRC check.
    UnsafeArchiveError
        If an entry is absolute, contains ``..``, is a symlink or resolves
        outside ``destination``.
    """
    destination.mkdir(parents=True, exist_ok=True)
    destination_root = destination.resolve()
    extracted: List[str] = []
    with zipfile.ZipFile(archive_path, "r") as archive:
        for entry in archive.infolist():
            pure = _safe_entry_path(entry)
            if pure is None:
                continue
            resolved_target = (destination / pure.as_posix()).resolve()
            if destination_root not in (resolved_target, *resolved_target.parents):
                raise UnsafeArchiveError("ZIP entry escaped extraction directory", entry.filename)
            if entry.is_dir():
                resolved_target.mkdir(parents=True, exist_ok=True)
                continue
            resolved_target.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(entry, "r") as source, resolved_target.open("wb") as handle:
                shutil.copyfileobj(source, handle)
            extracted.append(pure.as_posix())
    return extracted


def overlay_tree(source_dir: Path, target_root: Path, backup_dir: Path) -> List[str]:
    """Move every file under ``source_dir`` onto ``target_root``.

    Directories of the source tree, empty ones included, are created under
    ``target_root`` first. Files that already exist at a destination are
    moved into ``backup_dir`` before being replaced. Each step is an
    ``os.replace`` on the same filesystem, so a destination is always either
    the old or the new file. If a step fails, applied files and created
    directories are rolled back in reverse order before the error
    propagates. ``backup_dir`` is removed once the overlay completes.
    """
    entries = sorted(source_dir.rglob("*"), key=lambda item: item.relative_to(source_dir).as_posix())
    directories = [path for path in entries if path.is_dir()]
    files = [path for path in entries if path.is_file()]
    created_dirs: List[Path] = []
    journal: List[Tuple[Path, Optional[Path]]] = []
    applied: List[str] = []
    try:
        for directory in directories:
            relative = directory.relative_to(source_dir)
            target = target_root / relative
            if target.is_dir():
                continue
            if target.exists() or target.is_symlink():
                raise NotADirectoryError(f"Cannot replace file with directory: {relative.as_posix()}")
            target.mkdir()
            created_dirs.append(target)
        for source in files:
            relative = source.relative_to(source_dir)
            target = target_root / relative
            if target.is_dir():
                raise IsADirectoryError(f"Cannot replace directory with file: {relative.as_posix()}")
            target.parent.mkdir(parents=True, exist_ok=True)
            backup: Optional[Path] = None
            if target.exists() or target.is_symlink():
                backup = backup_dir / relative
                backup.parent.mkdir(parents=True, exist_ok=True)
                os.replace(target, backup)
            journal.append((target, backup))
            os.replace(source, target)
            applied.append(relative.as_posix())
    except Exception:
        log.warning("Overlay failed after %d file(s); rolling back", len(applied))
        _rollback(journal, created_dirs)
        raise
    shutil.rmtree(backup_dir, ignore_errors=True)
    return applied


def _rollback(journal: List[Tuple[Path, Optional[Path]]], created_dirs: List[Path]) -> None:
    for target, backup in reversed(journal):
        try:
            if backup is not None and backup.exists():
                os.replace(backup, target)
            else:
                target.unlink(missing_ok=True)
        except OSError:
            log.exception("Failed to restore %s during overlay rollback", target)
    for directory in reversed(created_dirs):
        try:
            directory.rmdir()
        except OSError:
            log.exception("Failed to remove %s during overlay rollback", directory)


__all__ = ["UnsafeArchiveError", "extract_archive", "overlay_tree"]
