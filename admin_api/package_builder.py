"""Operator tool that creates system update packages.

A package is a ZIP holding ``version_info.php`` and a nested
``source_code.zip`` built from an application source tree::

    python -m admin_api.package_builder ./release-1.3.0 update-1.3.0.zip \
        --from-version 1.2.0 --to-version 1.3.0
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys
import tempfile
from typing import Iterable, List, Optional
import zipfile

from admin_api.logging_setup import configure_root
from admin_api.update_service import PAYLOAD_FILENAME
from admin_api.version_manifest import MANIFEST_FILENAME, render_version_manifest

log = logging.getLogger("admin_api.package_builder")

DEFAULT_EXCLUDES = (".git", "__pycache__", ".env", "update")


def _iter_source_files(source_dir: Path, excludes: Iterable[str]) -> List[Path]:
    excluded = set(excludes)
    files: List[Path] = []
    for item in sorted(source_dir.rglob("*")):
        relative = item.relative_to(source_dir)
        if any(part in excluded for part in relative.parts):
            continue
        if item.is_file():
            files.append(item)
    return files


def build_source_archive(source_dir: Path, target_zip: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> int:
    """Zip ``source_dir`` contents with paths relative to it; return file count."""
    files = _iter_source_files(source_dir, excludes)
    with zipfile.ZipFile(target_zip, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for item in files:
            archive.write(item, arcname=item.relative_to(source_dir).as_posix())
    return len(files)


def build_update_package(
    source_dir: Path,
    output_zip: Path,
    *,
    current_version: str,
    update_version: str,
    excludes: Iterable[str] = DEFAULT_EXCLUDES,
) -> Path:
    """Write an update package for ``current_version -> update_version``."""
    source_dir = Path(source_dir)
    output_zip = Path(output_zip)
    if not source_dir.is_dir():
        raise ValueError(f"Source folder does not exist: {source_dir}")
    if not current_version.strip() or not update_version.strip():
        raise ValueError("Both current_version and update_version are required.")

    output_zip.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="admin_update_pkg_") as tmp_root:
        payload_path = Path(tmp_root) / PAYLOAD_FILENAME
        count = build_source_archive(source_dir, payload_path, excludes)
        with zipfile.ZipFile(output_zip, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(
                MANIFEST_FILENAME,
                render_version_manifest(current_version.strip(), update_version.strip()),
            )
            archive.write(payload_path, arcname=PAYLOAD_FILENAME)
    log.info("Wrote %s (%d payload files, %s -> %s)", output_zip, count, current_version, update_version)
    return output_zip


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build a system update package.")
    parser.add_argument("source_dir", type=Path, help="Application tree to ship")
    parser.add_argument("output_zip", type=Path, help="Package file to write")
    parser.add_argument("--from-version", required=True, dest="current_version")
    parser.add_argument("--to-version", required=True, dest="update_version")
    parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        help="Path segment to skip (repeatable); defaults to .git, __pycache__, .env, update",
    )
    args = parser.parse_args(argv)
    configure_root()

    try:
        build_update_package(
            args.source_dir,
            args.output_zip,
            current_version=args.current_version,
            update_version=args.update_version,
            excludes=args.exclude or DEFAULT_EXCLUDES,
        )
    except ValueError as exc:
        log.error("%s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
