"""Static parser for the ``version_info.php`` manifest shipped in update packages.

Packages carry a PHP file that returns an array literal::

    <?php
    return [
        'current_version' => '1.2.0',
        'update_version' => '1.3.0',
    ];

The file is uploaded content, so it is parsed as data and never executed.
Only flat ``'key' => 'value'`` array literals (``[...]`` or ``array(...)``)
are accepted. A JSON object with the same keys is accepted as well.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

MANIFEST_FILENAME = "version_info.php"
REQUIRED_KEYS = ("current_version", "update_version")

_RETURN_RE = re.compile(
    r"^return\s*(?:\[(?P<short>.*)\]|array\s*\((?P<long>.*)\))\s*;?$",
    re.DOTALL,
)
_ENTRY_RE = re.compile(
    r"""^(?P<kq>['"])(?P<key>[A-Za-z0-9_]+)(?P=kq)\s*=>\s*"""
    r"""(?:(?P<vq>['"])(?P<quoted>[^'"]*)(?P=vq)|(?P<bare>[0-9][0-9A-Za-z.+\-]*))$"""
)


class ManifestError(ValueError):
    """Raised when a version manifest cannot be parsed."""


@dataclass(frozen=True)
class VersionManifest:
    """Versions an update package upgrades from and to."""

    current_version: str
    update_version: str


def _strip_php_tags(text: str) -> str:
    body = text.strip().lstrip("\ufeff")
    if body.startswith("<?php"):
        body = body[len("<?php"):]
    elif body.startswith("<?"):
        body = body[len("<?"):]
    body = body.strip()
    if body.endswith("?>"):
        body = body[: -len("?>")]
    return body.strip()


def _strip_comments(body: str) -> str:
    """Drop ``//``, ``#`` and ``/* */`` comments that sit outside string literals."""
    kept: List[str] = []
    quote: Optional[str] = None
    index = 0
    while index < len(body):
        char = body[index]
        if quote is not None:
            kept.append(char)
            if char == "\\" and index + 1 < len(body):
                kept.append(body[index + 1])
                index += 2
                continue
            if char == quote:
                quote = None
            index += 1
            continue
        if char in ("'", '"'):
            quote = char
        elif body.startswith("/*", index):
            end = body.find("*/", index + 2)
            if end == -1:
                raise ManifestError("Unterminated block comment in version_info.php")
            index = end + 2
            continue
        elif char == "#" or body.startswith("//", index):
            end = body.find("\n", index)
            if end == -1:
                break
            index = end
            continue
        kept.append(char)
        index += 1
    return "".join(kept)


def _parse_php_array(text: str) -> Dict[str, str]:
    body = _strip_php_tags(text)
    body = _strip_comments(body).strip()
    match = _RETURN_RE.match(body)
    if not match:
        raise ManifestError("version_info.php must return an array literal")
    inner = match.group("short") if match.group("short") is not None else match.group("long")

    values: Dict[str, str] = {}
    for raw_entry in inner.split(","):
        entry = raw_entry.strip()
        if not entry:
            continue
        entry_match = _ENTRY_RE.match(entry)
        if not entry_match:
            raise ManifestError(f"Unsupported manifest entry: {entry!r}")
        value = entry_match.group("quoted")
        if value is None:
            value = entry_match.group("bare")
        values[entry_match.group("key")] = value
    return values


def _parse_json(text: str) -> Dict[str, str]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"version_info is invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ManifestError("version_info JSON root must be an object")
    return {str(key): str(value) for key, value in payload.items() if value is not None}


def parse_version_manifest(text: str) -> VersionManifest:
    """Parse manifest text into a :class:`VersionManifest`.

    Raises
    ------
    ManifestError
        If the text is neither a supported PHP array literal nor a JSON
        object, or if a required key is missing or empty.
    """
    stripped = (text or "").strip().lstrip("\ufeff")
    if stripped.startswith("{"):
        values = _parse_json(stripped)
    else:
        values = _parse_php_array(stripped)

    missing = [key for key in REQUIRED_KEYS if not str(values.get(key) or "").strip()]
    if missing:
        raise ManifestError(f"version_info is missing required keys: {', '.join(missing)}")
    return VersionManifest(
        current_version=values["current_version"].strip(),
        update_version=values["update_version"].strip(),
    )


def load_version_manifest(path: Path) -> VersionManifest:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ManifestError("version_info.php is not valid UTF-8 text") from exc
    return parse_version_manifest(text)


def render_version_manifest(current_version: str, update_version: str) -> str:
    """Render a manifest in the PHP array form packages ship."""
    return (
        "<?php\n\n"
        "return [\n"
        f"    'current_version' => '{current_version}',\n"
        f"    'update_version' => '{update_version}',\n"
        "];\n"
    )
