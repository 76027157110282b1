"""
Zip packaging for archive exports.

Layout::

    manifest.json
    data.json
    attachments/<item_code>/<stem>_<attachment_id>.<ext>

The attachment id is recoverable from the entry name alone.
"""

from __future__ import annotations

import io
import json
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any

from ..infrastructure.exceptions import ValidationError
from ..infrastructure.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
DATA_NAME = "data.json"
ATTACHMENTS_DIR = "attachments/"

# what ZipFile.read raises for damaged, truncated or unsupported members
UNREADABLE_MEMBER = (zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError)


def unique_file_name(attachment_id: str, file_name: str) -> str:
    """``report.pdf`` -> ``report_<id>.pdf``; ``README`` -> ``README_<id>``."""
    stem, dot, ext = file_name.rpartition(".")
    if not dot:
        return f"{file_name}_{attachment_id}"
    return f"{stem}_{attachment_id}.{ext}"


def attachment_id_from_name(entry_name: str) -> str | None:
    """Inverse of ``unique_file_name``; accepts a bare name or a full archive path."""
    name = entry_name.rsplit("/", 1)[-1]
    stem = name.rpartition(".")[0] or name
    _, sep, attachment_id = stem.rpartition("_")
    return attachment_id if sep and attachment_id else None


def attachment_path(item_code: str, attachment_id: str, file_name: str) -> str:
    return f"{ATTACHMENTS_DIR}{item_code}/{unique_file_name(attachment_id, file_name)}"


@dataclass
class ArchiveContents:
    manifest: dict[str, Any] | None
    data_text: str
    # archive path -> bytes, directories excluded
    attachments: dict[str, bytes] = field(default_factory=dict)


def build_archive(
    manifest: dict[str, Any],
    data_text: str,
    files: dict[str, bytes] | None = None,
) -> bytes:
    """Deflate-compressed zip with the manifest, the document and attachment files."""
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(DATA_NAME, data_text)
        for path, payload in (files or {}).items():
            zf.writestr(path, payload)
        zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2, ensure_ascii=False))
    return bio.getvalue()


def read_archive(raw: bytes) -> ArchiveContents:
    """
    Unpack an archive export.

    Raises:
        ValidationError: the bytes are not a zip, ``data.json`` is missing or
            not UTF-8, or a member cannot be decompressed
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as e:
        raise ValidationError("archive", "Invalid ZIP file") from e

    with zf:
        names = set(zf.namelist())
        if DATA_NAME not in names:
            raise ValidationError("archive", "ZIP file missing data.json")

        try:
            data_text = zf.read(DATA_NAME).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("archive", "data.json is not valid UTF-8") from e
        except UNREADABLE_MEMBER as e:
            raise ValidationError("archive", f"Corrupt ZIP entry {DATA_NAME}: {e}") from e

        manifest = None
        if MANIFEST_NAME in names:
            try:
                manifest = json.loads(zf.read(MANIFEST_NAME))
            except (json.JSONDecodeError, UnicodeDecodeError, *UNREADABLE_MEMBER):
                logger.warning("Archive manifest is unreadable; ignoring it")

        attachments: dict[str, bytes] = {}
        for info in zf.infolist():
            if not info.filename.startswith(ATTACHMENTS_DIR) or info.is_dir():
                continue
            try:
                attachments[info.filename] = zf.read(info)
            except UNREADABLE_MEMBER as e:
                raise ValidationError("archive", f"Corrupt ZIP entry {info.filename}: {e}") from e

    return ArchiveContents(manifest=manifest, data_text=data_text, attachments=attachments)
