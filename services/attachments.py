"""Copy files referenced by a foreign backup into tenant upload storage."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional

from data_paths import tenant_upload_dir

LOGGER = logging.getLogger(__name__)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "csv": "text/csv",
    "txt": "text/plain",
}
DEFAULT_MIME_TYPE = "application/octet-stream"
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp"})

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def _extension(filename: str) -> str:
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def mime_type(filename: str) -> str:
    return MIME_TYPES.get(_extension(filename), DEFAULT_MIME_TYPE)


def attachment_category(filename: str) -> str:
    return "image" if _extension(filename) in IMAGE_EXTENSIONS else "diagnostic"


@dataclass(frozen=True)
class StoredFile:
    file_url: str
    file_size: int
    path: Path


class AttachmentMigrator:
    """Copies archive files into one tenant's upload tree.

    Files are written as soon as they are copied, ahead of the database
    commit.  A later rollback removes the rows that reference them but not the
    files themselves; ``written`` lists every file this migrator produced.
    """

    def __init__(self, source_root: Path, organization_id: str) -> None:
        self.source_root = source_root.resolve()
        self.organization_id = organization_id
        self.written: List[Path] = []

    def resolve_source(self, reference: str) -> Optional[Path]:
        relative = PurePosixPath(reference.replace("\\", "/").lstrip("/"))
        if not relative.parts or ".." in relative.parts:
            return None
        candidate = self.source_root.joinpath(*relative.parts)
        return candidate if candidate.is_file() else None

    def copy(self, reference: str, category: str, filename: str) -> Optional[StoredFile]:
        """Copy ``reference`` into ``category`` as ``filename``.

        Returns ``None`` when the source file is missing or unreadable.
        """
        source = self.resolve_source(reference)
        if source is None:
            LOGGER.warning("Attachment source %s not found in backup; skipping", reference)
            return None
        try:
            payload = source.read_bytes()
        except OSError as exc:
            LOGGER.warning("Could not read attachment source %s: %s", reference, exc)
            return None

        target_name = safe_filename(filename)
        target = tenant_upload_dir(self.organization_id, category) / target_name
        target.write_bytes(payload)
        self.written.append(target)
        return StoredFile(
            file_url=f"/api/files/{target.parent.parent.name}/{target.parent.name}/{target_name}",
            file_size=len(payload),
            path=target,
        )
