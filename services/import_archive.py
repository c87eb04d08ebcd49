"""Archive intake for third-party backup imports.

Uploads arrive as raw ZIP bytes.  They are expanded into a scratch directory
that belongs to exactly one import call and is removed again on every exit
path, whether the import succeeded or not.
"""
from __future__ import annotations

import contextlib
import io
import logging
import shutil
import tempfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, Optional
from zipfile import BadZipFile, ZipFile, ZipInfo

from services.import_common import MIN_ARCHIVE_BYTES, BackupFormatError

LOGGER = logging.getLogger(__name__)

__all__ = [
    "LUBELOG_DATABASE",
    "ensure_plausible_archive",
    "extract_archive",
    "resolve_lubelog_root",
    "scratch_directory",
]

_METADATA_DIRS = {"__MACOSX"}

LUBELOG_DATABASE = Path("data") / "cartracker.db"
LUBELOG_FOLDER_PREFIX = "lubelog_db_backup"


def ensure_plausible_archive(data: bytes) -> None:
    """Reject uploads too small to be any real backup archive."""
    if len(data) < MIN_ARCHIVE_BYTES:
        raise BackupFormatError("Uploaded file is too small to be a valid backup")


@contextlib.contextmanager
def scratch_directory(prefix: str) -> Iterator[Path]:
    """Create a uniquely named scratch directory and always delete it afterwards."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = Path(tempfile.mkdtemp(prefix=f"{prefix}-{timestamp}-"))
    LOGGER.debug("Created scratch directory %s", path)
    try:
        yield path
    finally:
        try:
            _ensure_deleted(path)
        except OSError as exc:
            LOGGER.error("Failed to remove scratch directory %s: %s", path, exc)


def extract_archive(
    data: bytes,
    destination: Path,
    include: Optional[Callable[[PurePosixPath], bool]] = None,
) -> Path:
    """Expand the ZIP ``data`` into ``destination`` and return ``destination``.

    ``include`` filters members by their normalised relative path; members it
    rejects are never written to disk.
    """
    try:
        archive = ZipFile(io.BytesIO(data))
    except BadZipFile as exc:
        raise BackupFormatError("The uploaded file is not a valid ZIP archive.") from exc

    with archive:
        has_files = False
        for info in archive.infolist():
            normalized = _normalize_member(info)
            if normalized is None:
                continue
            if include is not None and not include(normalized):
                continue
            has_files = True
            output_path = destination.joinpath(*normalized.parts)
            if info.is_dir():
                output_path.mkdir(parents=True, exist_ok=True)
                continue
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, open(output_path, "wb") as dst:
                shutil.copyfileobj(src, dst)

        if not has_files and include is None:
            raise BackupFormatError("The provided backup archive was empty.")

    return destination


def resolve_lubelog_root(extracted: Path) -> Path:
    """Locate the LubeLog backup root inside an extracted archive.

    The root is either ``extracted`` itself, when it holds the LiteDB file
    directly, or the single ``lubelog_db_backup*`` subdirectory that does.
    """
    if (extracted / LUBELOG_DATABASE).is_file():
        return extracted

    candidates = [
        entry
        for entry in sorted(extracted.iterdir())
        if entry.is_dir()
        and entry.name.startswith(LUBELOG_FOLDER_PREFIX)
        and (entry / LUBELOG_DATABASE).is_file()
    ]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        raise BackupFormatError(
            "The archive contains more than one LubeLog backup. Upload one backup at a time."
        )
    raise BackupFormatError(
        f"Could not find {LUBELOG_DATABASE.as_posix()} in the backup. "
        "Make sure you are uploading a valid LubeLog backup zip."
    )


def _ensure_deleted(path: Path) -> None:
    if not path.exists():
        return
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink()


def _normalize_member(info: ZipInfo) -> Optional[PurePosixPath]:
    name = info.filename.replace("\\", "/")
    if not name:
        return None
    parts = []
    for part in PurePosixPath(name).parts:
        if not part or part in {".", "/"}:
            continue
        if part in _METADATA_DIRS:
            return None
        if part == "..":
            raise BackupFormatError("Backup archive contains unsafe paths.")
        parts.append(part)
    if not parts:
        return None
    return PurePosixPath(*parts)
