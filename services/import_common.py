"""Shared plumbing for the third-party backup import pipelines.

Both importers run the same outer shape: take an uploaded archive, decode it,
and write every mapped row through one SQLite transaction.  This module holds
the pieces they share: the error taxonomy, the tagged result handed back to the
web layer, the transactional unit of work, and the executor the web layer uses
to keep imports off the request thread.

One import run has one absolute deadline on the ``time.monotonic`` clock,
fixed before any work starts.  Extraction, decoding and the write transaction
all check that same deadline, and nothing is committed once it has passed.
"""
from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import time
import uuid
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

LOGGER = logging.getLogger(__name__)

IMPORT_TIMEOUT_SECONDS = float(os.getenv("GARAGELEDGER_IMPORT_TIMEOUT", "300"))
MIN_ARCHIVE_BYTES = int(os.getenv("GARAGELEDGER_MIN_ARCHIVE_BYTES", "100"))

# SQLite calls the progress handler every N virtual machine instructions.
_PROGRESS_INTERVAL = 1000

__all__ = [
    "BackupContentError",
    "BackupFormatError",
    "BackupImportError",
    "IMPORT_TIMEOUT_SECONDS",
    "ImportContext",
    "ImportOutcome",
    "ImportTimeoutError",
    "ImportTransaction",
    "MIN_ARCHIVE_BYTES",
    "check_deadline",
    "import_deadline",
    "run_guarded",
    "submit_import",
    "unit_of_work",
]


class BackupImportError(RuntimeError):
    """Raised when an uploaded backup cannot be imported for user correctable reasons."""

    status_code = 400


class BackupFormatError(BackupImportError):
    """The upload is not structurally a backup of the expected kind."""


class BackupContentError(BackupImportError):
    """The backup is well formed but holds nothing the import can anchor on."""


class ImportTimeoutError(RuntimeError):
    """Raised when an import run passes its deadline before committing."""


@dataclass(frozen=True)
class ImportContext:
    """Tenant identity resolved upstream by the authentication layer."""

    organization_id: str
    user_id: str


@dataclass
class ImportOutcome:
    """Tagged result returned by every pipeline entry point."""

    success: bool
    imported: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    status_code: int = 200

    @classmethod
    def ok(cls, imported: Mapping[str, int]) -> "ImportOutcome":
        return cls(success=True, imported=dict(imported))

    @classmethod
    def failed(cls, message: str, status_code: int) -> "ImportOutcome":
        return cls(success=False, error=message, status_code=status_code)

    def to_payload(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "imported": dict(self.imported)}
        return {"error": self.error}


def new_id() -> str:
    return uuid.uuid4().hex


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def import_deadline(timeout: Optional[float] = None) -> float:
    """Return the monotonic deadline for an import starting now."""
    allowed = IMPORT_TIMEOUT_SECONDS if timeout is None else timeout
    return time.monotonic() + allowed


def check_deadline(deadline: float, phase: str = "import") -> None:
    if time.monotonic() > deadline:
        LOGGER.warning("Import deadline passed during %s", phase)
        raise ImportTimeoutError("Import exceeded the allowed time and was rolled back.")


class ImportTransaction:
    """Write handle for one import run.

    Wraps the connection that owns the open transaction, enforces the run
    deadline between rows, and tallies per-row issues that were skipped
    rather than failing the run.
    """

    def __init__(self, conn: sqlite3.Connection, deadline: float) -> None:
        self.conn = conn
        self.deadline = deadline
        self.skipped: Counter[str] = Counter()

    def check_deadline(self) -> None:
        check_deadline(self.deadline, "write")

    def skip(self, reason: str, detail: str = "") -> None:
        self.skipped[reason] += 1
        LOGGER.debug("Skipped row (%s) %s", reason, detail)

    def insert(self, table: str, values: Mapping[str, Any], *, timestamped: bool = False) -> str:
        """Insert one row and return its generated id."""
        self.check_deadline()
        row = {"id": new_id(), **values}
        if timestamped:
            row["created_at"] = utc_timestamp()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            self.conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
        except sqlite3.OperationalError as exc:
            if time.monotonic() > self.deadline:
                raise ImportTimeoutError("Import exceeded the allowed time and was rolled back.") from exc
            raise
        return row["id"]


@contextlib.contextmanager
def unit_of_work(conn: sqlite3.Connection, deadline: float) -> Iterator[ImportTransaction]:
    """Run the body inside one immediate transaction that must finish by ``deadline``.

    ``deadline`` is a ``time.monotonic`` value.  Any exception escaping the
    body rolls everything back and is re-raised.
    """
    check_deadline(deadline, "transaction start")
    conn.set_progress_handler(
        lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_INTERVAL
    )
    try:
        conn.execute("BEGIN IMMEDIATE")
        transaction = ImportTransaction(conn, deadline)
        try:
            yield transaction
            transaction.check_deadline()
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.set_progress_handler(None, _PROGRESS_INTERVAL)


def run_guarded(label: str, body: Callable[[], Mapping[str, int]]) -> ImportOutcome:
    """Execute a pipeline body and fold every failure into an :class:`ImportOutcome`."""
    try:
        imported = body()
    except BackupImportError as exc:
        LOGGER.warning("[%s] Import rejected: %s", label, exc)
        return ImportOutcome.failed(str(exc), exc.status_code)
    except Exception:
        LOGGER.exception("[%s] Import failed", label)
        return ImportOutcome.failed("Import failed", 500)
    return ImportOutcome.ok(imported)


_executor: Optional[ThreadPoolExecutor] = None


def submit_import(func: Callable[..., ImportOutcome], *args: Any, **kwargs: Any) -> "Future[ImportOutcome]":
    """Schedule a pipeline call on the shared import worker pool."""
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="backup-import")
    return _executor.submit(func, *args, **kwargs)
