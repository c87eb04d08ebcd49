"""Import a LubeLog backup archive into a workshop tenant.

A LubeLog backup is a ZIP holding ``data/cartracker.db`` (a LiteDB file) plus
the uploaded documents and images it references.  The LiteDB file is scanned
for BSON documents, those are classified into vehicles, service records and
notes, and everything is written in a single transaction: vehicles first, then
the notes and service records that hang off them, then each service record's
attachments.
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from database import get_db_connection, init_db
from services.attachments import AttachmentMigrator, attachment_category, mime_type, safe_filename
from services.bson_scanner import scan_documents
from services.entity_mapping import highest_mileage_by_vehicle, map_note, map_service_event, map_vehicle
from services.import_archive import (
    LUBELOG_DATABASE,
    ensure_plausible_archive,
    extract_archive,
    resolve_lubelog_root,
    scratch_directory,
)
from services.import_common import (
    BackupContentError,
    ImportContext,
    ImportOutcome,
    ImportTransaction,
    check_deadline,
    import_deadline,
    run_guarded,
    unit_of_work,
)
from services.invoice_numbers import NumberSequence, invoice_sequence
from services.lubelog_documents import ClassifiedDocuments, classify_documents

LOGGER = logging.getLogger(__name__)

__all__ = ["import_lubelog_backup", "main", "run_lubelog_import"]


def run_lubelog_import(
    archive: bytes,
    context: ImportContext,
    *,
    timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> ImportOutcome:
    """Import ``archive`` and report the outcome without raising.

    ``deadline`` is an absolute ``time.monotonic`` value shared with the
    caller; without one the run gets ``timeout`` seconds from now.
    """
    return run_guarded(
        "import-lubelog",
        lambda: import_lubelog_backup(archive, context, timeout=timeout, deadline=deadline),
    )


def import_lubelog_backup(
    archive: bytes,
    context: ImportContext,
    *,
    timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> Dict[str, int]:
    """Import ``archive`` and return the number of rows created per entity type."""
    if deadline is None:
        deadline = import_deadline(timeout)
    ensure_plausible_archive(archive)

    with scratch_directory("lubelog-import") as scratch:
        extract_archive(archive, scratch)
        check_deadline(deadline, "extraction")
        backup_root = resolve_lubelog_root(scratch)

        documents = scan_documents((backup_root / LUBELOG_DATABASE).read_bytes(), deadline=deadline)
        check_deadline(deadline, "document scan")
        classified = classify_documents(documents)
        if not classified.vehicles:
            raise BackupContentError("No vehicles found in the LubeLog backup")

        conn = get_db_connection()
        try:
            sequence = invoice_sequence(conn, context.organization_id)
            migrator = AttachmentMigrator(backup_root, context.organization_id)
            try:
                with unit_of_work(conn, deadline) as tx:
                    counts = _write_backup(tx, classified, sequence, migrator, context)
            except Exception:
                if migrator.written:
                    LOGGER.warning(
                        "Import rolled back; %d copied attachment files remain in storage",
                        len(migrator.written),
                    )
                raise
        finally:
            conn.close()

    LOGGER.info(
        "LubeLog import for %s created %s (skipped: %s)",
        context.organization_id,
        counts,
        dict(tx.skipped),
    )
    return counts


def _write_backup(
    tx: ImportTransaction,
    classified: ClassifiedDocuments,
    sequence: NumberSequence,
    migrator: AttachmentMigrator,
    context: ImportContext,
) -> Dict[str, int]:
    counts = {"vehicles": 0, "serviceRecords": 0, "notes": 0, "attachments": 0}
    vehicle_ids: Dict[Any, str] = {}
    mileage = highest_mileage_by_vehicle(classified.service_records)

    for vehicle in classified.vehicles:
        image_url = None
        if vehicle.image_location:
            _, dot, ext = vehicle.image_location.rpartition(".")
            stored = migrator.copy(
                vehicle.image_location,
                "vehicles",
                f"lubelog-vehicle-{vehicle.id}.{ext if dot else 'jpg'}",
            )
            if stored is not None:
                image_url = stored.file_url
            else:
                tx.skip("vehicle_image", vehicle.image_location)

        vehicle_ids[vehicle.id] = tx.insert(
            "vehicles",
            map_vehicle(
                vehicle,
                mileage=mileage.get(vehicle.id, 0),
                image_url=image_url,
                organization_id=context.organization_id,
                user_id=context.user_id,
            ),
            timestamped=True,
        )
        counts["vehicles"] += 1

    for note in classified.notes:
        vehicle_id = vehicle_ids.get(note.vehicle_id)
        if vehicle_id is None:
            tx.skip("note_without_vehicle", f"note {note.id}")
            continue
        tx.insert("notes", map_note(note, vehicle_id), timestamped=True)
        counts["notes"] += 1

    for record in classified.service_records:
        vehicle_id = vehicle_ids.get(record.vehicle_id)
        if vehicle_id is None:
            tx.skip("service_record_without_vehicle", f"service record {record.id}")
            continue

        record_id = tx.insert(
            "service_records",
            map_service_event(record, vehicle_id, sequence.next()),
            timestamped=True,
        )
        counts["serviceRecords"] += 1
        counts["attachments"] += _copy_service_files(tx, migrator, record.id, record.files, record_id)

    return counts


def _copy_service_files(
    tx: ImportTransaction,
    migrator: AttachmentMigrator,
    foreign_id: Any,
    files: Iterable[Any],
    service_record_id: str,
) -> int:
    created = 0
    for file in files:
        stored = migrator.copy(
            file.location, "services", f"lubelog-{foreign_id}-{safe_filename(file.name)}"
        )
        if stored is None:
            tx.skip("missing_attachment", file.location)
            continue
        tx.insert(
            "service_attachments",
            {
                "file_name": file.name,
                "file_url": stored.file_url,
                "file_type": mime_type(file.name),
                "file_size": stored.file_size,
                "category": attachment_category(file.name),
                "service_record_id": service_record_id,
            },
        )
        created += 1
    return created


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python -m services.lubelog_import``."""

    parser = argparse.ArgumentParser(description="Import a LubeLog backup archive.")
    parser.add_argument("archive", type=Path, help="Path to the LubeLog backup ZIP")
    parser.add_argument("--organization", required=True, help="Target organization id")
    parser.add_argument("--user", required=True, help="User id recorded as the creator")
    args = parser.parse_args(list(argv) if argv is not None else None)
    init_db()

    outcome = run_lubelog_import(
        args.archive.read_bytes(),
        ImportContext(organization_id=args.organization, user_id=args.user),
    )
    print(json.dumps(outcome.to_payload(), indent=2))
    return 0 if outcome.success else 1


if __name__ == "__main__":  # pragma: no cover - manual invocation
    logging.basicConfig(level=logging.INFO)
    raise SystemExit(main())
