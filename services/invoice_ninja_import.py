"""Import an Invoice Ninja export archive into a workshop tenant.

Invoice Ninja exports are a ZIP holding ``backup.json`` and a ``documents/``
folder.  Invoice Ninja has no notion of vehicles, so every imported invoice is
filed under one placeholder vehicle that users can reassign afterwards.
"""
from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional, Tuple

from database import get_db_connection, init_db
from services.attachments import AttachmentMigrator, attachment_category, mime_type, safe_filename
from services.entity_mapping import (
    is_noise_line_item,
    map_customer,
    map_invoice,
    map_labor_line,
    map_part_line,
    map_payment,
    map_product,
    map_quote,
    split_line_items,
)
from services.import_archive import ensure_plausible_archive, extract_archive, scratch_directory
from services.import_common import (
    ImportContext,
    ImportOutcome,
    ImportTransaction,
    check_deadline,
    import_deadline,
    run_guarded,
    unit_of_work,
)
from services.invoice_ninja_export import (
    DOCUMENTS_DIRNAME,
    MANIFEST_NAME,
    INInvoice,
    InvoiceNinjaExport,
    load_export,
)
from services.invoice_numbers import NumberSequence, invoice_sequence, quote_sequence

LOGGER = logging.getLogger(__name__)

__all__ = ["import_invoice_ninja_backup", "main", "run_invoice_ninja_import"]

PLACEHOLDER_MAKE = "Invoice Ninja"
PLACEHOLDER_MODEL = "Import"


def run_invoice_ninja_import(
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
        "import-invoice-ninja",
        lambda: import_invoice_ninja_backup(archive, context, timeout=timeout, deadline=deadline),
    )


def _is_export_member(path: PurePosixPath) -> bool:
    return path == PurePosixPath(MANIFEST_NAME) or path.parts[0] == DOCUMENTS_DIRNAME


def import_invoice_ninja_backup(
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

    with scratch_directory("in-import") as scratch:
        extract_archive(archive, scratch, include=_is_export_member)
        check_deadline(deadline, "extraction")
        export = load_export(scratch)
        check_deadline(deadline, "manifest decoding")

        conn = get_db_connection()
        try:
            invoices = invoice_sequence(conn, context.organization_id)
            quotes = quote_sequence(conn, context.organization_id)
            migrator = AttachmentMigrator(scratch / DOCUMENTS_DIRNAME, context.organization_id)
            try:
                with unit_of_work(conn, deadline) as tx:
                    counts = _write_export(tx, export, invoices, quotes, migrator, context)
            except Exception:
                if migrator.written:
                    LOGGER.warning(
                        "Import rolled back; %d copied document files remain in storage",
                        len(migrator.written),
                    )
                raise
        finally:
            conn.close()

    LOGGER.info(
        "Invoice Ninja import for %s created %s (skipped: %s)",
        context.organization_id,
        counts,
        dict(tx.skipped),
    )
    return counts


def _write_export(
    tx: ImportTransaction,
    export: InvoiceNinjaExport,
    invoice_numbers: NumberSequence,
    quote_numbers: NumberSequence,
    migrator: AttachmentMigrator,
    context: ImportContext,
) -> Dict[str, int]:
    counts = {
        "customers": 0,
        "products": 0,
        "invoices": 0,
        "parts": 0,
        "labor": 0,
        "payments": 0,
        "documents": 0,
        "quotes": 0,
    }
    client_ids: Dict[str, str] = {}
    invoice_ids: Dict[str, str] = {}

    placeholder_vehicle_id = tx.insert(
        "vehicles",
        {
            "make": PLACEHOLDER_MAKE,
            "model": PLACEHOLDER_MODEL,
            "year": datetime.now().year,
            "mileage": 0,
            "user_id": context.user_id,
            "organization_id": context.organization_id,
        },
        timestamped=True,
    )

    for client in export.clients:
        client_ids[client.hashed_id] = tx.insert(
            "customers",
            map_customer(
                client,
                export.primary_contact(client),
                organization_id=context.organization_id,
                user_id=context.user_id,
            ),
            timestamped=True,
        )
        counts["customers"] += 1

    for product in export.products:
        tx.insert(
            "inventory_parts",
            map_product(product, organization_id=context.organization_id, user_id=context.user_id),
            timestamped=True,
        )
        counts["products"] += 1

    for invoice in export.invoices:
        record_id = tx.insert(
            "service_records",
            map_invoice(
                invoice,
                invoice_number=invoice_numbers.next(),
                vehicle_id=placeholder_vehicle_id,
                customer_id=client_ids.get(invoice.client_id or ""),
            ),
            timestamped=True,
        )
        invoice_ids[invoice.hashed_id] = record_id
        counts["invoices"] += 1

        parts, labor = _write_line_items(tx, invoice, "service_parts", "service_labor", "service_record_id", record_id)
        counts["parts"] += parts
        counts["labor"] += labor
        counts["documents"] += _copy_invoice_documents(tx, export, migrator, invoice, record_id)

    for quote in export.quotes:
        quote_id = tx.insert(
            "quotes",
            map_quote(
                quote,
                quote_number=quote_numbers.next(),
                customer_id=client_ids.get(quote.client_id or ""),
                organization_id=context.organization_id,
                user_id=context.user_id,
            ),
            timestamped=True,
        )
        _write_line_items(tx, quote, "quote_parts", "quote_labor", "quote_id", quote_id)
        counts["quotes"] += 1

    for payment in export.payments:
        for allocation in payment.paymentables:
            if allocation.paymentable_type != "invoices":
                continue
            service_record_id = invoice_ids.get(allocation.paymentable_id)
            if service_record_id is None:
                tx.skip("payment_without_invoice", f"payment {payment.hashed_id}")
                continue
            tx.insert("payments", map_payment(payment, allocation, service_record_id))
            counts["payments"] += 1

    return counts


def _write_line_items(
    tx: ImportTransaction,
    document: INInvoice,
    parts_table: str,
    labor_table: str,
    parent_column: str,
    parent_id: str,
) -> Tuple[int, int]:
    part_items, labor_items = split_line_items(document.line_items)
    parts = labor = 0
    for item in part_items:
        if is_noise_line_item(item):
            tx.skip("empty_line_item", document.hashed_id)
            continue
        tx.insert(parts_table, {**map_part_line(item), parent_column: parent_id})
        parts += 1
    for item in labor_items:
        if is_noise_line_item(item):
            tx.skip("empty_line_item", document.hashed_id)
            continue
        tx.insert(labor_table, {**map_labor_line(item), parent_column: parent_id})
        labor += 1
    return parts, labor


def _copy_invoice_documents(
    tx: ImportTransaction,
    export: InvoiceNinjaExport,
    migrator: AttachmentMigrator,
    invoice: INInvoice,
    service_record_id: str,
) -> int:
    created = 0
    label = invoice.number or invoice.hashed_id
    for document in export.documents_by_invoice.get(invoice.hashed_id, []):
        stored = migrator.copy(
            document.url, "services", f"in-{label}-{safe_filename(document.name)}"
        )
        if stored is None:
            tx.skip("missing_document", document.url)
            continue
        tx.insert(
            "service_attachments",
            {
                "file_name": document.name,
                "file_url": stored.file_url,
                "file_type": mime_type(document.name),
                "file_size": stored.file_size,
                "category": attachment_category(document.name),
                "service_record_id": service_record_id,
            },
        )
        created += 1
    return created


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python -m services.invoice_ninja_import``."""

    parser = argparse.ArgumentParser(description="Import an Invoice Ninja export archive.")
    parser.add_argument("archive", type=Path, help="Path to the Invoice Ninja export ZIP")
    parser.add_argument("--organization", required=True, help="Target organization id")
    parser.add_argument("--user", required=True, help="User id recorded as the creator")
    args = parser.parse_args(list(argv) if argv is not None else None)
    init_db()

    outcome = run_invoice_ninja_import(
        args.archive.read_bytes(),
        ImportContext(organization_id=args.organization, user_id=args.user),
    )
    print(json.dumps(outcome.to_payload(), indent=2))
    return 0 if outcome.success else 1


if __name__ == "__main__":  # pragma: no cover - manual invocation
    logging.basicConfig(level=logging.INFO)
    raise SystemExit(main())
