"""Pure mapping from foreign backup records to target table rows.

Nothing here touches the database or the filesystem.  Each ``map_*`` function
returns a plain dictionary keyed by target column name; the importers add the
foreign keys they have remapped and hand the row to the transaction.

Bad individual values never fail an import: unparsable numbers become ``0``
and unparsable dates become ``None``.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bson.decimal128 import Decimal128
from dateutil.parser import isoparse
from dateutil.parser import parse as dateutil_parse

from services.invoice_ninja_export import (
    LINE_ITEM_LABOR,
    LINE_ITEM_PART,
    INClient,
    INContact,
    INInvoice,
    INLineItem,
    INPayment,
    INPaymentable,
    INProduct,
)
from services.lubelog_documents import LubeLogNote, LubeLogServiceRecord, LubeLogVehicle

LOGGER = logging.getLogger(__name__)

PAYMENT_METHODS: Dict[int, str] = {
    1: "bank_transfer",
    2: "cash",
    4: "credit_card",
    5: "debit_card",
    6: "bank_transfer",
    13: "credit_card",
    14: "credit_card",
    15: "other",
    32: "other",
}

QUOTE_STATUSES: Dict[int, str] = {
    3: "accepted",
    4: "converted",
}


# ---------------------------------------------------------------------------
# Scalar normalisation
# ---------------------------------------------------------------------------


def parse_decimal(value: Any) -> float:
    """Normalise a wrapped decimal, BSON decimal, number or numeric string to ``float``.

    Missing or unparsable values yield ``0.0``.
    """
    if isinstance(value, Mapping):
        value = value.get("$numberDecimal")
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    try:
        number = float(Decimal(str(value).strip()) if isinstance(value, str) else value)
    except (InvalidOperation, TypeError, ValueError):
        LOGGER.debug("Treating unparsable amount %r as zero", value)
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def parse_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    number = parse_decimal(value) if value is not None else None
    if number is None:
        return default
    return int(number)


def parse_date(value: Any) -> Optional[str]:
    """Return an ISO-8601 string for a foreign date value, or ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        try:
            parsed = isoparse(text)
        except ValueError:
            try:
                parsed = dateutil_parse(text)
            except (ValueError, OverflowError):
                LOGGER.debug("Could not parse date %r", value)
                return None
    return parsed.isoformat()


# ---------------------------------------------------------------------------
# Derived enumerations and labels
# ---------------------------------------------------------------------------


def fuel_type(vehicle: LubeLogVehicle) -> str:
    if vehicle.is_electric:
        return "electric"
    if vehicle.is_diesel:
        return "diesel"
    return "gasoline"


def payment_method(type_id: Any) -> str:
    code = parse_int(type_id)
    return PAYMENT_METHODS.get(code, "other") if code is not None else "other"


def client_display_name(client: INClient, primary_contact: Optional[INContact]) -> str:
    if client.name:
        return client.name
    if primary_contact is not None:
        name = " ".join(
            part for part in (primary_contact.first_name, primary_contact.last_name) if part
        ).strip()
        if name:
            return name
    return f"Client #{client.number or client.id}"


def build_address(client: INClient) -> Optional[str]:
    locality = " ".join(part for part in (client.postal_code, client.city) if part)
    parts = [part for part in (client.address1, client.address2, locality, client.state) if part]
    return ", ".join(parts) if parts else None


# ---------------------------------------------------------------------------
# Line items and totals
# ---------------------------------------------------------------------------


def is_noise_line_item(item: INLineItem) -> bool:
    """A line with no product, no notes and a zero total carries nothing worth keeping."""
    return not item.product_key and not item.notes and parse_decimal(item.line_total) == 0


def split_line_items(items: Iterable[INLineItem]) -> Tuple[List[INLineItem], List[INLineItem]]:
    """Split line items into ``(parts, labor)`` by their type discriminator."""
    parts: List[INLineItem] = []
    labor: List[INLineItem] = []
    for item in items:
        if item.type_id == LINE_ITEM_PART:
            parts.append(item)
        elif item.type_id == LINE_ITEM_LABOR:
            labor.append(item)
    return parts, labor


def line_items_total(items: Iterable[INLineItem]) -> float:
    return sum(parse_decimal(item.line_total) for item in items)


def reconcile_totals(
    amount: float,
    discount: float,
    is_amount_discount: bool,
    items_subtotal: float,
) -> Dict[str, Any]:
    """Derive discount and tax columns from a foreign document total.

    Percentage discounts are recomputed against the line item subtotal.  The
    tax amount is back-derived from the declared total rather than summed from
    the lines, so upstream rounding is absorbed into the tax column.
    """
    if discount > 0:
        discount_type: Optional[str] = "fixed" if is_amount_discount else "percentage"
    else:
        discount_type = None
    discount_amount = discount if is_amount_discount else items_subtotal * (discount / 100)
    return {
        "subtotal": items_subtotal,
        "discount_type": discount_type,
        "discount_value": discount,
        "discount_amount": discount_amount,
        "tax_amount": amount - items_subtotal + discount,
        "total_amount": amount,
    }


def document_title(document: INInvoice, label: str) -> str:
    names = [item.product_key for item in document.line_items if item.product_key][:3]
    if names:
        return ", ".join(names)
    return f"{label} #{document.number or document.hashed_id}"


def map_part_line(item: INLineItem) -> Dict[str, Any]:
    return {
        "name": item.product_key or item.notes or "Part",
        "quantity": parse_decimal(item.quantity) or 1,
        "unit_price": parse_decimal(item.cost),
        "total": parse_decimal(item.line_total),
    }


def map_labor_line(item: INLineItem) -> Dict[str, Any]:
    return {
        "description": item.notes or item.product_key or "Labor",
        "hours": parse_decimal(item.quantity),
        "rate": parse_decimal(item.cost),
        "total": parse_decimal(item.line_total),
    }


# ---------------------------------------------------------------------------
# LubeLog records
# ---------------------------------------------------------------------------


def highest_mileage_by_vehicle(records: Iterable[LubeLogServiceRecord]) -> Dict[Any, int]:
    mileage: Dict[Any, int] = {}
    for record in records:
        value = parse_int(record.mileage, 0) or 0
        if value > mileage.get(record.vehicle_id, 0):
            mileage[record.vehicle_id] = value
    return mileage


def map_vehicle(
    vehicle: LubeLogVehicle,
    *,
    mileage: int,
    image_url: Optional[str],
    organization_id: str,
    user_id: str,
) -> Dict[str, Any]:
    return {
        "make": vehicle.make,
        "model": vehicle.model,
        "year": parse_int(vehicle.year, 0),
        "license_plate": vehicle.license_plate,
        "fuel_type": fuel_type(vehicle),
        "mileage": mileage,
        "purchase_price": parse_decimal(vehicle.purchase_price) or None,
        "image_url": image_url,
        "user_id": user_id,
        "organization_id": organization_id,
    }


def map_note(note: LubeLogNote, vehicle_id: str) -> Dict[str, Any]:
    return {
        "title": note.title,
        "content": note.body,
        "is_pinned": 1 if note.pinned else 0,
        "vehicle_id": vehicle_id,
    }


def map_service_event(
    record: LubeLogServiceRecord, vehicle_id: str, invoice_number: str
) -> Dict[str, Any]:
    cost = parse_decimal(record.cost)
    return {
        "title": record.description,
        "description": record.notes,
        "type": "repair",
        "status": "completed",
        "cost": cost,
        "mileage": parse_int(record.mileage) or None,
        "service_date": parse_date(record.date),
        "invoice_number": invoice_number,
        "subtotal": cost,
        "total_amount": cost,
        "vehicle_id": vehicle_id,
    }


# ---------------------------------------------------------------------------
# Invoice Ninja records
# ---------------------------------------------------------------------------


def map_customer(
    client: INClient,
    primary_contact: Optional[INContact],
    *,
    organization_id: str,
    user_id: str,
) -> Dict[str, Any]:
    return {
        "name": client_display_name(client, primary_contact),
        "email": primary_contact.email if primary_contact else None,
        "phone": client.phone or (primary_contact.phone if primary_contact else None),
        "address": build_address(client),
        "notes": client.private_notes,
        "user_id": user_id,
        "organization_id": organization_id,
    }


def map_product(product: INProduct, *, organization_id: str, user_id: str) -> Dict[str, Any]:
    return {
        "name": product.product_key or "Product",
        "description": product.notes,
        "unit_cost": parse_decimal(product.price) or parse_decimal(product.cost),
        "quantity": parse_int(product.in_stock_quantity, 0) or 0,
        "part_number": product.custom_value1,
        "supplier_url": product.custom_value2,
        "image_url": product.product_image,
        "user_id": user_id,
        "organization_id": organization_id,
    }


def map_invoice(
    invoice: INInvoice,
    *,
    invoice_number: str,
    vehicle_id: str,
    customer_id: Optional[str],
) -> Dict[str, Any]:
    parts, labor = split_line_items(invoice.line_items)
    amount = parse_decimal(invoice.amount)
    row = {
        "title": document_title(invoice, "Invoice"),
        "description": invoice.private_notes or invoice.public_notes,
        "invoice_notes": invoice.terms,
        "type": "repair",
        "status": "completed",
        "cost": amount,
        "service_date": parse_date(invoice.date),
        "invoice_number": invoice_number,
        "tax_rate": parse_decimal(invoice.tax_rate1),
        "vehicle_id": vehicle_id,
        "customer_id": customer_id,
    }
    row.update(
        reconcile_totals(
            amount,
            parse_decimal(invoice.discount),
            invoice.is_amount_discount,
            line_items_total(parts) + line_items_total(labor),
        )
    )
    return row


def map_quote(
    quote: INInvoice,
    *,
    quote_number: str,
    customer_id: Optional[str],
    organization_id: str,
    user_id: str,
) -> Dict[str, Any]:
    parts, labor = split_line_items(quote.line_items)
    amount = parse_decimal(quote.amount)
    row = {
        "quote_number": quote_number,
        "title": document_title(quote, "Quote"),
        "status": QUOTE_STATUSES.get(parse_int(quote.status_id), "draft"),
        "tax_rate": parse_decimal(quote.tax_rate1),
        "valid_until": parse_date(quote.due_date),
        "notes": quote.public_notes or quote.private_notes,
        "customer_id": customer_id,
        "user_id": user_id,
        "organization_id": organization_id,
    }
    row.update(
        reconcile_totals(
            amount,
            parse_decimal(quote.discount),
            quote.is_amount_discount,
            line_items_total(parts) + line_items_total(labor),
        )
    )
    return row


def map_payment(
    payment: INPayment, allocation: INPaymentable, service_record_id: str
) -> Dict[str, Any]:
    return {
        "amount": parse_decimal(allocation.amount),
        "date": parse_date(payment.date),
        "method": payment_method(payment.type_id),
        "note": payment.private_notes,
        "external_id": payment.transaction_reference,
        "service_record_id": service_record_id,
    }
