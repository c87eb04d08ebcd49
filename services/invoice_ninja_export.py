"""Decoder for Invoice Ninja ``backup.json`` exports.

The export is a single JSON object with one array per entity type.  This
module turns it into typed records, drops soft-deleted rows from every
collection, and indexes invoice documents by the invoice's hashed id so the
importer can attach them later.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from services.import_common import BackupContentError, BackupFormatError

LOGGER = logging.getLogger(__name__)

MANIFEST_NAME = "backup.json"
DOCUMENTS_DIRNAME = "documents"

LINE_ITEM_PART = "1"
LINE_ITEM_LABOR = "2"

__all__ = [
    "DOCUMENTS_DIRNAME",
    "INClient",
    "INContact",
    "INDocument",
    "INInvoice",
    "INLineItem",
    "INPayment",
    "INPaymentable",
    "INProduct",
    "InvoiceNinjaExport",
    "MANIFEST_NAME",
    "decode_export",
    "load_export",
]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class INClient:
    id: Any
    hashed_id: str
    name: Optional[str] = None
    number: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    private_notes: Optional[str] = None

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INClient":
        return cls(
            id=row.get("id"),
            hashed_id=str(row.get("hashed_id") or row.get("id") or ""),
            name=_text(row.get("name")),
            number=_text(row.get("number")),
            phone=_text(row.get("phone")),
            address1=_text(row.get("address1")),
            address2=_text(row.get("address2")),
            city=_text(row.get("city")),
            state=_text(row.get("state")),
            postal_code=_text(row.get("postal_code")),
            private_notes=_text(row.get("private_notes")),
        )


@dataclass
class INContact:
    client_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_primary: bool = False

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INContact":
        return cls(
            client_id=str(row.get("client_id") or ""),
            first_name=_text(row.get("first_name")),
            last_name=_text(row.get("last_name")),
            phone=_text(row.get("phone")),
            email=_text(row.get("email")),
            is_primary=bool(row.get("is_primary")),
        )


@dataclass
class INProduct:
    product_key: str
    notes: Optional[str] = None
    cost: Any = None
    price: Any = None
    in_stock_quantity: Any = None
    product_image: Optional[str] = None
    custom_value1: Optional[str] = None
    custom_value2: Optional[str] = None

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INProduct":
        return cls(
            product_key=str(row.get("product_key") or ""),
            notes=_text(row.get("notes")),
            cost=row.get("cost"),
            price=row.get("price"),
            in_stock_quantity=row.get("in_stock_quantity"),
            product_image=_text(row.get("product_image")),
            custom_value1=_text(row.get("custom_value1")),
            custom_value2=_text(row.get("custom_value2")),
        )


@dataclass
class INLineItem:
    type_id: str
    product_key: Optional[str] = None
    notes: Optional[str] = None
    quantity: Any = None
    cost: Any = None
    line_total: Any = None

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INLineItem":
        return cls(
            type_id=str(row.get("type_id") or ""),
            product_key=_text(row.get("product_key")),
            notes=_text(row.get("notes")),
            quantity=row.get("quantity"),
            cost=row.get("cost"),
            line_total=row.get("line_total"),
        )


@dataclass
class INInvoice:
    """An invoice, or a quote; both share Invoice Ninja's document shape."""

    hashed_id: str
    number: Optional[str] = None
    client_id: Optional[str] = None
    date: Any = None
    due_date: Any = None
    status_id: Any = None
    amount: Any = None
    discount: Any = None
    is_amount_discount: bool = False
    tax_rate1: Any = None
    public_notes: Optional[str] = None
    private_notes: Optional[str] = None
    terms: Optional[str] = None
    line_items: List[INLineItem] = field(default_factory=list)

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INInvoice":
        items = row.get("line_items")
        return cls(
            hashed_id=str(row.get("hashed_id") or row.get("id") or ""),
            number=_text(row.get("number")),
            client_id=_text(row.get("client_id")),
            date=row.get("date"),
            due_date=row.get("due_date"),
            status_id=row.get("status_id"),
            amount=row.get("amount"),
            discount=row.get("discount"),
            is_amount_discount=bool(row.get("is_amount_discount")),
            tax_rate1=row.get("tax_rate1"),
            public_notes=_text(row.get("public_notes")),
            private_notes=_text(row.get("private_notes")),
            terms=_text(row.get("terms")),
            line_items=[
                INLineItem.from_json(item)
                for item in (items if isinstance(items, list) else [])
                if isinstance(item, Mapping)
            ],
        )


@dataclass
class INPaymentable:
    paymentable_id: str
    paymentable_type: str
    amount: Any = None


@dataclass
class INPayment:
    hashed_id: str
    date: Any = None
    amount: Any = None
    type_id: Any = None
    private_notes: Optional[str] = None
    transaction_reference: Optional[str] = None
    paymentables: List[INPaymentable] = field(default_factory=list)

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INPayment":
        allocations = row.get("paymentables")
        return cls(
            hashed_id=str(row.get("hashed_id") or row.get("id") or ""),
            date=row.get("date"),
            amount=row.get("amount"),
            type_id=row.get("type_id"),
            private_notes=_text(row.get("private_notes")),
            transaction_reference=_text(row.get("transaction_reference")),
            paymentables=[
                INPaymentable(
                    paymentable_id=str(entry.get("paymentable_id") or ""),
                    paymentable_type=str(entry.get("paymentable_type") or ""),
                    amount=entry.get("amount"),
                )
                for entry in (allocations if isinstance(allocations, list) else [])
                if isinstance(entry, Mapping) and not _is_deleted(entry)
            ],
        )


@dataclass
class INDocument:
    url: str
    name: str
    documentable_id: str
    documentable_type: str
    size: Any = None

    @classmethod
    def from_json(cls, row: Mapping[str, Any]) -> "INDocument":
        url = str(row.get("url") or "")
        return cls(
            url=url,
            name=str(row.get("name") or Path(url).name or "document"),
            documentable_id=str(row.get("documentable_id") or ""),
            documentable_type=str(row.get("documentable_type") or ""),
            size=row.get("size"),
        )


@dataclass
class InvoiceNinjaExport:
    clients: List[INClient] = field(default_factory=list)
    contacts: List[INContact] = field(default_factory=list)
    products: List[INProduct] = field(default_factory=list)
    invoices: List[INInvoice] = field(default_factory=list)
    quotes: List[INInvoice] = field(default_factory=list)
    payments: List[INPayment] = field(default_factory=list)
    documents: List[INDocument] = field(default_factory=list)
    deleted: Dict[str, int] = field(default_factory=dict)

    _documents_by_invoice: Optional[Dict[str, List[INDocument]]] = field(
        init=False, default=None, repr=False
    )

    @property
    def documents_by_invoice(self) -> Dict[str, List[INDocument]]:
        """Invoice documents keyed by the owning invoice's hashed id."""
        if self._documents_by_invoice is None:
            index: Dict[str, List[INDocument]] = defaultdict(list)
            for document in self.documents:
                if document.documentable_type != "invoices":
                    continue
                index[document.documentable_id].append(document)
            self._documents_by_invoice = dict(index)
        return self._documents_by_invoice

    def primary_contact(self, client: INClient) -> Optional[INContact]:
        for contact in self.contacts:
            if contact.client_id == client.hashed_id and contact.is_primary:
                return contact
        return None


def _is_deleted(row: Mapping[str, Any]) -> bool:
    return bool(row.get("is_deleted")) or bool(row.get("deleted_at"))


T = TypeVar("T")


def _decode_collection(
    payload: Mapping[str, Any],
    key: str,
    factory: Callable[[Mapping[str, Any]], T],
    deleted: Dict[str, int],
) -> List[T]:
    rows = payload.get(key)
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise BackupContentError(f"Invalid Invoice Ninja export: {key} must be an array")

    decoded: List[T] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        if _is_deleted(row):
            deleted[key] = deleted.get(key, 0) + 1
            continue
        decoded.append(factory(row))
    return decoded


def decode_export(payload: Any) -> InvoiceNinjaExport:
    """Decode a parsed ``backup.json`` document."""
    if not isinstance(payload, Mapping) or not isinstance(payload.get("clients"), list):
        raise BackupFormatError("Invalid Invoice Ninja export: missing clients array")

    deleted: Dict[str, int] = {}
    export = InvoiceNinjaExport(
        clients=_decode_collection(payload, "clients", INClient.from_json, deleted),
        contacts=_decode_collection(payload, "client_contacts", INContact.from_json, deleted),
        products=_decode_collection(payload, "products", INProduct.from_json, deleted),
        invoices=_decode_collection(payload, "invoices", INInvoice.from_json, deleted),
        quotes=_decode_collection(payload, "quotes", INInvoice.from_json, deleted),
        payments=_decode_collection(payload, "payments", INPayment.from_json, deleted),
        documents=_decode_collection(payload, "documents", INDocument.from_json, deleted),
        deleted=deleted,
    )
    if deleted:
        LOGGER.info("Dropped soft-deleted Invoice Ninja rows: %s", deleted)
    return export


def load_export(root: Path) -> InvoiceNinjaExport:
    """Read and decode the manifest from an extracted export directory."""
    manifest = root / MANIFEST_NAME
    if not manifest.is_file():
        raise BackupFormatError(f"No {MANIFEST_NAME} found in the zip file")
    try:
        payload = json.loads(manifest.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BackupFormatError(f"{MANIFEST_NAME} is not valid JSON") from exc
    return decode_export(payload)
