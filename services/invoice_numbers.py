"""Invoice and quote numbering that continues a tenant's existing sequence."""
from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pytz

from database import get_app_setting

LOGGER = logging.getLogger(__name__)

INVOICE_PREFIX_KEY = "workshop.invoicePrefix"
QUOTE_PREFIX_KEY = "workshop.quotePrefix"
TIMEZONE_KEY = "workshop.timezone"

DEFAULT_INVOICE_PREFIX = "{year}-"
DEFAULT_QUOTE_PREFIX = "QT-"
SEQUENCE_FLOOR = 1001

YEAR_TOKEN = "{year}"
TRAILING_DIGITS = re.compile(r"(\d+)$")


def resolve_prefix(template: str, timezone_name: str = "UTC", now: Optional[datetime] = None) -> str:
    """Expand the ``{year}`` token of a prefix template in the tenant's timezone."""
    try:
        tz = pytz.timezone(timezone_name or "UTC")
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone %r; resolving prefix in UTC", timezone_name)
        tz = pytz.utc
    moment = now.astimezone(tz) if now is not None else datetime.now(tz)
    return template.replace(YEAR_TOKEN, str(moment.year))


def next_sequence_value(last_number: Optional[str]) -> int:
    """Return the number following the trailing digit run of ``last_number``."""
    if not last_number:
        return SEQUENCE_FLOOR
    match = TRAILING_DIGITS.search(last_number)
    if not match:
        return SEQUENCE_FLOOR
    return int(match.group(1)) + 1


@dataclass
class NumberSequence:
    """Locally incremented document numbers for one import run."""

    prefix: str
    next_value: int

    def next(self) -> str:
        number = f"{self.prefix}{self.next_value}"
        self.next_value += 1
        return number


def _tenant_prefix(conn: sqlite3.Connection, organization_id: str, key: str, default: str) -> str:
    template = get_app_setting(conn, organization_id, key, default) or default
    timezone_name = get_app_setting(conn, organization_id, TIMEZONE_KEY, "UTC") or "UTC"
    return resolve_prefix(template, timezone_name)


def invoice_sequence(conn: sqlite3.Connection, organization_id: str) -> NumberSequence:
    row = conn.execute(
        """
        SELECT sr.invoice_number
        FROM service_records sr
        JOIN vehicles v ON v.id = sr.vehicle_id
        WHERE v.organization_id = ?
        ORDER BY sr.created_at DESC, sr.rowid DESC
        LIMIT 1
        """,
        (organization_id,),
    ).fetchone()
    sequence = NumberSequence(
        prefix=_tenant_prefix(conn, organization_id, INVOICE_PREFIX_KEY, DEFAULT_INVOICE_PREFIX),
        next_value=next_sequence_value(row["invoice_number"] if row else None),
    )
    LOGGER.debug("Invoice numbering for %s continues at %s", organization_id, sequence.next_value)
    return sequence


def quote_sequence(conn: sqlite3.Connection, organization_id: str) -> NumberSequence:
    row = conn.execute(
        """
        SELECT quote_number FROM quotes
        WHERE organization_id = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT 1
        """,
        (organization_id,),
    ).fetchone()
    return NumberSequence(
        prefix=_tenant_prefix(conn, organization_id, QUOTE_PREFIX_KEY, DEFAULT_QUOTE_PREFIX),
        next_value=next_sequence_value(row["quote_number"] if row else None),
    )
