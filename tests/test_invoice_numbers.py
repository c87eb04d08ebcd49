from datetime import datetime

import pytest
import pytz

from backup_fixtures import set_tenant_setting
from services.invoice_numbers import (
    INVOICE_PREFIX_KEY,
    QUOTE_PREFIX_KEY,
    SEQUENCE_FLOOR,
    TIMEZONE_KEY,
    NumberSequence,
    invoice_sequence,
    next_sequence_value,
    quote_sequence,
    resolve_prefix,
)


def _add_vehicle(conn, vehicle_id, organization_id):
    conn.execute(
        "INSERT INTO vehicles (id, make, model, year, user_id, organization_id) VALUES (?, 'Ford', 'Focus', 2012, 'u', ?)",
        (vehicle_id, organization_id),
    )


def _add_service_record(conn, record_id, vehicle_id, invoice_number, created_at):
    conn.execute(
        "INSERT INTO service_records (id, title, invoice_number, vehicle_id, created_at) VALUES (?, 'Service', ?, ?, ?)",
        (record_id, invoice_number, vehicle_id, created_at),
    )


@pytest.mark.parametrize(
    'last, expected',
    [('2024-1042', 1043), ('INV7', 8), (None, SEQUENCE_FLOOR), ('', SEQUENCE_FLOOR), ('DRAFT', SEQUENCE_FLOOR)],
)
def test_next_sequence_value(last, expected):
    assert next_sequence_value(last) == expected


def test_resolve_prefix_uses_tenant_timezone_for_year_token():
    new_year_utc = pytz.utc.localize(datetime(2024, 12, 31, 23, 30))

    assert resolve_prefix('{year}-', 'UTC', now=new_year_utc) == '2024-'
    assert resolve_prefix('{year}-', 'Europe/Oslo', now=new_year_utc) == '2025-'
    assert resolve_prefix('QT-', 'Europe/Oslo', now=new_year_utc) == 'QT-'
    assert resolve_prefix('{year}/', 'Mars/Olympus', now=new_year_utc) == '2024/'


def test_number_sequence_increments_locally():
    sequence = NumberSequence(prefix='W-', next_value=1043)

    assert [sequence.next(), sequence.next(), sequence.next()] == ['W-1043', 'W-1044', 'W-1045']


def test_invoice_sequence_continues_after_latest_tenant_record(db):
    _add_vehicle(db, 'v1', 'org-1')
    _add_vehicle(db, 'v2', 'org-2')
    _add_service_record(db, 's1', 'v1', 'W-1042', '2024-01-01T00:00:00')
    _add_service_record(db, 's2', 'v1', 'W-0999', '2023-01-01T00:00:00')
    _add_service_record(db, 's3', 'v2', 'X-5000', '2025-01-01T00:00:00')
    set_tenant_setting(db, 'org-1', INVOICE_PREFIX_KEY, 'W-')
    db.commit()

    sequence = invoice_sequence(db, 'org-1')

    assert sequence.next() == 'W-1043'
    assert sequence.next() == 'W-1044'


def test_invoice_sequence_defaults_to_year_prefix_and_floor(db):
    set_tenant_setting(db, 'org-1', TIMEZONE_KEY, 'America/New_York')
    db.commit()

    sequence = invoice_sequence(db, 'org-1')

    year = datetime.now(pytz.timezone('America/New_York')).year
    assert sequence.next() == f'{year}-{SEQUENCE_FLOOR}'


def test_quote_sequence_uses_quote_prefix(db):
    db.execute(
        "INSERT INTO quotes (id, quote_number, title, user_id, organization_id) VALUES ('q1', 'QT-1010', 'Brakes', 'u', 'org-1')"
    )
    db.commit()

    assert quote_sequence(db, 'org-1').next() == 'QT-1011'
    set_tenant_setting(db, 'org-1', QUOTE_PREFIX_KEY, 'EST-')
    db.commit()
    assert quote_sequence(db, 'org-1').next() == 'EST-1011'
