from datetime import datetime

import bson
import pytest

from services import entity_mapping
from services.invoice_ninja_export import INClient, INContact, INInvoice, INLineItem, INPayment, INPaymentable
from services.lubelog_documents import LubeLogVehicle


@pytest.mark.parametrize(
    'value, expected',
    [
        ({'$numberDecimal': '12.50'}, 12.5),
        (12.5, 12.5),
        (None, 0.0),
        ('19.90', 19.9),
        (bson.Decimal128('150.00'), 150.0),
        ({'$numberDecimal': 'garbage'}, 0.0),
        ('NaN', 0.0),
        ([], 0.0),
        ({}, 0.0),
    ],
)
def test_parse_decimal_normalises_every_encoding(value, expected):
    assert entity_mapping.parse_decimal(value) == pytest.approx(expected)


def test_fuel_type_precedence_checks_electric_first():
    def vehicle(**flags):
        return LubeLogVehicle(id=1, year=2020, make='Kia', model='Niro', **flags)

    assert entity_mapping.fuel_type(vehicle(is_electric=True, is_diesel=True)) == 'electric'
    assert entity_mapping.fuel_type(vehicle(is_diesel=True)) == 'diesel'
    assert entity_mapping.fuel_type(vehicle()) == 'gasoline'


def test_client_display_name_fallbacks():
    named = INClient(id=1, hashed_id='a', name='Acme')
    unnamed = INClient(id=2, hashed_id='b', number='0042')
    anonymous = INClient(id=3, hashed_id='c')
    contact = INContact(client_id='b', first_name='Kim', last_name='Olsen', is_primary=True)

    assert entity_mapping.client_display_name(named, contact) == 'Acme'
    assert entity_mapping.client_display_name(unnamed, contact) == 'Kim Olsen'
    assert entity_mapping.client_display_name(unnamed, None) == 'Client #0042'
    assert entity_mapping.client_display_name(anonymous, INContact(client_id='c')) == 'Client #3'


@pytest.mark.parametrize(
    'code, method',
    [(1, 'bank_transfer'), (2, 'cash'), (4, 'credit_card'), (5, 'debit_card'), ('14', 'credit_card'), (99, 'other'), (None, 'other')],
)
def test_payment_method_codes(code, method):
    assert entity_mapping.payment_method(code) == method


def test_build_address_joins_available_parts():
    client = INClient(id=1, hashed_id='a', address1='1 Main St', postal_code='0150', city='Oslo', state='Oslo')

    assert entity_mapping.build_address(client) == '1 Main St, 0150 Oslo, Oslo'
    assert entity_mapping.build_address(INClient(id=2, hashed_id='b')) is None


def test_split_line_items_and_noise_detection():
    items = [
        INLineItem(type_id='1', product_key='Filter', line_total=12),
        INLineItem(type_id='2', notes='Labour', line_total=80),
        INLineItem(type_id='1', line_total=0),
        INLineItem(type_id='3', product_key='Expense', line_total=5),
    ]

    parts, labor = entity_mapping.split_line_items(items)

    assert [item.product_key for item in parts] == ['Filter', None]
    assert [item.notes for item in labor] == ['Labour']
    assert entity_mapping.is_noise_line_item(parts[1])
    assert not entity_mapping.is_noise_line_item(parts[0])


def test_reconcile_totals_for_amount_discount():
    totals = entity_mapping.reconcile_totals(amount=230.0, discount=20.0, is_amount_discount=True, items_subtotal=200.0)

    assert totals['discount_type'] == 'fixed'
    assert totals['discount_amount'] == 20.0
    # Tax is back-derived from the declared total: total - subtotal + discount.
    assert totals['tax_amount'] == pytest.approx(50.0)
    assert totals['total_amount'] == 230.0


def test_reconcile_totals_for_percentage_discount():
    totals = entity_mapping.reconcile_totals(amount=225.0, discount=10.0, is_amount_discount=False, items_subtotal=200.0)

    assert totals['discount_type'] == 'percentage'
    assert totals['discount_amount'] == pytest.approx(20.0)
    # Known approximation: the raw discount value feeds the tax reconciliation.
    assert totals['tax_amount'] == pytest.approx(225.0 - 200.0 + 10.0)


def test_reconcile_totals_without_discount():
    totals = entity_mapping.reconcile_totals(amount=100.0, discount=0.0, is_amount_discount=False, items_subtotal=100.0)

    assert totals['discount_type'] is None
    assert totals['discount_amount'] == 0
    assert totals['tax_amount'] == 0


def test_map_invoice_uses_first_product_keys_as_title():
    invoice = INInvoice(
        hashed_id='inv',
        number='77',
        amount='120',
        line_items=[
            INLineItem(type_id='1', product_key='Oil', line_total=40),
            INLineItem(type_id='1', product_key='Filter', line_total=20),
            INLineItem(type_id='2', notes='Work', line_total=60),
        ],
    )

    row = entity_mapping.map_invoice(invoice, invoice_number='2024-1001', vehicle_id='v', customer_id=None)

    assert row['title'] == 'Oil, Filter'
    assert row['subtotal'] == pytest.approx(120.0)
    assert row['total_amount'] == pytest.approx(120.0)
    assert row['invoice_number'] == '2024-1001'
    untitled = entity_mapping.map_invoice(INInvoice(hashed_id='x', number='9'), invoice_number='n', vehicle_id='v', customer_id=None)
    assert untitled['title'] == 'Invoice #9'


def test_map_payment_uses_allocation_amount():
    payment = INPayment(hashed_id='p', date='2024-03-01', amount='300', type_id=5, private_notes='split')
    allocation = INPaymentable(paymentable_id='inv', paymentable_type='invoices', amount='120.50')

    row = entity_mapping.map_payment(payment, allocation, 'sr-1')

    assert row['amount'] == pytest.approx(120.5)
    assert row['method'] == 'debit_card'
    assert row['date'].startswith('2024-03-01')


def test_parse_date_accepts_strings_datetimes_and_epochs():
    assert entity_mapping.parse_date('2024-01-05').startswith('2024-01-05')
    assert entity_mapping.parse_date('05 Jan 2024').startswith('2024-01-05')
    assert entity_mapping.parse_date(datetime(2023, 4, 1, 8, 30)) == '2023-04-01T08:30:00'
    assert entity_mapping.parse_date(0).startswith('1970-01-01')
    assert entity_mapping.parse_date('not a date') is None
    assert entity_mapping.parse_date(None) is None
