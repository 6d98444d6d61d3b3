"""
Unit tests for Xero date parsing, amount normalisation and record transformers.
"""

from datetime import date, datetime

import pytest

from tests.conftest import TENANT_ID, make_raw_contact, make_raw_invoice, make_raw_item, xero_date
from xerosync.connectors.xero_entities import (
    ENTITY_ENDPOINTS,
    amount,
    parse_xero_date,
    transform_contact,
    transform_invoice,
    transform_item,
    transform_manual_journal,
    transform_payment,
)
from xerosync.models.enums import EntityType, InvoiceType

UPDATED = datetime(2025, 3, 1, 9, 30, 15)


class TestParseXeroDate:
    def test_parse_xero_date_microsoft_format(self):
        assert parse_xero_date("/Date(1573755038314+0000)/") == datetime(2019, 11, 14, 18, 10, 38, 314000)

    def test_parse_xero_date_microsoft_format_offset_is_informational(self):
        assert parse_xero_date("/Date(0+1000)/") == datetime(1970, 1, 1)

    def test_parse_xero_date_iso_with_offset_converted_to_utc(self):
        assert parse_xero_date("2025-03-01T10:00:00+10:00") == datetime(2025, 3, 1, 0, 0)

    def test_parse_xero_date_iso_zulu(self):
        assert parse_xero_date("2025-03-01T10:00:00Z") == datetime(2025, 3, 1, 10, 0)

    def test_parse_xero_date_naive_iso(self):
        assert parse_xero_date("2025-03-01T00:00:00") == datetime(2025, 3, 1)

    def test_parse_xero_date_empty_values(self):
        assert parse_xero_date(None) is None
        assert parse_xero_date("") is None

    def test_parse_xero_date_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_xero_date("yesterday")

    def test_parse_xero_date_round_trips_factory_format(self):
        assert parse_xero_date(xero_date(UPDATED)) == UPDATED


class TestAmount:
    def test_amount_rounds_to_cents(self):
        assert amount("12.345") == 12.35
        assert amount(7) == 7.0

    def test_amount_missing_is_zero(self):
        assert amount(None) == 0.0
        assert amount("") == 0.0

    @pytest.mark.parametrize("value", ["NaN", "inf", float("-inf")])
    def test_amount_rejects_non_finite(self, value):
        with pytest.raises(ValueError):
            amount(value)


class TestTransformers:
    def test_transform_invoice_maps_fields(self):
        record = transform_invoice(TENANT_ID, make_raw_invoice("inv-1", UPDATED))

        assert record.tenant_id == TENANT_ID
        assert record.xero_id == "inv-1"
        assert record.invoice_type == InvoiceType.ACCREC
        assert record.updated_date_utc == UPDATED
        assert record.invoice_date == date(2025, 3, 1)
        assert record.due_date == date(2025, 3, 31)
        assert record.contact_id == "contact-1"
        assert record.amount_due == 1100.0
        assert record.currency_code == "AUD"
        line = record.line_items[0]
        assert (line.line_item_id, line.item_code, line.quantity, line.line_amount) == (
            "inv-1-l1",
            "TOUR-1",
            2.0,
            1000.0,
        )

    def test_transform_invoice_line_id_fallback(self):
        raw = make_raw_invoice(
            "inv-2", UPDATED, lines=[{"LineAmount": 5.0}, {"LineAmount": 6.0, "ItemCode": ""}]
        )

        record = transform_invoice(TENANT_ID, raw)

        assert [line.line_item_id for line in record.line_items] == ["inv-2:1", "inv-2:2"]
        assert record.line_items[1].item_code is None

    def test_transform_invoice_without_due_date(self):
        record = transform_invoice(TENANT_ID, make_raw_invoice("inv-3", UPDATED, due_date=None))

        assert record.due_date is None

    def test_transform_invoice_missing_update_time_rejected(self):
        raw = make_raw_invoice("inv-4", UPDATED)
        del raw["UpdatedDateUTC"]

        with pytest.raises(ValueError):
            transform_invoice(TENANT_ID, raw)

    def test_transform_contact_takes_first_group(self):
        raw = make_raw_contact("c1", UPDATED, name="Stock Co", group="Stock")

        record = transform_contact(TENANT_ID, raw)

        assert record.name == "Stock Co"
        assert record.contact_group == "Stock"
        assert record.is_customer is True

    def test_transform_item_details(self):
        record = transform_item(TENANT_ID, make_raw_item("i1", UPDATED))

        assert record.code == "TOUR-1"
        assert record.quantity_on_hand == 10
        assert record.total_cost_pool == 500.0
        assert record.purchase_account_code == "310"
        assert record.sales_unit_price == 120.0

    def test_transform_payment_links_invoice(self):
        raw = {
            "PaymentID": "p1",
            "Invoice": {"InvoiceID": "inv-1", "Type": "ACCREC"},
            "Account": {"AccountID": "acc-1"},
            "Date": "/Date(1740787200000+0000)/",
            "Amount": 250.5,
            "Status": "AUTHORISED",
            "UpdatedDateUTC": xero_date(UPDATED),
        }

        record = transform_payment(TENANT_ID, raw)

        assert record.invoice_id == "inv-1"
        assert record.payment_date == date(2025, 3, 1)
        assert record.amount == 250.5

    def test_transform_manual_journal_numbers_lines(self):
        raw = {
            "ManualJournalID": "mj-1",
            "Narration": "Accrual",
            "JournalLines": [
                {"AccountCode": "200", "LineAmount": -100},
                {"AccountCode": "310", "LineAmount": 100},
            ],
            "UpdatedDateUTC": xero_date(UPDATED),
        }

        record = transform_manual_journal(TENANT_ID, raw)

        assert [line.line_number for line in record.journal_lines] == [1, 2]
        assert "journal_lines" not in record.row()


class TestCatalogue:
    def test_catalogue_covers_every_entity_type(self):
        assert set(ENTITY_ENDPOINTS) == set(EntityType)

    def test_catalogue_invoices_and_bills_share_endpoint(self):
        invoices = ENTITY_ENDPOINTS[EntityType.INVOICES]
        bills = ENTITY_ENDPOINTS[EntityType.BILLS]

        assert invoices.endpoint == bills.endpoint == "Invoices"
        assert invoices.where == 'Type=="ACCREC"'
        assert bills.where == 'Type=="ACCPAY"'

    def test_catalogue_effective_page_size(self):
        assert ENTITY_ENDPOINTS[EntityType.INVOICES].effective_page_size(100) == 50
        assert ENTITY_ENDPOINTS[EntityType.CONTACTS].effective_page_size(100) == 100
