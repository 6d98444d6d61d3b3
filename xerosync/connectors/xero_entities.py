"""
Xero entity catalogue and raw-record transformers.

Each catalogue entry says where an entity type lives in the Xero accounting
API and how one raw JSON record becomes a canonical ledger row. Transformers
raise ValueError (or KeyError/TypeError from malformed payloads) for records
that cannot be stored; the fetcher counts those as failed.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

from xerosync.models.enums import EntityType, InvoiceType
from xerosync.models.ledger import (
    AccountRecord,
    BankTransactionRecord,
    ContactRecord,
    CreditNoteRecord,
    InvoiceLineRecord,
    InvoiceRecord,
    ItemRecord,
    JournalLineRecord,
    LedgerRecord,
    ManualJournalRecord,
    PaymentRecord,
)

# Microsoft JSON date as returned by Xero, e.g. /Date(1573755038314+0000)/
_MS_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")
_EPOCH_UTC = datetime(1970, 1, 1)

DEFAULT_CURRENCY = "AUD"


def parse_xero_date(value: Any) -> Optional[datetime]:
    """
    Parse a Xero date into a naive UTC datetime.

    Accepts the ``/Date(ms+zzzz)/`` form (the millisecond count is already UTC;
    the offset is informational) and ISO 8601 strings with or without offset.
    Returns None for empty values.

    Raises:
        ValueError: If the value is not a recognised date
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        match = _MS_DATE.match(value.strip())
        if match:
            return _EPOCH_UTC + timedelta(milliseconds=int(match.group(1)))
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported Xero date value: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_xero_day(value: Any) -> Optional[date]:
    parsed = parse_xero_date(value)
    return parsed.date() if parsed else None


def amount(value: Any) -> float:
    """Normalise a Xero decimal to a 2 dp float. Missing values are zero."""
    if value is None or value == "":
        return 0.0
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"Non-finite amount: {value!r}")
    return round(result, 2)


def _quantity(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"Non-finite quantity: {value!r}")
    return result


def _currency(value: Any) -> str:
    return str(value).upper() if value else DEFAULT_CURRENCY


def _base(tenant_id: str, raw: dict, id_field: str) -> dict:
    xero_id = raw.get(id_field)
    if not xero_id:
        raise ValueError(f"Record is missing {id_field}")
    updated = parse_xero_date(raw.get("UpdatedDateUTC"))
    if updated is None:
        raise ValueError(f"Record {xero_id} is missing UpdatedDateUTC")
    return {
        "tenant_id": tenant_id,
        "xero_id": str(xero_id),
        "updated_date_utc": updated,
        "raw_data": raw,
    }


def _contact(raw: dict) -> dict:
    return raw.get("Contact") or {}


# =============================================================================
# Transformers
# =============================================================================


def transform_account(tenant_id: str, raw: dict) -> AccountRecord:
    return AccountRecord(
        **_base(tenant_id, raw, "AccountID"),
        code=raw.get("Code"),
        name=raw.get("Name") or "",
        account_type=raw.get("Type"),
        account_class=raw.get("Class"),
        status=raw.get("Status"),
        tax_type=raw.get("TaxType"),
    )


def transform_contact(tenant_id: str, raw: dict) -> ContactRecord:
    groups = raw.get("ContactGroups") or []
    return ContactRecord(
        **_base(tenant_id, raw, "ContactID"),
        name=raw.get("Name") or "",
        email=raw.get("EmailAddress") or None,
        is_customer=bool(raw.get("IsCustomer", False)),
        is_supplier=bool(raw.get("IsSupplier", False)),
        status=raw.get("ContactStatus"),
        contact_group=groups[0].get("Name") if groups else None,
    )


def transform_item(tenant_id: str, raw: dict) -> ItemRecord:
    purchase = raw.get("PurchaseDetails") or {}
    sales = raw.get("SalesDetails") or {}
    return ItemRecord(
        **_base(tenant_id, raw, "ItemID"),
        code=raw.get("Code"),
        name=raw.get("Name") or "",
        is_tracked_as_inventory=bool(raw.get("IsTrackedAsInventory", False)),
        quantity_on_hand=_quantity(raw.get("QuantityOnHand")),
        total_cost_pool=amount(raw.get("TotalCostPool")),
        purchase_unit_price=amount(purchase.get("UnitPrice")),
        sales_unit_price=amount(sales.get("UnitPrice")),
        purchase_account_code=purchase.get("AccountCode"),
        sales_account_code=sales.get("AccountCode"),
        cogs_account_code=purchase.get("COGSAccountCode"),
    )


def transform_invoice(tenant_id: str, raw: dict) -> InvoiceRecord:
    base = _base(tenant_id, raw, "InvoiceID")
    contact = _contact(raw)
    lines = []
    for number, line in enumerate(raw.get("LineItems") or [], start=1):
        lines.append(
            InvoiceLineRecord(
                line_item_id=line.get("LineItemID") or f"{base['xero_id']}:{number}",
                line_number=number,
                description=line.get("Description"),
                quantity=_quantity(line.get("Quantity")),
                unit_amount=amount(line.get("UnitAmount")),
                item_code=line.get("ItemCode") or None,
                account_code=line.get("AccountCode") or None,
                tax_amount=amount(line.get("TaxAmount")),
                line_amount=amount(line.get("LineAmount")),
            )
        )
    return InvoiceRecord(
        **base,
        invoice_type=InvoiceType(raw["Type"]),
        invoice_number=raw.get("InvoiceNumber") or None,
        contact_id=contact.get("ContactID"),
        contact_name=contact.get("Name"),
        invoice_date=parse_xero_day(raw.get("Date")),
        due_date=parse_xero_day(raw.get("DueDate")),
        status=raw.get("Status") or "DRAFT",
        sub_total=amount(raw.get("SubTotal")),
        total_tax=amount(raw.get("TotalTax")),
        total=amount(raw.get("Total")),
        amount_due=amount(raw.get("AmountDue")),
        amount_paid=amount(raw.get("AmountPaid")),
        amount_credited=amount(raw.get("AmountCredited")),
        currency_code=_currency(raw.get("CurrencyCode")),
        currency_rate=float(raw.get("CurrencyRate") or 1.0),
        line_items=lines,
    )


def transform_payment(tenant_id: str, raw: dict) -> PaymentRecord:
    invoice = raw.get("Invoice") or {}
    account = raw.get("Account") or {}
    return PaymentRecord(
        **_base(tenant_id, raw, "PaymentID"),
        invoice_id=invoice.get("InvoiceID"),
        invoice_type=invoice.get("Type"),
        account_id=account.get("AccountID"),
        payment_date=parse_xero_day(raw.get("Date")),
        amount=amount(raw.get("Amount")),
        currency_rate=float(raw.get("CurrencyRate") or 1.0),
        payment_type=raw.get("PaymentType"),
        status=raw.get("Status"),
        reference=raw.get("Reference"),
    )


def transform_credit_note(tenant_id: str, raw: dict) -> CreditNoteRecord:
    contact = _contact(raw)
    return CreditNoteRecord(
        **_base(tenant_id, raw, "CreditNoteID"),
        credit_note_number=raw.get("CreditNoteNumber"),
        credit_note_type=raw.get("Type"),
        contact_id=contact.get("ContactID"),
        credit_note_date=parse_xero_day(raw.get("Date")),
        status=raw.get("Status"),
        sub_total=amount(raw.get("SubTotal")),
        total_tax=amount(raw.get("TotalTax")),
        total=amount(raw.get("Total")),
        remaining_credit=amount(raw.get("RemainingCredit")),
        currency_code=_currency(raw.get("CurrencyCode")),
    )


def transform_bank_transaction(tenant_id: str, raw: dict) -> BankTransactionRecord:
    contact = _contact(raw)
    bank_account = raw.get("BankAccount") or {}
    return BankTransactionRecord(
        **_base(tenant_id, raw, "BankTransactionID"),
        transaction_type=raw.get("Type"),
        contact_id=contact.get("ContactID"),
        bank_account_id=bank_account.get("AccountID"),
        bank_account_code=bank_account.get("Code"),
        transaction_date=parse_xero_day(raw.get("Date")),
        reference=raw.get("Reference"),
        status=raw.get("Status"),
        is_reconciled=bool(raw.get("IsReconciled", False)),
        sub_total=amount(raw.get("SubTotal")),
        total_tax=amount(raw.get("TotalTax")),
        total=amount(raw.get("Total")),
        currency_code=_currency(raw.get("CurrencyCode")),
    )


def transform_manual_journal(tenant_id: str, raw: dict) -> ManualJournalRecord:
    lines = [
        JournalLineRecord(
            line_number=number,
            account_code=line.get("AccountCode"),
            description=line.get("Description"),
            tax_type=line.get("TaxType"),
            tax_amount=amount(line.get("TaxAmount")),
            line_amount=amount(line.get("LineAmount")),
        )
        for number, line in enumerate(raw.get("JournalLines") or [], start=1)
    ]
    return ManualJournalRecord(
        **_base(tenant_id, raw, "ManualJournalID"),
        narration=raw.get("Narration"),
        journal_date=parse_xero_day(raw.get("Date")),
        status=raw.get("Status"),
        journal_lines=lines,
    )


# =============================================================================
# Catalogue
# =============================================================================


@dataclass(frozen=True)
class EntityEndpoint:
    """Where an entity type lives in the Xero API and how to store it."""

    entity_type: EntityType
    endpoint: str
    collection_key: str
    id_field: str
    transform: Callable[[str, dict], LedgerRecord]
    where: Optional[str] = None
    page_size: Optional[int] = None
    paginated: bool = True

    def effective_page_size(self, default: int) -> int:
        return self.page_size or default


ENTITY_ENDPOINTS: dict[EntityType, EntityEndpoint] = {
    entry.entity_type: entry
    for entry in (
        EntityEndpoint(
            EntityType.ACCOUNTS,
            "Accounts",
            "Accounts",
            "AccountID",
            transform_account,
            page_size=100,
            paginated=False,
        ),
        EntityEndpoint(EntityType.CONTACTS, "Contacts", "Contacts", "ContactID", transform_contact),
        EntityEndpoint(
            EntityType.ITEMS, "Items", "Items", "ItemID", transform_item, paginated=False
        ),
        EntityEndpoint(
            EntityType.INVOICES,
            "Invoices",
            "Invoices",
            "InvoiceID",
            transform_invoice,
            where='Type=="ACCREC"',
            page_size=50,
        ),
        EntityEndpoint(
            EntityType.BILLS,
            "Invoices",
            "Invoices",
            "InvoiceID",
            transform_invoice,
            where='Type=="ACCPAY"',
        ),
        EntityEndpoint(EntityType.PAYMENTS, "Payments", "Payments", "PaymentID", transform_payment),
        EntityEndpoint(
            EntityType.CREDIT_NOTES,
            "CreditNotes",
            "CreditNotes",
            "CreditNoteID",
            transform_credit_note,
        ),
        EntityEndpoint(
            EntityType.BANK_TRANSACTIONS,
            "BankTransactions",
            "BankTransactions",
            "BankTransactionID",
            transform_bank_transaction,
            page_size=50,
        ),
        EntityEndpoint(
            EntityType.MANUAL_JOURNALS,
            "ManualJournals",
            "ManualJournals",
            "ManualJournalID",
            transform_manual_journal,
        ),
    )
}
