"""
Canonical ledger rows written by the entity fetcher.

Each record is keyed by (tenant_id, xero_id). Nested Xero collections (invoice
line items, journal lines) are flattened into their own row models. Xero GUIDs
of referenced entities are kept as plain foreign keys; nothing enforces that
the referenced row exists.
"""

from datetime import date, datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from xerosync.models.enums import InvoiceType, RevenueStream


class LedgerRecord(BaseModel):
    """Fields shared by every canonical row."""

    TABLE: ClassVar[str] = ""
    CHILD_FIELD: ClassVar[Optional[str]] = None

    tenant_id: str
    xero_id: str = Field(..., min_length=1)
    updated_date_utc: datetime
    raw_data: dict = Field(default_factory=dict)

    def row(self) -> dict:
        """Column values for the record's own table (children excluded)."""
        exclude = {self.CHILD_FIELD} if self.CHILD_FIELD else set()
        return self.model_dump(exclude=exclude)


class AccountRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_accounts"

    code: Optional[str] = None
    name: str = ""
    account_type: Optional[str] = None
    account_class: Optional[str] = None
    status: Optional[str] = None
    tax_type: Optional[str] = None


class ContactRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_contacts"

    name: str = ""
    email: Optional[str] = None
    is_customer: bool = False
    is_supplier: bool = False
    status: Optional[str] = None
    contact_group: Optional[str] = None


class ItemRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_items"

    code: Optional[str] = None
    name: str = ""
    is_tracked_as_inventory: bool = False
    quantity_on_hand: float = 0.0
    total_cost_pool: float = 0.0
    purchase_unit_price: float = 0.0
    sales_unit_price: float = 0.0
    purchase_account_code: Optional[str] = None
    sales_account_code: Optional[str] = None
    cogs_account_code: Optional[str] = None


class InvoiceLineRecord(BaseModel):
    line_item_id: str
    line_number: int
    description: Optional[str] = None
    quantity: float = 0.0
    unit_amount: float = 0.0
    item_code: Optional[str] = None
    account_code: Optional[str] = None
    tax_amount: float = 0.0
    line_amount: float = 0.0


class InvoiceRecord(LedgerRecord):
    """Sales invoice (ACCREC) or supplier bill (ACCPAY)."""

    TABLE: ClassVar[str] = "xero_invoices"
    CHILD_FIELD: ClassVar[Optional[str]] = "line_items"

    invoice_type: InvoiceType
    invoice_number: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    status: str = "DRAFT"
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    amount_due: float = 0.0
    amount_paid: float = 0.0
    amount_credited: float = 0.0
    currency_code: str = "AUD"
    currency_rate: float = 1.0
    line_items: list[InvoiceLineRecord] = Field(default_factory=list)


class PaymentRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_payments"

    invoice_id: Optional[str] = None
    invoice_type: Optional[str] = None
    account_id: Optional[str] = None
    payment_date: Optional[date] = None
    amount: float = 0.0
    currency_rate: float = 1.0
    payment_type: Optional[str] = None
    status: Optional[str] = None
    reference: Optional[str] = None


class CreditNoteRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_credit_notes"

    credit_note_number: Optional[str] = None
    credit_note_type: Optional[str] = None
    contact_id: Optional[str] = None
    credit_note_date: Optional[date] = None
    status: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    remaining_credit: float = 0.0
    currency_code: str = "AUD"


class BankTransactionRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_bank_transactions"

    transaction_type: Optional[str] = None
    contact_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    bank_account_code: Optional[str] = None
    transaction_date: Optional[date] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    is_reconciled: bool = False
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    currency_code: str = "AUD"


class JournalLineRecord(BaseModel):
    line_number: int
    account_code: Optional[str] = None
    description: Optional[str] = None
    tax_type: Optional[str] = None
    tax_amount: float = 0.0
    line_amount: float = 0.0


class ManualJournalRecord(LedgerRecord):
    TABLE: ClassVar[str] = "xero_manual_journals"
    CHILD_FIELD: ClassVar[Optional[str]] = "journal_lines"

    narration: Optional[str] = None
    journal_date: Optional[date] = None
    status: Optional[str] = None
    journal_lines: list[JournalLineRecord] = Field(default_factory=list)


class AccountMapping(BaseModel):
    """Assigns a ledger account to a revenue stream and flags COGS accounts."""

    account_code: str = Field(..., min_length=1)
    revenue_stream: RevenueStream
    is_cogs_account: bool = False


class ItemMapping(BaseModel):
    """Assigns an item to a revenue stream and configures its reorder level."""

    item_code: str = Field(..., min_length=1)
    revenue_stream: RevenueStream
    reorder_level: float = Field(default=0.0, ge=0)
