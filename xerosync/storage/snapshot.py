"""
Projection of stored ledger rows into the engine's snapshot model.

Shared by every storage backend so the projection rules live in one place.
"""

from datetime import datetime
from typing import Iterable, Mapping, Optional

from xerosync.models.enums import EntityType, InvoiceType, LedgerSide, SyncStatus
from xerosync.models.financial import (
    DataFreshness,
    EntityFreshness,
    InventoryPosition,
    LedgerLine,
    LedgerSnapshot,
    OutstandingDocument,
    StreamRule,
)
from xerosync.models.ledger import AccountMapping, ContactRecord, InvoiceRecord, ItemMapping, ItemRecord
from xerosync.models.sync import SyncCheckpoint

# Xero statuses of documents that count as issued
POSTED_STATUSES = frozenset({"AUTHORISED", "PAID"})
OUTSTANDING_STATUS = "AUTHORISED"

_ENTITY_ORDER = {entity_type: index for index, entity_type in enumerate(EntityType)}


def build_freshness(checkpoints: Iterable[SyncCheckpoint]) -> DataFreshness:
    entities = []
    running = []
    failed = []
    for checkpoint in sorted(checkpoints, key=lambda c: _ENTITY_ORDER[c.entity_type]):
        entities.append(
            EntityFreshness(
                entity_type=checkpoint.entity_type,
                status=checkpoint.status,
                watermark=checkpoint.watermark,
                last_successful_sync_at=checkpoint.last_successful_sync_at,
            )
        )
        if checkpoint.status == SyncStatus.RUNNING:
            running.append(checkpoint.entity_type)
        elif checkpoint.status == SyncStatus.FAILED:
            failed.append(checkpoint.entity_type)
    return DataFreshness(
        consistent=not running and not failed,
        entities=entities,
        running_entities=running,
        failed_entities=failed,
    )


def _unit_cost(item: ItemRecord) -> float:
    if item.quantity_on_hand > 0 and item.total_cost_pool > 0:
        return item.total_cost_pool / item.quantity_on_hand
    return item.purchase_unit_price


def assemble_snapshot(
    tenant_id: str,
    as_of: datetime,
    invoices: Iterable[InvoiceRecord],
    contacts: Mapping[str, ContactRecord],
    items: Iterable[ItemRecord],
    account_mappings: Iterable[AccountMapping],
    item_mappings: Iterable[ItemMapping],
    checkpoints: Iterable[SyncCheckpoint],
) -> LedgerSnapshot:
    """
    Build a LedgerSnapshot from already-read rows.

    Documents dated after ``as_of`` are excluded. Documents whose contact is
    missing from the store carry no contact name; the engine reports such
    counterparties as unknown.
    """
    as_of_date = as_of.date()
    item_mappings = list(item_mappings)
    reorder_levels = {m.item_code: m.reorder_level for m in item_mappings}

    rules = StreamRule(item_streams={m.item_code: m.revenue_stream for m in item_mappings})
    for mapping in account_mappings:
        if mapping.is_cogs_account:
            rules.cogs_accounts[mapping.account_code] = mapping.revenue_stream
        else:
            rules.account_streams[mapping.account_code] = mapping.revenue_stream

    receivables: list[OutstandingDocument] = []
    payables: list[OutstandingDocument] = []
    sales_lines: list[LedgerLine] = []
    purchase_lines: list[LedgerLine] = []

    for invoice in invoices:
        if invoice.invoice_date and invoice.invoice_date > as_of_date:
            continue

        contact: Optional[ContactRecord] = contacts.get(invoice.contact_id or "")
        contact_name = contact.name if contact else None
        contact_group = contact.contact_group if contact else None
        side = (
            LedgerSide.RECEIVABLES
            if invoice.invoice_type == InvoiceType.ACCREC
            else LedgerSide.PAYABLES
        )

        if invoice.status == OUTSTANDING_STATUS and invoice.amount_due != 0:
            document = OutstandingDocument(
                document_id=invoice.xero_id,
                document_number=invoice.invoice_number,
                side=side,
                contact_id=invoice.contact_id,
                contact_name=contact_name,
                contact_group=contact_group,
                issue_date=invoice.invoice_date,
                due_date=invoice.due_date,
                total=invoice.total,
                outstanding=invoice.amount_due,
            )
            (receivables if side == LedgerSide.RECEIVABLES else payables).append(document)

        if invoice.status not in POSTED_STATUSES:
            continue
        target = sales_lines if side == LedgerSide.RECEIVABLES else purchase_lines
        for line in invoice.line_items:
            target.append(
                LedgerLine(
                    document_id=invoice.xero_id,
                    invoice_type=invoice.invoice_type.value,
                    document_date=invoice.invoice_date,
                    status=invoice.status,
                    item_code=line.item_code,
                    account_code=line.account_code,
                    quantity=line.quantity,
                    line_amount=line.line_amount,
                    tax_amount=line.tax_amount,
                    contact_group=contact_group,
                )
            )

    inventory = [
        InventoryPosition(
            item_id=item.xero_id,
            item_code=item.code,
            name=item.name,
            quantity_on_hand=item.quantity_on_hand,
            unit_cost=_unit_cost(item),
            reorder_level=reorder_levels.get(item.code or "", 0.0),
        )
        for item in items
        if item.is_tracked_as_inventory
    ]

    return LedgerSnapshot(
        tenant_id=tenant_id,
        as_of=as_of,
        receivables=receivables,
        payables=payables,
        sales_lines=sales_lines,
        purchase_lines=purchase_lines,
        inventory=inventory,
        rules=rules,
        freshness=build_freshness(checkpoints),
    )
