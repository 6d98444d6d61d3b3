"""
Overdue counterparty analysis.

Outstanding documents are grouped by contact. A contact is reported when at
least one of its documents has aged out of the Current bucket.
"""

from datetime import date
from typing import Iterable, Optional

from xerosync.engine.aging import document_days_past_due, outstanding_documents
from xerosync.engine.financial_math import CURRENT_BUCKET, assign_aging_bucket, round_money
from xerosync.models.enums import LedgerSide
from xerosync.models.financial import OutstandingDocument, OverdueCounterparty

UNKNOWN_CONTACT = "Unknown"


def compute_overdue(
    documents: Iterable[OutstandingDocument],
    side: LedgerSide,
    as_of: date,
    threshold_days: int,
    supplier_categories: Optional[Iterable[str]] = None,
) -> list[OverdueCounterparty]:
    """
    Contacts with overdue balances, largest overdue amount first.

    Args:
        threshold_days: ``exceeds_threshold`` is set when the oldest document
            is at least this many days past due
    """
    grouped: dict[str, list[tuple[OutstandingDocument, int]]] = {}
    for document in outstanding_documents(documents, side, supplier_categories):
        key = document.contact_id or ""
        grouped.setdefault(key, []).append((document, document_days_past_due(document, as_of)))

    counterparties = []
    for contact_id, entries in grouped.items():
        overdue = [(d, days) for d, days in entries if assign_aging_bucket(days) != CURRENT_BUCKET]
        if not overdue:
            continue
        oldest = max(days for _, days in entries)
        named = next((d.contact_name for d, _ in entries if d.contact_name), None)
        counterparties.append(
            OverdueCounterparty(
                contact_id=contact_id or None,
                contact_name=named or UNKNOWN_CONTACT,
                side=side,
                total_outstanding=round_money(sum(d.outstanding for d, _ in entries)),
                overdue_amount=round_money(sum(d.outstanding for d, _ in overdue)),
                oldest_days_past_due=oldest,
                document_count=len(entries),
                overdue_count=len(overdue),
                exceeds_threshold=oldest >= threshold_days,
            )
        )

    counterparties.sort(key=lambda c: (-c.overdue_amount, c.contact_name))
    return counterparties
