"""
Receivables and payables aging.

Outstanding documents are placed into closed-open day ranges past their due
date: Current [0, 31), 31-60 [31, 61), 61-90 [61, 91) and 90+ from day 91.
Only non-empty buckets are reported, in bucket order.
"""

from datetime import date
from typing import Iterable, Optional

from xerosync.engine.financial_math import (
    AGING_BUCKETS,
    assign_aging_bucket,
    days_past_due,
    require_finite,
    round_money,
)
from xerosync.errors import AggregationInputError
from xerosync.models.enums import LedgerSide
from xerosync.models.financial import AgingBucket, AgingReport, OutstandingDocument


def document_days_past_due(document: OutstandingDocument, as_of: date) -> int:
    """Days past due; documents without a due date age from their issue date."""
    reference = document.due_date or document.issue_date
    if reference is None:
        return 0
    return days_past_due(reference, as_of)


def outstanding_documents(
    documents: Iterable[OutstandingDocument],
    side: LedgerSide,
    supplier_categories: Optional[Iterable[str]] = None,
) -> list[OutstandingDocument]:
    """
    Documents of one side with a positive balance.

    Raises:
        AggregationInputError: A document carries a negative or non-finite balance
    """
    categories = set(supplier_categories) if supplier_categories else None
    selected = []
    for document in documents:
        if document.side != side:
            continue
        require_finite([document.outstanding, document.total], "outstanding amount")
        if document.outstanding < 0:
            raise AggregationInputError(
                f"Document {document.document_id} has negative outstanding {document.outstanding}"
            )
        if document.outstanding == 0:
            continue
        if categories is not None and side == LedgerSide.PAYABLES:
            if document.contact_group not in categories:
                continue
        selected.append(document)
    return selected


def compute_aging(
    documents: Iterable[OutstandingDocument],
    side: LedgerSide,
    as_of: date,
    supplier_categories: Optional[Iterable[str]] = None,
) -> AgingReport:
    """
    Age the outstanding documents of one side as of a date.

    Args:
        documents: Outstanding invoices and bills
        side: Receivables or payables
        as_of: Reporting date
        supplier_categories: Restrict payables to these contact groups

    Returns:
        AgingReport with non-empty buckets only
    """
    grouped: dict[str, list[tuple[int, float]]] = {label: [] for label, _, _ in AGING_BUCKETS}
    for document in outstanding_documents(documents, side, supplier_categories):
        days = document_days_past_due(document, as_of)
        grouped[assign_aging_bucket(days)].append((days, document.outstanding))

    buckets = []
    for label, _, _ in AGING_BUCKETS:
        entries = grouped[label]
        if not entries:
            continue
        days_list = [days for days, _ in entries]
        buckets.append(
            AgingBucket(
                bucket=label,
                count=len(entries),
                total_outstanding=round_money(sum(amount for _, amount in entries)),
                min_days_past_due=min(days_list),
                avg_days_past_due=round(sum(days_list) / len(days_list), 1),
                max_days_past_due=max(days_list),
            )
        )

    return AgingReport(
        side=side,
        as_of=as_of,
        buckets=buckets,
        total_outstanding=round_money(sum(b.total_outstanding for b in buckets)),
        document_count=sum(b.count for b in buckets),
    )
