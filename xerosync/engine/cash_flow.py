"""
Working-capital cash flow metrics: DSO, DPO, DIO and the cash conversion cycle.

Revenue and purchases are taken over the 365 days ending on the as-of date.
Zero denominators give zero-valued ratios.
"""

from datetime import date
from typing import Iterable, Optional

from xerosync.engine.aging import outstanding_documents
from xerosync.engine.financial_math import (
    DAYS_PER_YEAR,
    in_window,
    require_finite,
    round_money,
    safe_divide,
    trailing_window,
)
from xerosync.engine.inventory import inventory_value, trailing_cogs
from xerosync.models.enums import LedgerSide
from xerosync.models.financial import (
    CashFlowMetrics,
    InventoryPosition,
    LedgerLine,
    OutstandingDocument,
    StreamRule,
)


def compute_cash_flow(
    receivables: Iterable[OutstandingDocument],
    payables: Iterable[OutstandingDocument],
    sales_lines: Iterable[LedgerLine],
    purchase_lines: Iterable[LedgerLine],
    as_of: date,
    inventory: Optional[Iterable[InventoryPosition]] = None,
    rules: Optional[StreamRule] = None,
) -> CashFlowMetrics:
    """
    Compute cash flow metrics as of a date.

    Days inventory outstanding is only computed when ``inventory`` is given;
    it then joins the cash conversion cycle.
    """
    sales_lines = list(sales_lines)
    purchase_lines = list(purchase_lines)
    require_finite((line.line_amount for line in sales_lines), "line amount")
    require_finite((line.line_amount for line in purchase_lines), "line amount")

    ar_total = sum(d.outstanding for d in outstanding_documents(receivables, LedgerSide.RECEIVABLES))
    ap_total = sum(d.outstanding for d in outstanding_documents(payables, LedgerSide.PAYABLES))

    start, end = trailing_window(as_of)
    revenue = sum(
        line.line_amount for line in sales_lines if in_window(line.document_date, start, end)
    )
    purchases = sum(
        line.line_amount for line in purchase_lines if in_window(line.document_date, start, end)
    )

    dso = safe_divide(ar_total, revenue) * DAYS_PER_YEAR
    dpo = safe_divide(ap_total, purchases) * DAYS_PER_YEAR

    days_inventory: Optional[float] = None
    if inventory is not None:
        positions = list(inventory)
        cogs = trailing_cogs(positions, sales_lines, purchase_lines, rules or StreamRule(), as_of)
        days_inventory = round(safe_divide(inventory_value(positions), cogs) * DAYS_PER_YEAR, 1)

    cycle = dso + (days_inventory or 0.0) - dpo

    return CashFlowMetrics(
        as_of=as_of,
        ar_total=round_money(ar_total),
        ap_total=round_money(ap_total),
        net_position=round_money(ar_total - ap_total),
        trailing_revenue=round_money(revenue),
        trailing_purchases=round_money(purchases),
        dso=round(dso, 1),
        dpo=round(dpo, 1),
        days_inventory=days_inventory,
        cash_conversion_cycle=round(cycle, 1),
    )
