"""
Inventory valuation, turnover and reorder projections for tracked items.

Only current stock levels are synchronised, so the average inventory value is
the current value. COGS comes from bill lines on accounts flagged as COGS;
without any COGS account mapping it is estimated as units sold at unit cost.
"""

import math
from datetime import date
from typing import Iterable, Optional

from xerosync.engine.financial_math import (
    DAYS_PER_YEAR,
    in_window,
    require_finite,
    round_money,
    safe_divide,
    trailing_window,
)
from xerosync.errors import AggregationInputError
from xerosync.models.enums import RevenueStream
from xerosync.models.financial import (
    InventoryMetrics,
    InventoryPosition,
    LedgerLine,
    ReorderAlert,
    StreamRule,
)

# Reported when an item has no recorded usage
NO_USAGE_DAYS = 999.0
REORDER_COVER_DAYS = 30


def _validate(positions: list[InventoryPosition]) -> None:
    for position in positions:
        require_finite([position.quantity_on_hand, position.unit_cost], "inventory value")
        if position.quantity_on_hand < 0:
            raise AggregationInputError(
                f"Item {position.item_code or position.item_id} has negative quantity on hand"
            )


def inventory_value(positions: Iterable[InventoryPosition]) -> float:
    """Sum of quantity on hand times unit cost."""
    positions = list(positions)
    _validate(positions)
    return sum(p.quantity_on_hand * p.unit_cost for p in positions)


def units_sold(
    sales_lines: Iterable[LedgerLine], start: date, end: date
) -> dict[str, float]:
    """Units sold per item code inside an inclusive window."""
    sold: dict[str, float] = {}
    for line in sales_lines:
        if line.item_code and in_window(line.document_date, start, end):
            sold[line.item_code] = sold.get(line.item_code, 0.0) + line.quantity
    return sold


def trailing_cogs(
    positions: Iterable[InventoryPosition],
    sales_lines: Iterable[LedgerLine],
    purchase_lines: Iterable[LedgerLine],
    rules: StreamRule,
    as_of: date,
    streams: Optional[Iterable[RevenueStream]] = None,
) -> float:
    """Cost of goods sold over the 365 days ending on ``as_of``."""
    start, end = trailing_window(as_of)
    wanted = set(streams) if streams else None

    if rules.cogs_accounts:
        return sum(
            line.line_amount
            for line in purchase_lines
            if line.account_code in rules.cogs_accounts
            and in_window(line.document_date, start, end)
            and (wanted is None or rules.cogs_accounts[line.account_code] in wanted)
        )

    sold = units_sold(sales_lines, start, end)
    return sum(sold.get(p.item_code or "", 0.0) * p.unit_cost for p in positions)


def _reorder_alert(position: InventoryPosition, sold_last_year: float) -> ReorderAlert:
    daily_usage = sold_last_year / DAYS_PER_YEAR
    days_until_stockout = (
        position.quantity_on_hand / daily_usage if daily_usage > 0 else NO_USAGE_DAYS
    )
    recommended = max(
        math.ceil(daily_usage * REORDER_COVER_DAYS), math.ceil(position.reorder_level * 2)
    )
    return ReorderAlert(
        item_id=position.item_id,
        item_code=position.item_code,
        name=position.name,
        quantity_on_hand=position.quantity_on_hand,
        reorder_level=position.reorder_level,
        daily_usage=round(daily_usage, 3),
        days_until_stockout=round(days_until_stockout, 1),
        recommended_order_quantity=int(recommended),
    )


def compute_inventory(
    positions: Iterable[InventoryPosition],
    sales_lines: Iterable[LedgerLine],
    purchase_lines: Iterable[LedgerLine],
    rules: StreamRule,
    as_of: date,
) -> InventoryMetrics:
    """
    Value tracked stock and flag items below their reorder level.

    Raises:
        AggregationInputError: Negative or non-finite stock figures
    """
    positions = list(positions)
    sales_lines = list(sales_lines)
    value = inventory_value(positions)
    cogs = trailing_cogs(positions, sales_lines, purchase_lines, rules, as_of)

    start, end = trailing_window(as_of)
    sold = units_sold(sales_lines, start, end)
    alerts = [
        _reorder_alert(p, sold.get(p.item_code or "", 0.0))
        for p in positions
        if p.reorder_level > 0 and p.quantity_on_hand < p.reorder_level
    ]
    alerts.sort(key=lambda alert: (alert.days_until_stockout, alert.item_code or ""))

    return InventoryMetrics(
        as_of=as_of,
        tracked_items=len(positions),
        current_value=round_money(value),
        average_inventory_value=round_money(value),
        trailing_cogs=round_money(cogs),
        turnover=round(safe_divide(cogs, value), 2),
        days_on_hand=round(safe_divide(value, cogs) * DAYS_PER_YEAR, 1),
        reorder_alerts=alerts,
    )
