"""
Gross margin per revenue stream.

Revenue comes from classified sales lines, COGS from bill lines posted to the
accounts mapped as COGS for each stream.
"""

from datetime import date
from typing import Iterable, Optional

from xerosync.engine.financial_math import in_window, require_finite, round_money, safe_divide
from xerosync.engine.revenue_streams import classify_line
from xerosync.models.enums import RevenueStream
from xerosync.models.financial import LedgerLine, MarginReport, StreamMargin, StreamRule


def gross_margin_percent(revenue: float, cogs: float) -> float:
    """(revenue - cogs) / revenue * 100, or 0 when there is no revenue."""
    if revenue == 0:
        return 0.0
    return (revenue - cogs) / revenue * 100


def compute_margins(
    sales_lines: Iterable[LedgerLine],
    purchase_lines: Iterable[LedgerLine],
    rules: StreamRule,
    period_start: date,
    period_end: date,
    streams: Optional[Iterable[RevenueStream]] = None,
) -> MarginReport:
    sales_lines = list(sales_lines)
    purchase_lines = list(purchase_lines)
    require_finite((line.line_amount for line in sales_lines), "line amount")
    require_finite((line.line_amount for line in purchase_lines), "line amount")

    gross = {stream: 0.0 for stream in RevenueStream}
    net = {stream: 0.0 for stream in RevenueStream}
    units = {stream: 0.0 for stream in RevenueStream}
    cogs = {stream: 0.0 for stream in RevenueStream}

    for line in sales_lines:
        if not in_window(line.document_date, period_start, period_end):
            continue
        stream = classify_line(line, rules)
        gross[stream] += line.line_amount + line.tax_amount
        net[stream] += line.line_amount
        units[stream] += line.quantity

    for line in purchase_lines:
        if line.account_code not in rules.cogs_accounts:
            continue
        if in_window(line.document_date, period_start, period_end):
            cogs[rules.cogs_accounts[line.account_code]] += line.line_amount

    wanted = set(streams) if streams else set(RevenueStream)
    margins = [
        StreamMargin(
            stream=stream,
            gross_revenue=round_money(gross[stream]),
            net_revenue=round_money(net[stream]),
            cogs=round_money(cogs[stream]),
            gross_profit=round_money(net[stream] - cogs[stream]),
            units=units[stream],
            average_selling_price=round_money(safe_divide(net[stream], units[stream])),
            gross_margin_percent=round(gross_margin_percent(net[stream], cogs[stream]), 2),
        )
        for stream in RevenueStream
        if stream in wanted
    ]

    total_net = sum(net[s] for s in RevenueStream if s in wanted)
    total_cogs = sum(cogs[s] for s in RevenueStream if s in wanted)
    return MarginReport(
        period_start=period_start,
        period_end=period_end,
        streams=margins,
        total_net_revenue=round_money(total_net),
        total_cogs=round_money(total_cogs),
        gross_margin_percent=round(gross_margin_percent(total_net, total_cogs), 2),
    )
