"""
Revenue by business stream, current period against the prior equivalent period.

Sales lines are classified by item mapping first, then by account mapping,
and fall back to ``other``.
"""

from datetime import date
from typing import Iterable, Optional

from xerosync.engine.financial_math import (
    fiscal_year_bounds,
    in_window,
    is_significant_change,
    percentage_change,
    period_bounds,
    require_finite,
    round_money,
)
from xerosync.models.enums import ComparisonPeriod, RevenueStream
from xerosync.models.financial import (
    LedgerLine,
    RevenueStreamComparison,
    RevenueStreamReport,
    StreamRule,
)


def classify_line(line: LedgerLine, rules: StreamRule) -> RevenueStream:
    if line.item_code and line.item_code in rules.item_streams:
        return rules.item_streams[line.item_code]
    if line.account_code and line.account_code in rules.account_streams:
        return rules.account_streams[line.account_code]
    return RevenueStream.OTHER


def _totals(
    lines: list[LedgerLine], rules: StreamRule, start: date, end: date
) -> dict[RevenueStream, tuple[float, set[str]]]:
    totals: dict[RevenueStream, tuple[float, set[str]]] = {
        stream: (0.0, set()) for stream in RevenueStream
    }
    for line in lines:
        if not in_window(line.document_date, start, end):
            continue
        stream = classify_line(line, rules)
        amount, documents = totals[stream]
        documents.add(line.document_id)
        totals[stream] = (amount + line.line_amount, documents)
    return totals


def compute_revenue_streams(
    sales_lines: Iterable[LedgerLine],
    rules: StreamRule,
    as_of: date,
    period: ComparisonPeriod = ComparisonPeriod.MONTH,
    variance_threshold: float = 20.0,
    streams: Optional[Iterable[RevenueStream]] = None,
    fiscal_year: Optional[int] = None,
) -> RevenueStreamReport:
    """
    Compare revenue per stream between two equivalent periods.

    With ``fiscal_year`` set the comparison is that whole financial year
    against the one before it, regardless of ``period``.
    """
    lines = list(sales_lines)
    require_finite((line.line_amount for line in lines), "line amount")

    if fiscal_year is not None:
        current_start, current_end = fiscal_year_bounds(fiscal_year)
        prior_start, prior_end = fiscal_year_bounds(fiscal_year - 1)
        period = ComparisonPeriod.YEAR
    else:
        current_start, current_end, prior_start, prior_end = period_bounds(as_of, period)

    current = _totals(lines, rules, current_start, current_end)
    prior = _totals(lines, rules, prior_start, prior_end)
    wanted = set(streams) if streams else set(RevenueStream)

    comparisons = []
    for stream in RevenueStream:
        if stream not in wanted:
            continue
        current_amount, current_docs = current[stream]
        prior_amount, prior_docs = prior[stream]
        change = percentage_change(prior_amount, current_amount)
        comparisons.append(
            RevenueStreamComparison(
                stream=stream,
                current_revenue=round_money(current_amount),
                prior_revenue=round_money(prior_amount),
                current_invoice_count=len(current_docs),
                prior_invoice_count=len(prior_docs),
                change_amount=round_money(current_amount - prior_amount),
                percentage_change=round(change, 2),
                is_significant=is_significant_change(change, variance_threshold),
            )
        )

    total_current = sum(c.current_revenue for c in comparisons)
    total_prior = sum(c.prior_revenue for c in comparisons)
    return RevenueStreamReport(
        period=period,
        current_start=current_start,
        current_end=current_end,
        prior_start=prior_start,
        prior_end=prior_end,
        streams=comparisons,
        total_current=round_money(total_current),
        total_prior=round_money(total_prior),
        total_percentage_change=round(percentage_change(total_prior, total_current), 2),
    )
