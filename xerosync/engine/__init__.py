"""
Financial aggregation engine.

Pure computations over a consistent snapshot of the synchronised ledger:
aging, cash flow, revenue streams, margins, inventory and overdue
counterparties. FinancialAggregationService is the storage-facing entry point.
"""

from xerosync.engine.aging import compute_aging
from xerosync.engine.cash_flow import compute_cash_flow
from xerosync.engine.inventory import compute_inventory
from xerosync.engine.margins import compute_margins
from xerosync.engine.overdue import compute_overdue
from xerosync.engine.revenue_streams import classify_line, compute_revenue_streams
from xerosync.engine.service import FinancialAggregationService

__all__ = [
    "FinancialAggregationService",
    "classify_line",
    "compute_aging",
    "compute_cash_flow",
    "compute_inventory",
    "compute_margins",
    "compute_overdue",
    "compute_revenue_streams",
]
