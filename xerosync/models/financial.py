"""
Financial aggregation models.

Input rows are the projections of committed ledger data the engine works on;
output models are derived on demand and never persisted.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from xerosync.models.enums import ComparisonPeriod, EntityType, LedgerSide, RevenueStream, SyncStatus

# =============================================================================
# Inputs
# =============================================================================


class OutstandingDocument(BaseModel):
    """An unpaid invoice or bill as seen by aging and overdue analysis."""

    document_id: str
    document_number: Optional[str] = None
    side: LedgerSide
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    contact_group: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    total: float = 0.0
    outstanding: float = 0.0


class LedgerLine(BaseModel):
    """A flattened invoice or bill line used by revenue, margin and inventory maths."""

    document_id: str
    invoice_type: str
    document_date: Optional[date] = None
    status: str = "AUTHORISED"
    item_code: Optional[str] = None
    account_code: Optional[str] = None
    quantity: float = 0.0
    line_amount: float = 0.0
    tax_amount: float = 0.0
    contact_group: Optional[str] = None


class InventoryPosition(BaseModel):
    """A tracked stock item with its configured reorder level."""

    item_id: str
    item_code: Optional[str] = None
    name: str = ""
    quantity_on_hand: float = 0.0
    unit_cost: float = 0.0
    reorder_level: float = 0.0


class StreamRule(BaseModel):
    """Revenue-stream classification rules built from the mapping tables."""

    item_streams: dict[str, RevenueStream] = Field(default_factory=dict)
    account_streams: dict[str, RevenueStream] = Field(default_factory=dict)
    cogs_accounts: dict[str, RevenueStream] = Field(default_factory=dict)


class AnalyticsFilter(BaseModel):
    """Optional filter dimensions accepted by every aggregation."""

    revenue_streams: Optional[list[RevenueStream]] = None
    supplier_categories: Optional[list[str]] = None
    fiscal_year: Optional[int] = Field(default=None, ge=1900, le=2999)


class EntityFreshness(BaseModel):
    entity_type: EntityType
    status: SyncStatus
    watermark: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None


class DataFreshness(BaseModel):
    """
    Sync state of the data a report was computed from.

    ``consistent`` is False while any entity type is mid-sync or its last run
    failed, so callers can tell a report may lag the source.
    """

    consistent: bool = True
    entities: list[EntityFreshness] = Field(default_factory=list)
    running_entities: list[EntityType] = Field(default_factory=list)
    failed_entities: list[EntityType] = Field(default_factory=list)


class LedgerSnapshot(BaseModel):
    """Everything one analytics request reads, taken in a single transaction."""

    tenant_id: str
    as_of: datetime
    receivables: list[OutstandingDocument] = Field(default_factory=list)
    payables: list[OutstandingDocument] = Field(default_factory=list)
    sales_lines: list[LedgerLine] = Field(default_factory=list)
    purchase_lines: list[LedgerLine] = Field(default_factory=list)
    inventory: list[InventoryPosition] = Field(default_factory=list)
    rules: StreamRule = Field(default_factory=StreamRule)
    freshness: DataFreshness = Field(default_factory=DataFreshness)


# =============================================================================
# Outputs
# =============================================================================


class AgingBucket(BaseModel):
    bucket: str
    count: int = 0
    total_outstanding: float = 0.0
    min_days_past_due: int = 0
    avg_days_past_due: float = 0.0
    max_days_past_due: int = 0


class AgingReport(BaseModel):
    side: LedgerSide
    as_of: date
    buckets: list[AgingBucket] = Field(default_factory=list)
    total_outstanding: float = 0.0
    document_count: int = 0


class CashFlowMetrics(BaseModel):
    as_of: date
    ar_total: float = 0.0
    ap_total: float = 0.0
    net_position: float = 0.0
    trailing_revenue: float = 0.0
    trailing_purchases: float = 0.0
    dso: float = 0.0
    dpo: float = 0.0
    days_inventory: Optional[float] = None
    cash_conversion_cycle: float = 0.0


class RevenueStreamComparison(BaseModel):
    stream: RevenueStream
    current_revenue: float = 0.0
    prior_revenue: float = 0.0
    current_invoice_count: int = 0
    prior_invoice_count: int = 0
    change_amount: float = 0.0
    percentage_change: float = 0.0
    is_significant: bool = False


class RevenueStreamReport(BaseModel):
    period: ComparisonPeriod
    current_start: date
    current_end: date
    prior_start: date
    prior_end: date
    streams: list[RevenueStreamComparison] = Field(default_factory=list)
    total_current: float = 0.0
    total_prior: float = 0.0
    total_percentage_change: float = 0.0


class StreamMargin(BaseModel):
    stream: RevenueStream
    gross_revenue: float = 0.0
    net_revenue: float = 0.0
    cogs: float = 0.0
    gross_profit: float = 0.0
    units: float = 0.0
    average_selling_price: float = 0.0
    gross_margin_percent: float = 0.0


class MarginReport(BaseModel):
    period_start: date
    period_end: date
    streams: list[StreamMargin] = Field(default_factory=list)
    total_net_revenue: float = 0.0
    total_cogs: float = 0.0
    gross_margin_percent: float = 0.0


class ReorderAlert(BaseModel):
    item_id: str
    item_code: Optional[str] = None
    name: str = ""
    quantity_on_hand: float = 0.0
    reorder_level: float = 0.0
    daily_usage: float = 0.0
    days_until_stockout: float = 0.0
    recommended_order_quantity: int = 0


class InventoryMetrics(BaseModel):
    as_of: date
    tracked_items: int = 0
    current_value: float = 0.0
    average_inventory_value: float = 0.0
    trailing_cogs: float = 0.0
    turnover: float = 0.0
    days_on_hand: float = 0.0
    reorder_alerts: list[ReorderAlert] = Field(default_factory=list)


class OverdueCounterparty(BaseModel):
    contact_id: Optional[str] = None
    contact_name: str = "Unknown"
    side: LedgerSide
    total_outstanding: float = 0.0
    overdue_amount: float = 0.0
    oldest_days_past_due: int = 0
    document_count: int = 0
    overdue_count: int = 0
    exceeds_threshold: bool = False


class AnalyticsResponse(BaseModel):
    """Envelope returned by the analytics endpoints."""

    tenant_id: str
    as_of: datetime
    freshness: DataFreshness
    data: Any
