"""
Financial aggregation service.

Loads one consistent ledger snapshot per request, runs the pure aggregation
functions over it and wraps the result with data freshness metadata so a
report computed while a sync is running, or after a failed one, says so.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog

from xerosync.config import Settings
from xerosync.engine.aging import compute_aging
from xerosync.engine.cash_flow import compute_cash_flow
from xerosync.engine.financial_math import fiscal_year_bounds, fiscal_year_of
from xerosync.engine.inventory import compute_inventory
from xerosync.engine.margins import compute_margins
from xerosync.engine.overdue import compute_overdue
from xerosync.engine.revenue_streams import compute_revenue_streams
from xerosync.errors import AggregationDataError
from xerosync.models.enums import ComparisonPeriod, LedgerSide
from xerosync.models.financial import AnalyticsFilter, AnalyticsResponse, LedgerSnapshot
from xerosync.models.ledger import AccountMapping, ItemMapping
from xerosync.storage.base import StorageBackend, StorageError

logger = structlog.get_logger()


class FinancialAggregationService:
    """
    Read-only analytics over the synchronised store.

    Attributes:
        storage: Ledger store
        settings: Application settings (variance and overdue thresholds)
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.storage = storage
        self.settings = settings
        self._clock = clock

    def _snapshot(self, tenant_id: str, as_of: Optional[datetime]) -> LedgerSnapshot:
        as_of = as_of or self._clock()
        try:
            snapshot = self.storage.read_ledger_snapshot(tenant_id, as_of)
        except StorageError as e:
            logger.error("analytics_snapshot_failed", tenant_id=tenant_id, error=str(e))
            raise AggregationDataError(f"Could not read ledger data: {e}") from e

        if not snapshot.freshness.consistent:
            logger.warning(
                "analytics_data_not_settled",
                tenant_id=tenant_id,
                running=[e.value for e in snapshot.freshness.running_entities],
                failed=[e.value for e in snapshot.freshness.failed_entities],
            )
        return snapshot

    @staticmethod
    def _respond(snapshot: LedgerSnapshot, data) -> AnalyticsResponse:
        return AnalyticsResponse(
            tenant_id=snapshot.tenant_id,
            as_of=snapshot.as_of,
            freshness=snapshot.freshness,
            data=data,
        )

    def aging(
        self,
        tenant_id: str,
        side: LedgerSide = LedgerSide.RECEIVABLES,
        as_of: Optional[datetime] = None,
        filters: Optional[AnalyticsFilter] = None,
    ) -> AnalyticsResponse:
        filters = filters or AnalyticsFilter()
        snapshot = self._snapshot(tenant_id, as_of)
        documents = snapshot.receivables if side == LedgerSide.RECEIVABLES else snapshot.payables
        report = compute_aging(
            documents, side, snapshot.as_of.date(), supplier_categories=filters.supplier_categories
        )
        return self._respond(snapshot, report)

    def cash_flow(
        self,
        tenant_id: str,
        as_of: Optional[datetime] = None,
        include_inventory: bool = False,
    ) -> AnalyticsResponse:
        snapshot = self._snapshot(tenant_id, as_of)
        metrics = compute_cash_flow(
            snapshot.receivables,
            snapshot.payables,
            snapshot.sales_lines,
            snapshot.purchase_lines,
            snapshot.as_of.date(),
            inventory=snapshot.inventory if include_inventory else None,
            rules=snapshot.rules,
        )
        return self._respond(snapshot, metrics)

    def revenue_streams(
        self,
        tenant_id: str,
        as_of: Optional[datetime] = None,
        period: ComparisonPeriod = ComparisonPeriod.MONTH,
        filters: Optional[AnalyticsFilter] = None,
    ) -> AnalyticsResponse:
        filters = filters or AnalyticsFilter()
        snapshot = self._snapshot(tenant_id, as_of)
        report = compute_revenue_streams(
            snapshot.sales_lines,
            snapshot.rules,
            snapshot.as_of.date(),
            period=period,
            variance_threshold=self.settings.revenue_variance_threshold,
            streams=filters.revenue_streams,
            fiscal_year=filters.fiscal_year,
        )
        return self._respond(snapshot, report)

    def margins(
        self,
        tenant_id: str,
        as_of: Optional[datetime] = None,
        filters: Optional[AnalyticsFilter] = None,
    ) -> AnalyticsResponse:
        """Margins for a whole financial year, or the current one to date."""
        filters = filters or AnalyticsFilter()
        snapshot = self._snapshot(tenant_id, as_of)
        as_of_date = snapshot.as_of.date()
        if filters.fiscal_year is not None:
            start, end = fiscal_year_bounds(filters.fiscal_year)
        else:
            start, end = fiscal_year_bounds(fiscal_year_of(as_of_date))[0], as_of_date

        report = compute_margins(
            snapshot.sales_lines,
            snapshot.purchase_lines,
            snapshot.rules,
            start,
            end,
            streams=filters.revenue_streams,
        )
        return self._respond(snapshot, report)

    def inventory(self, tenant_id: str, as_of: Optional[datetime] = None) -> AnalyticsResponse:
        snapshot = self._snapshot(tenant_id, as_of)
        metrics = compute_inventory(
            snapshot.inventory,
            snapshot.sales_lines,
            snapshot.purchase_lines,
            snapshot.rules,
            snapshot.as_of.date(),
        )
        return self._respond(snapshot, metrics)

    def overdue(
        self,
        tenant_id: str,
        side: LedgerSide = LedgerSide.RECEIVABLES,
        as_of: Optional[datetime] = None,
        filters: Optional[AnalyticsFilter] = None,
    ) -> AnalyticsResponse:
        filters = filters or AnalyticsFilter()
        snapshot = self._snapshot(tenant_id, as_of)
        if side == LedgerSide.RECEIVABLES:
            documents, threshold = snapshot.receivables, self.settings.customer_overdue_days
        else:
            documents, threshold = snapshot.payables, self.settings.supplier_overdue_days
        counterparties = compute_overdue(
            documents,
            side,
            snapshot.as_of.date(),
            threshold,
            supplier_categories=filters.supplier_categories,
        )
        return self._respond(snapshot, counterparties)

    # =========================================================================
    # Mapping maintenance
    # =========================================================================

    def update_account_mappings(self, tenant_id: str, mappings: list[AccountMapping]) -> int:
        try:
            count = self.storage.upsert_account_mappings(tenant_id, mappings)
        except StorageError as e:
            raise AggregationDataError(f"Could not store account mappings: {e}") from e
        logger.info("account_mappings_updated", tenant_id=tenant_id, count=count)
        return count

    def update_item_mappings(self, tenant_id: str, mappings: list[ItemMapping]) -> int:
        try:
            count = self.storage.upsert_item_mappings(tenant_id, mappings)
        except StorageError as e:
            raise AggregationDataError(f"Could not store item mappings: {e}") from e
        logger.info("item_mappings_updated", tenant_id=tenant_id, count=count)
        return count
