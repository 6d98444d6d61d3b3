"""
Financial analytics router.

Every report is computed on request from the synchronised store and carries
freshness metadata describing the sync state of the data it used.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from xerosync.auth.dependencies import AuthenticatedUser, get_current_user, require_elevated_role
from xerosync.models.enums import ComparisonPeriod, LedgerSide, RevenueStream
from xerosync.models.financial import AnalyticsFilter, AnalyticsResponse
from xerosync.models.ledger import AccountMapping, ItemMapping
from xerosync.services import SyncServices, get_services
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def _filters(
    revenue_streams: Optional[list[RevenueStream]] = Query(default=None),
    supplier_categories: Optional[list[str]] = Query(default=None),
    fiscal_year: Optional[int] = Query(default=None, ge=1900, le=2999),
) -> AnalyticsFilter:
    return AnalyticsFilter(
        revenue_streams=revenue_streams,
        supplier_categories=supplier_categories,
        fiscal_year=fiscal_year,
    )


@router.get("/aging", response_model=AnalyticsResponse)
def aging(
    tenant_id: str = Query(..., min_length=1),
    side: LedgerSide = Query(default=LedgerSide.RECEIVABLES),
    as_of: Optional[datetime] = Query(default=None),
    filters: AnalyticsFilter = Depends(_filters),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Receivables or payables aging buckets."""
    return services.analytics.aging(tenant_id, side=side, as_of=as_of, filters=filters)


@router.get("/cash-flow", response_model=AnalyticsResponse)
def cash_flow(
    tenant_id: str = Query(..., min_length=1),
    as_of: Optional[datetime] = Query(default=None),
    include_inventory: bool = Query(default=False),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """DSO, DPO, optional DIO and the cash conversion cycle."""
    return services.analytics.cash_flow(
        tenant_id, as_of=as_of, include_inventory=include_inventory
    )


@router.get("/revenue-streams", response_model=AnalyticsResponse)
def revenue_streams(
    tenant_id: str = Query(..., min_length=1),
    as_of: Optional[datetime] = Query(default=None),
    period: ComparisonPeriod = Query(default=ComparisonPeriod.MONTH),
    filters: AnalyticsFilter = Depends(_filters),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Revenue per stream against the prior equivalent period."""
    return services.analytics.revenue_streams(
        tenant_id, as_of=as_of, period=period, filters=filters
    )


@router.get("/margins", response_model=AnalyticsResponse)
def margins(
    tenant_id: str = Query(..., min_length=1),
    as_of: Optional[datetime] = Query(default=None),
    filters: AnalyticsFilter = Depends(_filters),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Gross margin per stream for a financial year."""
    return services.analytics.margins(tenant_id, as_of=as_of, filters=filters)


@router.get("/inventory", response_model=AnalyticsResponse)
def inventory(
    tenant_id: str = Query(..., min_length=1),
    as_of: Optional[datetime] = Query(default=None),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Stock value, turnover and reorder alerts."""
    return services.analytics.inventory(tenant_id, as_of=as_of)


@router.get("/overdue", response_model=AnalyticsResponse)
def overdue(
    tenant_id: str = Query(..., min_length=1),
    side: LedgerSide = Query(default=LedgerSide.RECEIVABLES),
    as_of: Optional[datetime] = Query(default=None),
    filters: AnalyticsFilter = Depends(_filters),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Customers or suppliers with overdue balances."""
    return services.analytics.overdue(tenant_id, side=side, as_of=as_of, filters=filters)


@router.put("/mappings/accounts")
def put_account_mappings(
    mappings: list[AccountMapping],
    tenant_id: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(require_elevated_role),
    services: SyncServices = Depends(get_services),
):
    """Assign ledger accounts to revenue streams and flag COGS accounts."""
    count = services.analytics.update_account_mappings(tenant_id, mappings)
    return {"success": True, "updated": count}


@router.put("/mappings/items")
def put_item_mappings(
    mappings: list[ItemMapping],
    tenant_id: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(require_elevated_role),
    services: SyncServices = Depends(get_services),
):
    """Assign items to revenue streams and set reorder levels."""
    count = services.analytics.update_item_mappings(tenant_id, mappings)
    return {"success": True, "updated": count}
