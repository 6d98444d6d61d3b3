"""
Typed repository filters.

Each filter is a set of optional, explicitly named criteria. Storage backends
translate the populated fields into query predicates; unset fields do not
constrain the result.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from xerosync.models.enums import EntityType, InvoiceType, SyncStatus


class ConnectionFilter(BaseModel):
    tenant_ids: Optional[list[str]] = None
    is_active: Optional[bool] = None
    created_by: Optional[str] = None


class CheckpointFilter(BaseModel):
    tenant_id: str
    entity_types: Optional[list[EntityType]] = None
    statuses: Optional[list[SyncStatus]] = None


class SessionFilter(BaseModel):
    tenant_id: str
    started_after: Optional[datetime] = None
    limit: int = Field(default=20, ge=1, le=500)


class InvoiceFilter(BaseModel):
    """Criteria for invoice and bill queries."""

    tenant_id: str
    invoice_type: Optional[InvoiceType] = None
    statuses: Optional[list[str]] = None
    contact_ids: Optional[list[str]] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    outstanding_only: bool = False
    limit: Optional[int] = Field(default=None, ge=1)
