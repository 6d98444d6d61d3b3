"""
Sync bookkeeping models: checkpoints, fetch cursors, per-entity results,
sessions and the scheduler's batch summary.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from xerosync.models.enums import EntityType, SessionStatus, SyncStatus, TriggerKind

# Watermark used when an entity type has never been synced
EPOCH = datetime(1970, 1, 1)


class SyncCheckpoint(BaseModel):
    """
    Persisted progress for one (tenant, entity type).

    The watermark is the largest ``UpdatedDateUTC`` durably upserted by a
    successful run. It never moves backwards.
    """

    tenant_id: str
    entity_type: EntityType
    watermark: datetime = EPOCH
    records_processed: int = Field(default=0, ge=0)
    has_more_records: bool = False
    status: SyncStatus = SyncStatus.IDLE
    error_message: Optional[str] = None
    last_sync_started_at: Optional[datetime] = None
    last_sync_completed_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    total_sync_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    rate_limit_hits: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class FetchCursor(BaseModel):
    """
    Position of the entity fetcher inside one entity's run.

    ``seen_ids`` holds the ids already delivered whose update time equals the
    watermark; the inclusive ``If-Modified-Since`` filter returns them again.
    ``page`` only advances past 1 when a full page shares one timestamp.
    """

    model_config = ConfigDict(frozen=True)

    watermark: datetime = EPOCH
    seen_ids: frozenset[str] = frozenset()
    page: int = Field(default=1, ge=1)


class UpsertResult(BaseModel):
    inserted: int = 0
    updated: int = 0


class FetchPage(BaseModel):
    """Outcome of fetching, transforming and upserting one page."""

    entity_type: EntityType
    cursor: FetchCursor
    has_more: bool
    records_received: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    api_calls: int = 0
    rate_limit_hits: int = 0

    @property
    def records_processed(self) -> int:
        return self.records_inserted + self.records_updated


class EntitySyncResult(BaseModel):
    """Result of syncing one entity type inside a session."""

    entity_type: EntityType
    success: bool = False
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    api_calls_made: int = 0
    rate_limit_hits: int = 0
    pages_fetched: int = 0
    watermark: Optional[datetime] = None
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)


class SyncSession(BaseModel):
    """One orchestration run for one tenant. Written once, never mutated after."""

    session_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    tenant_name: Optional[str] = None
    trigger: TriggerKind = TriggerKind.SCHEDULED
    status: SessionStatus = SessionStatus.INITIALIZING
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    entity_results: list[EntitySyncResult] = Field(default_factory=list)
    skipped_entities: list[EntityType] = Field(default_factory=list)
    total_records_processed: int = 0
    total_api_calls: int = 0
    success: bool = False
    success_rate: float = 0.0
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TenantSyncSummary(_CamelModel):
    """Per-tenant line of the scheduled trigger response."""

    tenant_id: str
    tenant_name: Optional[str] = None
    success: bool
    records_processed: int = 0
    entities_processed: int = 0
    duration: float = 0.0
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: SyncSession) -> "TenantSyncSummary":
        return cls(
            tenant_id=session.tenant_id,
            tenant_name=session.tenant_name,
            success=session.success,
            records_processed=session.total_records_processed,
            entities_processed=len(session.entity_results),
            duration=session.duration_seconds,
            errors=list(session.errors),
        )


class BatchSyncSummary(_CamelModel):
    """Response body of the scheduled trigger."""

    success: bool
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    tenants_processed: int = 0
    total_records_processed: int = 0
    total_errors: int = 0
    overall_success_rate: float = 100.0
    results: list[TenantSyncSummary] = Field(default_factory=list)
