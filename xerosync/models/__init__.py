"""
Pydantic v2 data models for the Xero integration engine.

Model Organization:
    - enums: Enumeration types (entity types, statuses, roles, streams)
    - connection: OAuth connections, pending transactions and token payloads
    - sync: Checkpoints, fetch cursors, entity results, sessions, batch summary
    - ledger: Canonical rows written by the entity fetcher
    - filters: Typed repository query filters
    - financial: Aggregation inputs, outputs and freshness metadata
"""

from .connection import (
    ConnectionResult,
    ConnectionSummary,
    OAuthTransaction,
    RevokeResult,
    XeroConnection,
    XeroTenantInfo,
    XeroTokenResponse,
)
from .enums import (
    ComparisonPeriod,
    EntityType,
    InvoiceType,
    LedgerSide,
    RevenueStream,
    RuntimeMode,
    SessionStatus,
    SyncStatus,
    TriggerKind,
    UserRole,
)
from .sync import (
    EPOCH,
    BatchSyncSummary,
    EntitySyncResult,
    FetchCursor,
    FetchPage,
    SyncCheckpoint,
    SyncSession,
    TenantSyncSummary,
    UpsertResult,
)

__all__ = [
    "BatchSyncSummary",
    "ComparisonPeriod",
    "ConnectionResult",
    "ConnectionSummary",
    "EPOCH",
    "EntitySyncResult",
    "EntityType",
    "FetchCursor",
    "FetchPage",
    "InvoiceType",
    "LedgerSide",
    "OAuthTransaction",
    "RevenueStream",
    "RevokeResult",
    "RuntimeMode",
    "SessionStatus",
    "SyncCheckpoint",
    "SyncSession",
    "SyncStatus",
    "TenantSyncSummary",
    "TriggerKind",
    "UpsertResult",
    "UserRole",
    "XeroConnection",
    "XeroTenantInfo",
    "XeroTokenResponse",
]
