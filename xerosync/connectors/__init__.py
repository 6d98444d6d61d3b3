"""
Xero connector for the integration engine.

Main Components:
    XeroClient: Single-call wrapper over the Xero identity and accounting APIs
    TokenManager: OAuth2 authorization, refresh and revocation
    RateLimiter: Per-tenant sliding-window limiter
    EntityFetcher: Incremental page fetch, transform and upsert
    SyncOrchestrator: Per-tenant sync sessions with checkpointing
    SyncScheduler: Scheduled fan-out across active tenants
"""

from xerosync.connectors.entity_fetcher import EntityFetcher
from xerosync.connectors.rate_limiter import RateLimiter
from xerosync.connectors.scheduler import SyncScheduler
from xerosync.connectors.sync_orchestrator import SyncOrchestrator, ordered_entity_types
from xerosync.connectors.token_manager import TokenManager
from xerosync.connectors.xero_client import XeroClient
from xerosync.connectors.xero_entities import ENTITY_ENDPOINTS, EntityEndpoint, parse_xero_date

__all__ = [
    "ENTITY_ENDPOINTS",
    "EntityFetcher",
    "EntityEndpoint",
    "RateLimiter",
    "SyncOrchestrator",
    "SyncScheduler",
    "TokenManager",
    "XeroClient",
    "ordered_entity_types",
    "parse_xero_date",
]
