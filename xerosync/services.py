"""
Service container.

Every long-lived collaborator (storage, shared HTTP client, rate limiter,
token manager, fetcher, orchestrator, scheduler, analytics) is built once in
the application lifespan and reached from routes through ``get_services``.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from xerosync.config import Settings
from xerosync.connectors.entity_fetcher import EntityFetcher
from xerosync.connectors.rate_limiter import RateLimiter
from xerosync.connectors.scheduler import SyncScheduler
from xerosync.connectors.sync_orchestrator import SyncOrchestrator
from xerosync.connectors.token_manager import TokenManager
from xerosync.connectors.xero_client import XeroClient
from xerosync.engine.service import FinancialAggregationService
from xerosync.storage.base import StorageBackend


@dataclass
class SyncServices:
    settings: Settings
    storage: StorageBackend
    http_client: httpx.AsyncClient
    xero_client: XeroClient
    rate_limiter: RateLimiter
    token_manager: TokenManager
    fetcher: EntityFetcher
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    analytics: FinancialAggregationService

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    storage: StorageBackend,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SyncServices:
    """
    Wire the service graph.

    Args:
        settings: Application settings
        storage: Storage backend shared by every service
        http_client: HTTP client for Xero calls (tests pass one with a mock transport)
    """
    http_client = http_client or httpx.AsyncClient(timeout=settings.fetch_timeout_seconds)
    xero_client = XeroClient(settings, http_client=http_client)
    rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_requests_per_minute,
        window_seconds=60.0,
        max_wait_seconds=settings.rate_limit_max_wait_seconds,
    )
    token_manager = TokenManager(xero_client, storage, settings)
    fetcher = EntityFetcher(xero_client, storage, rate_limiter, settings)
    orchestrator = SyncOrchestrator(token_manager, fetcher, storage, settings)

    return SyncServices(
        settings=settings,
        storage=storage,
        http_client=http_client,
        xero_client=xero_client,
        rate_limiter=rate_limiter,
        token_manager=token_manager,
        fetcher=fetcher,
        orchestrator=orchestrator,
        scheduler=SyncScheduler(token_manager, orchestrator, settings),
        analytics=FinancialAggregationService(storage, settings),
    )


def get_services(request: Request) -> SyncServices:
    """FastAPI dependency returning the container built at startup."""
    return request.app.state.services
