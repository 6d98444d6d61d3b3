"""
Scheduled sync entry point.

Runs one orchestration per active connection and folds the sessions into the
batch summary returned by the cron endpoint. Tenants run sequentially unless
``sync_tenant_concurrency`` allows more; the rate limiter is keyed per tenant,
so parallel tenants never share a budget.
"""

import asyncio
from datetime import datetime
from typing import Callable

import structlog

from xerosync.config import Settings
from xerosync.connectors.sync_orchestrator import SyncOrchestrator
from xerosync.connectors.token_manager import TokenManager
from xerosync.models.connection import XeroConnection
from xerosync.models.enums import TriggerKind
from xerosync.models.sync import BatchSyncSummary, TenantSyncSummary

logger = structlog.get_logger()


class SyncScheduler:
    """Fans a scheduled trigger out to every active tenant."""

    def __init__(
        self,
        token_manager: TokenManager,
        orchestrator: SyncOrchestrator,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.token_manager = token_manager
        self.orchestrator = orchestrator
        self.settings = settings
        self._clock = clock

    async def _sync_one(
        self, connection: XeroConnection, semaphore: asyncio.Semaphore
    ) -> TenantSyncSummary:
        async with semaphore:
            try:
                session = await self.orchestrator.sync_tenant(
                    connection.tenant_id,
                    trigger=TriggerKind.SCHEDULED,
                    tenant_name=connection.tenant_name,
                )
            except Exception as e:
                logger.exception("scheduled_tenant_sync_crashed", tenant_id=connection.tenant_id)
                return TenantSyncSummary(
                    tenant_id=connection.tenant_id,
                    tenant_name=connection.tenant_name,
                    success=False,
                    errors=[f"unexpected_error: {e}"],
                )
            return TenantSyncSummary.from_session(session)

    async def run_scheduled_sync(self) -> BatchSyncSummary:
        """
        Sync every active tenant.

        Returns:
            BatchSyncSummary; ``success`` is True only when every tenant succeeded
        """
        timestamp = self._clock()
        connections = self.token_manager.get_active_connections()
        logger.info("scheduled_sync_started", tenants=len(connections))

        semaphore = asyncio.Semaphore(self.settings.sync_tenant_concurrency)
        results = list(
            await asyncio.gather(*(self._sync_one(c, semaphore) for c in connections))
        )

        succeeded = sum(1 for result in results if result.success)
        summary = BatchSyncSummary(
            success=succeeded == len(results),
            timestamp=timestamp,
            tenants_processed=len(results),
            total_records_processed=sum(r.records_processed for r in results),
            total_errors=sum(len(r.errors) for r in results),
            overall_success_rate=round(succeeded / len(results) * 100, 2) if results else 100.0,
            results=results,
        )

        logger.info(
            "scheduled_sync_completed",
            tenants=summary.tenants_processed,
            records_processed=summary.total_records_processed,
            total_errors=summary.total_errors,
            overall_success_rate=summary.overall_success_rate,
        )
        return summary
