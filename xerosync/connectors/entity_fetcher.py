"""
Incremental page fetcher for Xero entities.

One ``fetch_page`` call takes a rate-limiter slot, reads one page of changes
since the cursor's watermark, transforms and upserts the records and returns
the advanced cursor.

Boundary handling (overlap + de-duplicate): ``If-Modified-Since`` is
inclusive, so records updated exactly at the watermark come back on the next
request. The cursor remembers the ids already delivered at the watermark and
those are skipped. When a full page shares one timestamp the watermark cannot
advance, so the page number moves forward instead.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from xerosync.config import Settings
from xerosync.connectors.rate_limiter import RateLimiter
from xerosync.connectors.xero_client import XeroClient
from xerosync.connectors.xero_entities import ENTITY_ENDPOINTS, EntityEndpoint
from xerosync.errors import RateLimitExceeded, TransientFetchError, XeroSyncError
from xerosync.models.enums import EntityType
from xerosync.models.ledger import LedgerRecord
from xerosync.models.sync import EPOCH, FetchCursor, FetchPage
from xerosync.storage.base import StorageBackend

logger = structlog.get_logger()


class EntityFetcher:
    """
    Fetches, transforms and stores one page of a Xero entity at a time.

    Attributes:
        client: Xero API client
        storage: Ledger store
        rate_limiter: Shared per-tenant limiter
        settings: Application settings (page size, retry policy)
    """

    def __init__(
        self,
        client: XeroClient,
        storage: StorageBackend,
        rate_limiter: RateLimiter,
        settings: Settings,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.client = client
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.settings = settings
        self._sleep = sleep or asyncio.sleep

    def _backoff(self, attempt: int) -> float:
        return self.settings.fetch_backoff_base_seconds * (2**attempt)

    async def _request_page(
        self,
        tenant_id: str,
        access_token: str,
        entry: EntityEndpoint,
        cursor: FetchCursor,
        page_size: int,
        stats: dict[str, int],
    ) -> list[dict]:
        """
        Request one page, retrying rate limits and transient failures.

        Raises:
            RateLimitExceeded: Still rate limited after the last attempt
            TransientFetchError: Still failing after the last attempt
            NonRetryableFetchError: Immediately, on any other client error
        """
        attempts = self.settings.fetch_max_attempts
        modified_since = cursor.watermark if cursor.watermark > EPOCH else None

        for attempt in range(attempts):
            try:
                await self.rate_limiter.acquire(tenant_id)
                stats["api_calls"] += 1
                return await self.client.get_entities(
                    access_token,
                    tenant_id,
                    entry,
                    modified_since=modified_since,
                    page=cursor.page,
                    page_size=page_size,
                )
            except RateLimitExceeded as e:
                stats["rate_limit_hits"] += 1
                error: XeroSyncError = e
                delay = e.retry_after if e.retry_after is not None else self._backoff(attempt)
            except TransientFetchError as e:
                error = e
                delay = self._backoff(attempt)

            if attempt == attempts - 1:
                logger.error(
                    "entity_page_fetch_exhausted",
                    tenant_id=tenant_id,
                    entity_type=entry.entity_type.value,
                    page=cursor.page,
                    attempts=attempts,
                    error=error.message,
                )
                raise error

            logger.info(
                "retrying_entity_page",
                tenant_id=tenant_id,
                entity_type=entry.entity_type.value,
                attempt=attempt + 1,
                wait_seconds=delay,
                error_code=error.code,
            )
            await self._sleep(delay)

        raise TransientFetchError("No fetch attempts configured")

    def _transform(
        self, tenant_id: str, entry: EntityEndpoint, raw_records: list[dict]
    ) -> tuple[list[LedgerRecord], int]:
        records: list[LedgerRecord] = []
        failed = 0
        for raw in raw_records:
            try:
                records.append(entry.transform(tenant_id, raw))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                failed += 1
                logger.warning(
                    "entity_transform_failed",
                    tenant_id=tenant_id,
                    entity_type=entry.entity_type.value,
                    xero_id=raw.get(entry.id_field) if isinstance(raw, dict) else None,
                    error=str(e),
                )
        return records, failed

    async def fetch_page(
        self,
        tenant_id: str,
        access_token: str,
        entity_type: EntityType,
        cursor: FetchCursor,
    ) -> FetchPage:
        """
        Fetch, transform and upsert the next page after ``cursor``.

        Args:
            tenant_id: Xero tenant id
            access_token: Valid access token for the tenant
            entity_type: Entity type to fetch
            cursor: Position returned by the previous page (or the checkpoint)

        Returns:
            FetchPage with the advanced cursor and record counts

        Raises:
            RateLimitExceeded, TransientFetchError, NonRetryableFetchError:
                When the page could not be fetched
            StorageError: When the upsert failed
        """
        entry = ENTITY_ENDPOINTS[entity_type]
        page_size = entry.effective_page_size(self.settings.sync_page_size)
        stats = {"api_calls": 0, "rate_limit_hits": 0}

        raw_records = await self._request_page(
            tenant_id, access_token, entry, cursor, page_size, stats
        )
        records, failed = self._transform(tenant_id, entry, raw_records)

        fresh = [
            record
            for record in records
            if record.updated_date_utc > cursor.watermark
            or (
                record.updated_date_utc == cursor.watermark
                and record.xero_id not in cursor.seen_ids
            )
        ]
        skipped = len(records) - len(fresh)

        upserted = self.storage.upsert_records(fresh) if fresh else None

        page_max = max((r.updated_date_utc for r in records), default=cursor.watermark)
        watermark = max(cursor.watermark, page_max)
        at_watermark = frozenset(r.xero_id for r in records if r.updated_date_utc == watermark)
        full_page = entry.paginated and len(raw_records) >= page_size

        if watermark > cursor.watermark:
            next_cursor = FetchCursor(watermark=watermark, seen_ids=at_watermark, page=1)
        else:
            next_cursor = FetchCursor(
                watermark=watermark,
                seen_ids=cursor.seen_ids | at_watermark,
                page=cursor.page + 1 if full_page else cursor.page,
            )

        page = FetchPage(
            entity_type=entity_type,
            cursor=next_cursor,
            has_more=full_page,
            records_received=len(raw_records),
            records_inserted=upserted.inserted if upserted else 0,
            records_updated=upserted.updated if upserted else 0,
            records_skipped=skipped,
            records_failed=failed,
            api_calls=stats["api_calls"],
            rate_limit_hits=stats["rate_limit_hits"],
        )

        logger.info(
            "entity_page_processed",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            page=cursor.page,
            received=page.records_received,
            inserted=page.records_inserted,
            updated=page.records_updated,
            skipped=page.records_skipped,
            failed=page.records_failed,
            has_more=page.has_more,
        )
        return page
