"""
Per-tenant sync orchestration.

A session syncs the requested entity types one after another in catalogue
order. Each entity runs a page loop with an in-memory watermark; only when the
whole entity succeeds is the new watermark written to its checkpoint. A failed
entity keeps its old watermark (its upserted rows are harmless to replay) and
the session moves on to the next entity.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog

from xerosync.config import Settings
from xerosync.connectors.entity_fetcher import EntityFetcher
from xerosync.connectors.token_manager import TokenManager
from xerosync.errors import CheckpointPersistError, SessionTimeout, XeroSyncError
from xerosync.models.enums import EntityType, SessionStatus, SyncStatus, TriggerKind
from xerosync.models.sync import EntitySyncResult, FetchCursor, SyncCheckpoint, SyncSession
from xerosync.storage.base import StorageBackend, StorageError

logger = structlog.get_logger()


def ordered_entity_types(entity_types: Optional[Iterable[EntityType]] = None) -> list[EntityType]:
    """Requested entity types in sync order (all of them when None)."""
    if entity_types is None:
        return list(EntityType)
    requested = set(entity_types)
    return [entity_type for entity_type in EntityType if entity_type in requested]


def _describe(error: Exception) -> str:
    if isinstance(error, XeroSyncError):
        return f"{error.code}: {error.message}"
    if isinstance(error, StorageError):
        return f"storage_error: {error}"
    return str(error)


class SyncOrchestrator:
    """
    Runs sync sessions for one tenant at a time.

    Attributes:
        token_manager: Source of valid access tokens
        fetcher: Page fetcher
        storage: Checkpoint and session store
        settings: Application settings (session budget)
    """

    def __init__(
        self,
        token_manager: TokenManager,
        fetcher: EntityFetcher,
        storage: StorageBackend,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.token_manager = token_manager
        self.fetcher = fetcher
        self.storage = storage
        self.settings = settings
        self._clock = clock
        self._monotonic = monotonic

    async def sync_tenant(
        self,
        tenant_id: str,
        trigger: TriggerKind = TriggerKind.MANUAL,
        entity_types: Optional[Iterable[EntityType]] = None,
        tenant_name: Optional[str] = None,
    ) -> SyncSession:
        """
        Run one sync session for a tenant.

        Never raises for tenant-level failures: a token failure yields a
        ``failed`` session, entity failures yield a ``partial`` one.
        """
        session = SyncSession(
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            trigger=trigger,
            status=SessionStatus.INITIALIZING,
            started_at=self._clock(),
        )
        started = self._monotonic()
        log = logger.bind(tenant_id=tenant_id, session_id=session.session_id)
        log.info("sync_session_started", trigger=trigger.value)

        try:
            await self.token_manager.get_valid_access_token(tenant_id)
        except (XeroSyncError, StorageError) as e:
            session.status = SessionStatus.FAILED
            session.errors.append(_describe(e))
            log.error("sync_session_token_failed", error=_describe(e))
            return self._finalize(session, started)

        session.status = SessionStatus.RUNNING
        types = ordered_entity_types(entity_types)
        budget = self.settings.sync_session_timeout_seconds

        for index, entity_type in enumerate(types):
            remaining = budget - (self._monotonic() - started)
            if remaining <= 0:
                session.skipped_entities = types[index:]
                break

            result = await self._sync_entity(tenant_id, entity_type, remaining)
            session.entity_results.append(result)

            if any(error.startswith(SessionTimeout.code) for error in result.errors):
                session.skipped_entities = types[index + 1 :]
                break

        if session.skipped_entities:
            session.errors.append(
                f"{SessionTimeout.code}: skipped "
                + ", ".join(entity_type.value for entity_type in session.skipped_entities)
            )
            log.warning(
                "sync_session_timed_out",
                skipped=[entity_type.value for entity_type in session.skipped_entities],
            )

        return self._finalize(session, started)

    def _finalize(self, session: SyncSession, started: float) -> SyncSession:
        results = session.entity_results
        succeeded = sum(1 for result in results if result.success)

        for result in results:
            session.errors.extend(
                f"{result.entity_type.value}: {error}" for error in result.errors
            )

        session.total_records_processed = sum(r.records_processed for r in results)
        session.total_api_calls = sum(r.api_calls_made for r in results)
        session.completed_at = self._clock()
        session.duration_seconds = round(self._monotonic() - started, 3)

        if session.status == SessionStatus.FAILED:
            session.success = False
            session.success_rate = 0.0
        else:
            session.success = succeeded == len(results) and not session.skipped_entities
            session.success_rate = (
                round(succeeded / len(results) * 100, 2) if results else 100.0
            )
            session.status = SessionStatus.COMPLETED if session.success else SessionStatus.PARTIAL

        try:
            self.storage.write_sync_session(session)
        except StorageError as e:
            logger.error(
                "sync_session_write_failed",
                tenant_id=session.tenant_id,
                session_id=session.session_id,
                error=str(e),
            )

        logger.info(
            "sync_session_completed",
            tenant_id=session.tenant_id,
            session_id=session.session_id,
            status=session.status.value,
            records_processed=session.total_records_processed,
            success_rate=session.success_rate,
            duration_seconds=session.duration_seconds,
        )
        return session

    def _save_checkpoint(self, checkpoint: SyncCheckpoint) -> SyncCheckpoint:
        try:
            return self.storage.save_checkpoint(checkpoint)
        except StorageError as e:
            raise CheckpointPersistError(
                f"Could not persist {checkpoint.entity_type.value} checkpoint: {e}"
            ) from e

    async def _sync_entity(
        self, tenant_id: str, entity_type: EntityType, time_budget: float
    ) -> EntitySyncResult:
        started = self._monotonic()
        result = EntitySyncResult(entity_type=entity_type)
        log = logger.bind(tenant_id=tenant_id, entity_type=entity_type.value)

        try:
            checkpoint = self.storage.get_checkpoint(tenant_id, entity_type)
            checkpoint = checkpoint or SyncCheckpoint(tenant_id=tenant_id, entity_type=entity_type)
            checkpoint = self._save_checkpoint(
                checkpoint.model_copy(
                    update={
                        "status": SyncStatus.RUNNING,
                        "last_sync_started_at": self._clock(),
                        "error_message": None,
                    }
                )
            )
        except (StorageError, CheckpointPersistError) as e:
            error = e if isinstance(e, CheckpointPersistError) else CheckpointPersistError(str(e))
            result.errors.append(_describe(error))
            result.duration_seconds = round(self._monotonic() - started, 3)
            log.error("entity_checkpoint_unavailable", error=str(e))
            return result

        cursor_box = [FetchCursor(watermark=checkpoint.watermark)]
        log.info("entity_sync_started", watermark=checkpoint.watermark.isoformat())

        failure: Optional[Exception] = None
        try:
            await asyncio.wait_for(
                self._page_loop(tenant_id, entity_type, cursor_box, result),
                timeout=time_budget,
            )
        except asyncio.TimeoutError:
            failure = SessionTimeout(
                f"Session budget exhausted during {entity_type.value} page {cursor_box[0].page}"
            )
        except (XeroSyncError, StorageError) as e:
            failure = e

        now = self._clock()
        result.watermark = cursor_box[0].watermark
        common = {
            "records_processed": checkpoint.records_processed + result.records_processed,
            "last_sync_completed_at": now,
            "total_sync_count": checkpoint.total_sync_count + 1,
            "rate_limit_hits": checkpoint.rate_limit_hits + result.rate_limit_hits,
        }

        if failure is None:
            final = checkpoint.model_copy(
                update={
                    **common,
                    "watermark": cursor_box[0].watermark,
                    "status": SyncStatus.COMPLETED,
                    "has_more_records": False,
                    "error_message": None,
                    "last_successful_sync_at": now,
                    "error_count": 0,
                }
            )
        else:
            result.errors.append(_describe(failure))
            final = checkpoint.model_copy(
                update={
                    **common,
                    "status": SyncStatus.FAILED,
                    "has_more_records": True,
                    "error_message": _describe(failure),
                    "error_count": checkpoint.error_count + 1,
                }
            )

        try:
            self._save_checkpoint(final)
        except CheckpointPersistError as e:
            result.errors.append(_describe(e))
            log.error("entity_checkpoint_persist_failed", error=e.message)

        result.success = not result.errors
        result.duration_seconds = round(self._monotonic() - started, 3)

        if result.success:
            log.info(
                "entity_sync_completed",
                records_processed=result.records_processed,
                pages=result.pages_fetched,
                watermark=result.watermark.isoformat(),
            )
        else:
            log.error("entity_sync_failed", errors=result.errors)
        return result

    async def _page_loop(
        self,
        tenant_id: str,
        entity_type: EntityType,
        cursor_box: list[FetchCursor],
        result: EntitySyncResult,
    ) -> None:
        # cursor_box and result are updated in place so progress survives a timeout
        while True:
            access_token = await self.token_manager.get_valid_access_token(tenant_id)
            page = await self.fetcher.fetch_page(
                tenant_id, access_token, entity_type, cursor_box[0]
            )

            cursor_box[0] = page.cursor
            result.pages_fetched += 1
            result.records_inserted += page.records_inserted
            result.records_updated += page.records_updated
            result.records_processed += page.records_processed
            result.records_skipped += page.records_skipped
            result.records_failed += page.records_failed
            result.api_calls_made += page.api_calls
            result.rate_limit_hits += page.rate_limit_hits

            if not page.has_more:
                return
