"""
Abstract storage interface for the Xero integration engine.

The storage layer holds three kinds of state:
- Credentials: OAuth connections and pending authorization transactions
- Sync bookkeeping: per-entity checkpoints and write-once session records
- Ledger: canonical rows for every synchronised Xero entity, plus the
  revenue-stream mapping tables used by reporting

Checkpoints and connections are only ever written with single-row upserts.
Ledger upserts are insert-or-replace keyed by (tenant_id, xero_id), which makes
redelivery of a page harmless.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from xerosync.models.connection import OAuthTransaction, XeroConnection
from xerosync.models.enums import EntityType
from xerosync.models.filters import CheckpointFilter, ConnectionFilter, InvoiceFilter, SessionFilter
from xerosync.models.financial import LedgerSnapshot
from xerosync.models.ledger import AccountMapping, InvoiceRecord, ItemMapping, LedgerRecord
from xerosync.models.sync import SyncCheckpoint, SyncSession, UpsertResult


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class PendingTransactionStore(ABC):
    """
    Store for in-flight OAuth authorization transactions.

    The token manager only relies on this contract, so the pending state can
    live in the database, a cache, or anything else that can consume a state
    atomically.
    """

    @abstractmethod
    def save_oauth_transaction(self, transaction: OAuthTransaction) -> None:
        """Persist a new pending transaction."""
        pass

    @abstractmethod
    def consume_oauth_transaction(
        self, state: str, now: datetime
    ) -> Optional[OAuthTransaction]:
        """
        Atomically mark a transaction consumed.

        Returns the transaction only if it exists, has not expired at ``now``
        and was not consumed before; otherwise returns None and changes nothing.
        """
        pass


class StorageBackend(PendingTransactionStore):
    """
    Abstract base class for all storage implementations.

    Implementations must be safe to call from the event loop thread and from
    worker threads, and must raise StorageError for every failed operation.
    """

    # =========================================================================
    # Connections
    # =========================================================================

    @abstractmethod
    def get_connection(self, tenant_id: str) -> Optional[XeroConnection]:
        """Return the connection for a tenant, active or not."""
        pass

    @abstractmethod
    def upsert_connection(self, connection: XeroConnection) -> None:
        """Insert or replace the connection row for ``connection.tenant_id``."""
        pass

    @abstractmethod
    def list_connections(self, filters: Optional[ConnectionFilter] = None) -> list[XeroConnection]:
        """List connections matching the filter, ordered by tenant name."""
        pass

    # =========================================================================
    # Checkpoints and sessions
    # =========================================================================

    @abstractmethod
    def get_checkpoint(self, tenant_id: str, entity_type: EntityType) -> Optional[SyncCheckpoint]:
        """Return the checkpoint for (tenant, entity type), if any."""
        pass

    @abstractmethod
    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> SyncCheckpoint:
        """
        Upsert a checkpoint row.

        The stored watermark is the greater of the persisted and the supplied
        value, so a checkpoint can never move backwards. Returns the row as stored.
        """
        pass

    @abstractmethod
    def list_checkpoints(self, filters: CheckpointFilter) -> list[SyncCheckpoint]:
        """List checkpoints for a tenant."""
        pass

    @abstractmethod
    def write_sync_session(self, session: SyncSession) -> str:
        """Persist a completed session. Sessions are write-once."""
        pass

    @abstractmethod
    def read_sync_sessions(self, filters: SessionFilter) -> list[SyncSession]:
        """Most recent sessions first."""
        pass

    # =========================================================================
    # Ledger
    # =========================================================================

    @abstractmethod
    def upsert_records(self, records: Sequence[LedgerRecord]) -> UpsertResult:
        """
        Insert or replace canonical rows of a single record type.

        Child rows (invoice lines, journal lines) of every supplied record are
        replaced as a whole. Returns how many rows were new and how many replaced.
        """
        pass

    @abstractmethod
    def count_records(self, tenant_id: str, entity_type: EntityType) -> int:
        """Number of stored rows for an entity type."""
        pass

    @abstractmethod
    def read_invoices(self, filters: InvoiceFilter) -> list[InvoiceRecord]:
        """Invoices or bills with their line items."""
        pass

    @abstractmethod
    def upsert_account_mappings(self, tenant_id: str, mappings: Sequence[AccountMapping]) -> int:
        pass

    @abstractmethod
    def upsert_item_mappings(self, tenant_id: str, mappings: Sequence[ItemMapping]) -> int:
        pass

    @abstractmethod
    def read_ledger_snapshot(self, tenant_id: str, as_of: datetime) -> LedgerSnapshot:
        """
        Read every row an analytics request needs as one consistent snapshot.

        All reads happen inside a single transaction so the snapshot cannot
        mix rows committed before and after a concurrent sync page.
        """
        pass
