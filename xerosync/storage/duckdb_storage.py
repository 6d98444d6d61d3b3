"""
DuckDB storage implementation for the Xero integration engine.

Provides a local storage backend with:
- Thread-safe per-thread connections
- Automatic, idempotent schema creation
- Insert-or-replace ledger upserts keyed by (tenant_id, xero_id)
- Monotonic checkpoint upserts (the stored watermark never decreases)
- Snapshot reads for reporting inside a single transaction
"""

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

import duckdb
import structlog

from xerosync.models.connection import OAuthTransaction, XeroConnection
from xerosync.models.enums import EntityType, InvoiceType
from xerosync.models.filters import CheckpointFilter, ConnectionFilter, InvoiceFilter, SessionFilter
from xerosync.models.financial import LedgerSnapshot
from xerosync.models.ledger import (
    AccountMapping,
    ContactRecord,
    InvoiceLineRecord,
    InvoiceRecord,
    ItemMapping,
    ItemRecord,
    JournalLineRecord,
    LedgerRecord,
    ManualJournalRecord,
)
from xerosync.models.sync import SyncCheckpoint, SyncSession, UpsertResult

from .base import StorageBackend, StorageError
from .snapshot import assemble_snapshot

logger = structlog.get_logger(__name__)

# Ledger table and optional discriminator for each entity type
_ENTITY_TABLES: dict[EntityType, tuple[str, Optional[str]]] = {
    EntityType.ACCOUNTS: ("xero_accounts", None),
    EntityType.CONTACTS: ("xero_contacts", None),
    EntityType.ITEMS: ("xero_items", None),
    EntityType.INVOICES: ("xero_invoices", InvoiceType.ACCREC.value),
    EntityType.BILLS: ("xero_invoices", InvoiceType.ACCPAY.value),
    EntityType.PAYMENTS: ("xero_payments", None),
    EntityType.CREDIT_NOTES: ("xero_credit_notes", None),
    EntityType.BANK_TRANSACTIONS: ("xero_bank_transactions", None),
    EntityType.MANUAL_JOURNALS: ("xero_manual_journals", None),
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS xero_connections (
        tenant_id VARCHAR PRIMARY KEY,
        tenant_name VARCHAR,
        tenant_type VARCHAR,
        access_token VARCHAR NOT NULL,
        refresh_token VARCHAR NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        scopes JSON,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_by VARCHAR,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        last_refreshed_at TIMESTAMP,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_error VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_transactions (
        state VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        consumed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_checkpoints (
        tenant_id VARCHAR NOT NULL,
        entity_type VARCHAR NOT NULL,
        watermark TIMESTAMP NOT NULL,
        records_processed BIGINT NOT NULL DEFAULT 0,
        has_more_records BOOLEAN NOT NULL DEFAULT FALSE,
        status VARCHAR NOT NULL,
        error_message VARCHAR,
        last_sync_started_at TIMESTAMP,
        last_sync_completed_at TIMESTAMP,
        last_successful_sync_at TIMESTAMP,
        total_sync_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        rate_limit_hits INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (tenant_id, entity_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_sessions (
        session_id VARCHAR PRIMARY KEY,
        tenant_id VARCHAR NOT NULL,
        trigger VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        success BOOLEAN NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        total_records_processed BIGINT NOT NULL DEFAULT 0,
        payload JSON NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_accounts (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        code VARCHAR,
        name VARCHAR,
        account_type VARCHAR,
        account_class VARCHAR,
        status VARCHAR,
        tax_type VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_contacts (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        name VARCHAR,
        email VARCHAR,
        is_customer BOOLEAN,
        is_supplier BOOLEAN,
        status VARCHAR,
        contact_group VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_items (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        code VARCHAR,
        name VARCHAR,
        is_tracked_as_inventory BOOLEAN,
        quantity_on_hand DOUBLE,
        total_cost_pool DOUBLE,
        purchase_unit_price DOUBLE,
        sales_unit_price DOUBLE,
        purchase_account_code VARCHAR,
        sales_account_code VARCHAR,
        cogs_account_code VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_invoices (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        invoice_type VARCHAR NOT NULL,
        invoice_number VARCHAR,
        contact_id VARCHAR,
        contact_name VARCHAR,
        invoice_date DATE,
        due_date DATE,
        status VARCHAR,
        sub_total DOUBLE,
        total_tax DOUBLE,
        total DOUBLE,
        amount_due DOUBLE,
        amount_paid DOUBLE,
        amount_credited DOUBLE,
        currency_code VARCHAR,
        currency_rate DOUBLE,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_invoice_lines (
        tenant_id VARCHAR NOT NULL,
        invoice_id VARCHAR NOT NULL,
        line_number INTEGER NOT NULL,
        line_item_id VARCHAR,
        description VARCHAR,
        quantity DOUBLE,
        unit_amount DOUBLE,
        item_code VARCHAR,
        account_code VARCHAR,
        tax_amount DOUBLE,
        line_amount DOUBLE,
        PRIMARY KEY (tenant_id, invoice_id, line_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_payments (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        invoice_id VARCHAR,
        invoice_type VARCHAR,
        account_id VARCHAR,
        payment_date DATE,
        amount DOUBLE,
        currency_rate DOUBLE,
        payment_type VARCHAR,
        status VARCHAR,
        reference VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_credit_notes (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        credit_note_number VARCHAR,
        credit_note_type VARCHAR,
        contact_id VARCHAR,
        credit_note_date DATE,
        status VARCHAR,
        sub_total DOUBLE,
        total_tax DOUBLE,
        total DOUBLE,
        remaining_credit DOUBLE,
        currency_code VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_bank_transactions (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        transaction_type VARCHAR,
        contact_id VARCHAR,
        bank_account_id VARCHAR,
        bank_account_code VARCHAR,
        transaction_date DATE,
        reference VARCHAR,
        status VARCHAR,
        is_reconciled BOOLEAN,
        sub_total DOUBLE,
        total_tax DOUBLE,
        total DOUBLE,
        currency_code VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_manual_journals (
        tenant_id VARCHAR NOT NULL,
        xero_id VARCHAR NOT NULL,
        updated_date_utc TIMESTAMP NOT NULL,
        raw_data JSON,
        narration VARCHAR,
        journal_date DATE,
        status VARCHAR,
        PRIMARY KEY (tenant_id, xero_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xero_manual_journal_lines (
        tenant_id VARCHAR NOT NULL,
        journal_id VARCHAR NOT NULL,
        line_number INTEGER NOT NULL,
        account_code VARCHAR,
        description VARCHAR,
        tax_type VARCHAR,
        tax_amount DOUBLE,
        line_amount DOUBLE,
        PRIMARY KEY (tenant_id, journal_id, line_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_mappings (
        tenant_id VARCHAR NOT NULL,
        account_code VARCHAR NOT NULL,
        revenue_stream VARCHAR NOT NULL,
        is_cogs_account BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (tenant_id, account_code)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS item_mappings (
        tenant_id VARCHAR NOT NULL,
        item_code VARCHAR NOT NULL,
        revenue_stream VARCHAR NOT NULL,
        reorder_level DOUBLE NOT NULL DEFAULT 0,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (tenant_id, item_code)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invoices_type ON xero_invoices(tenant_id, invoice_type)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON sync_sessions(tenant_id, started_at)",
]

_ALL_TABLES = [
    "xero_connections",
    "oauth_transactions",
    "sync_checkpoints",
    "sync_sessions",
    "xero_accounts",
    "xero_contacts",
    "xero_items",
    "xero_invoices",
    "xero_invoice_lines",
    "xero_payments",
    "xero_credit_notes",
    "xero_bank_transactions",
    "xero_manual_journals",
    "xero_manual_journal_lines",
    "account_mappings",
    "item_mappings",
]


def _param(value: Any) -> Any:
    """Convert a Python value into something DuckDB binds directly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _fetch_dicts(conn: duckdb.DuckDBPyConnection, query: str, params: Sequence = ()) -> list[dict]:
    result = conn.execute(query, list(params))
    columns = [column[0] for column in result.description]
    return [dict(zip(columns, row)) for row in result.fetchall()]


def _decode_json(row: dict, *keys: str) -> dict:
    for key in keys:
        value = row.get(key)
        if isinstance(value, str):
            row[key] = json.loads(value)
        elif value is None:
            row[key] = {} if key == "raw_data" else []
    return row


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Serialises schema creation and read-modify-write operations
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/xerosync.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.RLock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    @contextmanager
    def _transaction(self):
        """Run the enclosed statements in one transaction, rolling back on error."""
        with self._get_connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _initialize_schema(self) -> None:
        """
        Create all tables and indexes. Idempotent and safe to call repeatedly.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return
            try:
                with self._get_connection() as conn:
                    for statement in _SCHEMA:
                        conn.execute(statement)
                self._initialized = True
                logger.info("duckdb_schema_initialized", tables=len(_ALL_TABLES))
            except duckdb.Error as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Truncate all tables. For testing only; a no-op unless TESTING is set.
        """
        if not os.environ.get("TESTING"):
            return
        with self._lock, self._get_connection() as conn:
            for table in _ALL_TABLES:
                conn.execute(f"DELETE FROM {table}")

    # =========================================================================
    # Pending OAuth transactions
    # =========================================================================

    def save_oauth_transaction(self, transaction: OAuthTransaction) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_transactions (state, user_id, created_at, expires_at, consumed_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        transaction.state,
                        transaction.user_id,
                        transaction.created_at,
                        transaction.expires_at,
                        transaction.consumed_at,
                    ],
                )
        except duckdb.Error as e:
            logger.error("save_oauth_transaction_failed", error=str(e))
            raise StorageError(f"Failed to save OAuth transaction: {e}") from e

    def consume_oauth_transaction(self, state: str, now: datetime) -> Optional[OAuthTransaction]:
        try:
            with self._lock, self._transaction() as conn:
                rows = _fetch_dicts(
                    conn,
                    "SELECT * FROM oauth_transactions WHERE state = ?",
                    [state],
                )
                if not rows:
                    return None
                transaction = OAuthTransaction(**rows[0])
                if not transaction.is_usable(now):
                    return None
                conn.execute(
                    "UPDATE oauth_transactions SET consumed_at = ? WHERE state = ?",
                    [now, state],
                )
                return transaction.model_copy(update={"consumed_at": now})
        except duckdb.Error as e:
            logger.error("consume_oauth_transaction_failed", error=str(e))
            raise StorageError(f"Failed to consume OAuth transaction: {e}") from e

    # =========================================================================
    # Connections
    # =========================================================================

    def get_connection(self, tenant_id: str) -> Optional[XeroConnection]:
        connections = self.list_connections(ConnectionFilter(tenant_ids=[tenant_id]))
        return connections[0] if connections else None

    def upsert_connection(self, connection: XeroConnection) -> None:
        row = connection.model_dump()
        columns = list(row)
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO xero_connections ({", ".join(columns)})
                    VALUES ({", ".join("?" for _ in columns)})
                    """,
                    [_param(row[c]) for c in columns],
                )
            logger.debug(
                "connection_upserted",
                tenant_id=connection.tenant_id,
                is_active=connection.is_active,
            )
        except duckdb.Error as e:
            logger.error("upsert_connection_failed", tenant_id=connection.tenant_id, error=str(e))
            raise StorageError(f"Failed to upsert connection: {e}") from e

    def list_connections(self, filters: Optional[ConnectionFilter] = None) -> list[XeroConnection]:
        filters = filters or ConnectionFilter()
        query = "SELECT * FROM xero_connections WHERE 1=1"
        params: list[Any] = []

        if filters.tenant_ids is not None:
            if not filters.tenant_ids:
                return []
            query += f" AND tenant_id IN ({', '.join('?' for _ in filters.tenant_ids)})"
            params.extend(filters.tenant_ids)

        if filters.is_active is not None:
            query += " AND is_active = ?"
            params.append(filters.is_active)

        if filters.created_by is not None:
            query += " AND created_by = ?"
            params.append(filters.created_by)

        query += " ORDER BY tenant_name, tenant_id"

        try:
            with self._get_connection() as conn:
                rows = _fetch_dicts(conn, query, params)
        except duckdb.Error as e:
            logger.error("list_connections_failed", error=str(e))
            raise StorageError(f"Failed to list connections: {e}") from e

        return [XeroConnection(**_decode_json(row, "scopes")) for row in rows]

    # =========================================================================
    # Checkpoints and sessions
    # =========================================================================

    def get_checkpoint(self, tenant_id: str, entity_type: EntityType) -> Optional[SyncCheckpoint]:
        checkpoints = self.list_checkpoints(
            CheckpointFilter(tenant_id=tenant_id, entity_types=[entity_type])
        )
        return checkpoints[0] if checkpoints else None

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> SyncCheckpoint:
        row = checkpoint.model_dump()
        row["updated_at"] = datetime.utcnow()
        columns = list(row)
        updates = [
            c for c in columns if c not in ("tenant_id", "entity_type", "created_at", "watermark")
        ]
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in updates)

        try:
            with self._lock, self._get_connection() as conn:
                conn.execute(
                    f"""
                    INSERT INTO sync_checkpoints ({", ".join(columns)})
                    VALUES ({", ".join("?" for _ in columns)})
                    ON CONFLICT (tenant_id, entity_type) DO UPDATE SET
                        watermark = GREATEST(sync_checkpoints.watermark, EXCLUDED.watermark),
                        {assignments}
                    """,
                    [_param(row[c]) for c in columns],
                )
                stored = _fetch_dicts(
                    conn,
                    "SELECT * FROM sync_checkpoints WHERE tenant_id = ? AND entity_type = ?",
                    [checkpoint.tenant_id, _param(checkpoint.entity_type)],
                )
        except duckdb.Error as e:
            logger.error(
                "save_checkpoint_failed",
                tenant_id=checkpoint.tenant_id,
                entity_type=checkpoint.entity_type.value,
                error=str(e),
            )
            raise StorageError(f"Failed to save checkpoint: {e}") from e

        logger.debug(
            "checkpoint_saved",
            tenant_id=checkpoint.tenant_id,
            entity_type=checkpoint.entity_type.value,
            status=checkpoint.status.value,
        )
        return SyncCheckpoint(**stored[0])

    def list_checkpoints(self, filters: CheckpointFilter) -> list[SyncCheckpoint]:
        query = "SELECT * FROM sync_checkpoints WHERE tenant_id = ?"
        params: list[Any] = [filters.tenant_id]

        if filters.entity_types:
            query += f" AND entity_type IN ({', '.join('?' for _ in filters.entity_types)})"
            params.extend(_param(e) for e in filters.entity_types)

        if filters.statuses:
            query += f" AND status IN ({', '.join('?' for _ in filters.statuses)})"
            params.extend(_param(s) for s in filters.statuses)

        try:
            with self._get_connection() as conn:
                rows = _fetch_dicts(conn, query, params)
        except duckdb.Error as e:
            logger.error("list_checkpoints_failed", tenant_id=filters.tenant_id, error=str(e))
            raise StorageError(f"Failed to list checkpoints: {e}") from e

        order = {entity_type.value: index for index, entity_type in enumerate(EntityType)}
        rows.sort(key=lambda row: order.get(row["entity_type"], len(order)))
        return [SyncCheckpoint(**row) for row in rows]

    def write_sync_session(self, session: SyncSession) -> str:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_sessions (
                        session_id, tenant_id, trigger, status, success,
                        started_at, completed_at, total_records_processed, payload
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        session.session_id,
                        session.tenant_id,
                        session.trigger.value,
                        session.status.value,
                        session.success,
                        session.started_at,
                        session.completed_at,
                        session.total_records_processed,
                        session.model_dump_json(),
                    ],
                )
        except duckdb.Error as e:
            logger.error("write_sync_session_failed", session_id=session.session_id, error=str(e))
            raise StorageError(f"Failed to write sync session: {e}") from e

        logger.debug("sync_session_written", session_id=session.session_id)
        return session.session_id

    def read_sync_sessions(self, filters: SessionFilter) -> list[SyncSession]:
        query = "SELECT payload FROM sync_sessions WHERE tenant_id = ?"
        params: list[Any] = [filters.tenant_id]

        if filters.started_after:
            query += " AND started_at >= ?"
            params.append(filters.started_after)

        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(filters.limit)

        try:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except duckdb.Error as e:
            logger.error("read_sync_sessions_failed", tenant_id=filters.tenant_id, error=str(e))
            raise StorageError(f"Failed to read sync sessions: {e}") from e

        return [SyncSession.model_validate_json(row[0]) for row in rows]

    # =========================================================================
    # Ledger
    # =========================================================================

    def upsert_records(self, records: Sequence[LedgerRecord]) -> UpsertResult:
        if not records:
            return UpsertResult()

        record_type = type(records[0])
        if any(type(record) is not record_type for record in records):
            raise StorageError("upsert_records requires records of a single type")

        table = record_type.TABLE
        tenant_ids = {record.tenant_id for record in records}
        ids = [record.xero_id for record in records]
        rows = [record.row() for record in records]
        columns = list(rows[0])
        placeholders = ", ".join("?" for _ in columns)

        try:
            with self._lock, self._transaction() as conn:
                existing: set[tuple[str, str]] = set()
                for tenant_id in tenant_ids:
                    found = conn.execute(
                        f"SELECT xero_id FROM {table} WHERE tenant_id = ? "
                        f"AND xero_id IN ({', '.join('?' for _ in ids)})",
                        [tenant_id, *ids],
                    ).fetchall()
                    existing.update((tenant_id, row[0]) for row in found)

                conn.executemany(
                    f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    [[_param(row[c]) for c in columns] for row in rows],
                )

                if isinstance(records[0], InvoiceRecord):
                    self._replace_invoice_lines(conn, records)
                elif isinstance(records[0], ManualJournalRecord):
                    self._replace_journal_lines(conn, records)
        except duckdb.Error as e:
            logger.error("upsert_records_failed", table=table, count=len(records), error=str(e))
            raise StorageError(f"Failed to upsert {table}: {e}") from e

        updated = sum(1 for record in records if (record.tenant_id, record.xero_id) in existing)
        result = UpsertResult(inserted=len(records) - updated, updated=updated)
        logger.debug(
            "records_upserted",
            table=table,
            inserted=result.inserted,
            updated=result.updated,
        )
        return result

    @staticmethod
    def _replace_invoice_lines(conn, invoices: Sequence[InvoiceRecord]) -> None:
        for invoice in invoices:
            conn.execute(
                "DELETE FROM xero_invoice_lines WHERE tenant_id = ? AND invoice_id = ?",
                [invoice.tenant_id, invoice.xero_id],
            )
            if not invoice.line_items:
                continue
            conn.executemany(
                """
                INSERT INTO xero_invoice_lines (
                    tenant_id, invoice_id, line_number, line_item_id, description,
                    quantity, unit_amount, item_code, account_code, tax_amount, line_amount
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    [
                        invoice.tenant_id,
                        invoice.xero_id,
                        line.line_number,
                        line.line_item_id,
                        line.description,
                        line.quantity,
                        line.unit_amount,
                        line.item_code,
                        line.account_code,
                        line.tax_amount,
                        line.line_amount,
                    ]
                    for line in invoice.line_items
                ],
            )

    @staticmethod
    def _replace_journal_lines(conn, journals: Sequence[ManualJournalRecord]) -> None:
        for journal in journals:
            conn.execute(
                "DELETE FROM xero_manual_journal_lines WHERE tenant_id = ? AND journal_id = ?",
                [journal.tenant_id, journal.xero_id],
            )
            if not journal.journal_lines:
                continue
            conn.executemany(
                """
                INSERT INTO xero_manual_journal_lines (
                    tenant_id, journal_id, line_number, account_code, description,
                    tax_type, tax_amount, line_amount
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    [
                        journal.tenant_id,
                        journal.xero_id,
                        line.line_number,
                        line.account_code,
                        line.description,
                        line.tax_type,
                        line.tax_amount,
                        line.line_amount,
                    ]
                    for line in journal.journal_lines
                ],
            )

    def count_records(self, tenant_id: str, entity_type: EntityType) -> int:
        table, invoice_type = _ENTITY_TABLES[entity_type]
        query = f"SELECT COUNT(*) FROM {table} WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if invoice_type:
            query += " AND invoice_type = ?"
            params.append(invoice_type)
        try:
            with self._get_connection() as conn:
                return conn.execute(query, params).fetchone()[0]
        except duckdb.Error as e:
            raise StorageError(f"Failed to count {table}: {e}") from e

    def read_invoices(self, filters: InvoiceFilter) -> list[InvoiceRecord]:
        try:
            with self._get_connection() as conn:
                return self._read_invoices(conn, filters)
        except duckdb.Error as e:
            logger.error("read_invoices_failed", tenant_id=filters.tenant_id, error=str(e))
            raise StorageError(f"Failed to read invoices: {e}") from e

    @staticmethod
    def _read_invoices(conn, filters: InvoiceFilter) -> list[InvoiceRecord]:
        query = "SELECT * FROM xero_invoices WHERE tenant_id = ?"
        params: list[Any] = [filters.tenant_id]

        if filters.invoice_type:
            query += " AND invoice_type = ?"
            params.append(filters.invoice_type.value)

        if filters.statuses:
            query += f" AND status IN ({', '.join('?' for _ in filters.statuses)})"
            params.extend(filters.statuses)

        if filters.contact_ids:
            query += f" AND contact_id IN ({', '.join('?' for _ in filters.contact_ids)})"
            params.extend(filters.contact_ids)

        if filters.date_from:
            query += " AND invoice_date >= ?"
            params.append(filters.date_from)

        if filters.date_to:
            query += " AND invoice_date <= ?"
            params.append(filters.date_to)

        if filters.outstanding_only:
            query += " AND amount_due <> 0"

        query += " ORDER BY invoice_date, xero_id"

        if filters.limit:
            query += " LIMIT ?"
            params.append(filters.limit)

        rows = _fetch_dicts(conn, query, params)
        if not rows:
            return []

        lines: dict[str, list[InvoiceLineRecord]] = {}
        line_rows = _fetch_dicts(
            conn,
            f"""
            SELECT * FROM xero_invoice_lines
            WHERE tenant_id = ? AND invoice_id IN ({", ".join("?" for _ in rows)})
            ORDER BY invoice_id, line_number
            """,
            [filters.tenant_id, *[row["xero_id"] for row in rows]],
        )
        for line in line_rows:
            invoice_id = line.pop("invoice_id")
            line.pop("tenant_id")
            lines.setdefault(invoice_id, []).append(InvoiceLineRecord(**line))

        return [
            InvoiceRecord(**_decode_json(row, "raw_data"), line_items=lines.get(row["xero_id"], []))
            for row in rows
        ]

    def upsert_account_mappings(self, tenant_id: str, mappings: Sequence[AccountMapping]) -> int:
        now = datetime.utcnow()
        try:
            with self._get_connection() as conn:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO account_mappings (
                        tenant_id, account_code, revenue_stream, is_cogs_account, updated_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        [tenant_id, m.account_code, m.revenue_stream.value, m.is_cogs_account, now]
                        for m in mappings
                    ],
                )
        except duckdb.Error as e:
            raise StorageError(f"Failed to upsert account mappings: {e}") from e
        return len(mappings)

    def upsert_item_mappings(self, tenant_id: str, mappings: Sequence[ItemMapping]) -> int:
        now = datetime.utcnow()
        try:
            with self._get_connection() as conn:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO item_mappings (
                        tenant_id, item_code, revenue_stream, reorder_level, updated_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        [tenant_id, m.item_code, m.revenue_stream.value, m.reorder_level, now]
                        for m in mappings
                    ],
                )
        except duckdb.Error as e:
            raise StorageError(f"Failed to upsert item mappings: {e}") from e
        return len(mappings)

    def read_ledger_snapshot(self, tenant_id: str, as_of: datetime) -> LedgerSnapshot:
        try:
            with self._transaction() as conn:
                invoices = self._read_invoices(conn, InvoiceFilter(tenant_id=tenant_id))
                contacts = {
                    row["xero_id"]: ContactRecord(**_decode_json(row, "raw_data"))
                    for row in _fetch_dicts(
                        conn, "SELECT * FROM xero_contacts WHERE tenant_id = ?", [tenant_id]
                    )
                }
                items = [
                    ItemRecord(**_decode_json(row, "raw_data"))
                    for row in _fetch_dicts(
                        conn, "SELECT * FROM xero_items WHERE tenant_id = ?", [tenant_id]
                    )
                ]
                account_mappings = [
                    AccountMapping(**row)
                    for row in _fetch_dicts(
                        conn,
                        "SELECT account_code, revenue_stream, is_cogs_account "
                        "FROM account_mappings WHERE tenant_id = ?",
                        [tenant_id],
                    )
                ]
                item_mappings = [
                    ItemMapping(**row)
                    for row in _fetch_dicts(
                        conn,
                        "SELECT item_code, revenue_stream, reorder_level "
                        "FROM item_mappings WHERE tenant_id = ?",
                        [tenant_id],
                    )
                ]
                checkpoints = [
                    SyncCheckpoint(**row)
                    for row in _fetch_dicts(
                        conn, "SELECT * FROM sync_checkpoints WHERE tenant_id = ?", [tenant_id]
                    )
                ]
        except duckdb.Error as e:
            logger.error("read_ledger_snapshot_failed", tenant_id=tenant_id, error=str(e))
            raise StorageError(f"Failed to read ledger snapshot: {e}") from e

        logger.debug(
            "ledger_snapshot_read",
            tenant_id=tenant_id,
            invoices=len(invoices),
            items=len(items),
        )
        return assemble_snapshot(
            tenant_id=tenant_id,
            as_of=as_of,
            invoices=invoices,
            contacts=contacts,
            items=items,
            account_mappings=account_mappings,
            item_mappings=item_mappings,
            checkpoints=checkpoints,
        )
