"""
Unit tests for the DuckDB storage backend.

Runs against the shared temporary test database; the duckdb_storage fixture
empties every table before and after each test.
"""

from datetime import date, datetime, timedelta

import pytest

from tests.conftest import (
    TENANT_ID,
    make_checkpoint,
    make_connection,
    make_raw_contact,
    make_raw_invoice,
)
from xerosync.connectors.xero_entities import transform_contact, transform_invoice
from xerosync.models.connection import OAuthTransaction
from xerosync.models.enums import EntityType, RevenueStream, SessionStatus, SyncStatus, TriggerKind
from xerosync.models.filters import (
    CheckpointFilter,
    ConnectionFilter,
    InvoiceFilter,
    SessionFilter,
)
from xerosync.models.ledger import AccountMapping, ItemMapping
from xerosync.models.sync import SyncSession
from xerosync.storage.base import StorageError

T1 = datetime(2025, 3, 1, 9, 0, 0)
T2 = datetime(2025, 3, 2, 9, 0, 0)


def invoice(invoice_id: str, updated: datetime = T1, **overrides):
    return transform_invoice(TENANT_ID, make_raw_invoice(invoice_id, updated, **overrides))


class TestOAuthTransactions:
    def test_storage_consume_oauth_transaction_only_once(self, duckdb_storage):
        now = datetime.utcnow()
        duckdb_storage.save_oauth_transaction(
            OAuthTransaction(state="s" * 32, user_id="user-owner", expires_at=now + timedelta(minutes=10))
        )

        first = duckdb_storage.consume_oauth_transaction("s" * 32, now)
        second = duckdb_storage.consume_oauth_transaction("s" * 32, now)

        assert first is not None
        assert first.user_id == "user-owner"
        assert first.consumed_at == now
        assert second is None

    def test_storage_consume_expired_transaction(self, duckdb_storage):
        now = datetime.utcnow()
        duckdb_storage.save_oauth_transaction(
            OAuthTransaction(state="e" * 32, user_id="u", expires_at=now - timedelta(seconds=1))
        )

        assert duckdb_storage.consume_oauth_transaction("e" * 32, now) is None

    def test_storage_consume_unknown_state(self, duckdb_storage):
        assert duckdb_storage.consume_oauth_transaction("missing-state-value", datetime.utcnow()) is None


class TestConnections:
    def test_storage_upsert_connection_replaces_row(self, duckdb_storage):
        duckdb_storage.upsert_connection(make_connection())
        duckdb_storage.upsert_connection(make_connection(access_token="access-2", is_active=False))

        stored = duckdb_storage.get_connection(TENANT_ID)

        assert stored.access_token == "access-2"
        assert stored.is_active is False
        assert stored.scopes == ["offline_access", "accounting.transactions"]

    def test_storage_list_connections_filters(self, duckdb_storage):
        duckdb_storage.upsert_connection(make_connection())
        duckdb_storage.upsert_connection(
            make_connection(tenant_id="tenant-0002", tenant_name="Alpha", created_by="user-finance")
        )
        duckdb_storage.upsert_connection(
            make_connection(tenant_id="tenant-0003", tenant_name="Zulu", is_active=False)
        )

        active = duckdb_storage.list_connections(ConnectionFilter(is_active=True))
        by_creator = duckdb_storage.list_connections(ConnectionFilter(created_by="user-finance"))

        assert [c.tenant_name for c in active] == ["Alpha", "Demo Tours Pty Ltd"]
        assert [c.tenant_id for c in by_creator] == ["tenant-0002"]
        assert duckdb_storage.list_connections(ConnectionFilter(tenant_ids=[])) == []

    def test_storage_get_missing_connection(self, duckdb_storage):
        assert duckdb_storage.get_connection("nobody") is None


class TestCheckpoints:
    def test_storage_save_checkpoint_watermark_never_regresses(self, duckdb_storage):
        duckdb_storage.save_checkpoint(make_checkpoint(EntityType.INVOICES, watermark=T2))

        stored = duckdb_storage.save_checkpoint(
            make_checkpoint(
                EntityType.INVOICES, watermark=T1, status=SyncStatus.FAILED, error_count=1
            )
        )

        assert stored.watermark == T2
        assert stored.status == SyncStatus.FAILED
        assert stored.error_count == 1

    def test_storage_save_checkpoint_advances_watermark(self, duckdb_storage):
        duckdb_storage.save_checkpoint(make_checkpoint(EntityType.INVOICES, watermark=T1))
        duckdb_storage.save_checkpoint(make_checkpoint(EntityType.INVOICES, watermark=T2))

        assert duckdb_storage.get_checkpoint(TENANT_ID, EntityType.INVOICES).watermark == T2

    def test_storage_list_checkpoints_in_sync_order(self, duckdb_storage):
        for entity_type in (EntityType.BILLS, EntityType.ACCOUNTS, EntityType.CONTACTS):
            duckdb_storage.save_checkpoint(make_checkpoint(entity_type))
        duckdb_storage.save_checkpoint(make_checkpoint(EntityType.ITEMS, status=SyncStatus.FAILED))

        all_checkpoints = duckdb_storage.list_checkpoints(CheckpointFilter(tenant_id=TENANT_ID))
        failed = duckdb_storage.list_checkpoints(
            CheckpointFilter(tenant_id=TENANT_ID, statuses=[SyncStatus.FAILED])
        )

        assert [c.entity_type for c in all_checkpoints] == [
            EntityType.ACCOUNTS,
            EntityType.CONTACTS,
            EntityType.ITEMS,
            EntityType.BILLS,
        ]
        assert [c.entity_type for c in failed] == [EntityType.ITEMS]


class TestSessions:
    def test_storage_read_sync_sessions_newest_first(self, duckdb_storage):
        base = datetime(2025, 3, 1, 12, 0)
        for offset in range(3):
            duckdb_storage.write_sync_session(
                SyncSession(
                    tenant_id=TENANT_ID,
                    trigger=TriggerKind.SCHEDULED,
                    status=SessionStatus.COMPLETED,
                    started_at=base + timedelta(hours=offset),
                    errors=[f"run-{offset}"],
                )
            )

        sessions = duckdb_storage.read_sync_sessions(SessionFilter(tenant_id=TENANT_ID, limit=2))

        assert [s.errors for s in sessions] == [["run-2"], ["run-1"]]
        assert sessions[0].trigger == TriggerKind.SCHEDULED

    def test_storage_write_sync_session_twice_fails(self, duckdb_storage):
        session = SyncSession(tenant_id=TENANT_ID)
        duckdb_storage.write_sync_session(session)

        with pytest.raises(StorageError):
            duckdb_storage.write_sync_session(session)


class TestLedgerRecords:
    def test_storage_upsert_records_is_idempotent(self, duckdb_storage):
        first = duckdb_storage.upsert_records([invoice("inv-1"), invoice("inv-2")])
        second = duckdb_storage.upsert_records([invoice("inv-1", T2), invoice("inv-3")])

        assert (first.inserted, first.updated) == (2, 0)
        assert (second.inserted, second.updated) == (1, 1)
        assert duckdb_storage.count_records(TENANT_ID, EntityType.INVOICES) == 3

    def test_storage_upsert_empty_batch(self, duckdb_storage):
        result = duckdb_storage.upsert_records([])

        assert (result.inserted, result.updated) == (0, 0)

    def test_storage_upsert_mixed_types_rejected(self, duckdb_storage):
        contact = transform_contact(TENANT_ID, make_raw_contact("c1", T1))

        with pytest.raises(StorageError):
            duckdb_storage.upsert_records([contact, invoice("inv-1")])

    def test_storage_invoice_lines_replaced_on_update(self, duckdb_storage):
        duckdb_storage.upsert_records([invoice("inv-1")])
        duckdb_storage.upsert_records(
            [
                invoice(
                    "inv-1",
                    T2,
                    lines=[
                        {"LineItemID": "a", "ItemCode": "DISH-1", "LineAmount": 10.0},
                        {"LineItemID": "b", "ItemCode": "DISH-1", "LineAmount": 20.0},
                    ],
                )
            ]
        )

        stored = duckdb_storage.read_invoices(InvoiceFilter(tenant_id=TENANT_ID))

        assert len(stored) == 1
        assert [line.line_item_id for line in stored[0].line_items] == ["a", "b"]
        assert stored[0].updated_date_utc == T2

    def test_storage_count_separates_invoices_and_bills(self, duckdb_storage):
        duckdb_storage.upsert_records(
            [invoice("inv-1"), invoice("bill-1", invoice_type="ACCPAY")]
        )

        assert duckdb_storage.count_records(TENANT_ID, EntityType.INVOICES) == 1
        assert duckdb_storage.count_records(TENANT_ID, EntityType.BILLS) == 1

    def test_storage_read_invoices_outstanding_only(self, duckdb_storage):
        duckdb_storage.upsert_records(
            [invoice("inv-1"), invoice("inv-2", amount_due=0.0, status="PAID")]
        )

        stored = duckdb_storage.read_invoices(
            InvoiceFilter(tenant_id=TENANT_ID, outstanding_only=True)
        )

        assert [r.xero_id for r in stored] == ["inv-1"]


class TestLedgerSnapshot:
    def test_storage_snapshot_projects_documents(self, duckdb_storage):
        duckdb_storage.upsert_records(
            [transform_contact(TENANT_ID, make_raw_contact("contact-1", T1, name="Acme Travel"))]
        )
        duckdb_storage.upsert_records(
            [
                invoice("inv-1"),
                invoice("inv-orphan", contact_id="ghost"),
                invoice("inv-paid", amount_due=0.0, status="PAID"),
                invoice("inv-draft", status="DRAFT"),
                invoice("inv-future", invoice_date=date(2025, 9, 1)),
            ]
        )
        duckdb_storage.save_checkpoint(make_checkpoint(EntityType.INVOICES, status=SyncStatus.RUNNING))

        snapshot = duckdb_storage.read_ledger_snapshot(TENANT_ID, datetime(2025, 6, 30))

        names = {d.document_id: d.contact_name for d in snapshot.receivables}
        assert names == {"inv-1": "Acme Travel", "inv-orphan": None}
        assert {line.document_id for line in snapshot.sales_lines} == {
            "inv-1",
            "inv-orphan",
            "inv-paid",
        }
        assert snapshot.freshness.consistent is False
        assert snapshot.freshness.running_entities == [EntityType.INVOICES]

    def test_storage_snapshot_applies_mappings(self, duckdb_storage):
        duckdb_storage.upsert_account_mappings(
            TENANT_ID,
            [
                AccountMapping(account_code="260", revenue_stream=RevenueStream.MARKETING),
                AccountMapping(
                    account_code="310", revenue_stream=RevenueStream.TOURS, is_cogs_account=True
                ),
            ],
        )
        duckdb_storage.upsert_item_mappings(
            TENANT_ID,
            [ItemMapping(item_code="TOUR-1", revenue_stream=RevenueStream.TOURS, reorder_level=5)],
        )
        duckdb_storage.upsert_item_mappings(
            TENANT_ID,
            [ItemMapping(item_code="TOUR-1", revenue_stream=RevenueStream.DR_DISH, reorder_level=8)],
        )

        rules = duckdb_storage.read_ledger_snapshot(TENANT_ID, datetime(2025, 6, 30)).rules

        assert rules.account_streams == {"260": RevenueStream.MARKETING}
        assert rules.cogs_accounts == {"310": RevenueStream.TOURS}
        assert rules.item_streams == {"TOUR-1": RevenueStream.DR_DISH}

    def test_storage_snapshot_is_tenant_scoped(self, duckdb_storage):
        other = transform_invoice("tenant-0002", make_raw_invoice("inv-x", T1))
        duckdb_storage.upsert_records([other])

        snapshot = duckdb_storage.read_ledger_snapshot(TENANT_ID, datetime(2025, 6, 30))

        assert snapshot.receivables == []
        assert snapshot.freshness.consistent is True
