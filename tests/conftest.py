"""
Pytest configuration and shared fixtures for the XeroSync test suite.

Provides data factories, an in-memory storage backend, a fake Xero API served
through ``httpx.MockTransport`` and the FastAPI test client.
"""

import os
import tempfile
import uuid as _uuid
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional, Sequence
from urllib.parse import parse_qsl

import httpx
import pytest
from fastapi.testclient import TestClient

# Set testing environment BEFORE importing app
# Use temp path (must not exist - DuckDB creates the file). :memory: causes
# per-connection DB which breaks multi-threaded tests.
_test_db_path = os.path.join(tempfile.gettempdir(), f"xerosync_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["LOG_FORMAT"] = "console"

from xerosync.auth.jwt import create_access_token
from xerosync.config import Settings
from xerosync.connectors.xero_entities import parse_xero_date
from xerosync.models.connection import OAuthTransaction, XeroConnection
from xerosync.models.enums import EntityType, InvoiceType, LedgerSide, SyncStatus, UserRole
from xerosync.models.filters import (
    CheckpointFilter,
    ConnectionFilter,
    InvoiceFilter,
    SessionFilter,
)
from xerosync.models.financial import InventoryPosition, LedgerLine, LedgerSnapshot, OutstandingDocument
from xerosync.models.ledger import (
    AccountMapping,
    ContactRecord,
    InvoiceRecord,
    ItemMapping,
    ItemRecord,
    LedgerRecord,
)
from xerosync.models.sync import EPOCH, SyncCheckpoint, SyncSession, UpsertResult
from xerosync.services import build_services
from xerosync.storage.base import StorageBackend
from xerosync.storage.snapshot import assemble_snapshot

TENANT_ID = "tenant-0001"
TENANT_NAME = "Demo Tours Pty Ltd"

_ENTITY_TABLES = {
    EntityType.ACCOUNTS: ("xero_accounts", None),
    EntityType.CONTACTS: ("xero_contacts", None),
    EntityType.ITEMS: ("xero_items", None),
    EntityType.INVOICES: ("xero_invoices", InvoiceType.ACCREC),
    EntityType.BILLS: ("xero_invoices", InvoiceType.ACCPAY),
    EntityType.PAYMENTS: ("xero_payments", None),
    EntityType.CREDIT_NOTES: ("xero_credit_notes", None),
    EntityType.BANK_TRANSACTIONS: ("xero_bank_transactions", None),
    EntityType.MANUAL_JOURNALS: ("xero_manual_journals", None),
}


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def xero_date(moment: datetime) -> str:
    """Render a naive UTC datetime the way Xero does: /Date(ms+0000)/."""
    millis = int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"/Date({millis}+0000)/"


def make_connection(
    tenant_id: str = TENANT_ID,
    tenant_name: str = TENANT_NAME,
    expires_in: timedelta = timedelta(minutes=30),
    created_by: Optional[str] = "user-owner",
    **overrides,
) -> XeroConnection:
    """Factory function for creating test XeroConnection objects."""
    now = datetime.utcnow()
    defaults = dict(
        tenant_id=tenant_id,
        tenant_name=tenant_name,
        access_token="access-initial",
        refresh_token="refresh-initial",
        expires_at=now + expires_in,
        scopes=["offline_access", "accounting.transactions"],
        is_active=True,
        created_by=created_by,
        created_at=now - timedelta(days=30),
        updated_at=now - timedelta(days=1),
    )
    defaults.update(overrides)
    return XeroConnection(**defaults)


def make_checkpoint(
    entity_type: EntityType = EntityType.CONTACTS,
    watermark: datetime = EPOCH,
    status: SyncStatus = SyncStatus.COMPLETED,
    tenant_id: str = TENANT_ID,
    **overrides,
) -> SyncCheckpoint:
    """Factory function for creating test SyncCheckpoint objects."""
    defaults = dict(
        tenant_id=tenant_id,
        entity_type=entity_type,
        watermark=watermark,
        status=status,
    )
    defaults.update(overrides)
    return SyncCheckpoint(**defaults)


def make_raw_account(account_id: str, updated: datetime, code: str = "200", **overrides) -> dict:
    raw = {
        "AccountID": account_id,
        "Code": code,
        "Name": f"Account {code}",
        "Type": "REVENUE",
        "Class": "REVENUE",
        "Status": "ACTIVE",
        "UpdatedDateUTC": xero_date(updated),
    }
    raw.update(overrides)
    return raw


def make_raw_contact(
    contact_id: str, updated: datetime, name: Optional[str] = None, group: Optional[str] = None
) -> dict:
    raw = {
        "ContactID": contact_id,
        "Name": name or f"Contact {contact_id}",
        "IsCustomer": True,
        "IsSupplier": False,
        "ContactStatus": "ACTIVE",
        "UpdatedDateUTC": xero_date(updated),
    }
    if group:
        raw["ContactGroups"] = [{"Name": group}]
    return raw


def make_raw_item(item_id: str, updated: datetime, code: str = "TOUR-1", **overrides) -> dict:
    raw = {
        "ItemID": item_id,
        "Code": code,
        "Name": f"Item {code}",
        "IsTrackedAsInventory": True,
        "QuantityOnHand": 10,
        "TotalCostPool": 500.0,
        "PurchaseDetails": {"UnitPrice": 50.0, "AccountCode": "310"},
        "SalesDetails": {"UnitPrice": 120.0, "AccountCode": "200"},
        "UpdatedDateUTC": xero_date(updated),
    }
    raw.update(overrides)
    return raw


def make_raw_invoice(
    invoice_id: str,
    updated: datetime,
    invoice_type: str = "ACCREC",
    contact_id: str = "contact-1",
    total: float = 1100.0,
    amount_due: float = 1100.0,
    status: str = "AUTHORISED",
    invoice_date: date = date(2025, 3, 1),
    due_date: Optional[date] = date(2025, 3, 31),
    lines: Optional[list[dict]] = None,
) -> dict:
    raw = {
        "InvoiceID": invoice_id,
        "Type": invoice_type,
        "InvoiceNumber": f"INV-{invoice_id}",
        "Contact": {"ContactID": contact_id, "Name": f"Contact {contact_id}"},
        "Date": invoice_date.isoformat() + "T00:00:00",
        "Status": status,
        "SubTotal": round(total / 1.1, 2),
        "TotalTax": round(total - total / 1.1, 2),
        "Total": total,
        "AmountDue": amount_due,
        "AmountPaid": round(total - amount_due, 2),
        "CurrencyCode": "AUD",
        "LineItems": lines
        if lines is not None
        else [
            {
                "LineItemID": f"{invoice_id}-l1",
                "Description": "Guided tour",
                "Quantity": 2,
                "UnitAmount": 500.0,
                "ItemCode": "TOUR-1",
                "AccountCode": "200",
                "TaxAmount": 100.0,
                "LineAmount": 1000.0,
            }
        ],
        "UpdatedDateUTC": xero_date(updated),
    }
    if due_date:
        raw["DueDate"] = due_date.isoformat() + "T00:00:00"
    return raw


def make_document(
    outstanding: float,
    due_date: Optional[date],
    side: LedgerSide = LedgerSide.RECEIVABLES,
    contact_id: Optional[str] = "contact-1",
    contact_name: Optional[str] = "Acme Travel",
    contact_group: Optional[str] = None,
    **overrides,
) -> OutstandingDocument:
    """Factory function for creating test OutstandingDocument objects."""
    defaults = dict(
        document_id=str(_uuid.uuid4()),
        side=side,
        contact_id=contact_id,
        contact_name=contact_name,
        contact_group=contact_group,
        issue_date=due_date - timedelta(days=30) if due_date else None,
        due_date=due_date,
        total=outstanding,
        outstanding=outstanding,
    )
    defaults.update(overrides)
    return OutstandingDocument(**defaults)


def make_line(
    line_amount: float,
    document_date: date,
    item_code: Optional[str] = None,
    account_code: Optional[str] = None,
    quantity: float = 1.0,
    invoice_type: str = "ACCREC",
    document_id: Optional[str] = None,
    tax_amount: float = 0.0,
) -> LedgerLine:
    """Factory function for creating test LedgerLine objects."""
    return LedgerLine(
        document_id=document_id or str(_uuid.uuid4()),
        invoice_type=invoice_type,
        document_date=document_date,
        item_code=item_code,
        account_code=account_code,
        quantity=quantity,
        line_amount=line_amount,
        tax_amount=tax_amount,
    )


def make_position(
    item_code: str, quantity_on_hand: float, unit_cost: float, reorder_level: float = 0.0
) -> InventoryPosition:
    return InventoryPosition(
        item_id=f"item-{item_code}",
        item_code=item_code,
        name=f"Item {item_code}",
        quantity_on_hand=quantity_on_hand,
        unit_cost=unit_cost,
        reorder_level=reorder_level,
    )


def make_auth_headers(user_id: str = "user-owner", role: UserRole = UserRole.OWNER) -> dict:
    """Authenticated request headers for integration tests."""
    token = create_access_token({"sub": user_id, "role": role.value})
    return {"Authorization": f"Bearer {token}", "X-Request-ID": str(_uuid.uuid4())}


def make_settings(**overrides) -> Settings:
    """Settings tuned for fast tests: no backoff, small pages."""
    defaults = dict(
        testing=True,
        cron_secret="test-cron-secret",
        xero_client_id="client-id",
        xero_client_secret="client-secret",
        fetch_backoff_base_seconds=0.0,
        fetch_max_attempts=3,
        rate_limit_max_wait_seconds=0.0,
        rate_limit_requests_per_minute=1000,
    )
    defaults.update(overrides)
    return Settings(**defaults)


# ---------------------------------------------------------------------------
# In-memory storage
# ---------------------------------------------------------------------------


class MockStorage(StorageBackend):
    """
    In-memory StorageBackend for unit tests.

    Mirrors the DuckDB backend's contract: monotonic checkpoint watermarks,
    atomic single-use OAuth transactions and idempotent ledger upserts.
    """

    def __init__(self):
        self.transactions: dict[str, OAuthTransaction] = {}
        self.connections: dict[str, XeroConnection] = {}
        self.checkpoints: dict[tuple[str, EntityType], SyncCheckpoint] = {}
        self.sessions: list[SyncSession] = []
        self.records: dict[tuple[str, str, str], LedgerRecord] = {}
        self.account_mappings: dict[tuple[str, str], AccountMapping] = {}
        self.item_mappings: dict[tuple[str, str], ItemMapping] = {}
        self.upsert_calls = 0

    def save_oauth_transaction(self, transaction: OAuthTransaction) -> None:
        self.transactions[transaction.state] = transaction

    def consume_oauth_transaction(self, state: str, now: datetime) -> Optional[OAuthTransaction]:
        transaction = self.transactions.get(state)
        if transaction is None or not transaction.is_usable(now):
            return None
        consumed = transaction.model_copy(update={"consumed_at": now})
        self.transactions[state] = consumed
        return consumed

    def get_connection(self, tenant_id: str) -> Optional[XeroConnection]:
        return self.connections.get(tenant_id)

    def upsert_connection(self, connection: XeroConnection) -> None:
        self.connections[connection.tenant_id] = connection

    def list_connections(self, filters: Optional[ConnectionFilter] = None) -> list[XeroConnection]:
        filters = filters or ConnectionFilter()
        results = list(self.connections.values())
        if filters.tenant_ids is not None:
            results = [c for c in results if c.tenant_id in filters.tenant_ids]
        if filters.is_active is not None:
            results = [c for c in results if c.is_active == filters.is_active]
        if filters.created_by is not None:
            results = [c for c in results if c.created_by == filters.created_by]
        return sorted(results, key=lambda c: c.tenant_name)

    def get_checkpoint(self, tenant_id: str, entity_type: EntityType) -> Optional[SyncCheckpoint]:
        return self.checkpoints.get((tenant_id, entity_type))

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> SyncCheckpoint:
        key = (checkpoint.tenant_id, checkpoint.entity_type)
        existing = self.checkpoints.get(key)
        if existing is not None and existing.watermark > checkpoint.watermark:
            checkpoint = checkpoint.model_copy(update={"watermark": existing.watermark})
        self.checkpoints[key] = checkpoint
        return checkpoint

    def list_checkpoints(self, filters: CheckpointFilter) -> list[SyncCheckpoint]:
        order = list(EntityType)
        results = [c for c in self.checkpoints.values() if c.tenant_id == filters.tenant_id]
        return sorted(results, key=lambda c: order.index(c.entity_type))

    def write_sync_session(self, session: SyncSession) -> str:
        self.sessions.append(session.model_copy(deep=True))
        return session.session_id

    def read_sync_sessions(self, filters: SessionFilter) -> list[SyncSession]:
        results = [s for s in self.sessions if s.tenant_id == filters.tenant_id]
        return sorted(results, key=lambda s: s.started_at, reverse=True)[: filters.limit]

    def upsert_records(self, records: Sequence[LedgerRecord]) -> UpsertResult:
        self.upsert_calls += 1
        result = UpsertResult()
        for record in records:
            key = (record.TABLE, record.tenant_id, record.xero_id)
            if key in self.records:
                result.updated += 1
            else:
                result.inserted += 1
            self.records[key] = record
        return result

    def records_of(self, record_type: type) -> list[LedgerRecord]:
        return [r for r in self.records.values() if isinstance(r, record_type)]

    def count_records(self, tenant_id: str, entity_type: EntityType) -> int:
        table, invoice_type = _ENTITY_TABLES[entity_type]
        return sum(
            1
            for (record_table, record_tenant, _), record in self.records.items()
            if record_table == table
            and record_tenant == tenant_id
            and (invoice_type is None or record.invoice_type == invoice_type)
        )

    def read_invoices(self, filters: InvoiceFilter) -> list[InvoiceRecord]:
        results = [
            r
            for r in self.records_of(InvoiceRecord)
            if r.tenant_id == filters.tenant_id
            and (filters.invoice_type is None or r.invoice_type == filters.invoice_type)
        ]
        return results

    def upsert_account_mappings(self, tenant_id: str, mappings: Sequence[AccountMapping]) -> int:
        for mapping in mappings:
            self.account_mappings[(tenant_id, mapping.account_code)] = mapping
        return len(mappings)

    def upsert_item_mappings(self, tenant_id: str, mappings: Sequence[ItemMapping]) -> int:
        for mapping in mappings:
            self.item_mappings[(tenant_id, mapping.item_code)] = mapping
        return len(mappings)

    def read_ledger_snapshot(self, tenant_id: str, as_of: datetime) -> LedgerSnapshot:
        contacts = {
            r.xero_id: r for r in self.records_of(ContactRecord) if r.tenant_id == tenant_id
        }
        return assemble_snapshot(
            tenant_id,
            as_of,
            self.read_invoices(InvoiceFilter(tenant_id=tenant_id)),
            contacts,
            [r for r in self.records_of(ItemRecord) if r.tenant_id == tenant_id],
            [m for (t, _), m in self.account_mappings.items() if t == tenant_id],
            [m for (t, _), m in self.item_mappings.items() if t == tenant_id],
            self.list_checkpoints(CheckpointFilter(tenant_id=tenant_id)),
        )


# ---------------------------------------------------------------------------
# Fake Xero API
# ---------------------------------------------------------------------------


class FakeXero:
    """
    Minimal stand-in for the Xero identity and accounting APIs.

    Honours If-Modified-Since (inclusive), ``order=UpdatedDateUTC ASC``,
    ``where=Type=="..."`` and page/pageSize the way the real API does.
    Queue HTTP failures per endpoint with ``fail``.
    """

    def __init__(self):
        self.records: dict[str, list[dict]] = defaultdict(list)
        self.failures: dict[str, list[httpx.Response]] = defaultdict(list)
        self.requests: list[httpx.Request] = []
        self.refreshed_tokens: list[str] = []
        self.revoked_tokens: list[str] = []
        self.token_status = 200
        self.revoke_status = 200
        self.tenants = [
            {
                "id": "conn-1",
                "tenantId": TENANT_ID,
                "tenantName": TENANT_NAME,
                "tenantType": "ORGANISATION",
            }
        ]
        self._issued = 0

    def fail(self, endpoint: str, status_code: int, times: int = 1, headers: Optional[dict] = None):
        for _ in range(times):
            self.failures[endpoint].append(
                httpx.Response(status_code, headers=headers or {}, json={"Message": "error"})
            )

    def entity_requests(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"/{endpoint}")]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def _tokens(self) -> httpx.Response:
        self._issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self._issued}",
                "refresh_token": f"refresh-{self._issued}",
                "expires_in": 1800,
                "token_type": "Bearer",
                "scope": "offline_access accounting.transactions",
            },
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/connect/token"):
            form = dict(parse_qsl(request.content.decode()))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            if form.get("grant_type") == "refresh_token":
                self.refreshed_tokens.append(form["refresh_token"])
            return self._tokens()

        if path.endswith("/connect/revocation"):
            form = dict(parse_qsl(request.content.decode()))
            self.revoked_tokens.append(form.get("token", ""))
            return httpx.Response(self.revoke_status)

        if path == "/connections":
            return httpx.Response(200, json=self.tenants)

        endpoint = path.rsplit("/", 1)[-1]
        if self.failures[endpoint]:
            return self.failures[endpoint].pop(0)

        rows = list(self.records[endpoint])
        where = request.url.params.get("where")
        if where and where.startswith("Type=="):
            wanted = where.split("==", 1)[1].strip('"')
            rows = [r for r in rows if r.get("Type") == wanted]

        since = request.headers.get("If-Modified-Since")
        if since:
            threshold = datetime.fromisoformat(since)
            rows = [r for r in rows if parse_xero_date(r["UpdatedDateUTC"]) >= threshold]

        rows.sort(key=lambda r: parse_xero_date(r["UpdatedDateUTC"]))

        if "page" in request.url.params:
            page = int(request.url.params["page"])
            size = int(request.url.params.get("pageSize", 100))
            rows = rows[(page - 1) * size : page * size]

        return httpx.Response(200, json={endpoint: rows})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def mock_storage():
    """Fresh MockStorage instance."""
    return MockStorage()


@pytest.fixture
def fake_xero():
    return FakeXero()


@pytest.fixture
def services(settings, mock_storage, fake_xero):
    """Service graph wired to in-memory storage and the fake Xero API."""
    return build_services(settings, mock_storage, http_client=fake_xero.http_client())


@pytest.fixture
def connected_storage(mock_storage):
    """MockStorage holding one active connection."""
    mock_storage.upsert_connection(make_connection())
    return mock_storage


@pytest.fixture
def duckdb_storage():
    """DuckDB storage on the shared test database, emptied before use."""
    from xerosync.storage import get_storage

    storage = get_storage()
    storage.clear_for_testing()
    yield storage
    storage.clear_for_testing()


@pytest.fixture
def client():
    """FastAPI test client for integration tests."""
    from xerosync.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def api(client, duckdb_storage, fake_xero):
    """
    Test client whose services talk to the fake Xero API.

    Returns a function that rebuilds the service graph with setting overrides.
    """
    original = client.app.state.services

    def configure(**overrides):
        services = build_services(
            make_settings(**overrides), duckdb_storage, http_client=fake_xero.http_client()
        )
        client.app.state.services = services
        return services

    configure()
    yield configure
    client.app.state.services = original


@pytest.fixture
def owner_headers():
    return make_auth_headers("user-owner", UserRole.OWNER)


@pytest.fixture
def finance_headers():
    return make_auth_headers("user-finance", UserRole.FINANCE)


@pytest.fixture
def sales_headers():
    return make_auth_headers("user-sales", UserRole.SALES)
