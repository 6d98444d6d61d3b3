"""
Unit tests for the OAuth2 token manager.

Xero is replaced by FakeXero behind an httpx.MockTransport; connections live
in MockStorage.
"""

import asyncio
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from tests.conftest import TENANT_ID, TENANT_NAME, make_connection
from xerosync.connectors.token_manager import TokenManager
from xerosync.connectors.xero_client import XeroClient
from xerosync.errors import (
    AuthenticationRequired,
    ConnectionNotFound,
    InvalidOAuthState,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from xerosync.storage.base import StorageError


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthorization:
    """Tests for starting and completing the authorization flow."""

    def test_token_manager_generate_authorization_url_persists_state(self, services, mock_storage):
        url, state = services.token_manager.generate_authorization_url("user-owner")

        query = parse_qs(urlparse(url).query)
        assert query["state"] == [state]
        assert query["client_id"] == ["client-id"]
        assert query["response_type"] == ["code"]
        assert "offline_access" in query["scope"][0].split()
        assert mock_storage.transactions[state].user_id == "user-owner"
        assert mock_storage.transactions[state].consumed_at is None

    def test_token_manager_generate_authorization_url_unique_states(self, services):
        states = {services.token_manager.generate_authorization_url("u")[1] for _ in range(20)}
        assert len(states) == 20

    def test_token_manager_exchange_creates_connection(self, services, mock_storage):
        _, state = services.token_manager.generate_authorization_url("user-owner")

        result = asyncio.run(
            services.token_manager.exchange_code_for_tokens("code-1", state, "user-owner")
        )

        assert result.tenant_id == TENANT_ID
        assert result.tenant_name == TENANT_NAME
        assert result.reactivated is False
        connection = mock_storage.get_connection(TENANT_ID)
        assert connection.is_active is True
        assert connection.created_by == "user-owner"
        assert connection.access_token == "access-1"
        assert connection.refresh_token == "refresh-1"
        assert connection.expires_at > datetime.utcnow() + timedelta(minutes=25)

    def test_token_manager_exchange_replayed_state_rejected(self, services, mock_storage):
        _, state = services.token_manager.generate_authorization_url("user-owner")
        asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", state))
        mock_storage.connections.clear()

        with pytest.raises(InvalidOAuthState):
            asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", state))

        assert mock_storage.connections == {}

    def test_token_manager_exchange_unknown_state_creates_nothing(
        self, services, mock_storage, fake_xero
    ):
        with pytest.raises(InvalidOAuthState):
            asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", "x" * 43))

        assert mock_storage.connections == {}
        assert fake_xero.requests == []

    def test_token_manager_exchange_expired_state_rejected(
        self, settings, mock_storage, fake_xero
    ):
        now = [datetime(2025, 1, 1, 12, 0)]
        client = XeroClient(settings, http_client=fake_xero.http_client())
        manager = TokenManager(client, mock_storage, settings, clock=lambda: now[0])
        _, state = manager.generate_authorization_url("user-owner")

        now[0] += timedelta(minutes=settings.oauth_state_ttl_minutes, seconds=1)

        with pytest.raises(InvalidOAuthState):
            asyncio.run(manager.exchange_code_for_tokens("code-1", state))
        assert mock_storage.connections == {}

    def test_token_manager_exchange_foreign_user_rejected(self, services, mock_storage):
        _, state = services.token_manager.generate_authorization_url("user-owner")

        with pytest.raises(InvalidOAuthState):
            asyncio.run(
                services.token_manager.exchange_code_for_tokens("code-1", state, "user-other")
            )
        assert mock_storage.connections == {}

    def test_token_manager_exchange_code_rejected(self, services, mock_storage, fake_xero):
        fake_xero.token_status = 400
        _, state = services.token_manager.generate_authorization_url("user-owner")

        with pytest.raises(TokenExchangeFailed):
            asyncio.run(services.token_manager.exchange_code_for_tokens("bad-code", state))
        assert mock_storage.connections == {}

    def test_token_manager_exchange_without_tenants_fails(self, services, fake_xero):
        fake_xero.tenants = []
        _, state = services.token_manager.generate_authorization_url("user-owner")

        with pytest.raises(TokenExchangeFailed):
            asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", state))

    def test_token_manager_exchange_save_failure_is_exchange_failure(self, services, mock_storage):
        _, state = services.token_manager.generate_authorization_url("user-owner")

        def broken_upsert(connection):
            raise StorageError("disk full")

        mock_storage.upsert_connection = broken_upsert

        with pytest.raises(TokenExchangeFailed) as exc_info:
            asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", state))

        assert isinstance(exc_info.value.__cause__, StorageError)
        assert mock_storage.connections == {}

    def test_token_manager_exchange_reactivates_connection(self, services, mock_storage):
        original = make_connection(is_active=False, last_error="revoked")
        mock_storage.upsert_connection(original)
        _, state = services.token_manager.generate_authorization_url("user-finance")

        result = asyncio.run(services.token_manager.exchange_code_for_tokens("code-1", state))

        assert result.reactivated is True
        connection = mock_storage.get_connection(TENANT_ID)
        assert connection.is_active is True
        assert connection.created_at == original.created_at
        assert connection.created_by == "user-finance"


class TestAccessTokens:
    """Tests for handing out and refreshing access tokens."""

    def test_token_manager_fresh_token_returned_without_refresh(
        self, services, connected_storage, fake_xero
    ):
        token = asyncio.run(services.token_manager.get_valid_access_token(TENANT_ID))

        assert token == "access-initial"
        assert fake_xero.requests == []

    def test_token_manager_expiring_token_is_rotated(self, services, mock_storage, fake_xero):
        mock_storage.upsert_connection(make_connection(expires_in=timedelta(seconds=30)))

        token = asyncio.run(services.token_manager.get_valid_access_token(TENANT_ID))

        assert token == "access-1"
        assert fake_xero.refreshed_tokens == ["refresh-initial"]
        stored = mock_storage.get_connection(TENANT_ID)
        assert stored.refresh_token == "refresh-1"
        assert stored.last_refreshed_at is not None
        assert stored.expires_at > datetime.utcnow() + timedelta(minutes=25)

    def test_token_manager_concurrent_callers_refresh_once(
        self, services, mock_storage, fake_xero
    ):
        mock_storage.upsert_connection(make_connection(expires_in=timedelta(seconds=-5)))

        async def run():
            return await asyncio.gather(
                *(services.token_manager.get_valid_access_token(TENANT_ID) for _ in range(5))
            )

        tokens = asyncio.run(run())

        assert set(tokens) == {"access-1"}
        assert fake_xero.refreshed_tokens == ["refresh-initial"]

    def test_token_manager_rejected_refresh_deactivates_connection(
        self, services, mock_storage, fake_xero
    ):
        mock_storage.upsert_connection(make_connection(expires_in=timedelta(seconds=-5)))
        fake_xero.token_status = 400

        with pytest.raises(TokenRefreshFailed) as exc_info:
            asyncio.run(services.token_manager.get_valid_access_token(TENANT_ID))

        assert exc_info.value.rejected is True
        stored = mock_storage.get_connection(TENANT_ID)
        assert stored.is_active is False
        assert stored.error_count == 1
        assert "rejected" in stored.last_error

        with pytest.raises(AuthenticationRequired):
            asyncio.run(services.token_manager.get_valid_access_token(TENANT_ID))

    def test_token_manager_server_error_leaves_connection_untouched(
        self, services, mock_storage, fake_xero
    ):
        original = make_connection(expires_in=timedelta(seconds=-5))
        mock_storage.upsert_connection(original)
        fake_xero.token_status = 503

        with pytest.raises(TokenRefreshFailed) as exc_info:
            asyncio.run(services.token_manager.get_valid_access_token(TENANT_ID))

        assert exc_info.value.rejected is False
        assert mock_storage.get_connection(TENANT_ID) == original

    def test_token_manager_missing_connection_requires_authentication(self, services):
        with pytest.raises(AuthenticationRequired):
            asyncio.run(services.token_manager.get_valid_access_token("unknown-tenant"))


class TestRevocation:
    """Tests for revoking connections."""

    def test_token_manager_revoke_deactivates_connection(
        self, services, connected_storage, fake_xero
    ):
        result = asyncio.run(services.token_manager.revoke_token(TENANT_ID))

        assert result.revoked is True
        assert result.deactivated is True
        assert fake_xero.revoked_tokens == ["refresh-initial"]
        assert connected_storage.get_connection(TENANT_ID).is_active is False

    def test_token_manager_revoke_failure_still_deactivates(
        self, services, connected_storage, fake_xero
    ):
        fake_xero.revoke_status = 500

        result = asyncio.run(services.token_manager.revoke_token(TENANT_ID))

        assert result.revoked is False
        assert result.error
        assert connected_storage.get_connection(TENANT_ID).is_active is False

    def test_token_manager_revoke_unknown_tenant(self, services):
        with pytest.raises(ConnectionNotFound):
            asyncio.run(services.token_manager.revoke_token("unknown-tenant"))

    def test_token_manager_active_connections_excludes_revoked(self, services, mock_storage):
        mock_storage.upsert_connection(make_connection())
        mock_storage.upsert_connection(
            make_connection(tenant_id="tenant-0002", tenant_name="Other", is_active=False)
        )

        active = services.token_manager.get_active_connections()

        assert [c.tenant_id for c in active] == [TENANT_ID]
