"""
OAuth2 token lifecycle for Xero connections.

Responsibilities:
- Start authorization: mint a CSRF state and persist the pending transaction
- Finish authorization: consume the state exactly once, exchange the code and
  store (or reactivate) the tenant connection
- Hand out valid access tokens, refreshing shortly before expiry
- Revoke connections (local deactivation always happens)

Refreshes are serialised per tenant so concurrent callers never redeem the same
rotating refresh token twice.
"""

import asyncio
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from xerosync.config import Settings
from xerosync.connectors.xero_client import XeroClient
from xerosync.errors import (
    AuthenticationRequired,
    ConnectionNotFound,
    InvalidOAuthState,
    TokenExchangeFailed,
    TokenRefreshFailed,
    XeroSyncError,
)
from xerosync.models.connection import (
    ConnectionResult,
    OAuthTransaction,
    RevokeResult,
    XeroConnection,
    XeroTokenResponse,
)
from xerosync.models.filters import ConnectionFilter
from xerosync.storage.base import PendingTransactionStore, StorageBackend, StorageError

logger = structlog.get_logger()


class TokenManager:
    """
    Owns every read and write of Xero credentials.

    Attributes:
        client: Xero API client used for identity calls
        storage: Connection store
        transactions: Pending OAuth transaction store (defaults to ``storage``)
        settings: Application settings
    """

    def __init__(
        self,
        client: XeroClient,
        storage: StorageBackend,
        settings: Settings,
        transactions: Optional[PendingTransactionStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.client = client
        self.storage = storage
        self.transactions = transactions or storage
        self.settings = settings
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Authorization
    # =========================================================================

    def generate_authorization_url(self, user_id: str) -> tuple[str, str]:
        """
        Start an authorization attempt for an application user.

        Returns:
            (authorization URL, state)
        """
        now = self._clock()
        state = secrets.token_urlsafe(32)
        self.transactions.save_oauth_transaction(
            OAuthTransaction(
                state=state,
                user_id=user_id,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.oauth_state_ttl_minutes),
            )
        )

        logger.info("authorization_url_generated", user_id=user_id)
        return self.client.build_authorization_url(state), state

    async def exchange_code_for_tokens(
        self, code: str, state: str, acting_user_id: Optional[str] = None
    ) -> ConnectionResult:
        """
        Complete an authorization attempt.

        The state is consumed before anything else, so a replayed callback
        fails even if the first attempt failed later on.

        Raises:
            InvalidOAuthState: Unknown, expired, consumed or foreign state
            TokenExchangeFailed: Code exchange, tenant discovery or saving the
                connection failed
        """
        try:
            transaction = self.transactions.consume_oauth_transaction(state, self._clock())
        except StorageError as e:
            logger.error("oauth_state_lookup_failed", error=str(e))
            raise TokenExchangeFailed("Authorization request could not be verified") from e

        if transaction is None:
            logger.warning("oauth_state_invalid")
            raise InvalidOAuthState("Authorization request is unknown, expired or already used")

        if acting_user_id is not None and transaction.user_id != acting_user_id:
            logger.warning(
                "oauth_state_user_mismatch",
                expected_user=transaction.user_id,
                acting_user=acting_user_id,
            )
            raise InvalidOAuthState("Authorization request belongs to another user")

        tokens = await self.client.exchange_code(code)

        try:
            tenants = await self.client.get_connections(tokens.access_token)
        except XeroSyncError as e:
            raise TokenExchangeFailed(f"Could not read authorised organisations: {e}") from e

        if not tenants:
            raise TokenExchangeFailed("No Xero organisation was authorised")

        tenant = next((t for t in tenants if t.tenantType == "ORGANISATION"), tenants[0])
        now = self._clock()
        try:
            existing = self.storage.get_connection(tenant.tenantId)
        except StorageError as e:
            raise TokenExchangeFailed("Could not save the Xero connection") from e

        connection = XeroConnection(
            tenant_id=tenant.tenantId,
            tenant_name=tenant.tenantName or tenant.tenantId,
            tenant_type=tenant.tenantType,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=now + timedelta(seconds=tokens.expires_in),
            scopes=self._scopes(tokens),
            is_active=True,
            created_by=transaction.user_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            last_refreshed_at=now,
        )
        try:
            self.storage.upsert_connection(connection)
        except StorageError as e:
            logger.error("xero_connection_save_failed", tenant_id=connection.tenant_id, error=str(e))
            raise TokenExchangeFailed("Could not save the Xero connection") from e

        reactivated = bool(existing and not existing.is_active)
        logger.info(
            "xero_connection_established",
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
            reactivated=reactivated,
            user_id=transaction.user_id,
        )
        return ConnectionResult(
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
            reactivated=reactivated,
        )

    def _scopes(self, tokens: XeroTokenResponse) -> list[str]:
        return tokens.scope.split() if tokens.scope else self.settings.scope_list

    # =========================================================================
    # Access tokens
    # =========================================================================

    def _active_connection(self, tenant_id: str) -> XeroConnection:
        connection = self.storage.get_connection(tenant_id)
        if connection is None or not connection.is_active:
            raise AuthenticationRequired(f"No active Xero connection for tenant {tenant_id}")
        return connection

    def _is_fresh(self, connection: XeroConnection) -> bool:
        return not connection.expires_within(
            self.settings.token_refresh_margin_seconds, self._clock()
        )

    async def get_valid_access_token(self, tenant_id: str) -> str:
        """
        Return an access token valid for at least the refresh margin.

        Raises:
            AuthenticationRequired: Connection missing or inactive
            TokenRefreshFailed: Refresh was rejected (connection deactivated)
                or could not complete (connection untouched)
        """
        connection = self._active_connection(tenant_id)
        if self._is_fresh(connection):
            return connection.access_token

        lock = self._refresh_locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited
            connection = self._active_connection(tenant_id)
            if self._is_fresh(connection):
                return connection.access_token
            return await self._refresh(connection)

    async def _refresh(self, connection: XeroConnection) -> str:
        logger.info("access_token_expiring", tenant_id=connection.tenant_id)
        try:
            tokens = await self.client.refresh_tokens(connection.refresh_token)
        except TokenRefreshFailed as e:
            if e.rejected:
                now = self._clock()
                self.storage.upsert_connection(
                    connection.model_copy(
                        update={
                            "is_active": False,
                            "error_count": connection.error_count + 1,
                            "last_error": e.message,
                            "updated_at": now,
                        }
                    )
                )
                logger.error(
                    "xero_connection_deactivated",
                    tenant_id=connection.tenant_id,
                    reason=e.message,
                )
            raise

        now = self._clock()
        refreshed = connection.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": now + timedelta(seconds=tokens.expires_in),
                "scopes": self._scopes(tokens) if tokens.scope else connection.scopes,
                "last_refreshed_at": now,
                "updated_at": now,
                "error_count": 0,
                "last_error": None,
            }
        )
        self.storage.upsert_connection(refreshed)
        logger.info(
            "access_token_refreshed",
            tenant_id=connection.tenant_id,
            expires_at=refreshed.expires_at.isoformat(),
        )
        return refreshed.access_token

    # =========================================================================
    # Revocation and lookup
    # =========================================================================

    async def revoke_token(self, tenant_id: str) -> RevokeResult:
        """
        Revoke a connection at Xero and deactivate it locally.

        Local deactivation happens even when the revocation call fails.

        Raises:
            ConnectionNotFound: No connection exists for the tenant
        """
        connection = self.storage.get_connection(tenant_id)
        if connection is None:
            raise ConnectionNotFound(f"No Xero connection for tenant {tenant_id}")

        revoked = True
        error: Optional[str] = None
        try:
            await self.client.revoke_token(connection.refresh_token)
        except XeroSyncError as e:
            revoked = False
            error = e.message
            logger.warning("xero_revocation_failed", tenant_id=tenant_id, error=error)

        self.storage.upsert_connection(
            connection.model_copy(
                update={
                    "is_active": False,
                    "updated_at": self._clock(),
                    "last_error": error if error else connection.last_error,
                }
            )
        )

        logger.info("xero_connection_revoked", tenant_id=tenant_id, revoked=revoked)
        return RevokeResult(tenant_id=tenant_id, deactivated=True, revoked=revoked, error=error)

    def get_active_connections(self) -> list[XeroConnection]:
        return self.storage.list_connections(ConnectionFilter(is_active=True))

    def get_connection(self, tenant_id: str) -> Optional[XeroConnection]:
        return self.storage.get_connection(tenant_id)
