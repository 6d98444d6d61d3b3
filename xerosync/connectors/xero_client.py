"""
Xero API client.

Thin async wrapper over the Xero identity and accounting endpoints:
- OAuth2 authorization URL, code exchange, refresh and revocation
- Tenant discovery via the /connections endpoint
- Single-page entity reads with incremental (If-Modified-Since) filtering

The client makes exactly one HTTP call per method and translates every
failure into the engine's error taxonomy. Retrying is the caller's job.
"""

from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from xerosync.config import Settings
from xerosync.connectors.xero_entities import EntityEndpoint
from xerosync.errors import (
    NonRetryableFetchError,
    RateLimitExceeded,
    TokenExchangeFailed,
    TokenRefreshFailed,
    TransientFetchError,
)
from xerosync.models.connection import XeroTenantInfo, XeroTokenResponse

logger = structlog.get_logger()


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class XeroClient:
    """
    Xero API client.

    Attributes:
        settings: Application settings (client credentials, endpoint URLs)
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        """
        Initialize the Xero client.

        Args:
            settings: Application settings
            http_client: Shared HTTP client, owned and closed by the caller
        """
        self.settings = settings
        self.http_client = http_client

        logger.info(
            "xero_client_initialized",
            has_credentials=bool(settings.xero_client_id and settings.xero_client_secret),
        )

    # =========================================================================
    # OAuth2
    # =========================================================================

    def build_authorization_url(self, state: str) -> str:
        """
        Build the consent URL the user is redirected to.

        Args:
            state: Opaque CSRF state bound to the pending transaction

        Returns:
            Complete authorization URL
        """
        params = {
            "response_type": "code",
            "client_id": self.settings.xero_client_id,
            "redirect_uri": self.settings.xero_redirect_uri,
            "scope": " ".join(self.settings.scope_list),
            "state": state,
        }
        return f"{self.settings.xero_authorize_url}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str]) -> httpx.Response:
        return await self.http_client.post(
            self.settings.xero_token_url,
            data=data,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            auth=(self.settings.xero_client_id, self.settings.xero_client_secret),
            timeout=self.settings.fetch_timeout_seconds,
        )

    async def exchange_code(self, code: str) -> XeroTokenResponse:
        """
        Exchange an authorization code for tokens. Not retried.

        Raises:
            TokenExchangeFailed: On any transport, status or payload failure
        """
        try:
            response = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.xero_redirect_uri,
                }
            )
            response.raise_for_status()
            tokens = XeroTokenResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            logger.error("oauth_code_exchange_failed", status_code=e.response.status_code)
            raise TokenExchangeFailed(
                f"Xero rejected the authorization code ({e.response.status_code})"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_code_exchange_error", error=str(e))
            raise TokenExchangeFailed(f"Token exchange failed: {e}") from e

        logger.info("oauth_code_exchanged", expires_in=tokens.expires_in)
        return tokens

    async def refresh_tokens(self, refresh_token: str) -> XeroTokenResponse:
        """
        Redeem a refresh token. Xero rotates the refresh token on every call.

        Raises:
            TokenRefreshFailed: ``rejected=True`` when Xero refused the refresh
                token (4xx), ``rejected=False`` for transport or server failures
        """
        try:
            response = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except httpx.HTTPError as e:
            logger.error("token_refresh_error", error=str(e))
            raise TokenRefreshFailed(f"Token refresh failed: {e}", rejected=False) from e

        if 400 <= response.status_code < 500:
            logger.error("token_refresh_rejected", status_code=response.status_code)
            raise TokenRefreshFailed(
                f"Xero rejected the refresh token ({response.status_code})", rejected=True
            )
        if response.status_code >= 500:
            logger.error("token_refresh_failed", status_code=response.status_code)
            raise TokenRefreshFailed(
                f"Xero token endpoint error ({response.status_code})", rejected=False
            )

        try:
            tokens = XeroTokenResponse.model_validate(response.json())
        except ValueError as e:
            raise TokenRefreshFailed(f"Malformed token response: {e}", rejected=False) from e

        logger.info("tokens_refreshed", expires_in=tokens.expires_in)
        return tokens

    async def revoke_token(self, refresh_token: str) -> None:
        """
        Revoke a refresh token at Xero.

        Raises:
            NonRetryableFetchError: Xero answered with an error status
            TransientFetchError: The call did not complete
        """
        try:
            response = await self.http_client.post(
                self.settings.xero_revocation_url,
                data={"token": refresh_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                auth=(self.settings.xero_client_id, self.settings.xero_client_secret),
                timeout=self.settings.fetch_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Revocation request failed: {e}") from e

        if response.status_code >= 400:
            raise NonRetryableFetchError(
                f"Revocation rejected ({response.status_code})", status_code=response.status_code
            )

    async def get_connections(self, access_token: str) -> list[XeroTenantInfo]:
        """
        List the tenants the access token is authorised for.

        Raises:
            NonRetryableFetchError, TransientFetchError: On failure
        """
        response = await self._send(
            "GET",
            self.settings.xero_connections_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        try:
            return [XeroTenantInfo.model_validate(item) for item in response.json()]
        except ValueError as e:
            raise NonRetryableFetchError(f"Malformed connections response: {e}") from e

    # =========================================================================
    # Accounting API
    # =========================================================================

    async def get_entities(
        self,
        access_token: str,
        tenant_id: str,
        entry: EntityEndpoint,
        modified_since: Optional[datetime],
        page: int,
        page_size: int,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of an entity collection, oldest change first.

        Args:
            access_token: Valid access token for the tenant
            tenant_id: Xero tenant id (sent as Xero-Tenant-Id)
            entry: Catalogue entry for the entity type
            modified_since: Inclusive lower bound on UpdatedDateUTC
            page: 1-based page number (ignored for unpaginated endpoints)
            page_size: Page size (ignored for unpaginated endpoints)

        Returns:
            Raw JSON records in the order Xero returned them

        Raises:
            RateLimitExceeded: Xero answered 429
            NonRetryableFetchError: Any other 4xx
            TransientFetchError: 5xx, timeouts and transport failures
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Xero-Tenant-Id": tenant_id,
            "Accept": "application/json",
        }
        if modified_since:
            headers["If-Modified-Since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%S")

        params: dict[str, Any] = {"order": "UpdatedDateUTC ASC"}
        if entry.where:
            params["where"] = entry.where
        if entry.paginated:
            params["page"] = page
            params["pageSize"] = page_size

        response = await self._send(
            "GET",
            f"{self.settings.xero_api_base_url}/{entry.endpoint}",
            headers=headers,
            params=params,
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientFetchError(f"Malformed {entry.endpoint} response: {e}") from e

        records = payload.get(entry.collection_key) or []

        logger.debug(
            "xero_entities_fetched",
            tenant_id=tenant_id,
            entity_type=entry.entity_type.value,
            page=page,
            count=len(records),
        )
        return records

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method, url, timeout=self.settings.fetch_timeout_seconds, **kwargs
            )
        except httpx.HTTPError as e:
            logger.warning("xero_request_error", url=url, error=str(e))
            raise TransientFetchError(f"Request to {url} failed: {e}") from e

        if response.status_code == 304:
            # Nothing modified since the supplied watermark
            return httpx.Response(200, json={}, request=response.request)

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning("xero_rate_limited", url=url, retry_after=retry_after)
            raise RateLimitExceeded("Xero rate limit exceeded", retry_after=retry_after)

        if 400 <= response.status_code < 500:
            logger.error("xero_request_rejected", url=url, status_code=response.status_code)
            raise NonRetryableFetchError(
                f"Xero rejected {method} {url} ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        if response.status_code >= 500:
            logger.warning("xero_server_error", url=url, status_code=response.status_code)
            raise TransientFetchError(f"Xero server error ({response.status_code})")

        return response
