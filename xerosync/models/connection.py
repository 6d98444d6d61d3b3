"""
OAuth connection models.

A connection holds the credentials for one Xero tenant. Connections are never
deleted: revocation flips ``is_active`` so the audit trail survives.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field


class XeroConnection(BaseModel):
    """
    Persisted credentials for one Xero tenant.

    Attributes:
        tenant_id: Xero tenant (organisation) identifier, unique key
        tenant_name: Organisation display name
        tenant_type: Xero tenant type, usually ORGANISATION
        access_token: Current OAuth2 access token
        refresh_token: Current OAuth2 refresh token (rotated on every refresh)
        expires_at: Access token expiry instant (UTC)
        scopes: Scopes granted by the user
        is_active: False once revoked or once a refresh was rejected
        created_by: Application user that authorised the connection
        error_count: Consecutive refresh failures
        last_error: Last refresh or revocation error message
    """

    tenant_id: str = Field(..., min_length=1)
    tenant_name: str = ""
    tenant_type: str = "ORGANISATION"
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_refreshed_at: Optional[datetime] = None
    error_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    def expires_within(self, margin_seconds: float, now: datetime) -> bool:
        """True when the access token is expired or expires inside the margin."""
        return now + timedelta(seconds=margin_seconds) >= self.expires_at


class ConnectionSummary(BaseModel):
    """Connection details safe to return to API callers (no tokens)."""

    tenant_id: str
    tenant_name: str
    is_active: bool
    expires_at: datetime
    scopes: list[str]
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None

    @classmethod
    def from_connection(cls, connection: XeroConnection) -> "ConnectionSummary":
        return cls(
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
            is_active=connection.is_active,
            expires_at=connection.expires_at,
            scopes=connection.scopes,
            created_by=connection.created_by,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
            last_error=connection.last_error,
        )


class OAuthTransaction(BaseModel):
    """An in-flight authorization attempt, consumed exactly once by the callback."""

    state: str = Field(..., min_length=16)
    user_id: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return self.consumed_at is None and now < self.expires_at


class XeroTokenResponse(BaseModel):
    """Token endpoint response."""

    access_token: str
    refresh_token: str
    expires_in: int = 1800
    token_type: str = "Bearer"
    scope: str = ""
    id_token: Optional[str] = None


class XeroTenantInfo(BaseModel):
    """One entry of the /connections endpoint response."""

    id: str = ""
    tenantId: str
    tenantName: Optional[str] = None
    tenantType: str = "ORGANISATION"


class ConnectionResult(BaseModel):
    """Outcome of a successful authorization-code exchange."""

    tenant_id: str
    tenant_name: str
    reactivated: bool = False


class RevokeResult(BaseModel):
    """
    Outcome of a revocation.

    Local deactivation always succeeds; ``revoked`` reports whether Xero
    acknowledged the revocation call.
    """

    tenant_id: str
    deactivated: bool = True
    revoked: bool
    error: Optional[str] = None
