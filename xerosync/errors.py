"""
Error taxonomy for the Xero integration engine.

Every error carries a machine-readable ``code`` used in API payloads and in
the OAuth redirect query string. Entity-level fetch errors are isolated by the
sync orchestrator; tenant-level token errors abort only that tenant's session.
"""

from typing import Optional


class XeroSyncError(Exception):
    """Base class for all engine errors."""

    code = "xero_sync_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or (self.__class__.__doc__ or "")


class AuthenticationRequired(XeroSyncError):
    """Caller is not authenticated or the tenant has no active connection."""

    code = "authentication_required"


class InsufficientPermissions(XeroSyncError):
    """Caller lacks the role or ownership required for this operation."""

    code = "insufficient_permissions"


class ConnectionNotFound(XeroSyncError):
    """No Xero connection exists for the tenant."""

    code = "connection_not_found"


class InvalidOAuthState(XeroSyncError):
    """OAuth state is unknown, expired or already consumed."""

    code = "invalid_state"


class TokenExchangeFailed(XeroSyncError):
    """Authorization code could not be exchanged for tokens."""

    code = "token_exchange_failed"


class TokenRefreshFailed(XeroSyncError):
    """Access token refresh failed."""

    code = "token_refresh_failed"

    def __init__(self, message: str = "", rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


class RateLimitExceeded(XeroSyncError):
    """Request budget for the connection is exhausted."""

    code = "rate_limit_exceeded"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientFetchError(XeroSyncError):
    """Temporary transport or server failure while fetching entities."""

    code = "transient_fetch_error"


class NonRetryableFetchError(XeroSyncError):
    """Xero rejected the request; retrying will not help."""

    code = "non_retryable_fetch_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CheckpointPersistError(XeroSyncError):
    """Sync checkpoint could not be written."""

    code = "checkpoint_persist_error"


class SessionTimeout(XeroSyncError):
    """Sync session budget ran out while an entity was in progress."""

    code = "session_timeout"


class AggregationInputError(XeroSyncError):
    """Ledger data is malformed for the requested computation."""

    code = "aggregation_input_error"


class AggregationDataError(XeroSyncError):
    """Ledger data could not be read from the store."""

    code = "aggregation_data_error"
