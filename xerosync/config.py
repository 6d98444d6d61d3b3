"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from xerosync.models.enums import RuntimeMode


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Xero OAuth2
    xero_client_id: str = Field(default="", description="Xero OAuth2 client ID")
    xero_client_secret: str = Field(default="", description="Xero OAuth2 client secret")
    xero_redirect_uri: str = Field(
        default="http://localhost:8000/api/auth/xero/callback",
        description="OAuth2 redirect URI",
    )
    xero_scopes: str = Field(
        default=(
            "offline_access openid profile email accounting.transactions "
            "accounting.contacts accounting.settings accounting.reports.read"
        ),
        description="Space separated OAuth2 scopes",
    )
    xero_authorize_url: str = Field(
        default="https://login.xero.com/identity/connect/authorize",
        description="Xero authorization endpoint",
    )
    xero_token_url: str = Field(
        default="https://identity.xero.com/connect/token",
        description="Xero token endpoint",
    )
    xero_revocation_url: str = Field(
        default="https://identity.xero.com/connect/revocation",
        description="Xero token revocation endpoint",
    )
    xero_connections_url: str = Field(
        default="https://api.xero.com/connections",
        description="Xero tenant connections endpoint",
    )
    xero_api_base_url: str = Field(
        default="https://api.xero.com/api.xro/2.0",
        description="Xero accounting API base URL",
    )

    # OAuth lifecycle
    oauth_state_ttl_minutes: int = Field(default=10, ge=1, description="OAuth state lifetime")
    oauth_state_cookie_name: str = Field(
        default="xero_oauth_state", description="Cookie carrying the pending OAuth state"
    )
    token_refresh_margin_seconds: int = Field(
        default=60, ge=0, description="Refresh access tokens this long before expiry"
    )
    settings_redirect_path: str = Field(
        default="/settings", description="Where the OAuth callback sends the browser"
    )

    # Security
    jwt_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="JWT signing secret",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_minutes: int = Field(default=1440, description="JWT expiration (24h)")
    cron_secret: str = Field(default="", description="Bearer secret for the scheduled trigger")

    # Database
    db_path: str = Field(default="./data/xerosync.duckdb", description="DuckDB file path")

    # Sync
    sync_page_size: int = Field(default=100, ge=1, le=1000, description="Default page size")
    rate_limit_requests_per_minute: int = Field(
        default=60, ge=1, description="Xero per-tenant minute quota"
    )
    rate_limit_max_wait_seconds: float = Field(
        default=5.0, ge=0.0, description="Longest a caller waits for a limiter slot"
    )
    fetch_max_attempts: int = Field(default=4, ge=1, description="Attempts per page fetch")
    fetch_backoff_base_seconds: float = Field(
        default=1.0, ge=0.0, description="Base delay for exponential backoff"
    )
    fetch_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-call HTTP timeout")
    sync_session_timeout_seconds: float = Field(
        default=600.0, gt=0, description="Overall budget for one tenant session"
    )
    sync_tenant_concurrency: int = Field(
        default=1, ge=1, description="Tenants synced in parallel by the scheduler"
    )

    # Analytics
    revenue_variance_threshold: float = Field(
        default=20.0, ge=0.0, description="Percent change flagged as significant"
    )
    customer_overdue_days: int = Field(default=45, ge=1, description="Customer overdue threshold")
    supplier_overdue_days: int = Field(default=60, ge=1, description="Supplier overdue threshold")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Runtime
    runtime_mode: RuntimeMode = Field(
        default=RuntimeMode.SERVE, description="serve, or build while a deployment is in progress"
    )
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def scope_list(self) -> List[str]:
        """Requested OAuth scopes as a list."""
        return [scope for scope in self.xero_scopes.split() if scope]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
