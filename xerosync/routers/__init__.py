"""API routers for all endpoints."""

from xerosync.routers import analytics, cron, sync, xero_auth

__all__ = [
    "analytics",
    "cron",
    "sync",
    "xero_auth",
]
