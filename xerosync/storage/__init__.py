"""
Persistence layer for the Xero integration engine.

Holds OAuth connections, pending authorization transactions, sync checkpoints
and sessions, the canonical ledger tables and the revenue-stream mappings.

All storage uses DuckDB for OLAP workloads.
"""

from functools import lru_cache

from xerosync.config import get_settings

from .base import PendingTransactionStore, StorageBackend, StorageError
from .duckdb_storage import DuckDBStorage


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation instance
    """
    settings = get_settings()
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "DuckDBStorage",
    "PendingTransactionStore",
    "StorageBackend",
    "StorageError",
    "get_storage",
]
