"""Xero token lifecycle, incremental ledger sync and financial reporting."""

__version__ = "0.1.0"
