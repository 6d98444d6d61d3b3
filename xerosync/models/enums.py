"""
Enumeration types for the Xero integration engine.

All enums inherit from str to ensure JSON serialization compatibility.
"""

from enum import Enum


class EntityType(str, Enum):
    """
    Xero entity types synchronised into the local store.

    Declaration order is the sync order: referenced entities come before the
    entities that reference them.
    """

    ACCOUNTS = "accounts"
    CONTACTS = "contacts"
    ITEMS = "items"
    INVOICES = "invoices"
    BILLS = "bills"
    PAYMENTS = "payments"
    CREDIT_NOTES = "credit_notes"
    BANK_TRANSACTIONS = "bank_transactions"
    MANUAL_JOURNALS = "manual_journals"


class SyncStatus(str, Enum):
    """Checkpoint status for one (tenant, entity type)."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """
    Lifecycle of one orchestration run.

    PARTIAL means at least one entity failed or was skipped. FAILED is reserved
    for sessions that never reached the entity loop (no valid access token).
    """

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class TriggerKind(str, Enum):
    """What started a sync session."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RuntimeMode(str, Enum):
    """Deployment phase the process runs in."""

    SERVE = "serve"
    BUILD = "build"


class UserRole(str, Enum):
    """Application user roles carried in the JWT ``role`` claim."""

    OWNER = "owner"
    FINANCE = "finance"
    OPERATIONS = "operations"
    SALES = "sales"
    MARKETING = "marketing"


ELEVATED_ROLES = frozenset({UserRole.OWNER, UserRole.FINANCE})


class InvoiceType(str, Enum):
    """Xero invoice type: sales invoice or supplier bill."""

    ACCREC = "ACCREC"
    ACCPAY = "ACCPAY"


class LedgerSide(str, Enum):
    """Receivables or payables."""

    RECEIVABLES = "receivables"
    PAYABLES = "payables"


class RevenueStream(str, Enum):
    """Business revenue streams used for reporting."""

    TOURS = "tours"
    DR_DISH = "dr-dish"
    MARKETING = "marketing"
    OTHER = "other"


class ComparisonPeriod(str, Enum):
    """Period granularity for current vs prior comparisons."""

    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
