"""
Plain in-memory records passed between the sync services.

These are decoupled from the ORM so the reconciler and scheduler stay pure
and can be tested without a database.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

UNCATEGORIZED = "Uncategorized"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RETRY = "retry"


class SyncLogStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionRecord:
    transaction_id: str               # stored row id, or a reference for a new record
    account_id: str
    amount: Decimal                   # negative = outflow, positive = inflow
    currency: str
    date: date
    external_id: str | None = None
    merchant_name: str | None = None
    description: str | None = None
    category: str = UNCATEGORIZED


@dataclass
class AccountRecord:
    id: str
    owner_user_id: str
    account_type: str                 # checking | savings | credit | investment
    current_balance: Decimal
    currency: str
    connection_status: ConnectionStatus = ConnectionStatus.ACTIVE
    is_manual: bool = False
    last_synced_at: datetime | None = None
    provider_account_id: str | None = None
    encrypted_access_token: str | None = None


@dataclass
class SyncLogRecord:
    id: str
    account_id: str
    sync_type: SyncType
    started_at: datetime
    status: SyncLogStatus = SyncLogStatus.IN_PROGRESS
    completed_at: datetime | None = None
    transactions_processed: int = 0
    duplicates_found: int = 0
    errors: list[str] = field(default_factory=list)
    error_kind: str | None = None
