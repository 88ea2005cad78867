import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from app.core.errors import SyncErrorKind
from app.services.reconciler import ClusterConfidence, ResolutionStrategy
from app.services.records import SyncLogStatus, SyncType


class CanSyncResponse(BaseModel):
    account_id: uuid.UUID
    allowed: bool
    reason: str | None = None
    retry_after: datetime | None = None


class SyncRequest(BaseModel):
    sync_type: SyncType = SyncType.MANUAL


class SyncResultResponse(BaseModel):
    account_id: uuid.UUID
    success: bool
    admitted: bool
    balance_updated: bool
    old_balance: Decimal | None
    new_balance: Decimal | None
    transactions_processed: int
    duplicates_found: int
    errors: list[str]
    error_kind: SyncErrorKind | None
    retry_at: datetime | None
    sync_log_id: uuid.UUID | None

    model_config = {"from_attributes": True}


class SyncLogResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    sync_type: SyncType
    status: SyncLogStatus
    started_at: datetime
    completed_at: datetime | None
    transactions_processed: int
    duplicates_found: int
    errors: list[str]
    error_kind: str | None

    model_config = {"from_attributes": True}


class SyncStatisticsResponse(BaseModel):
    period_days: int
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    total_transactions_processed: int
    total_duplicates_found: int
    average_sync_duration_seconds: int


class DueSyncResponse(BaseModel):
    accounts_due: int
    succeeded: int
    results: list[SyncResultResponse]


# ─── Reconcile ────────────────────────────────────────────────────────────────

class TransactionIn(BaseModel):
    transaction_id: str
    account_id: str
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    date: date
    external_id: str | None = None
    merchant_name: str | None = None
    description: str | None = None
    category: str = "Uncategorized"


class ReconcileRequest(BaseModel):
    new_transactions: list[TransactionIn]
    existing_transactions: list[TransactionIn] = []
    strategy: ResolutionStrategy = ResolutionStrategy.MERGE


class ClusterOut(BaseModel):
    cluster_id: str
    transaction_ids: list[str]
    confidence: ClusterConfidence
    keep: list[str]
    remove: list[str]
    flag: list[str]


class ReconcileResponse(BaseModel):
    canonical: list[TransactionIn]
    duplicates: list[ClusterOut]
    duplicates_found: int
