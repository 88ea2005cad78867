"""
Sync priority planner.

Fixed-tier cadence rather than backoff: operators can read the worst-case
staleness of an account straight off its tier.

  HIGH    every 30 minutes  never synced, or fresh activity on stale data
  NORMAL  every 6 hours
  LOW     every 24 hours    synced within the last 12 hours
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from app.services.records import AccountRecord, ConnectionStatus, SyncLogRecord, SyncLogStatus


class SyncPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class ConflictResolution(str, Enum):
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"


SYNC_INTERVALS: dict[SyncPriority, timedelta] = {
    SyncPriority.HIGH:   timedelta(minutes=30),
    SyncPriority.NORMAL: timedelta(hours=6),
    SyncPriority.LOW:    timedelta(hours=24),
}

_PRIORITY_ORDER = {SyncPriority.HIGH: 0, SyncPriority.NORMAL: 1, SyncPriority.LOW: 2}

RECENT_ACTIVITY = timedelta(days=3)
STALE_AFTER = timedelta(days=7)
RECENTLY_SYNCED = timedelta(hours=12)


@dataclass
class SyncSchedule:
    account_id: str
    priority: SyncPriority
    last_synced_at: datetime | None
    next_sync_at: datetime
    sync_interval_minutes: int


@dataclass
class SyncStatistics:
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_transactions_processed: int = 0
    total_duplicates_found: int = 0
    average_sync_duration_seconds: int = 0


def determine_priority(
    most_recent_transaction_date: date | None,
    last_synced_at: datetime | None,
    now: datetime,
) -> SyncPriority:
    if last_synced_at is None:
        return SyncPriority.HIGH

    if most_recent_transaction_date is not None:
        fresh_activity = now.date() - most_recent_transaction_date <= RECENT_ACTIVITY
        if fresh_activity and now - last_synced_at > STALE_AFTER:
            return SyncPriority.HIGH

    if now - last_synced_at < RECENTLY_SYNCED:
        return SyncPriority.LOW

    return SyncPriority.NORMAL


def next_sync_time(priority: SyncPriority, now: datetime) -> datetime:
    return now + SYNC_INTERVALS[priority]


def resolve_conflict(local_ts: datetime, remote_ts: datetime) -> ConflictResolution:
    """Newest wins; equal timestamps are left to the reconciler."""
    if remote_ts > local_ts:
        return ConflictResolution.USE_REMOTE
    if local_ts > remote_ts:
        return ConflictResolution.USE_LOCAL
    return ConflictResolution.MERGE


def is_schedulable(account: AccountRecord) -> bool:
    return not account.is_manual and account.connection_status == ConnectionStatus.ACTIVE


def plan_syncs(
    accounts: list[AccountRecord],
    latest_transaction_dates: dict[str, date],
    now: datetime,
) -> list[SyncSchedule]:
    """One schedule per automatically syncable account; next_sync_at counts from the last sync."""
    schedules: list[SyncSchedule] = []
    for account in accounts:
        if not is_schedulable(account):
            continue
        priority = determine_priority(
            latest_transaction_dates.get(account.id), account.last_synced_at, now
        )
        base = account.last_synced_at or now
        interval = SYNC_INTERVALS[priority]
        schedules.append(SyncSchedule(
            account_id=account.id,
            priority=priority,
            last_synced_at=account.last_synced_at,
            next_sync_at=next_sync_time(priority, base),
            sync_interval_minutes=int(interval.total_seconds() // 60),
        ))
    return schedules


def due_accounts(
    accounts: list[AccountRecord],
    latest_transaction_dates: dict[str, date],
    now: datetime,
) -> list[SyncSchedule]:
    """Schedules that are due now, HIGH first, then most overdue first."""
    due = [
        s for s in plan_syncs(accounts, latest_transaction_dates, now)
        # Never-synced accounts are due immediately
        if s.last_synced_at is None or s.next_sync_at <= now
    ]
    due.sort(key=lambda s: (_PRIORITY_ORDER[s.priority], s.next_sync_at))
    return due


def summarize_sync_logs(logs: list[SyncLogRecord]) -> SyncStatistics:
    if not logs:
        return SyncStatistics()

    durations = [
        (log.completed_at - log.started_at).total_seconds()
        for log in logs
        if log.completed_at is not None
    ]
    avg = sum(durations) / len(durations) if durations else 0
    return SyncStatistics(
        total_syncs=len(logs),
        successful_syncs=sum(1 for log in logs if log.status == SyncLogStatus.COMPLETED),
        failed_syncs=sum(1 for log in logs if log.status == SyncLogStatus.FAILED),
        total_transactions_processed=sum(log.transactions_processed for log in logs),
        total_duplicates_found=sum(log.duplicates_found for log in logs),
        average_sync_duration_seconds=round(avg),
    )
