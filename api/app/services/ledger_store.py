"""
Persistence boundary for the sync engine.

The orchestrator only talks to ``LedgerStore``; ``SqlLedgerStore`` implements
it over the async SQLAlchemy session.  Write methods flush, and the caller
decides the transaction boundary with ``commit``/``rollback``, except for the
sync-log and connection-status writes, which must survive a failed sync and
therefore commit on their own.
"""
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.account import Account, AccountBalanceHistory, Transaction
from app.models.sync import DataSyncLog, TransactionProcessingMetadata
from app.services.fingerprint import exact_fingerprint
from app.services.reconciler import ReconcileResult
from app.services.records import (
    AccountRecord,
    ConnectionStatus,
    SyncLogRecord,
    SyncLogStatus,
    SyncType,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


class ProcessingStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FLAGGED = "flagged"


class LedgerStore(Protocol):
    async def get_account(self, account_id: str) -> AccountRecord | None: ...

    async def list_syncable_accounts(self) -> list[AccountRecord]: ...

    async def latest_transaction_dates(self, account_ids: list[str]) -> dict[str, date]: ...

    async def list_transactions(self, account_id: str, since: date | None = None) -> list[TransactionRecord]: ...

    async def save_reconciliation(
        self, account_id: str, result: ReconcileResult, sync_log_id: str | None = None
    ) -> int:
        """Insert canonical records and their processing metadata; returns rows inserted."""

    async def update_account_after_sync(
        self, account_id: str, balance: Decimal, currency: str, synced_at: datetime
    ) -> bool:
        """Set balance and last_synced_at; True when the balance changed."""

    async def mark_connection_expired(self, account_id: str) -> None: ...

    async def create_sync_log(self, account_id: str, sync_type: SyncType, started_at: datetime) -> SyncLogRecord: ...

    async def finish_sync_log(self, log: SyncLogRecord) -> None: ...

    async def list_sync_logs(
        self,
        account_id: str | None = None,
        user_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SyncLogRecord]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


StoreFactory = Callable[[], AbstractAsyncContextManager[LedgerStore]]


# ─── Row → record mapping ─────────────────────────────────────────────────────

def _account_record(row: Account) -> AccountRecord:
    return AccountRecord(
        id=str(row.id),
        owner_user_id=str(row.owner_user_id),
        account_type=row.type,
        current_balance=row.current_balance,
        currency=row.currency_code,
        connection_status=ConnectionStatus(row.connection_status),
        is_manual=row.is_manual,
        last_synced_at=row.last_synced_at,
        provider_account_id=row.provider_account_id,
        encrypted_access_token=row.encrypted_access_token,
    )


def _transaction_record(row: Transaction) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=str(row.id),
        account_id=str(row.account_id),
        amount=row.amount,
        currency=row.currency_code,
        date=row.date,
        external_id=row.external_transaction_id,
        merchant_name=row.merchant_name,
        description=row.description,
        category=row.category,
    )


def _sync_log_record(row: DataSyncLog) -> SyncLogRecord:
    return SyncLogRecord(
        id=str(row.id),
        account_id=str(row.account_id),
        sync_type=SyncType(row.sync_type),
        started_at=row.started_at,
        status=SyncLogStatus(row.status),
        completed_at=row.completed_at,
        transactions_processed=row.transactions_processed,
        duplicates_found=row.duplicates_found,
        errors=list(row.errors_encountered or []),
        error_kind=row.error_kind,
    )


# ─── SQL implementation ───────────────────────────────────────────────────────

class SqlLedgerStore:
    def __init__(self, session: AsyncSession):
        self.db = session

    async def get_account(self, account_id: str) -> AccountRecord | None:
        try:
            pk = uuid.UUID(str(account_id))
        except ValueError:
            return None
        row = await self.db.get(Account, pk)
        return _account_record(row) if row else None

    async def list_syncable_accounts(self) -> list[AccountRecord]:
        result = await self.db.execute(
            select(Account).where(
                Account.is_manual.is_(False),
                Account.connection_status == ConnectionStatus.ACTIVE.value,
            )
        )
        return [_account_record(a) for a in result.scalars().all()]

    async def latest_transaction_dates(self, account_ids: list[str]) -> dict[str, date]:
        if not account_ids:
            return {}
        result = await self.db.execute(
            select(Transaction.account_id, func.max(Transaction.date))
            .where(Transaction.account_id.in_([uuid.UUID(a) for a in account_ids]))
            .group_by(Transaction.account_id)
        )
        return {str(acc_id): latest for acc_id, latest in result.all() if latest is not None}

    async def list_transactions(self, account_id: str, since: date | None = None) -> list[TransactionRecord]:
        stmt = select(Transaction).where(Transaction.account_id == uuid.UUID(account_id))
        if since is not None:
            stmt = stmt.where(Transaction.date >= since)
        result = await self.db.execute(stmt.order_by(Transaction.date, Transaction.created_at))
        return [_transaction_record(t) for t in result.scalars().all()]

    async def _existing_by_external_id(self, account_id: uuid.UUID, external_ids: list[str]) -> dict[str, uuid.UUID]:
        if not external_ids:
            return {}
        result = await self.db.execute(
            select(Transaction.external_transaction_id, Transaction.id).where(
                Transaction.account_id == account_id,
                Transaction.external_transaction_id.in_(external_ids),
            )
        )
        return {ext: pk for ext, pk in result.all()}

    async def save_reconciliation(
        self, account_id: str, result: ReconcileResult, sync_log_id: str | None = None
    ) -> int:
        acc_pk = uuid.UUID(account_id)
        log_pk = uuid.UUID(sync_log_id) if sync_log_id else None

        # A provider id already stored, or inserted earlier in this batch, is a
        # re-delivery the fingerprints missed; one row per (account, provider id)
        by_external = await self._existing_by_external_id(
            acc_pk, [tx.external_id for tx in result.canonical if tx.external_id]
        )

        row_ids: dict[str, uuid.UUID] = {}
        redelivered: set[str] = set()
        inserted = 0
        for tx in result.canonical:
            if tx.external_id and tx.external_id in by_external:
                row_ids[tx.transaction_id] = by_external[tx.external_id]
                redelivered.add(tx.transaction_id)
                continue
            row = Transaction(
                id=uuid.uuid4(),
                account_id=acc_pk,
                external_transaction_id=tx.external_id,
                amount=tx.amount,
                currency_code=tx.currency,
                date=tx.date,
                merchant_name=tx.merchant_name,
                description=tx.description,
                category=tx.category,
            )
            self.db.add(row)
            row_ids[tx.transaction_id] = row.id
            if tx.external_id:
                by_external[tx.external_id] = row.id
            inserted += 1

        await self.db.flush()

        def survivor(ref: str) -> uuid.UUID | None:
            if ref in row_ids:
                return row_ids[ref]
            try:
                return uuid.UUID(ref)       # stored history rows are referenced by their id
            except ValueError:
                return None

        for tx in result.canonical:
            cluster = result.cluster_of(tx.transaction_id)
            flagged = cluster is not None and tx.transaction_id in result.resolutions[cluster.cluster_id].flag
            self.db.add(TransactionProcessingMetadata(
                transaction_id=row_ids[tx.transaction_id],
                external_transaction_id=tx.external_id,
                fingerprint=exact_fingerprint(tx),
                duplicate_cluster_id=cluster.cluster_id if cluster else None,
                processing_status=(
                    ProcessingStatus.DUPLICATE if tx.transaction_id in redelivered
                    else ProcessingStatus.FLAGGED if flagged
                    else ProcessingStatus.PROCESSED
                ).value,
                sync_log_id=log_pk,
            ))

        for cluster in result.duplicates:
            resolution = result.resolutions[cluster.cluster_id]
            if not resolution.keep:
                continue
            kept = survivor(resolution.keep[0])
            if kept is None:
                continue
            for member in cluster.members:
                if member.transaction_id not in resolution.remove:
                    continue
                self.db.add(TransactionProcessingMetadata(
                    transaction_id=kept,
                    external_transaction_id=member.record.external_id,
                    fingerprint=member.fingerprint,
                    duplicate_cluster_id=cluster.cluster_id,
                    processing_status=ProcessingStatus.DUPLICATE.value,
                    sync_log_id=log_pk,
                ))

        await self.db.flush()
        return inserted

    async def update_account_after_sync(
        self, account_id: str, balance: Decimal, currency: str, synced_at: datetime
    ) -> bool:
        account = await self.db.get(Account, uuid.UUID(account_id))
        if account is None:
            return False
        changed = account.current_balance != balance
        account.current_balance = balance
        account.last_synced_at = synced_at
        if changed:
            self.db.add(AccountBalanceHistory(
                account_id=account.id,
                balance=balance,
                currency_code=currency,
                recorded_at=synced_at,
            ))
        await self.db.flush()
        return changed

    async def mark_connection_expired(self, account_id: str) -> None:
        account = await self.db.get(Account, uuid.UUID(account_id))
        if account is None:
            return
        account.connection_status = ConnectionStatus.EXPIRED.value
        await self.db.commit()
        logger.warning("Account %s connection marked expired", account_id)

    async def create_sync_log(self, account_id: str, sync_type: SyncType, started_at: datetime) -> SyncLogRecord:
        row = DataSyncLog(
            id=uuid.uuid4(),
            account_id=uuid.UUID(account_id),
            sync_type=sync_type.value,
            status=SyncLogStatus.IN_PROGRESS.value,
            started_at=started_at,
            transactions_processed=0,
            duplicates_found=0,
            errors_encountered=[],
        )
        self.db.add(row)
        await self.db.commit()
        return _sync_log_record(row)

    async def finish_sync_log(self, log: SyncLogRecord) -> None:
        row = await self.db.get(DataSyncLog, uuid.UUID(log.id))
        if row is None:
            logger.error("Sync log %s vanished before it could be finalized", log.id)
            return
        if row.status != SyncLogStatus.IN_PROGRESS.value:
            # Finalized logs are append-only
            logger.warning("Sync log %s already finalized as %s", log.id, row.status)
            return
        row.status = log.status.value
        row.completed_at = log.completed_at
        row.transactions_processed = log.transactions_processed
        row.duplicates_found = log.duplicates_found
        row.errors_encountered = list(log.errors)
        row.error_kind = log.error_kind
        await self.db.commit()

    async def list_sync_logs(
        self,
        account_id: str | None = None,
        user_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SyncLogRecord]:
        stmt = select(DataSyncLog)
        if account_id is not None:
            stmt = stmt.where(DataSyncLog.account_id == uuid.UUID(account_id))
        if user_id is not None:
            stmt = stmt.join(Account, Account.id == DataSyncLog.account_id).where(
                Account.owner_user_id == uuid.UUID(user_id)
            )
        if since is not None:
            stmt = stmt.where(DataSyncLog.started_at >= since)
        result = await self.db.execute(stmt.order_by(DataSyncLog.started_at.desc()).limit(limit))
        return [_sync_log_record(r) for r in result.scalars().all()]

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()


def sql_store_factory(session_maker: async_sessionmaker[AsyncSession]) -> StoreFactory:
    """One session per sync so concurrent syncs never share a connection."""

    @asynccontextmanager
    async def _open() -> AsyncIterator[LedgerStore]:
        async with session_maker() as session:
            yield SqlLedgerStore(session)

    return _open
