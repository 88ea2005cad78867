"""
Sync orchestrator: one account sync from admission to sync log.

  admit → create log → fetch balance + transactions → normalize
        → reconcile against stored history → persist → finalize log → release

Per-record validation failures are collected and the batch continues.  Any
other failure aborts this account only; it is recorded on the sync log and the
admission slot is always released.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from app.core.clock import Clock, SystemClock
from app.core.config import Settings
from app.core.errors import (
    ExpiredCredentialError,
    ProviderClientError,
    RecordValidationError,
    SyncErrorKind,
    TransientProviderError,
)
from app.services.admission import AdmissionDecision, SyncAdmissionController, SyncState
from app.services.ingest import normalize_transaction
from app.services.ledger_store import LedgerStore, StoreFactory
from app.services.provider import ProviderClient
from app.services.reconciler import ResolutionStrategy, reconcile_batch
from app.services.records import AccountRecord, ConnectionStatus, SyncLogRecord, SyncLogStatus, SyncType
from app.services.scheduler import SyncSchedule, determine_priority, due_accounts, next_sync_time

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    account_id: str
    success: bool = False
    admitted: bool = True
    balance_updated: bool = False
    old_balance: Decimal | None = None
    new_balance: Decimal | None = None
    transactions_processed: int = 0
    duplicates_found: int = 0
    errors: list[str] = field(default_factory=list)
    error_kind: SyncErrorKind | None = None
    retry_after: datetime | None = None     # admission denial: when a retry may be admitted
    retry_at: datetime | None = None        # transient failure: next scheduled attempt
    sync_log_id: str | None = None


@dataclass
class SyncOptions:
    timeout_seconds: float = 120.0
    overlap_days: int = 7
    initial_sync_days: int = 90
    history_window_days: int = 7
    batch_warn_size: int = 300
    strategy: ResolutionStrategy = ResolutionStrategy.MERGE

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncOptions":
        return cls(
            timeout_seconds=s.sync_timeout_seconds,
            overlap_days=s.sync_overlap_days,
            initial_sync_days=s.initial_sync_days,
            history_window_days=s.history_window_days,
            batch_warn_size=s.reconcile_batch_warn_size,
            strategy=ResolutionStrategy(s.default_resolution_strategy),
        )


class SyncOrchestrator:
    def __init__(
        self,
        store_factory: StoreFactory,
        provider: ProviderClient,
        admission: SyncAdmissionController,
        clock: Clock | None = None,
        options: SyncOptions | None = None,
    ):
        self.store_factory = store_factory
        self.provider = provider
        self.admission = admission
        self.clock = clock or SystemClock()
        self.options = options or SyncOptions()

    # ─── Admission queries ────────────────────────────────────────────────────

    async def can_sync(self, user_id: str, account_id: str) -> AdmissionDecision:
        return await self.admission.can_sync(user_id, account_id)

    # ─── Single sync ──────────────────────────────────────────────────────────

    async def run_sync(self, account_id: str, sync_type: SyncType = SyncType.MANUAL) -> SyncResult:
        result = SyncResult(account_id=account_id)

        async with self.store_factory() as store:
            account = await store.get_account(account_id)
            if account is None:
                result.admitted = False
                result.error_kind = SyncErrorKind.NOT_FOUND
                result.errors.append(f"Account {account_id} not found")
                return result
            if account.is_manual or account.connection_status != ConnectionStatus.ACTIVE:
                result.admitted = False
                result.error_kind = SyncErrorKind.NOT_SYNCABLE
                reason = "manual account" if account.is_manual else "provider connection expired"
                result.errors.append(f"Account {account_id} cannot be synced: {reason}")
                return result

            decision = await self.admission.admit(account.owner_user_id, account_id)
            if not decision.allowed:
                logger.info("Sync for account %s not admitted: %s", account_id, decision.reason)
                result.admitted = False
                result.error_kind = SyncErrorKind.ADMISSION_DENIED
                result.errors.append(decision.reason or "Sync not admitted")
                result.retry_after = decision.retry_after
                return result

            outcome = SyncState.FAILED
            try:
                log = await store.create_sync_log(account_id, sync_type, self.clock.now())
                result.sync_log_id = log.id
                result.old_balance = account.current_balance
                logger.info("Starting %s sync for account %s", sync_type.value, account_id)

                await self._run_guarded(store, account, log, result)
                if result.success:
                    outcome = SyncState.COMPLETED
            finally:
                await self.admission.complete_sync(account_id, outcome)

        return result

    async def _run_guarded(
        self, store: LedgerStore, account: AccountRecord, log: SyncLogRecord, result: SyncResult
    ) -> None:
        try:
            await asyncio.wait_for(
                self._sync(store, account, log, result), timeout=self.options.timeout_seconds
            )
        except asyncio.TimeoutError:
            self._fail(result, SyncErrorKind.TIMEOUT, f"Sync timed out after {self.options.timeout_seconds:g}s")
            logger.error("Sync for account %s timed out", account.id)
        except TransientProviderError as e:
            self._fail(result, e.kind, str(e))
            # retry on the account's own schedule tier
            latest = (await store.latest_transaction_dates([account.id])).get(account.id)
            now = self.clock.now()
            result.retry_at = next_sync_time(determine_priority(latest, account.last_synced_at, now), now)
            logger.warning("Transient provider failure for account %s: %s", account.id, e)
        except ExpiredCredentialError as e:
            self._fail(result, e.kind, str(e))
            await store.rollback()
            await store.mark_connection_expired(account.id)
        except ProviderClientError as e:
            self._fail(result, e.kind, str(e))
            logger.error("Provider rejected request for account %s: %s", account.id, e)
        except Exception as e:
            self._fail(result, SyncErrorKind.UNEXPECTED, f"Unexpected error: {e}")
            logger.exception("Sync failed for account %s", account.id)

        if not result.success:
            await store.rollback()

        log.completed_at = self.clock.now()
        log.status = SyncLogStatus.COMPLETED if result.success else SyncLogStatus.FAILED
        log.transactions_processed = result.transactions_processed
        log.duplicates_found = result.duplicates_found
        log.errors = list(result.errors)
        log.error_kind = result.error_kind.value if result.error_kind else None
        await store.finish_sync_log(log)

    @staticmethod
    def _fail(result: SyncResult, kind: SyncErrorKind, message: str) -> None:
        result.success = False
        result.error_kind = kind
        result.errors.append(message)

    async def _sync(
        self, store: LedgerStore, account: AccountRecord, log: SyncLogRecord, result: SyncResult
    ) -> None:
        now = self.clock.now()
        balance = await self.provider.fetch_balance(account)

        if account.last_synced_at is not None:
            date_from = (account.last_synced_at - timedelta(days=self.options.overlap_days)).date()
        else:
            date_from = (now - timedelta(days=self.options.initial_sync_days)).date()
        raw_transactions = await self.provider.fetch_transactions(account, date_from, now.date())

        records = []
        for raw in raw_transactions:
            try:
                records.append(normalize_transaction(raw, account.id))
            except RecordValidationError as e:
                logger.warning("Dropping record for account %s: %s", account.id, e)
                result.errors.append(str(e))
        result.transactions_processed = len(records)

        if records:
            since = min(r.date for r in records) - timedelta(days=self.options.history_window_days)
            history = await store.list_transactions(account.id, since=since)
        else:
            history = []

        if len(records) + len(history) > self.options.batch_warn_size:
            logger.warning(
                "Reconciling %d new against %d stored records for account %s",
                len(records), len(history), account.id,
            )

        reconciled = reconcile_batch(records, history, self.options.strategy)
        result.duplicates_found = reconciled.duplicates_found

        await store.save_reconciliation(account.id, reconciled, sync_log_id=log.id)
        result.balance_updated = await store.update_account_after_sync(
            account.id, balance.current, balance.currency, now
        )
        await store.commit()

        result.new_balance = balance.current
        result.success = True
        logger.info(
            "Synced account %s: %d processed, %d duplicates, %d new",
            account.id, result.transactions_processed, result.duplicates_found, len(reconciled.canonical),
        )

    # ─── Batches ──────────────────────────────────────────────────────────────

    async def run_many(self, account_ids: list[str], sync_type: SyncType = SyncType.SCHEDULED) -> list[SyncResult]:
        """Run syncs concurrently; admission caps how many run per user."""
        return list(await asyncio.gather(*(self.run_sync(a, sync_type) for a in account_ids)))

    async def plan_due(self) -> list[SyncSchedule]:
        async with self.store_factory() as store:
            accounts = await store.list_syncable_accounts()
            latest = await store.latest_transaction_dates([a.id for a in accounts])
        return due_accounts(accounts, latest, self.clock.now())

    async def sync_due_accounts(self) -> list[SyncResult]:
        due = await self.plan_due()
        if not due:
            logger.debug("No accounts due for sync")
            return []
        logger.info("%d accounts due for sync", len(due))
        results = await self.run_many([s.account_id for s in due], SyncType.SCHEDULED)
        ok = sum(1 for r in results if r.success)
        logger.info("Scheduled sync finished: %d/%d succeeded", ok, len(results))
        return results
