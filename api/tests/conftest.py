"""
Shared fakes for the sync tests: a settable clock, an in-memory ledger
store, a recording SQL session, a scripted provider and a minimal async Redis
stand-in.
"""
import os

from cryptography.fernet import Fernet

# Settings are read at import time; give the app a usable key before any app module loads
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ADMISSION_BACKEND", "memory")
os.environ.setdefault("RATELIMIT_STORAGE_URI", "memory://")

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.services.provider import ProviderBalance
from app.services.reconciler import ReconcileResult
from app.services.records import (
    AccountRecord,
    ConnectionStatus,
    SyncLogRecord,
    SyncLogStatus,
    SyncType,
    TransactionRecord,
)

NOW = datetime(2025, 10, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


def make_tx(
    ref: str = "tx-1",
    amount: str | Decimal = "-50.00",
    on: date | str = date(2025, 10, 7),
    merchant: str | None = "Tesco",
    description: str | None = None,
    currency: str = "GBP",
    account_id: str = "acc-1",
    external_id: str | None = None,
    category: str = "Uncategorized",
) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=ref,
        account_id=account_id,
        amount=Decimal(amount),
        currency=currency,
        date=date.fromisoformat(on) if isinstance(on, str) else on,
        external_id=external_id,
        merchant_name=merchant,
        description=description,
        category=category,
    )


def raw_tx(
    external_id: str,
    amount: float = 12.5,
    timestamp: str = "2025-10-08T10:00:00+00:00",
    merchant: str | None = "Tesco",
    transaction_type: str = "DEBIT",
    currency: str = "GBP",
    **extra,
) -> dict:
    """One transaction in the provider's payload shape."""
    return {
        "transaction_id": external_id,
        "timestamp": timestamp,
        "amount": amount,
        "currency": currency,
        "transaction_type": transaction_type,
        "merchant_name": merchant,
        "description": f"CARD PAYMENT {external_id}",
        "transaction_category": "PURCHASE",
        **extra,
    }


# ─── Ledger store ─────────────────────────────────────────────────────────────

class FakeLedgerStore:
    def __init__(self):
        self.accounts: dict[str, AccountRecord] = {}
        self.transactions: list[TransactionRecord] = []
        self.metadata: list[dict] = []
        self.logs: dict[str, SyncLogRecord] = {}
        self.balance_history: list[tuple[str, Decimal]] = []
        self.commits = 0
        self.rollbacks = 0
        self._staged: list[TransactionRecord] = []

    def add_account(self, **kwargs) -> AccountRecord:
        defaults = dict(
            id=str(uuid.uuid4()),
            owner_user_id="user-1",
            account_type="checking",
            current_balance=Decimal("100.00"),
            currency="GBP",
            provider_account_id="prov-1",
            encrypted_access_token="token",
        )
        defaults.update(kwargs)
        account = AccountRecord(**defaults)
        self.accounts[account.id] = account
        return account

    async def get_account(self, account_id):
        return self.accounts.get(account_id)

    async def list_syncable_accounts(self):
        return [
            a for a in self.accounts.values()
            if not a.is_manual and a.connection_status == ConnectionStatus.ACTIVE
        ]

    async def latest_transaction_dates(self, account_ids):
        latest: dict[str, date] = {}
        for tx in self.transactions:
            if tx.account_id in account_ids:
                latest[tx.account_id] = max(latest.get(tx.account_id, tx.date), tx.date)
        return latest

    async def list_transactions(self, account_id, since=None):
        return [
            tx for tx in self.transactions
            if tx.account_id == account_id and (since is None or tx.date >= since)
        ]

    async def save_reconciliation(self, account_id, result: ReconcileResult, sync_log_id=None):
        seen = {tx.external_id for tx in self.transactions + self._staged if tx.external_id}
        inserted = 0
        for tx in result.canonical:
            if tx.external_id in seen:
                self.metadata.append({"ref": tx.transaction_id, "status": "duplicate", "log": sync_log_id})
                continue
            if tx.external_id:
                seen.add(tx.external_id)
            self._staged.append(tx)
            self.metadata.append({"ref": tx.transaction_id, "status": "processed", "log": sync_log_id})
            inserted += 1
        for cluster in result.duplicates:
            for ref in result.resolutions[cluster.cluster_id].remove:
                self.metadata.append({"ref": ref, "status": "duplicate", "cluster": cluster.cluster_id})
        return inserted

    async def update_account_after_sync(self, account_id, balance, currency, synced_at):
        account = self.accounts[account_id]
        changed = account.current_balance != balance
        account.current_balance = balance
        account.last_synced_at = synced_at
        if changed:
            self.balance_history.append((account_id, balance))
        return changed

    async def mark_connection_expired(self, account_id):
        self.accounts[account_id].connection_status = ConnectionStatus.EXPIRED

    async def create_sync_log(self, account_id, sync_type: SyncType, started_at):
        log = SyncLogRecord(id=str(uuid.uuid4()), account_id=account_id, sync_type=sync_type, started_at=started_at)
        self.logs[log.id] = SyncLogRecord(**vars(log))
        return log

    async def finish_sync_log(self, log: SyncLogRecord):
        stored = self.logs[log.id]
        assert stored.status == SyncLogStatus.IN_PROGRESS, "sync log finalized twice"
        self.logs[log.id] = SyncLogRecord(**{**vars(log), "errors": list(log.errors)})

    async def list_sync_logs(self, account_id=None, user_id=None, since=None, limit=100):
        logs = [
            log for log in self.logs.values()
            if (account_id is None or log.account_id == account_id)
            and (user_id is None or self.accounts[log.account_id].owner_user_id == user_id)
            and (since is None or log.started_at >= since)
        ]
        return sorted(logs, key=lambda log: log.started_at, reverse=True)[:limit]

    async def commit(self):
        self.transactions.extend(self._staged)
        self._staged = []
        self.commits += 1

    async def rollback(self):
        self._staged = []
        self.rollbacks += 1

    def factory(self):
        @asynccontextmanager
        async def _open():
            yield self

        return _open


# ─── SQL session ──────────────────────────────────────────────────────────────

class _Result:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return list(self._rows)

    def scalars(self):
        return self


class FakeSession:
    """Records what SqlLedgerStore asks of an AsyncSession; no database."""

    def __init__(self):
        self.rows: dict[tuple[type, uuid.UUID], object] = {}
        self.results: list[list] = []      # one entry per execute(), in order
        self.added: list = []
        self.calls: list[str] = []

    def put(self, row) -> None:
        self.rows[(type(row), row.id)] = row

    async def get(self, model, pk):
        return self.rows.get((model, pk))

    async def execute(self, stmt):
        self.calls.append("execute")
        return _Result(self.results.pop(0) if self.results else [])

    def add(self, row) -> None:
        self.calls.append("add")
        self.added.append(row)

    async def flush(self):
        self.calls.append("flush")

    async def commit(self):
        self.calls.append("commit")

    async def rollback(self):
        self.calls.append("rollback")

    def of_type(self, model) -> list:
        return [row for row in self.added if isinstance(row, model)]


# ─── Provider ─────────────────────────────────────────────────────────────────

class FakeProvider:
    def __init__(self, balance: str = "250.00", transactions: list[dict] | None = None):
        self.balance = ProviderBalance(current=Decimal(balance), currency="GBP")
        self.transactions = transactions or []
        self.error: Exception | None = None
        self.delay: float = 0.0
        self.calls: list[tuple] = []

    async def fetch_balance(self, account):
        self.calls.append(("balance", account.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.balance

    async def fetch_transactions(self, account, date_from=None, date_to=None):
        self.calls.append(("transactions", account.id, date_from, date_to))
        return list(self.transactions)


# ─── Redis ────────────────────────────────────────────────────────────────────

class FakeRedis:
    """Just the commands RedisAdmissionStore issues, with expiry driven by a clock."""

    def __init__(self, clock: FixedClock):
        self.clock = clock
        self.strings: dict[str, tuple[str, datetime | None]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.commands: list[tuple] = []

    def _live(self, key):
        entry = self.strings.get(key)
        if entry and entry[1] is not None and entry[1] <= self.clock.now():
            del self.strings[key]
            return None
        return entry

    async def get(self, key):
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key, value, nx=False, ex=None):
        self.commands.append(("set", key, value, nx, ex))
        if nx and self._live(key):
            return None
        expires = self.clock.now() + timedelta(seconds=ex) if ex else None
        self.strings[key] = (value, expires)
        return True

    async def delete(self, key):
        return 1 if self.strings.pop(key, None) else 0

    async def exists(self, key):
        return 1 if self._live(key) else 0

    async def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    async def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def expire(self, key, seconds):
        self.commands.append(("expire", key, seconds))

    async def zremrangebyscore(self, key, low, high):
        self.commands.append(("zremrangebyscore", key, low, high))
        z = self.zsets.get(key, {})
        for member in [m for m, score in z.items() if score <= high]:
            del z[member]

    async def zrange(self, key, start, end, withscores=False):
        rows = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return rows if withscores else [m for m, _ in rows]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> FakeLedgerStore:
    return FakeLedgerStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
