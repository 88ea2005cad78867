"""
End-to-end sync runs over in-memory fakes: store, provider, clock, admission.
"""
import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.core.errors import (
    ExpiredCredentialError,
    ProviderClientError,
    SyncErrorKind,
    TransientProviderError,
)
from app.services.admission import InMemoryAdmissionStore, RateLimitPolicy, SyncAdmissionController, SyncState
from app.services.orchestrator import SyncOptions, SyncOrchestrator
from app.services.reconciler import ResolutionStrategy
from app.services.records import ConnectionStatus, SyncLogStatus, SyncType
from conftest import make_tx, raw_tx


@pytest.fixture
def admission(clock):
    return SyncAdmissionController(InMemoryAdmissionStore(clock), clock=clock)


@pytest.fixture
def orchestrator(store, provider, admission, clock):
    return SyncOrchestrator(store.factory(), provider, admission, clock=clock)


def _distinct_batch(n: int) -> list[dict]:
    # different amounts, merchants and days so nothing clusters
    return [
        raw_tx(f"ext-{i}", amount=10 + i * 7, merchant=f"Merchant {chr(65 + i)}{'x' * i}",
               timestamp=f"2025-10-0{1 + i % 9}T09:00:00+00:00")
        for i in range(n)
    ]


class TestRunSync:
    def test_successful_sync(self, orchestrator, store, provider, admission, clock):
        account = store.add_account(last_synced_at=clock.now() - timedelta(days=1))
        provider.transactions = _distinct_batch(3)

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.success
        assert result.admitted
        assert result.transactions_processed == 3
        assert result.duplicates_found == 0
        assert result.balance_updated
        assert result.old_balance == Decimal("100.00")
        assert result.new_balance == Decimal("250.00")
        assert len(store.transactions) == 3
        assert store.accounts[account.id].last_synced_at == clock.now()
        assert store.balance_history == [(account.id, Decimal("250.00"))]

        log = store.logs[result.sync_log_id]
        assert log.status == SyncLogStatus.COMPLETED
        assert log.completed_at == clock.now()
        assert log.transactions_processed == 3
        assert asyncio.run(admission.state(account.id)) == SyncState.IDLE

    def test_one_invalid_record_of_ten(self, orchestrator, store, provider):
        account = store.add_account()
        batch = _distinct_batch(9)
        bad = raw_tx("bad-1")
        bad["amount"] = "not-a-number"
        provider.transactions = batch[:4] + [bad] + batch[4:]

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.success
        assert result.transactions_processed == 9
        assert len(store.transactions) == 9
        log = store.logs[result.sync_log_id]
        assert log.status == SyncLogStatus.COMPLETED
        assert len(log.errors) == 1
        assert "bad-1" in log.errors[0]

    def test_history_duplicates_not_stored_twice(self, orchestrator, store, provider):
        account = store.add_account()
        provider.transactions = _distinct_batch(2)

        asyncio.run(orchestrator.run_sync(account.id))
        second = asyncio.run(orchestrator.run_sync(account.id))

        assert second.success
        assert second.duplicates_found == 2
        assert len(store.transactions) == 2
        assert not second.balance_updated

    def test_fetch_window_uses_overlap(self, orchestrator, store, provider, clock):
        last = clock.now() - timedelta(days=2)
        account = store.add_account(last_synced_at=last)
        asyncio.run(orchestrator.run_sync(account.id))
        _, _, date_from, date_to = provider.calls[1]
        assert date_from == (last - timedelta(days=7)).date()
        assert date_to == clock.now().date()

    def test_first_sync_fetches_initial_window(self, orchestrator, store, provider, clock):
        account = store.add_account()
        asyncio.run(orchestrator.run_sync(account.id))
        assert provider.calls[1][2] == (clock.now() - timedelta(days=90)).date()

    def test_history_loaded_around_batch(self, orchestrator, store, provider):
        account = store.add_account()
        store.transactions.append(make_tx(ref="stored", account_id=account.id, amount="-12.50",
                                          on=date(2025, 10, 8), merchant="Tesco"))
        provider.transactions = [raw_tx("ext-1", amount=12.5)]

        result = asyncio.run(orchestrator.run_sync(account.id))
        assert result.duplicates_found == 1
        assert [t.transaction_id for t in store.transactions] == ["stored"]

    def test_redelivered_record_stored_once(self, orchestrator, store, provider):
        account = store.add_account()
        provider.transactions = [raw_tx("ext-1"), raw_tx("ext-1")]

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.success
        assert result.duplicates_found == 1
        assert [t.external_id for t in store.transactions] == ["ext-1"]

    def test_flagged_redelivery_stored_once(self, store, provider, admission, clock):
        orchestrator = SyncOrchestrator(
            store.factory(), provider, admission, clock=clock,
            options=SyncOptions(strategy=ResolutionStrategy.FLAG),
        )
        account = store.add_account()
        provider.transactions = [raw_tx("ext-1"), raw_tx("ext-1")]

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.success
        assert [t.external_id for t in store.transactions] == ["ext-1"]
        assert [m["status"] for m in store.metadata] == ["processed", "duplicate"]


class TestRejections:
    def test_unknown_account(self, orchestrator, store):
        result = asyncio.run(orchestrator.run_sync("missing"))
        assert not result.admitted
        assert result.error_kind == SyncErrorKind.NOT_FOUND
        assert store.logs == {}

    def test_manual_account(self, orchestrator, store, provider):
        account = store.add_account(is_manual=True)
        result = asyncio.run(orchestrator.run_sync(account.id))
        assert result.error_kind == SyncErrorKind.NOT_SYNCABLE
        assert provider.calls == []
        assert store.logs == {}

    def test_expired_account(self, orchestrator, store):
        account = store.add_account(connection_status=ConnectionStatus.EXPIRED)
        result = asyncio.run(orchestrator.run_sync(account.id))
        assert result.error_kind == SyncErrorKind.NOT_SYNCABLE

    def test_admission_denied_writes_no_log(self, store, provider, clock):
        admission = SyncAdmissionController(
            InMemoryAdmissionStore(clock), clock=clock,
            policy=RateLimitPolicy(max_syncs_per_hour=1, max_concurrent_syncs=3),
        )
        orchestrator = SyncOrchestrator(store.factory(), provider, admission, clock=clock)
        account = store.add_account()

        asyncio.run(orchestrator.run_sync(account.id))
        denied = asyncio.run(orchestrator.run_sync(account.id))

        assert not denied.admitted
        assert denied.error_kind == SyncErrorKind.ADMISSION_DENIED
        assert denied.retry_after == clock.now() + timedelta(hours=1)
        assert len(store.logs) == 1


class TestFailures:
    def test_transient_failure(self, orchestrator, store, provider, admission, clock):
        account = store.add_account()
        provider.error = TransientProviderError("Provider returned 503", 503)

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert not result.success
        assert result.error_kind == SyncErrorKind.TRANSIENT_PROVIDER
        assert result.retry_at == clock.now() + timedelta(minutes=30)
        assert store.accounts[account.id].connection_status == ConnectionStatus.ACTIVE
        log = store.logs[result.sync_log_id]
        assert log.status == SyncLogStatus.FAILED
        assert log.error_kind == "transient_provider"
        assert asyncio.run(admission.state(account.id)) == SyncState.IDLE

    def test_transient_retry_follows_account_tier(self, orchestrator, store, provider, clock):
        # synced an hour ago: low tier, so the retry waits a full day
        account = store.add_account(last_synced_at=clock.now() - timedelta(hours=1))
        provider.error = TransientProviderError("Provider returned 503", 503)

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.retry_at == clock.now() + timedelta(hours=24)

    def test_expired_credential(self, orchestrator, store, provider):
        account = store.add_account()
        provider.error = ExpiredCredentialError("Provider returned 401", 401)

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.error_kind == SyncErrorKind.EXPIRED_CREDENTIAL
        assert store.accounts[account.id].connection_status == ConnectionStatus.EXPIRED
        assert store.logs[result.sync_log_id].status == SyncLogStatus.FAILED
        assert result.retry_at is None

    def test_client_error(self, orchestrator, store, provider):
        account = store.add_account()
        provider.error = ProviderClientError("Provider returned 404", 404)
        result = asyncio.run(orchestrator.run_sync(account.id))
        assert result.error_kind == SyncErrorKind.PROVIDER_CLIENT
        assert store.accounts[account.id].last_synced_at is None

    def test_unexpected_error(self, orchestrator, store, provider, admission):
        account = store.add_account()
        provider.error = RuntimeError("boom")
        result = asyncio.run(orchestrator.run_sync(account.id))
        assert result.error_kind == SyncErrorKind.UNEXPECTED
        assert "boom" in result.errors[0]
        assert asyncio.run(admission.state(account.id)) == SyncState.IDLE

    def test_timeout_releases_slot(self, store, provider, admission, clock):
        orchestrator = SyncOrchestrator(
            store.factory(), provider, admission, clock=clock, options=SyncOptions(timeout_seconds=0.05)
        )
        account = store.add_account()
        provider.delay = 1.0

        result = asyncio.run(orchestrator.run_sync(account.id))

        assert result.error_kind == SyncErrorKind.TIMEOUT
        assert result.errors == ["Sync timed out after 0.05s"]
        assert store.logs[result.sync_log_id].status == SyncLogStatus.FAILED
        assert store.transactions == []
        assert asyncio.run(admission.state(account.id)) == SyncState.IDLE


class TestBatches:
    def test_run_many_caps_concurrency_per_user(self, orchestrator, store, provider):
        provider.delay = 0.01
        accounts = [store.add_account() for _ in range(4)]

        results = asyncio.run(orchestrator.run_many([a.id for a in accounts]))

        admitted = [r for r in results if r.admitted]
        denied = [r for r in results if not r.admitted]
        assert len(admitted) == 3
        assert len(denied) == 1
        assert "concurrent" in denied[0].errors[0]

    def test_sync_due_accounts(self, orchestrator, store, clock):
        due = store.add_account(owner_user_id="user-1")
        fresh = store.add_account(owner_user_id="user-2", last_synced_at=clock.now() - timedelta(hours=1))
        store.add_account(owner_user_id="user-3", is_manual=True)

        results = asyncio.run(orchestrator.sync_due_accounts())

        assert [r.account_id for r in results] == [due.id]
        assert results[0].success
        assert store.logs[results[0].sync_log_id].sync_type == SyncType.SCHEDULED
        assert fresh.id not in [r.account_id for r in results]
