import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings
from app.core.deps import get_admission_controller, get_ledger_store, get_orchestrator
from app.core.errors import SyncErrorKind
from app.schemas.sync import (
    CanSyncResponse,
    DueSyncResponse,
    SyncLogResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatisticsResponse,
)
from app.services.admission import SyncAdmissionController
from app.services.ledger_store import LedgerStore
from app.services.orchestrator import SyncOrchestrator, SyncResult
from app.services.records import ConnectionStatus, SyncType
from app.services.scheduler import summarize_sync_logs

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.ratelimit_storage_uri)

router = APIRouter(prefix="/sync", tags=["sync"])


def _retry_after_seconds(retry_after: datetime, now: datetime) -> int:
    return max(1, int((retry_after - now).total_seconds()))


@router.get("/accounts/{account_id}/can-sync", response_model=CanSyncResponse)
async def can_sync(
    account_id: uuid.UUID,
    store: LedgerStore = Depends(get_ledger_store),
    admission: SyncAdmissionController = Depends(get_admission_controller),
):
    account = await store.get_account(str(account_id))
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    if account.is_manual:
        return CanSyncResponse(account_id=account_id, allowed=False, reason="Manual accounts are not synced")
    if account.connection_status != ConnectionStatus.ACTIVE:
        return CanSyncResponse(account_id=account_id, allowed=False, reason="Provider connection expired")

    decision = await admission.can_sync(account.owner_user_id, account.id)
    return CanSyncResponse(
        account_id=account_id,
        allowed=decision.allowed,
        reason=decision.reason,
        retry_after=decision.retry_after,
    )


@router.post("/accounts/{account_id}", response_model=SyncResultResponse)
@limiter.limit(settings.manual_sync_rate_limit)
async def run_sync(
    request: Request,
    account_id: uuid.UUID,
    payload: SyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run one sync now and return its outcome."""
    sync_type = payload.sync_type if payload else SyncType.MANUAL
    result = await orchestrator.run_sync(str(account_id), sync_type)

    if result.error_kind == SyncErrorKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Account not found")
    if result.error_kind == SyncErrorKind.NOT_SYNCABLE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.errors[0])
    if result.error_kind == SyncErrorKind.ADMISSION_DENIED:
        headers = {}
        if result.retry_after is not None:
            headers["Retry-After"] = str(_retry_after_seconds(result.retry_after, orchestrator.clock.now()))
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": result.errors[0], "retry_after": result.retry_after.isoformat() if result.retry_after else None},
            headers=headers,
        )
    return _result_response(result)


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        account_id=uuid.UUID(result.account_id),
        success=result.success,
        admitted=result.admitted,
        balance_updated=result.balance_updated,
        old_balance=result.old_balance,
        new_balance=result.new_balance,
        transactions_processed=result.transactions_processed,
        duplicates_found=result.duplicates_found,
        errors=result.errors,
        error_kind=result.error_kind,
        retry_at=result.retry_at,
        sync_log_id=uuid.UUID(result.sync_log_id) if result.sync_log_id else None,
    )


@router.get("/accounts/{account_id}/logs", response_model=list[SyncLogResponse])
async def list_sync_logs(
    account_id: uuid.UUID,
    limit: int = 50,
    store: LedgerStore = Depends(get_ledger_store),
):
    account = await store.get_account(str(account_id))
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return await store.list_sync_logs(account_id=str(account_id), limit=min(limit, 500))


@router.get("/statistics", response_model=SyncStatisticsResponse)
async def sync_statistics(
    user_id: uuid.UUID | None = None,
    account_id: uuid.UUID | None = None,
    days: int = 30,
    store: LedgerStore = Depends(get_ledger_store),
    admission: SyncAdmissionController = Depends(get_admission_controller),
):
    since = admission.clock.now() - timedelta(days=days)
    logs = await store.list_sync_logs(
        account_id=str(account_id) if account_id else None,
        user_id=str(user_id) if user_id else None,
        since=since,
        limit=10_000,
    )
    stats = summarize_sync_logs(logs)
    return SyncStatisticsResponse(
        period_days=days,
        total_syncs=stats.total_syncs,
        successful_syncs=stats.successful_syncs,
        failed_syncs=stats.failed_syncs,
        total_transactions_processed=stats.total_transactions_processed,
        total_duplicates_found=stats.total_duplicates_found,
        average_sync_duration_seconds=stats.average_sync_duration_seconds,
    )


@router.post("/due", response_model=DueSyncResponse)
async def sync_due(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run every account the planner considers due, as the beat task does."""
    results = await orchestrator.sync_due_accounts()
    return DueSyncResponse(
        accounts_due=len(results),
        succeeded=sum(1 for r in results if r.success),
        results=[_result_response(r) for r in results],
    )
