"""Celery entry points for account syncs: the beat-driven due loop and on-demand runs."""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.services.admission import (
    AdmissionStore,
    InMemoryAdmissionStore,
    RateLimitPolicy,
    RedisAdmissionStore,
    SyncAdmissionController,
)
from app.services.ledger_store import sql_store_factory
from app.services.orchestrator import SyncOptions, SyncOrchestrator, SyncResult
from app.services.provider import TrueLayerClient
from app.services.records import SyncType
from app.worker import celery_app

logger = logging.getLogger(__name__)

# Survives across task runs in this worker process; loop-bound clients do not
_memory_store = InMemoryAdmissionStore()


async def _with_orchestrator(run):
    """Build engine, Redis client and orchestrator on the current event loop, then dispose them."""
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    redis_client = None
    if settings.admission_backend == "redis":
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        store: AdmissionStore = RedisAdmissionStore(redis_client)
    else:
        store = _memory_store

    admission = SyncAdmissionController(
        store,
        policy=RateLimitPolicy.from_settings(settings),
        slot_ttl_seconds=settings.sync_slot_ttl_seconds,
    )
    orchestrator = SyncOrchestrator(
        sql_store_factory(session_maker),
        TrueLayerClient.from_settings(settings),
        admission,
        options=SyncOptions.from_settings(settings),
    )
    try:
        return await run(orchestrator)
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()


def _schedule_retries(results: list[SyncResult]) -> None:
    for r in results:
        if r.retry_at is not None:
            sync_account.apply_async(args=[r.account_id, SyncType.RETRY.value], eta=r.retry_at)
            logger.info("Retry for account %s scheduled at %s", r.account_id, r.retry_at.isoformat())


@celery_app.task(name="app.services.sync.sync_due_accounts")
def sync_due_accounts() -> dict:
    """Celery beat task: sync every account the planner considers due."""
    results = asyncio.run(_with_orchestrator(lambda o: o.sync_due_accounts()))
    _schedule_retries(results)
    summary = {
        "due": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if r.admitted and not r.success),
        "not_admitted": sum(1 for r in results if not r.admitted),
    }
    logger.info("Due-account sync: %s", summary)
    return summary


@celery_app.task(name="app.services.sync.sync_account")
def sync_account(account_id: str, sync_type: str = SyncType.MANUAL.value) -> dict:
    """Sync a single account; queued on demand or as a retry after a transient failure."""
    result = asyncio.run(_with_orchestrator(lambda o: o.run_sync(account_id, SyncType(sync_type))))
    _schedule_retries([result])
    return {
        "account_id": account_id,
        "success": result.success,
        "transactions_processed": result.transactions_processed,
        "duplicates_found": result.duplicates_found,
        "error_kind": result.error_kind.value if result.error_kind else None,
    }
