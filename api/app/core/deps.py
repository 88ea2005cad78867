from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import SessionLocal, get_db
from app.core.config import settings
from app.services.admission import SyncAdmissionController
from app.services.ledger_store import LedgerStore, SqlLedgerStore, sql_store_factory
from app.services.orchestrator import SyncOptions, SyncOrchestrator
from app.services.provider import ProviderClient, TrueLayerClient


def get_admission_controller(request: Request) -> SyncAdmissionController:
    """The process-wide controller built in the app lifespan."""
    return request.app.state.admission


def get_provider() -> ProviderClient:
    return TrueLayerClient.from_settings(settings)


def get_ledger_store(db: AsyncSession = Depends(get_db)) -> LedgerStore:
    return SqlLedgerStore(db)


def get_orchestrator(
    admission: SyncAdmissionController = Depends(get_admission_controller),
    provider: ProviderClient = Depends(get_provider),
) -> SyncOrchestrator:
    return SyncOrchestrator(
        sql_store_factory(SessionLocal),
        provider,
        admission,
        clock=admission.clock,
        options=SyncOptions.from_settings(settings),
    )
