from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from app.schemas.sync import ClusterOut, ReconcileRequest, ReconcileResponse, TransactionIn
from app.services.reconciler import reconcile_batch
from app.services.records import TransactionRecord

router = APIRouter(prefix="/reconcile", tags=["reconcile"])

# All-pairs clustering; larger batches belong in a sync, not a request
MAX_BATCH = 1000


def _record(tx: TransactionIn) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=tx.transaction_id,
        account_id=tx.account_id,
        amount=tx.amount,
        currency=tx.currency.upper(),
        date=tx.date,
        external_id=tx.external_id,
        merchant_name=tx.merchant_name,
        description=tx.description,
        category=tx.category,
    )


@router.post("", response_model=ReconcileResponse)
async def reconcile(payload: ReconcileRequest):
    """Dry-run deduplication of a batch; nothing is stored."""
    if len(payload.new_transactions) + len(payload.existing_transactions) > MAX_BATCH:
        raise HTTPException(status_code=413, detail=f"At most {MAX_BATCH} transactions per request")

    result = reconcile_batch(
        [_record(t) for t in payload.new_transactions],
        [_record(t) for t in payload.existing_transactions],
        payload.strategy,
    )
    clusters = []
    for cluster in result.duplicates:
        resolution = result.resolutions[cluster.cluster_id]
        clusters.append(ClusterOut(
            cluster_id=cluster.cluster_id,
            transaction_ids=cluster.transaction_ids,
            confidence=cluster.confidence,
            keep=resolution.keep,
            remove=resolution.remove,
            flag=resolution.flag,
        ))
    return ReconcileResponse(
        canonical=[TransactionIn(**asdict(tx)) for tx in result.canonical],
        duplicates=clusters,
        duplicates_found=result.duplicates_found,
    )
