"""
Normalize raw provider transactions into ``TransactionRecord``s.

One malformed record raises ``RecordValidationError``; callers drop it and
keep going with the rest of the batch.
"""
import math
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, field_validator

from app.core.errors import RecordValidationError
from app.services.records import UNCATEGORIZED, TransactionRecord

_CENT = Decimal("0.01")


class ProviderTransaction(BaseModel):
    """Shape of one transaction in the provider's /transactions payload."""
    transaction_id: str | None = None
    timestamp: datetime
    amount: float
    currency: str
    transaction_type: Literal["DEBIT", "CREDIT"]
    description: str | None = None
    merchant_name: str | None = None
    transaction_category: str | None = None

    model_config = {"extra": "ignore"}

    @field_validator("amount")
    @classmethod
    def _finite_amount(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("amount must be a finite number")
        return v

    @field_validator("currency")
    @classmethod
    def _iso_currency(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"invalid currency code {v!r}")
        return v.upper()


def normalize_amount(amount: float | Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)


def normalize_category(raw: str | None) -> str:
    """PURCHASE_GROCERIES → "Purchase Groceries"; missing or UNCATEGORIZED → sentinel."""
    if not raw or raw.upper() == "UNCATEGORIZED":
        return UNCATEGORIZED
    return " ".join(word.capitalize() for word in raw.split("_") if word)


def normalize_transaction(raw: dict[str, Any], account_id: str) -> TransactionRecord:
    external_id = raw.get("transaction_id") if isinstance(raw, dict) else None
    try:
        parsed = ProviderTransaction.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
            for err in exc.errors()
        )
        raise RecordValidationError(
            f"Invalid transaction {external_id or '<no id>'}: {problems}", external_id
        ) from exc

    amount = normalize_amount(abs(parsed.amount))
    if parsed.transaction_type == "DEBIT":
        amount = -amount

    return TransactionRecord(
        # Batch-local reference; the provider may deliver one id more than once
        transaction_id=f"new:{uuid.uuid4()}",
        account_id=account_id,
        amount=amount,
        currency=parsed.currency,
        date=parsed.timestamp.date(),
        external_id=parsed.transaction_id,
        merchant_name=(parsed.merchant_name or "").strip() or None,
        description=(parsed.description or "").strip() or None,
        category=normalize_category(parsed.transaction_category),
    )
