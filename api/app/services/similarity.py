"""Weighted similarity between two transactions, in [0, 1]."""
from decimal import Decimal

from rapidfuzz.distance import Levenshtein

from app.services.records import TransactionRecord

AMOUNT_WEIGHT = 0.4
DATE_WEIGHT = 0.3
MERCHANT_WEIGHT = 0.2
DESCRIPTION_WEIGHT = 0.1

# (max days apart, score), checked in order
_DATE_STEPS: tuple[tuple[int, float], ...] = (
    (0, 1.0),
    (1, 0.9),
    (3, 0.7),
    (7, 0.5),
)


def amount_similarity(a: Decimal, b: Decimal) -> float:
    abs_a, abs_b = abs(float(a)), abs(float(b))
    avg = (abs_a + abs_b) / 2
    if avg == 0:
        return 1.0
    return 1.0 - min(abs(abs_a - abs_b) / avg, 1.0)


def date_similarity(tx1: TransactionRecord, tx2: TransactionRecord) -> float:
    diff_days = abs((tx1.date - tx2.date).days)
    for max_days, score in _DATE_STEPS:
        if diff_days <= max_days:
            return score
    return 0.0


def string_similarity(s1: str | None, s2: str | None) -> float:
    """Normalized Levenshtein similarity on lower-cased, trimmed strings."""
    a = (s1 or "").lower().strip()
    b = (s2 or "").lower().strip()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / max(len(a), len(b))


def similarity(tx1: TransactionRecord, tx2: TransactionRecord) -> float:
    score = (
        amount_similarity(tx1.amount, tx2.amount) * AMOUNT_WEIGHT
        + date_similarity(tx1, tx2) * DATE_WEIGHT
        + string_similarity(tx1.merchant_name, tx2.merchant_name) * MERCHANT_WEIGHT
        + string_similarity(tx1.description, tx2.description) * DESCRIPTION_WEIGHT
    )
    # Float addition can land a hair above 1.0 for identical records
    return min(score, 1.0)
