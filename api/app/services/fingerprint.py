"""Transaction fingerprints for duplicate lookup.

The exact fingerprint collides only for semantically identical records; the
fuzzy one tolerates provider-side drift such as "TESCO STORES 2716" vs "Tesco"
or a few pence of rounding.
"""
import hashlib
import re
from decimal import ROUND_HALF_UP, Decimal

from app.services.records import TransactionRecord

_CENT = Decimal("0.01")
_UNIT = Decimal("1")

_NON_LETTERS = re.compile(r"[^a-z\s]")
_WHITESPACE = re.compile(r"\s+")
# "store(s)" covers branch labels like "TESCO STORES 2716"
_CORPORATE_SUFFIXES = re.compile(r"\b(ltd|limited|plc|inc|llc|corp|co|stores?)\b")


def _digest(parts: list[str]) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def simplify_merchant_name(name: str) -> str:
    """Lowercase, drop digits and punctuation, collapse whitespace, drop corporate suffixes."""
    s = name.lower().strip()
    s = _NON_LETTERS.sub("", s)
    s = _WHITESPACE.sub(" ", s)
    s = _CORPORATE_SUFFIXES.sub("", s)
    return _WHITESPACE.sub(" ", s).strip()


def exact_fingerprint(tx: TransactionRecord) -> str:
    amount = abs(Decimal(tx.amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    merchant = (tx.merchant_name or "unknown").lower().strip()
    return _digest([str(amount), tx.date.isoformat(), merchant, tx.currency.upper()])


def fuzzy_fingerprint(tx: TransactionRecord) -> str:
    amount = abs(Decimal(tx.amount)).quantize(_UNIT, rounding=ROUND_HALF_UP)
    merchant = simplify_merchant_name(tx.merchant_name or "")
    return _digest([str(amount), tx.date.isoformat(), merchant])
