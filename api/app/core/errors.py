"""
Error taxonomy for account syncs.

Every failure a sync can end with is one ``SyncErrorKind``.  Exceptions raised
by the provider client and the ingestion normalizer carry their kind so the
orchestrator can record it without inspecting messages.
"""
from enum import Enum


class SyncErrorKind(str, Enum):
    TRANSIENT_PROVIDER = "transient_provider"   # 5xx, 429, network
    EXPIRED_CREDENTIAL = "expired_credential"   # 401
    PROVIDER_CLIENT = "provider_client"         # other 4xx
    VALIDATION = "validation"                   # one malformed record
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    NOT_SYNCABLE = "not_syncable"               # manual or expired account
    ADMISSION_DENIED = "admission_denied"
    UNEXPECTED = "unexpected"


class SyncError(Exception):
    kind: SyncErrorKind = SyncErrorKind.UNEXPECTED


# ─── Provider errors ──────────────────────────────────────────────────────────

class ProviderError(SyncError):
    """Raised by the provider client; ``status_code`` is None for transport failures."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    kind = SyncErrorKind.TRANSIENT_PROVIDER

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class ExpiredCredentialError(ProviderError):
    kind = SyncErrorKind.EXPIRED_CREDENTIAL


class ProviderClientError(ProviderError):
    kind = SyncErrorKind.PROVIDER_CLIENT


def provider_error_for_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status from the provider to the matching error class."""
    if status_code == 401:
        return ExpiredCredentialError(message, status_code)
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, status_code)
    return ProviderClientError(message, status_code)


# ─── Record errors ────────────────────────────────────────────────────────────

class RecordValidationError(SyncError):
    """A single ingested record is malformed; the rest of the batch continues."""

    kind = SyncErrorKind.VALIDATION

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id
