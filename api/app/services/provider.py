"""
Client for the account-aggregation provider (TrueLayer Data API shape).

Every failure surfaces as one of the typed errors in ``app.core.errors``:
401 → ExpiredCredentialError, 429/5xx/network → TransientProviderError,
any other 4xx → ProviderClientError.
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from cryptography.fernet import InvalidToken

from app.core.config import Settings
from app.core.errors import ProviderClientError, TransientProviderError, provider_error_for_status
from app.core.security import decrypt_value
from app.services.records import AccountRecord

logger = logging.getLogger(__name__)


@dataclass
class ProviderBalance:
    current: Decimal
    currency: str


class ProviderClient(Protocol):
    async def fetch_balance(self, account: AccountRecord) -> ProviderBalance: ...

    async def fetch_transactions(
        self,
        account: AccountRecord,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]: ...


class TrueLayerClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, s: Settings) -> "TrueLayerClient":
        return cls(s.provider_base_url, timeout=s.provider_timeout_seconds)

    def _headers(self, account: AccountRecord) -> dict[str, str]:
        if not account.encrypted_access_token:
            raise ProviderClientError(f"Account {account.id} has no stored access token")
        try:
            token = decrypt_value(account.encrypted_access_token)
        except InvalidToken as e:
            raise ProviderClientError(f"Stored access token for account {account.id} cannot be decrypted") from e
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _get(self, account: AccountRecord, path: str, params: dict[str, str] | None = None) -> list[dict]:
        if not account.provider_account_id:
            raise ProviderClientError(f"Account {account.id} is not linked to the provider")
        url = f"{self.base_url}/data/v1/accounts/{account.provider_account_id}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, headers=self._headers(account), params=params)
        except httpx.TransportError as e:
            logger.warning("Provider request %s failed: %s", path, e)
            raise TransientProviderError(f"Provider unreachable: {e}") from e

        if resp.status_code >= 400:
            detail = resp.text[:200]
            logger.warning("Provider %s returned %d: %s", path, resp.status_code, detail)
            raise provider_error_for_status(
                resp.status_code, f"Provider returned {resp.status_code} for {path}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise TransientProviderError(f"Provider returned malformed JSON for {path}") from e
        return body.get("results", [])

    async def fetch_balance(self, account: AccountRecord) -> ProviderBalance:
        results = await self._get(account, "/balance")
        if not results:
            raise ProviderClientError(f"No balance returned for account {account.id}")
        raw = results[0]
        try:
            current = Decimal(str(raw["current"]))
        except (KeyError, InvalidOperation) as e:
            raise ProviderClientError(f"Invalid balance data for account {account.id}") from e
        if not current.is_finite():
            raise ProviderClientError(f"Invalid balance data for account {account.id}")
        currency = str(raw.get("currency") or account.currency).upper()
        if len(currency) != 3:
            raise ProviderClientError(f"Invalid balance currency {currency!r} for account {account.id}")
        return ProviderBalance(current=current, currency=currency)

    async def fetch_transactions(
        self,
        account: AccountRecord,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, str] = {}
        if date_from:
            params["from"] = date_from.isoformat()
        if date_to:
            params["to"] = date_to.isoformat()
        return await self._get(account, "/transactions", params or None)
