"""
Sync admission control.

Decides whether an account sync may start now and tracks the syncs in flight.
Per account the lifecycle is IDLE → SYNCING → (COMPLETED | FAILED) → IDLE.

State lives behind ``AdmissionStore``.  ``InMemoryAdmissionStore`` is enough
for a single process; a deployment with several API/worker processes must use
``RedisAdmissionStore`` or two instances can sync the same account at once.
Active slots carry a TTL so a crashed worker cannot pin an account in SYNCING.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Protocol

import redis.asyncio as aioredis

from app.core.clock import Clock, SystemClock
from app.core.config import Settings

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(hours=1)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_syncs_per_hour: int = 60
    max_concurrent_syncs: int = 3

    @classmethod
    def from_settings(cls, s: Settings) -> "RateLimitPolicy":
        return cls(
            max_syncs_per_hour=s.max_syncs_per_hour,
            max_concurrent_syncs=s.max_concurrent_syncs,
        )


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: str | None = None
    retry_after: datetime | None = None


# ─── Stores ───────────────────────────────────────────────────────────────────

class AdmissionStore(Protocol):
    async def get_active(self, account_id: str) -> str | None:
        """Owner user id of an in-flight sync, or None."""

    async def set_active(self, account_id: str, user_id: str, ttl_seconds: int) -> bool:
        """Set-if-absent; False when the account already holds a slot."""

    async def clear_active(self, account_id: str) -> str | None:
        """Release a slot; returns the owner it belonged to."""

    async def count_active(self, user_id: str) -> int: ...

    async def record_start(self, user_id: str, at: datetime) -> None: ...

    async def recent_starts(self, user_id: str, since: datetime) -> list[datetime]:
        """Start times after ``since``, oldest first; older entries are pruned."""


class InMemoryAdmissionStore:
    """Process-local store; TTLs are measured with the injected clock."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._active: dict[str, tuple[str, datetime]] = {}
        self._starts: dict[str, deque[datetime]] = {}

    def _expire(self) -> None:
        now = self._clock.now()
        stale = [acc for acc, (_, expires) in self._active.items() if expires <= now]
        for account_id in stale:
            logger.warning("Admission slot for account %s expired without completion", account_id)
            del self._active[account_id]

    async def get_active(self, account_id: str) -> str | None:
        self._expire()
        entry = self._active.get(account_id)
        return entry[0] if entry else None

    async def set_active(self, account_id: str, user_id: str, ttl_seconds: int) -> bool:
        self._expire()
        if account_id in self._active:
            return False
        expires = self._clock.now() + timedelta(seconds=ttl_seconds)
        self._active[account_id] = (user_id, expires)
        return True

    async def clear_active(self, account_id: str) -> str | None:
        entry = self._active.pop(account_id, None)
        return entry[0] if entry else None

    async def count_active(self, user_id: str) -> int:
        self._expire()
        return sum(1 for owner, _ in self._active.values() if owner == user_id)

    async def record_start(self, user_id: str, at: datetime) -> None:
        self._starts.setdefault(user_id, deque()).append(at)

    async def recent_starts(self, user_id: str, since: datetime) -> list[datetime]:
        starts = self._starts.get(user_id)
        if not starts:
            return []
        while starts and starts[0] <= since:
            starts.popleft()
        return list(starts)


_ACTIVE_PREFIX = "sync:active:"
_USER_ACTIVE_PREFIX = "sync:user_active:"
_STARTS_PREFIX = "sync:starts:"


class RedisAdmissionStore:
    """
    Shared store for multi-process deployments.

    sync:active:{account}      string, owner user id, SET NX EX ttl
    sync:user_active:{user}    set of account ids (members re-checked against their slot key)
    sync:starts:{user}         sorted set of start timestamps, score = epoch seconds
    """

    def __init__(self, client: aioredis.Redis):
        self._r = client

    async def get_active(self, account_id: str) -> str | None:
        return await self._r.get(f"{_ACTIVE_PREFIX}{account_id}")

    async def set_active(self, account_id: str, user_id: str, ttl_seconds: int) -> bool:
        acquired = await self._r.set(f"{_ACTIVE_PREFIX}{account_id}", user_id, nx=True, ex=ttl_seconds)
        if not acquired:
            return False
        await self._r.sadd(f"{_USER_ACTIVE_PREFIX}{user_id}", account_id)
        return True

    async def clear_active(self, account_id: str) -> str | None:
        key = f"{_ACTIVE_PREFIX}{account_id}"
        owner = await self._r.get(key)
        if owner is None:
            return None
        await self._r.delete(key)
        await self._r.srem(f"{_USER_ACTIVE_PREFIX}{owner}", account_id)
        return owner

    async def count_active(self, user_id: str) -> int:
        set_key = f"{_USER_ACTIVE_PREFIX}{user_id}"
        count = 0
        for account_id in await self._r.smembers(set_key):
            if await self._r.exists(f"{_ACTIVE_PREFIX}{account_id}"):
                count += 1
            else:
                # Slot expired through its TTL
                await self._r.srem(set_key, account_id)
        return count

    async def record_start(self, user_id: str, at: datetime) -> None:
        key = f"{_STARTS_PREFIX}{user_id}"
        ts = at.timestamp()
        await self._r.zadd(key, {f"{ts:.6f}:{uuid.uuid4().hex[:8]}": ts})
        await self._r.expire(key, int(RATE_WINDOW.total_seconds()) * 24)

    async def recent_starts(self, user_id: str, since: datetime) -> list[datetime]:
        key = f"{_STARTS_PREFIX}{user_id}"
        await self._r.zremrangebyscore(key, "-inf", since.timestamp())
        rows = await self._r.zrange(key, 0, -1, withscores=True)
        return [datetime.fromtimestamp(score, tz=timezone.utc) for _, score in rows]


# ─── Controller ───────────────────────────────────────────────────────────────

class SyncAdmissionController:
    def __init__(
        self,
        store: AdmissionStore,
        clock: Clock | None = None,
        policy: RateLimitPolicy | None = None,
        slot_ttl_seconds: int = 15 * 60,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.policy = policy or RateLimitPolicy()
        self.slot_ttl_seconds = slot_ttl_seconds
        self._lock = asyncio.Lock()

    async def state(self, account_id: str) -> SyncState:
        if await self.store.get_active(account_id) is not None:
            return SyncState.SYNCING
        return SyncState.IDLE

    async def can_sync(
        self,
        user_id: str,
        account_id: str,
        policy: RateLimitPolicy | None = None,
    ) -> AdmissionDecision:
        policy = policy or self.policy

        if await self.store.get_active(account_id) is not None:
            return AdmissionDecision(False, "Sync already in progress")

        if await self.store.count_active(user_id) >= policy.max_concurrent_syncs:
            return AdmissionDecision(
                False, f"Maximum {policy.max_concurrent_syncs} concurrent syncs reached"
            )

        since = self.clock.now() - RATE_WINDOW
        recent = await self.store.recent_starts(user_id, since)
        if len(recent) >= policy.max_syncs_per_hour:
            return AdmissionDecision(
                False,
                f"Rate limit exceeded: {policy.max_syncs_per_hour} syncs per hour",
                retry_after=recent[0] + RATE_WINDOW,
            )

        return AdmissionDecision(True)

    async def start_sync(self, user_id: str, account_id: str) -> bool:
        if not await self.store.set_active(account_id, user_id, self.slot_ttl_seconds):
            return False
        await self.store.record_start(user_id, self.clock.now())
        logger.debug("Account %s: %s → %s", account_id, SyncState.IDLE.value, SyncState.SYNCING.value)
        return True

    async def complete_sync(self, account_id: str, outcome: SyncState = SyncState.COMPLETED) -> None:
        owner = await self.store.clear_active(account_id)
        if owner is None:
            return
        logger.debug(
            "Account %s: %s → %s → %s",
            account_id, SyncState.SYNCING.value, outcome.value, SyncState.IDLE.value,
        )

    async def admit(self, user_id: str, account_id: str) -> AdmissionDecision:
        """can_sync + start_sync as one step."""
        async with self._lock:
            decision = await self.can_sync(user_id, account_id)
            if not decision.allowed:
                return decision
            if not await self.start_sync(user_id, account_id):
                # Another process took the slot between the check and the write
                return AdmissionDecision(False, "Sync already in progress")
            return decision


def build_admission_controller(s: Settings, clock: Clock | None = None) -> SyncAdmissionController:
    """One controller per process; pick the store from ADMISSION_BACKEND."""
    if s.admission_backend == "redis":
        from app.core.redis import get_redis

        store: AdmissionStore = RedisAdmissionStore(get_redis())
    else:
        store = InMemoryAdmissionStore(clock)
    return SyncAdmissionController(
        store,
        clock=clock,
        policy=RateLimitPolicy.from_settings(s),
        slot_ttl_seconds=s.sync_slot_ttl_seconds,
    )
