from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional, Protocol

log = logging.getLogger(__name__)

WINDOW_SECONDS: int = 60
MAX_REQUESTS: int = 10
OPEN_WINDOW_ATTEMPTS = 3


@dataclass
class RateRecord:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_at: float

    def retry_after(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(1, int(self.reset_at - current + 0.999))


class RateStore(Protocol):
    """Storage behind the fixed-window limiter. Implementations hold no window math.

    ``set`` is a compare-and-set: it writes only while the stored record still
    has ``expected.reset_at`` (or is absent, for ``expected=None``) and
    reports whether it wrote.
    """

    async def get(self, key: str) -> Optional[RateRecord]: ...

    async def set(self, key: str, record: RateRecord, expected: Optional[RateRecord] = None) -> bool: ...

    async def increment(self, key: str) -> int: ...

    async def sweep(self, now: float) -> int: ...


class InMemoryRateStore:
    """Per-process store for single-instance deployments."""

    def __init__(self) -> None:
        self._records: Dict[str, RateRecord] = {}

    async def get(self, key: str) -> Optional[RateRecord]:
        record = self._records.get(key)
        if record is None:
            return None
        return RateRecord(record.count, record.reset_at)

    async def set(self, key: str, record: RateRecord, expected: Optional[RateRecord] = None) -> bool:
        current = self._records.get(key)
        if (current is None) != (expected is None):
            return False
        if current is not None and expected is not None and current.reset_at != expected.reset_at:
            return False
        self._records[key] = RateRecord(record.count, record.reset_at)
        return True

    async def increment(self, key: str) -> int:
        record = self._records.get(key)
        if record is None:
            raise KeyError(key)
        record.count += 1
        return record.count

    async def sweep(self, now: float) -> int:
        stale = [k for k, r in self._records.items() if now >= r.reset_at]
        for k in stale:
            del self._records[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class FixedWindowRateLimiter:
    """Fixed-window counter per client key.

    Read-check-increment for a key runs under a per-key ``asyncio.Lock`` so
    concurrent requests from one client cannot lose updates. Across processes
    the lock does not help, so opening a window goes through the store's
    compare-and-set and a lost race re-reads the winner's record. The store's
    ``increment`` result is authoritative: a count above capacity is a denial.
    """

    def __init__(
        self,
        store: Optional[RateStore] = None,
        *,
        window_seconds: int = WINDOW_SECONDS,
        max_requests: int = MAX_REQUESTS,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ) -> None:
        self.store: RateStore = store if store is not None else InMemoryRateStore()
        self.window_seconds = int(window_seconds)
        self.max_requests = int(max_requests)
        self.enabled = enabled
        self._clock = clock
        self._locks: Dict[str, _KeyLock] = {}
        self._next_sweep = 0.0

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        # Lock entries live only while some request for the key is in flight
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyLock()
            self._locks[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def check(self, client_key: str) -> RateDecision:
        key = (client_key or "").strip() or "unknown"
        now = self._clock()
        if not self.enabled:
            return RateDecision(True, self.max_requests, self.max_requests, now + self.window_seconds)

        await self._maybe_sweep(now)

        async with self._hold(key):
            for _ in range(OPEN_WINDOW_ATTEMPTS):
                record = await self.store.get(key)
                if record is None or now >= record.reset_at:
                    reset_at = now + self.window_seconds
                    if await self.store.set(key, RateRecord(count=1, reset_at=reset_at), expected=record):
                        return RateDecision(True, self.max_requests - 1, self.max_requests, reset_at)
                    # Another instance opened the window first; count against theirs
                    continue

                if record.count >= self.max_requests:
                    return RateDecision(False, 0, self.max_requests, record.reset_at)

                count = await self.store.increment(key)
                if count > self.max_requests:
                    return RateDecision(False, 0, self.max_requests, record.reset_at)
                return RateDecision(True, self.max_requests - count, self.max_requests, record.reset_at)

        log.warning("rate_limit contention key=%s attempts=%d; denying", key, OPEN_WINDOW_ATTEMPTS)
        return RateDecision(False, 0, self.max_requests, now + 1)

    async def _maybe_sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.window_seconds
        try:
            removed = await self.store.sweep(now)
        except Exception:
            log.warning("rate_limit sweep failed", exc_info=True)
            return
        if removed:
            log.debug("rate_limit sweep removed=%d", removed)

    async def sweep(self) -> int:
        """Evict expired records now."""
        now = self._clock()
        self._next_sweep = now + self.window_seconds
        return await self.store.sweep(now)
