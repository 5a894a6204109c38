import logging
import math
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from decanter.ratelimit import RateRecord

log = logging.getLogger(__name__)

KEY_PREFIX = "decanter:rl"


class RedisRateStore:
    """
    Rate store backed by one Redis hash per client key ({count, reset_at}).

    Several processes may share it. HINCRBY keeps increments atomic, and
    opening a window is a WATCH/MULTI compare-and-set on ``reset_at``, so two
    instances racing to start the same window cannot both write count=1.
    Keys expire at the end of their window, which leaves sweeping to Redis.
    """

    def __init__(self, redis_url: Optional[str] = None, *, client: Any = None, prefix: str = KEY_PREFIX) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            # Connection is lazy; nothing touches the network until the first command.
            client = redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[RateRecord]:
        raw = await self._client.hgetall(self._key(key))
        if not raw:
            return None
        try:
            return RateRecord(count=int(raw["count"]), reset_at=float(raw["reset_at"]))
        except (KeyError, ValueError):
            log.warning("rate_limit redis: malformed record key=%s", key)
            return None

    async def set(self, key: str, record: RateRecord, expected: Optional[RateRecord] = None) -> bool:
        rkey = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            await pipe.watch(rkey)
            current = await pipe.hget(rkey, "reset_at")
            if not _same_window(current, expected):
                log.debug("rate_limit redis: window already replaced key=%s", key)
                return False
            pipe.multi()
            pipe.hset(rkey, mapping={"count": record.count, "reset_at": repr(record.reset_at)})
            pipe.pexpireat(rkey, int(math.ceil(record.reset_at * 1000)))
            try:
                await pipe.execute()
            except WatchError:
                log.debug("rate_limit redis: concurrent write key=%s", key)
                return False
        return True

    async def increment(self, key: str) -> int:
        return int(await self._client.hincrby(self._key(key), "count", 1))

    async def sweep(self, now: float) -> int:
        return 0

    async def close(self) -> None:
        await self._client.aclose()


def _same_window(current: Optional[str], expected: Optional[RateRecord]) -> bool:
    if expected is None:
        # A hash without a readable reset_at is treated as absent, as get() does
        if current is None:
            return True
        try:
            float(current)
        except ValueError:
            return True
        return False
    if current is None:
        return False
    try:
        return float(current) == expected.reset_at
    except ValueError:
        return False
