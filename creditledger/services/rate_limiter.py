"""
Rate Limiter Service using Redis sorted sets (sliding window).

Both limiters expose try_consume(identity) -> RateLimitDecision so the policy
can be swapped. Denied attempts are never recorded, so a throttled caller does
not extend its own window.
"""
import asyncio
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis

from creditledger.config import settings
from creditledger.logging_config import get_logger


logger = get_logger(component="rate_limiter")


# Trim, count and conditionally add in one server-side step so concurrent
# requests for the same identity cannot all observe "under limit".
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local retry_after = window
    if oldest[2] then
        retry_after = window - (now - tonumber(oldest[2]))
    end
    return {0, math.ceil(retry_after), 0}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, 0, limit - count - 1}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class InMemoryRateLimiter:
    """
    Per-identity sliding window kept in process memory.

    Correct for a single instance only; used as the Redis fallback and in tests.
    """

    def __init__(
        self,
        limit: int = settings.RECEIPT_RATE_LIMIT,
        window: float = settings.RECEIPT_RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._requests: dict[str, deque] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def try_consume(self, identity: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            timestamps = self._requests[identity]
            while timestamps and timestamps[0] <= now - self.window:
                timestamps.popleft()

            if len(timestamps) >= self.limit:
                retry_after = self.window - (now - timestamps[0])
                return RateLimitDecision(allowed=False, retry_after=max(int(retry_after + 0.999), 1))

            timestamps.append(now)
            return RateLimitDecision(allowed=True, remaining=self.limit - len(timestamps))

    async def get_current_count(self, identity: str) -> int:
        async with self._lock:
            now = self._clock()
            return sum(1 for ts in self._requests.get(identity, ()) if ts > now - self.window)

    def reset(self) -> None:
        self._requests.clear()


class RedisRateLimiter:
    """Per-identity rate limiter shared across instances through Redis."""

    def __init__(
        self,
        redis_url: str | None = None,
        limit: int = settings.RECEIPT_RATE_LIMIT,
        window: int = settings.RECEIPT_RATE_WINDOW_SECONDS,
        prefix: str = "ratelimit:receipts",
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.limit = limit
        self.window = window
        self.prefix = prefix
        self._redis = None
        self._script = None
        # Used only while Redis is unreachable
        self._fallback = InMemoryRateLimiter(limit=limit, window=window, clock=time.time)

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
            self._script = self._redis.register_script(SLIDING_WINDOW_SCRIPT)
        return self._redis

    async def try_consume(self, identity: str) -> RateLimitDecision:
        """
        Record one request for identity if it fits in the window.

        Returns:
            RateLimitDecision(allowed, retry_after seconds, remaining)
        """
        key = f"{self.prefix}:{identity}"
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"

        try:
            await self.get_redis()
            allowed, retry_after, remaining = await self._script(
                keys=[key],
                args=[now, self.window, self.limit, member],
            )
        except (redis.RedisError, OSError) as e:
            logger.warning("rate_limiter_redis_unavailable", error=str(e))
            return await self._fallback.try_consume(identity)

        if not int(allowed):
            return RateLimitDecision(allowed=False, retry_after=max(int(retry_after), 1))
        return RateLimitDecision(allowed=True, remaining=int(remaining))

    async def get_current_count(self, identity: str) -> int:
        """Get current request count for identity."""
        key = f"{self.prefix}:{identity}"
        window_start = time.time() - self.window

        try:
            r = await self.get_redis()
            await r.zremrangebyscore(key, 0, window_start)
            return await r.zcard(key)
        except (redis.RedisError, OSError):
            return await self._fallback.get_current_count(identity)


# Singleton instance for the receipt read path
receipt_rate_limiter = RedisRateLimiter()
