"""
Client side sliding window rate limiting per upstream endpoint

The upstream publishes a request budget per endpoint for the whole partner
account. Calls over budget are delayed here instead of being rejected upstream
with 429. Workers sharing an account share the window through redis.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional

import redis.asyncio as aioredis

from .metrics import rate_limit_waits_total
from .utils.logging import get_safe_logger

logger = get_safe_logger("reservations.rate_limiter")


@dataclass(frozen=True)
class EndpointLimit:
    """Request budget for one endpoint"""
    requests: int
    window_seconds: float
    limited: bool = True


# Published upstream limits for the booking endpoints
DEFAULT_ENDPOINT_LIMITS: Dict[str, EndpointLimit] = {
    "hotel/order/prebook/": EndpointLimit(30, 60),
    "hotel/order/booking/form/": EndpointLimit(30, 60),
    "hotel/order/booking/finish/": EndpointLimit(30, 60),
    "hotel/order/booking/finish/status/": EndpointLimit(30, 60, limited=False),
    "hotel/order/info/": EndpointLimit(30, 60),
    "hotel/order/documents/": EndpointLimit(30, 60),
}

DEFAULT_LIMIT = EndpointLimit(30, 60)


def normalize_endpoint(endpoint: str) -> str:
    """'/hotel/order/info' -> 'hotel/order/info/'"""
    normalized = endpoint.lstrip("/")
    if not normalized.endswith("/"):
        normalized += "/"
    return normalized


class EndpointRateLimiter:
    """
    In-process sliding window limiter keyed by endpoint.

    Shared by all concurrent bookings of one client, guarded by an asyncio.Lock.
    Only correct while a single worker talks to the upstream account; use
    RedisEndpointRateLimiter when several workers do.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, EndpointLimit]] = None,
        default_limit: EndpointLimit = DEFAULT_LIMIT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if limits is None:
            limits = DEFAULT_ENDPOINT_LIMITS
        self._limits = {normalize_endpoint(k): v for k, v in limits.items()}
        self._default_limit = default_limit
        self._clock = clock
        self._sleep = sleep
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def limit_for(self, endpoint: str) -> EndpointLimit:
        return self._limits.get(normalize_endpoint(endpoint), self._default_limit)

    def _cleanup(self, key: str, limit: EndpointLimit, now: float) -> Deque[float]:
        window = self._requests.setdefault(key, deque())
        while window and now - window[0] >= limit.window_seconds:
            window.popleft()
        return window

    async def _record(self, key: str, limit: EndpointLimit) -> float:
        async with self._lock:
            now = self._clock()
            window = self._cleanup(key, limit, now)
            if len(window) < limit.requests:
                window.append(now)
                return 0.0
            return max(window[0] + limit.window_seconds - now, 0.0)

    async def _current(self, key: str, limit: EndpointLimit) -> int:
        return len(self._cleanup(key, limit, self._clock()))

    async def try_acquire(self, endpoint: str) -> float:
        """
        Record a request if the budget allows it.

        Returns 0.0 when recorded, otherwise the seconds until a slot frees up.
        """
        key = normalize_endpoint(endpoint)
        limit = self.limit_for(key)
        if not limit.limited:
            return 0.0
        return await self._record(key, limit)

    async def acquire(self, endpoint: str) -> None:
        """Wait until the endpoint budget has room, then record the request"""
        while True:
            wait_time = await self.try_acquire(endpoint)
            if wait_time <= 0:
                return
            rate_limit_waits_total.labels(endpoint=normalize_endpoint(endpoint)).inc()
            logger.warning(
                "rate_limit_wait",
                endpoint=normalize_endpoint(endpoint),
                wait_seconds=round(wait_time, 3),
            )
            await self._sleep(wait_time)

    async def status(self, endpoint: str) -> Dict[str, object]:
        """Current usage of an endpoint budget"""
        key = normalize_endpoint(endpoint)
        limit = self.limit_for(key)
        current = await self._current(key, limit)
        return {
            "endpoint": key,
            "limit": limit.requests,
            "window_seconds": limit.window_seconds,
            "is_limited": limit.limited,
            "current": current,
            "remaining": max(limit.requests - current, 0) if limit.limited else None,
        }

    async def clear(self, endpoint: Optional[str] = None) -> None:
        if endpoint:
            self._requests.pop(normalize_endpoint(endpoint), None)
        else:
            self._requests.clear()


class RedisEndpointRateLimiter(EndpointRateLimiter):
    """
    Sliding window limiter shared through redis sorted sets.

    Every worker holding a client for the same upstream account must use the
    same key prefix. Members are scored with wall clock time, so the clock
    must be time.time (or a fake of it) on every worker.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        limits: Optional[Dict[str, EndpointLimit]] = None,
        default_limit: EndpointLimit = DEFAULT_LIMIT,
        key_prefix: str = "reservations:ratelimit:",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(limits, default_limit, clock, sleep)
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, endpoint: str) -> str:
        return f"{self.key_prefix}{endpoint}"

    async def _record(self, key: str, limit: EndpointLimit) -> float:
        redis_key = self._key(key)
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - limit.window_seconds)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {member: now})
        pipe.expire(redis_key, int(limit.window_seconds) + 1)
        results = await pipe.execute()

        if results[1] + 1 <= limit.requests:
            return 0.0

        # Over budget: drop our entry and wait for the oldest one to expire
        await self.redis.zrem(redis_key, member)
        oldest = await self.redis.zrange(redis_key, 0, 0, withscores=True)
        if not oldest:
            return 0.0
        return max(oldest[0][1] + limit.window_seconds - now, 0.0)

    async def _current(self, key: str, limit: EndpointLimit) -> int:
        redis_key = self._key(key)
        await self.redis.zremrangebyscore(redis_key, 0, self._clock() - limit.window_seconds)
        return await self.redis.zcard(redis_key)

    async def clear(self, endpoint: Optional[str] = None) -> None:
        if endpoint:
            await self.redis.delete(self._key(normalize_endpoint(endpoint)))
            return
        keys = [key async for key in self.redis.scan_iter(match=f"{self.key_prefix}*")]
        if keys:
            await self.redis.delete(*keys)
        logger.info("rate_limits_reset", keys_deleted=len(keys))
