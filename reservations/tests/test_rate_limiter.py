"""
Tests for the client side endpoint rate limiter
"""

import asyncio
import fnmatch

import pytest

from reservations.adapters.etg import EtgStepClient
from reservations.rate_limiter import (
    DEFAULT_ENDPOINT_LIMITS,
    EndpointLimit,
    EndpointRateLimiter,
    RedisEndpointRateLimiter,
    normalize_endpoint,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock) -> EndpointRateLimiter:
    return EndpointRateLimiter(
        limits={"hotel/order/prebook/": EndpointLimit(2, 10), "hotel/order/booking/finish/status/":
                EndpointLimit(1, 10, limited=False)},
        clock=clock,
        sleep=clock.sleep,
    )


def test_normalize_endpoint():
    assert normalize_endpoint("/hotel/order/prebook") == "hotel/order/prebook/"
    assert normalize_endpoint("hotel/order/prebook/") == "hotel/order/prebook/"


def test_published_limits():
    assert DEFAULT_ENDPOINT_LIMITS["hotel/order/prebook/"] == EndpointLimit(30, 60)
    assert DEFAULT_ENDPOINT_LIMITS["hotel/order/booking/finish/status/"].limited is False


@pytest.mark.asyncio
async def test_requests_within_budget_do_not_wait(limiter, clock):
    await limiter.acquire("/hotel/order/prebook/")
    await limiter.acquire("/hotel/order/prebook/")

    assert clock.sleeps == []
    assert (await limiter.status("/hotel/order/prebook/"))["remaining"] == 0


@pytest.mark.asyncio
async def test_waits_until_oldest_request_leaves_the_window(limiter, clock):
    await limiter.acquire("/hotel/order/prebook/")
    clock.now += 4
    await limiter.acquire("/hotel/order/prebook/")

    await limiter.acquire("/hotel/order/prebook/")

    assert clock.sleeps == [pytest.approx(6.0)]
    assert (await limiter.status("/hotel/order/prebook/"))["current"] == 2


@pytest.mark.asyncio
async def test_unlimited_endpoint_never_waits(limiter, clock):
    for _ in range(5):
        await limiter.acquire("/hotel/order/booking/finish/status/")

    assert clock.sleeps == []
    assert (await limiter.status("/hotel/order/booking/finish/status/"))["remaining"] is None


@pytest.mark.asyncio
async def test_budgets_are_per_endpoint(clock):
    limiter = EndpointRateLimiter(default_limit=EndpointLimit(1, 10), limits={}, clock=clock, sleep=clock.sleep)

    await limiter.acquire("/hotel/order/info/")
    await limiter.acquire("/hotel/order/booking/form/")

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_concurrent_callers_share_the_budget(limiter, clock):
    await asyncio.gather(*(limiter.acquire("/hotel/order/prebook/") for _ in range(3)))

    assert len(clock.sleeps) == 1


@pytest.mark.asyncio
async def test_clear_resets_the_window(limiter, clock):
    await limiter.acquire("/hotel/order/prebook/")
    await limiter.acquire("/hotel/order/prebook/")

    await limiter.clear("/hotel/order/prebook")
    await limiter.acquire("/hotel/order/prebook/")

    assert clock.sleeps == []
    assert (await limiter.status("/hotel/order/prebook/"))["current"] == 1


class FakeRedis:
    """Sorted set subset of redis.asyncio used by the shared limiter"""

    def __init__(self):
        self.zsets = {}
        self.expiries = {}

    def pipeline(self):
        return FakePipeline(self)

    async def zremrangebyscore(self, key, minimum, maximum):
        members = self.zsets.get(key, {})
        expired = [m for m, score in members.items() if minimum <= score <= maximum]
        for member in expired:
            del members[member]
        return len(expired)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        selected = ordered[start:end + 1]
        return selected if withscores else [m for m, _ in selected]

    async def delete(self, *keys):
        return sum(1 for k in keys if self.zsets.pop(k, None) is not None)

    async def scan_iter(self, match="*"):
        for key in list(self.zsets):
            if fnmatch.fnmatch(key, match):
                yield key


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.commands]


class TestRedisEndpointRateLimiter:
    @pytest.fixture
    def redis_client(self) -> FakeRedis:
        return FakeRedis()

    def make(self, redis_client, clock) -> RedisEndpointRateLimiter:
        return RedisEndpointRateLimiter(
            redis_client,
            limits={"hotel/order/prebook/": EndpointLimit(2, 10), "hotel/order/booking/finish/status/":
                    EndpointLimit(1, 10, limited=False)},
            key_prefix="test:",
            clock=clock,
            sleep=clock.sleep,
        )

    @pytest.mark.asyncio
    async def test_workers_share_one_window(self, redis_client, clock):
        worker_a = self.make(redis_client, clock)
        worker_b = self.make(redis_client, clock)

        await worker_a.acquire("/hotel/order/prebook/")
        await worker_a.acquire("/hotel/order/prebook/")
        await worker_b.acquire("/hotel/order/prebook/")

        assert clock.sleeps == [pytest.approx(10.0)]
        assert (await worker_a.status("/hotel/order/prebook/"))["current"] == 1

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_counted(self, redis_client, clock):
        limiter = self.make(redis_client, clock)
        await limiter.acquire("/hotel/order/prebook/")
        clock.now += 3
        await limiter.acquire("/hotel/order/prebook/")

        wait_time = await limiter.try_acquire("/hotel/order/prebook/")

        assert wait_time == pytest.approx(7.0)
        assert await redis_client.zcard("test:hotel/order/prebook/") == 2
        assert redis_client.expiries["test:hotel/order/prebook/"] == 11

    @pytest.mark.asyncio
    async def test_unlimited_endpoint_skips_redis(self, redis_client, clock):
        limiter = self.make(redis_client, clock)

        for _ in range(5):
            await limiter.acquire("/hotel/order/booking/finish/status/")

        assert redis_client.zsets == {}
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_clear_removes_only_limiter_keys(self, redis_client, clock):
        limiter = self.make(redis_client, clock)
        await limiter.acquire("/hotel/order/prebook/")
        await limiter.acquire("/hotel/order/info/")
        await redis_client.zadd("other:key", {"m": 1.0})

        await limiter.clear()

        assert list(redis_client.zsets) == ["other:key"]

    @pytest.mark.asyncio
    async def test_clear_single_endpoint(self, redis_client, clock):
        limiter = self.make(redis_client, clock)
        await limiter.acquire("/hotel/order/prebook/")
        await limiter.acquire("/hotel/order/info/")

        await limiter.clear("/hotel/order/prebook")

        assert (await limiter.status("/hotel/order/prebook/"))["current"] == 0
        assert (await limiter.status("/hotel/order/info/"))["current"] == 1


def test_step_client_uses_shared_limiter_with_redis(settings):
    client = EtgStepClient(settings, redis_client=FakeRedis())

    assert isinstance(client._rate_limiter, RedisEndpointRateLimiter)


def test_step_client_defaults_to_in_process_limiter(settings):
    client = EtgStepClient(settings)

    assert type(client._rate_limiter) is EndpointRateLimiter
