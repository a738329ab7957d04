"""Tests for the user cache layer."""

import json

import fakeredis
import pytest

from haroval.storage import cache as cache_module
from haroval.storage.cache import MemoryCache, RedisCache, invalidate_user, user_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(default_ttl_seconds=300, clock=clock)


def test_user_key_format():
    assert user_key("abc") == "user_abc"


async def test_get_returns_stored_value(cache):
    await cache.set("user_1", {"id": "1", "username": "alice"})
    assert await cache.get("user_1") == {"id": "1", "username": "alice"}


async def test_missing_key_returns_none(cache):
    assert await cache.get("user_nobody") is None


async def test_default_ttl_expiry(cache, clock):
    await cache.set("user_1", {"id": "1"})
    clock.now += 299
    assert await cache.get("user_1") is not None
    clock.now += 1
    assert await cache.get("user_1") is None


async def test_explicit_ttl_overrides_default(cache, clock):
    await cache.set("short", 1, ttl_seconds=5)
    clock.now += 6
    assert await cache.get("short") is None


async def test_delete_and_clear(cache):
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.delete("a")
    assert await cache.get("a") is None
    await cache.clear()
    assert await cache.get("b") is None


async def test_clear_pattern_counts_removed_keys(cache):
    await cache.set("user_1", 1)
    await cache.set("user_1_decks", 2)
    await cache.set("user_10", 3)

    removed = await cache.clear_pattern(r"^user_1(_|$)")

    assert removed == 2
    assert await cache.get("user_10") == 3


async def test_stats_drop_expired_entries(cache, clock):
    await cache.set("old", 1, ttl_seconds=1)
    await cache.set("fresh", 2)
    clock.now += 10

    assert await cache.stats() == {"size": 1, "keys": ["fresh"]}


async def test_invalidate_user_drops_derived_entries(cache):
    await cache.set(user_key("7"), {"id": "7"})
    await cache.set("user_7_stats", {"cards": 3})
    await cache.set(user_key("70"), {"id": "70"})

    await invalidate_user(cache, "7")

    assert await cache.get(user_key("7")) is None
    assert await cache.get("user_7_stats") is None
    assert await cache.get(user_key("70")) == {"id": "70"}


async def test_invalidate_user_without_cache():
    await invalidate_user(None, "7")


@pytest.fixture
def fake_redis(monkeypatch):
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr(cache_module.aioredis, "from_url", lambda *args, **kwargs: client)
    return client


@pytest.fixture
def redis_cache(fake_redis):
    return RedisCache("redis://cache.invalid:6379/0", default_ttl_seconds=300)


class TestRedisCache:
    async def test_json_round_trip_under_prefix(self, redis_cache, fake_redis):
        await redis_cache.set("user_1", {"id": "1", "username": "alice"})

        assert await redis_cache.get("user_1") == {"id": "1", "username": "alice"}
        raw = await fake_redis.get("haroval:cache:user_1")
        assert json.loads(raw) == {"id": "1", "username": "alice"}

    async def test_missing_key_returns_none(self, redis_cache):
        assert await redis_cache.get("user_nobody") is None

    async def test_default_and_explicit_ttl(self, redis_cache, fake_redis):
        await redis_cache.set("user_1", 1)
        await redis_cache.set("short", 2, ttl_seconds=5)

        assert 0 < await fake_redis.ttl("haroval:cache:user_1") <= 300
        assert 0 < await fake_redis.ttl("haroval:cache:short") <= 5

    async def test_corrupt_entry_returns_none(self, redis_cache, fake_redis):
        await fake_redis.set("haroval:cache:user_9", "{not json")

        assert await redis_cache.get("user_9") is None

    async def test_delete_and_clear_stay_inside_prefix(self, redis_cache, fake_redis):
        await fake_redis.set("other-app:key", "kept")
        await redis_cache.set("a", 1)
        await redis_cache.set("b", 2)

        await redis_cache.delete("a")
        assert await redis_cache.get("a") is None
        await redis_cache.clear()

        assert await redis_cache.stats() == {"size": 0, "keys": []}
        assert await fake_redis.get("other-app:key") == "kept"

    async def test_invalidate_user_drops_derived_entries(self, redis_cache):
        await redis_cache.set(user_key("1"), {"id": "1"})
        await redis_cache.set("user_1_decks", [1, 2])
        await redis_cache.set(user_key("10"), {"id": "10"})

        await invalidate_user(redis_cache, "1")

        assert await redis_cache.stats() == {"size": 1, "keys": ["user_10"]}

    async def test_clear_pattern_matches_unprefixed_keys(self, redis_cache):
        await redis_cache.set("user_1", 1)
        await redis_cache.set("user_2", 2)

        assert await redis_cache.clear_pattern(r"^user_1$") == 1
        assert await redis_cache.get("user_2") == 2

    async def test_close(self, redis_cache):
        await redis_cache.set("user_1", 1)

        await redis_cache.close()
