import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from contextfeed.clients.redis_client import FeedCache
from contextfeed.schemas import CachedFeedPage

from conftest import FakeRedis


async def test_set_get_round_trip(cache, redis):
    await cache.set("user:following:u1", ["a", "b"], ttl=60)

    assert await cache.get("user:following:u1") == ["a", "b"]
    assert redis.ttls["user:following:u1"] == 60


async def test_get_validates_model(cache):
    page = CachedFeedPage(page=1, page_size=20, total_count=0, total_pages=0)
    await cache.set("feed:user:u1:page:1:size:20", page)

    cached = await cache.get("feed:user:u1:page:1:size:20", CachedFeedPage)

    assert isinstance(cached, CachedFeedPage)
    assert cached.page_size == 20


async def test_miss_returns_none(cache):
    assert await cache.get("nope") is None
    assert not await cache.exists("nope")


async def test_undecodable_entry_is_dropped(cache, redis):
    redis.store["feed:user:u1:page:1:size:20"] = '{"page": "not-a-number"}'

    assert await cache.get("feed:user:u1:page:1:size:20", CachedFeedPage) is None
    assert "feed:user:u1:page:1:size:20" not in redis.store


async def test_remove_by_pattern_scopes_to_user(cache):
    for key in (
        "feed:user:u1:page:1:size:20",
        "feed:user:u1:page:2:size:20:ctx:abc",
        "feed:user:u10:page:1:size:20",
        "user:following:u1",
    ):
        await cache.set(key, 1)

    removed = await cache.remove_by_pattern("feed:user:u1:*")

    assert removed == 2
    assert not await cache.exists("feed:user:u1:page:1:size:20")
    assert await cache.exists("feed:user:u10:page:1:size:20")
    assert await cache.exists("user:following:u1")


async def test_remove_by_pattern_rejects_empty_pattern(cache):
    with pytest.raises(ValueError):
        await cache.remove_by_pattern("")


async def test_prefix_is_applied(redis):
    cache = FeedCache(redis, prefix="cf:")
    await cache.set("k", "v")

    assert "cf:k" in redis.store
    assert await cache.get("k") == "v"
    assert await cache.remove_by_pattern("k*") == 1


class DownRedis(FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")


async def test_backend_errors_degrade_to_miss():
    cache = FeedCache(DownRedis())

    await cache.set("k", "v")
    assert await cache.get("k") is None
