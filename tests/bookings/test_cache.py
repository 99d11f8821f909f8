import pytest
from redis.exceptions import RedisError

from common.cache import (
    InMemoryRoomStatusCache,
    NullRoomStatusCache,
    RedisRoomStatusCache,
    build_cache,
    room_key,
)


class FakeRedisClient:
    """Just enough of redis.asyncio.Redis for the room cache."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.closed = False

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.store.pop(key, None)

    async def aclose(self):
        self.closed = True


def test_room_key_format():
    assert room_key("101", 1) == "room:1-101"


async def test_in_memory_cache_round_trip_and_invalidate():
    cache = InMemoryRoomStatusCache(ttl_seconds=15)
    assert await cache.get_room_status("101", 1) is None
    await cache.set_room_status("101", 1, "Booked")
    assert await cache.get_room_status("101", 1) == "Booked"
    await cache.invalidate("101", 1)
    assert await cache.get_room_status("101", 1) is None


async def test_in_memory_cache_expires_entries():
    cache = InMemoryRoomStatusCache(ttl_seconds=0)
    await cache.set_room_status("101", 1, "Booked")
    assert await cache.get_room_status("101", 1) is None


async def test_redis_cache_uses_ttl_and_room_key():
    client = FakeRedisClient()
    cache = RedisRoomStatusCache(client, ttl_seconds=15)
    await cache.set_room_status("101", 1, "Maintenance")
    assert client.ttls["room:1-101"] == 15
    assert await cache.get_room_status("101", 1) == "Maintenance"
    await cache.invalidate("101", 1)
    assert await cache.get_room_status("101", 1) is None
    await cache.close()
    assert client.closed


async def test_build_cache_selection():
    assert isinstance(await build_cache("none"), NullRoomStatusCache)
    assert isinstance(await build_cache("memory", "redis://localhost:6379/0"), InMemoryRoomStatusCache)
    assert isinstance(await build_cache("auto", None), InMemoryRoomStatusCache)


async def test_build_cache_falls_back_when_redis_is_down():
    cache = await build_cache("auto", "redis://127.0.0.1:1/0")
    assert isinstance(cache, InMemoryRoomStatusCache)
    with pytest.raises((RedisError, OSError)):
        await build_cache("redis", "redis://127.0.0.1:1/0")
