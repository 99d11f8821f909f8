# common/cache.py
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


def room_key(room_number: str, building_number: int) -> str:
    return f"room:{building_number}-{room_number}"


class RoomStatusCache:
    """
    Best-effort cache of projected room status.

    Engine code only depends on this interface. A miss or a failure means
    "go to the datastore", never a wrong answer.
    """

    async def get_room_status(self, room_number: str, building_number: int) -> Optional[str]:
        raise NotImplementedError

    async def set_room_status(self, room_number: str, building_number: int, status: str) -> None:
        raise NotImplementedError

    async def invalidate(self, room_number: str, building_number: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullRoomStatusCache(RoomStatusCache):
    async def get_room_status(self, room_number, building_number):
        return None

    async def set_room_status(self, room_number, building_number, status):
        return None

    async def invalidate(self, room_number, building_number):
        return None


class InMemoryRoomStatusCache(RoomStatusCache):
    """Per-process dict with expiry, used when Redis is not configured."""

    def __init__(self, ttl_seconds: int = 15):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[Any, float]] = {}

    async def get_room_status(self, room_number, building_number):
        key = room_key(room_number, building_number)
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def set_room_status(self, room_number, building_number, status):
        self._entries[room_key(room_number, building_number)] = (
            status,
            time.monotonic() + self.ttl_seconds,
        )

    async def invalidate(self, room_number, building_number):
        self._entries.pop(room_key(room_number, building_number), None)


class RedisRoomStatusCache(RoomStatusCache):
    def __init__(self, client: redis.Redis, ttl_seconds: int = 15):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def get_room_status(self, room_number, building_number):
        raw = await self.client.get(room_key(room_number, building_number))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_room_status(self, room_number, building_number, status):
        await self.client.setex(
            room_key(room_number, building_number),
            self.ttl_seconds,
            json.dumps(status, default=str),
        )

    async def invalidate(self, room_number, building_number):
        await self.client.delete(room_key(room_number, building_number))

    async def close(self):
        await self.client.aclose()


async def build_cache(
    backend: str = "auto",
    redis_url: Optional[str] = None,
    ttl_seconds: int = 15,
) -> RoomStatusCache:
    """
    Pick the room-status cache once, at startup.

    Parameters
    ----------
    backend : str
        'redis', 'memory', 'none', or 'auto' (Redis when REDIS_URL is set
        and answers a ping, otherwise in-memory).
    redis_url : Optional[str]
        Connection URL for Redis.
    ttl_seconds : int
        Entry lifetime.

    Returns
    -------
    RoomStatusCache
        The selected implementation.
    """
    if backend == "none":
        return NullRoomStatusCache()
    if backend == "memory" or (backend == "auto" and not redis_url):
        return InMemoryRoomStatusCache(ttl_seconds)

    client = redis.from_url(redis_url, decode_responses=True)
    try:
        # Lightweight health check
        await client.ping()
    except (RedisError, OSError) as exc:
        await client.aclose()
        if backend == "redis":
            raise
        logger.warning("Redis unreachable (%s); using in-memory room cache", exc)
        return InMemoryRoomStatusCache(ttl_seconds)

    logger.info("Room status cache backed by Redis")
    return RedisRoomStatusCache(client, ttl_seconds)
