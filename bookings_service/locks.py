import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict

from .intervals import RoomKey


class RoomLocks:
    """
    In-process mutexes keyed by (building, room).

    Serializes detect-then-create for a room within one process. The
    ``SELECT ... FOR UPDATE`` on the room row covers other processes.
    """

    def __init__(self):
        self._locks: Dict[RoomKey, asyncio.Lock] = {}

    def lock_for(self, key: RoomKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, *keys: RoomKey):
        """
        Hold the locks of every given room.

        Keys are taken in sorted order so two callers locking the same pair
        of rooms (a swap in each direction) cannot deadlock.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.lock_for(key))
            yield
