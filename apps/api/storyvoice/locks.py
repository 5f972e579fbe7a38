"""Per-user serialisation of sync and migration work."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class UserLocks:
    """One asyncio.Lock per user id, shared by the sync and migration engines.

    A user's lock is dropped once nobody holds or waits on it, so the table only
    covers users with work in flight.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._refreshing: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        # Counts holders and waiters alike.
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[user_id] - 1
            if remaining:
                self._users[user_id] = remaining
            else:
                del self._users[user_id]
                del self._locks[user_id]

    def is_refreshing(self, user_id: Optional[str] = None) -> bool:
        """True while a cloud refresh for ``user_id`` (or any user, when None) holds its lock."""
        if user_id is None:
            return bool(self._refreshing)
        return user_id in self._refreshing

    @asynccontextmanager
    async def refresh(self, user_id: str) -> AsyncIterator[None]:
        async with self.hold(user_id):
            self._refreshing[user_id] = self._refreshing.get(user_id, 0) + 1
            try:
                yield
            finally:
                remaining = self._refreshing[user_id] - 1
                if remaining:
                    self._refreshing[user_id] = remaining
                else:
                    del self._refreshing[user_id]
