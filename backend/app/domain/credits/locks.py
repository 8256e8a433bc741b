"""
Per-user mutual exclusion for wallet mutations.

One asyncio.Lock per user; different users never contend.
Combined with the wallet row lock (SELECT ... FOR UPDATE) for safety across processes.
An entry lives only while someone holds or waits on it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from backend.app.core.exceptions import CoordinationTimeoutError


class UserLockRegistry:

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, user_id: int) -> asyncio.Lock:
        """The user's live lock, or a fresh unheld one if nobody is using it."""
        return self._locks.get(user_id) or asyncio.Lock()

    def _checkout(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._users[user_id] = self._users.get(user_id, 0) + 1
        return lock

    def _checkin(self, user_id: int) -> None:
        remaining = self._users[user_id] - 1
        if remaining:
            self._users[user_id] = remaining
        else:
            del self._users[user_id]
            del self._locks[user_id]

    @asynccontextmanager
    async def hold(self, user_id: int):
        """
        Hold the user's lock for the duration of the block.

        Raises:
            CoordinationTimeoutError: If the lock is not acquired within 'timeout' seconds.
        """
        lock = self._checkout(user_id)
        try:
            if self.timeout is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    raise CoordinationTimeoutError(f"wallet lock for user {user_id}", self.timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(user_id)
