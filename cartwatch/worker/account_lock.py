"""Per-account mutual exclusion for browser-session work.

Cart scrapes, SKU acquisition steps and session disposal for the same
account all run under the same lock, so only one task drives an account's
page at a time. Different accounts never block each other.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class AccountLockRegistry:
    """Registry of asyncio locks keyed by account id.

    Waiters on asyncio.Lock are woken in FIFO order, and `hold()` releases
    on every exit path including cancellation.
    """

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def get(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def is_locked(self, account_id: int) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, account_id: int, purpose: str = "") -> AsyncIterator[None]:
        """Hold the account's lock for the duration of the block."""
        lock = self.get(account_id)
        if lock.locked():
            logger.debug(f"Waiting for account {account_id} lock ({purpose or 'unnamed'})")
        async with lock:
            yield

    def forget(self, account_id: int) -> None:
        """Drop an idle lock (account deleted)."""
        lock = self._locks.get(account_id)
        if lock is not None and not lock.locked():
            self._locks.pop(account_id, None)


account_locks = AccountLockRegistry()
