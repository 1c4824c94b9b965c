"""Per-account critical sections for read-modify-write billing operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
import weakref


class AccountLocks:
    """Registry of ``asyncio.Lock`` objects keyed by account id.

    Locks are held weakly: once no coroutine holds or waits on an account's
    lock it is dropped from the registry.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(account_id)
        async with lock:
            yield

    def is_locked(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


account_locks = AccountLocks()
