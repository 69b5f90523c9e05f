"""Per-wallet write serialization."""

import asyncio
import contextlib
from typing import AsyncIterator, Dict


class WalletLockRegistry:
    """Hands out one asyncio.Lock per wallet id.

    Stage and activity writers for the same wallet share the lock, so at most
    one task mutates that wallet at a time. Different wallets never contend.
    ``hold`` is re-entrant for the task that already owns the wallet, which
    lets ingestion wrap aggregation and stage updates in one critical section.
    A wallet's lock is dropped once no task holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._owners: Dict[str, asyncio.Task] = {}

    @contextlib.asynccontextmanager
    async def hold(self, wallet_id: str) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if task is not None and self._owners.get(wallet_id) is task:
            yield
            return

        lock = self._locks.setdefault(wallet_id, asyncio.Lock())
        self._users[wallet_id] = self._users.get(wallet_id, 0) + 1
        try:
            async with lock:
                self._owners[wallet_id] = task
                try:
                    yield
                finally:
                    self._owners.pop(wallet_id, None)
        finally:
            self._users[wallet_id] -= 1
            if not self._users[wallet_id]:
                del self._users[wallet_id]
                self._locks.pop(wallet_id, None)

    def is_locked(self, wallet_id: str) -> bool:
        lock = self._locks.get(wallet_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
