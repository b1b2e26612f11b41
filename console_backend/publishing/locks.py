"""
Per-module async mutexes.

Every read -> mutate -> write sequence on a module runs under that module's lock.
Locks for several keys are always taken in sorted order; scope locks
(kind/store/product) are taken before any module lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable

logger = logging.getLogger(__name__)


class ModuleLockRegistry:
    """Process-local registry of asyncio.Lock objects keyed by module id or scope."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @staticmethod
    def scope_key(kind: str, store_id: str, product_id: str) -> str:
        return f"scope:{kind}:{store_id}:{product_id}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire the locks for all keys for the duration of the block, scope keys first, then sorted."""
        ordered = sorted({k for k in keys if k}, key=lambda k: (not k.startswith("scope:"), k))
        registered = []
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                self._holders[key] = self._holders.get(key, 0) + 1
                registered.append(key)
                await lock.acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in registered:
                self._release_holder(key)

    def _release_holder(self, key: str) -> None:
        remaining = self._holders.get(key, 1) - 1
        if remaining <= 0:
            self._holders.pop(key, None)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
        else:
            self._holders[key] = remaining

    def held_keys(self) -> Iterable[str]:
        return [k for k, lock in self._locks.items() if lock.locked()]
