"""Concurrency control for per-sender transfer execution.

Serializes the balance-check-through-submission window for each sender so
that two concurrent transfers cannot both pass the same balance check.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

from gaslesspay.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Registry of asyncio locks keyed by an arbitrary hashable (e.g. sender ID).

    Example:
        locks = KeyedLockRegistry()
        async with locks.lock(sender_id, operation="transfer"):
            # Balance check, persistence and submission here
            pass
    """

    def __init__(self, default_timeout: Optional[float] = 30.0):
        self.default_timeout = default_timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def get_lock(self, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a key."""
        async with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    @asynccontextmanager
    async def lock(
        self,
        key: Hashable,
        timeout: Optional[float] = None,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Hold the key's lock for the duration of the block.

        Args:
            key: Lock key
            timeout: Maximum time to wait (None = registry default, 0 = forever)
            operation: Description for logging

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        lock = await self.get_lock(key)
        wait = self.default_timeout if timeout is None else timeout

        try:
            if wait:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {key} after {wait}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {key} within {wait}s")

        logger.debug(f"Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {key}: {operation}")

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def clear(self) -> None:
        """Drop all idle locks."""
        for key in [k for k, v in self._locks.items() if not v.locked()]:
            del self._locks[key]
