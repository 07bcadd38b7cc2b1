"""Keyed asyncio locks.

Used to serialize use of a pool signing key per asset, so two withdrawals from
the same pool address never race for the same nonce. Balance consistency does
not rely on these locks; that is enforced by the database.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLock:
    """Registry of asyncio.Lock objects, one per key.

    Example:
        locks = KeyedLock()
        async with locks.hold("ETH", operation="withdrawal 42"):
            # exclusive section for ETH
            ...
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            timeout: Default maximum wait for a lock (None = wait forever)
        """
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        """Get or create the lock for a key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        timeout: Optional[float] = None,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        lock = self.get(key)
        timeout = timeout if timeout is not None else self.timeout

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {key} within {timeout}s")

        logger.debug(f"Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {key}: {operation}")

    def clear(self) -> None:
        """Drop all locks (useful for testing)."""
        self._locks.clear()
