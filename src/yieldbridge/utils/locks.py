"""Per-address locking.

Serializes withdraw initiation for one user so two concurrent requests
cannot both scan, find the same position, and submit ``initWithdraw``
twice.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from yieldbridge.errors import TransferError

logger = logging.getLogger(__name__)


class LockTimeoutError(TransferError):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class AddressLocks:
    """Registry of asyncio locks keyed by (case-insensitive) address.

    Example:
        async with locks.hold(user_address, operation="withdraw"):
            # check-then-create for this user
            ...
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, address: str) -> asyncio.Lock:
        """Get or create the lock for an address."""
        key = address.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(
        self,
        address: str,
        operation: str = "transfer_operation",
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """Hold the address lock for the duration of the block.

        Raises:
            LockTimeoutError: lock not acquired within ``timeout`` seconds
        """
        timeout = self.timeout if timeout is None else timeout
        lock = self.get(address)

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {address} after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {address} within {timeout}s")

        logger.debug(f"Lock acquired for {address}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {address}: {operation}")

    def clear(self) -> None:
        """Drop all locks (useful for testing)."""
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)
