"""Per-volume mutual exclusion.

Operations that change key slots, lock state or the header of a volume
run under that volume's lock. Different volumes never contend.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from luksvault.core.errors import Busy


class VolumeLocks:
    """One asyncio.Lock per device identity.

    ``wait_seconds`` is the wait policy: 0 fails fast with Busy when the
    lock is held, a positive value waits that long before giving up.

    Usage:
        locks = VolumeLocks(wait_seconds=settings.lock_wait_seconds)
        async with locks.hold("/dev/sda2", "unlock"):
            ...
    """

    def __init__(self, wait_seconds: float = 0.0):
        self.wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, str] = {}

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def is_locked(self, device_id: str) -> bool:
        lock = self._locks.get(device_id)
        return bool(lock and lock.locked())

    def holder(self, device_id: str) -> str | None:
        """Name of the operation currently holding the lock."""
        return self._holders.get(device_id)

    @asynccontextmanager
    async def hold(
        self,
        device_id: str,
        operation: str,
        wait_seconds: float | None = None,
    ) -> AsyncIterator[None]:
        """Hold the volume lock for the duration of the block.

        Raises:
            Busy: Lock not acquired within the wait policy
        """
        lock = self._lock(device_id)
        wait = self.wait_seconds if wait_seconds is None else wait_seconds
        if lock.locked() and wait <= 0:
            raise Busy(f"{device_id} is busy ({self._holders.get(device_id, 'in use')})")
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait if wait > 0 else None)
        except asyncio.TimeoutError:
            raise Busy(f"{device_id} is busy ({self._holders.get(device_id, 'in use')})")
        self._holders[device_id] = operation
        try:
            yield
        finally:
            self._holders.pop(device_id, None)
            lock.release()
