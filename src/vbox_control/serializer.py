"""Per-machine serialization of lifecycle operations.

At most one lifecycle operation runs per machine name across the process,
whichever host or caller issued it. The remote session lock is the real
mutual-exclusion primitive; this keeps the process from issuing
overlapping requests that would only surface as lock contention.

Locks are created lazily, one per distinct name, and never removed. This
suits a small, roughly static machine population.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from vbox_control._logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class PerMachineSerializer:
    """Process-wide mutual exclusion keyed by machine name.

    asyncio.Lock wakes waiters in FIFO order, so operations for the same
    machine run in the order they reached the lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # Protects _locks dict

    async def _lock_for(self, machine_name: str) -> asyncio.Lock:
        async with self._locks_lock:
            if machine_name not in self._locks:
                self._locks[machine_name] = asyncio.Lock()
            return self._locks[machine_name]

    @asynccontextmanager
    async def hold(self, machine_name: str) -> AsyncIterator[None]:
        """Hold the machine's lock for the duration of the block."""
        lock = await self._lock_for(machine_name)
        if lock.locked():
            logger.debug("Waiting for machine lock", extra={"machine": machine_name})
        async with lock:
            yield

    async def with_lock(self, machine_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation()`` while holding the machine's lock."""
        async with self.hold(machine_name):
            return await operation()

    def is_locked(self, machine_name: str) -> bool:
        lock = self._locks.get(machine_name)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
