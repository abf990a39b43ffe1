"""
Resource Manager.

Caps the number of runs active at once. A run takes a slot when it
leaves `pending` and gives it back on reaching a terminal stage; runs
beyond the ceiling wait in `pending`. Waiting for a slot is queueing,
never an error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ResourceManager:
    """Concurrency ceiling for active runs.

    Usage:
        resources = ResourceManager(max_concurrent=3)
        async with resources.slot(run_id):
            ...
    """

    def __init__(self, max_concurrent: int = 3) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active: set[str] = set()
        self._queued: set[str] = set()

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def active(self) -> int:
        return len(self._active)

    @property
    def queued(self) -> int:
        return len(self._queued)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def acquire(self, run_id: str) -> None:
        """Wait for a free slot."""
        self._queued.add(run_id)
        try:
            if self._semaphore.locked():
                logger.info(f"[{run_id}] Queued: {self.active}/{self._max} slots in use")
            await self._semaphore.acquire()
        finally:
            self._queued.discard(run_id)
        self._active.add(run_id)
        logger.debug(f"[{run_id}] Slot acquired ({self.active}/{self._max})")

    def release(self, run_id: str) -> None:
        """Give a slot back; releasing a run without a slot is a no-op."""
        if run_id not in self._active:
            return
        self._active.discard(run_id)
        self._semaphore.release()
        logger.debug(f"[{run_id}] Slot released ({self.active}/{self._max})")

    @asynccontextmanager
    async def slot(self, run_id: str) -> AsyncIterator[None]:
        await self.acquire(run_id)
        try:
            yield
        finally:
            self.release(run_id)

    def stats(self) -> dict[str, int]:
        return {"max_concurrent": self._max, "active": self.active, "queued": self.queued}
