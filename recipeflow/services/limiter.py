"""Counting admission gate bounding concurrent pipeline executions."""

import asyncio
import logging
from typing import Optional

from recipeflow.services.cancellation import CancellationHandle
from recipeflow.utils.errors import JobCancelledError, SlotUnavailableError

logger = logging.getLogger(__name__)


class Slot:
    """A held execution slot. Releasing it more than once is harmless."""

    def __init__(self, limiter: "ConcurrencyLimiter") -> None:
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release()

    async def __aenter__(self) -> "Slot":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


class ConcurrencyLimiter:
    """
    Fixed-capacity gate in front of the expensive pipeline stages.

    Exposes ``in_use``, ``waiting`` and ``peak`` so the bound can be observed.
    """

    def __init__(self, capacity: int = 5) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self.in_use = 0
        self.waiting = 0
        self.peak = 0

    async def acquire(self, handle: Optional[CancellationHandle] = None) -> Slot:
        """
        Wait for a free slot.

        Args:
            handle: Cancellation handle that aborts the wait when it fires

        Returns:
            A single-use Slot

        Raises:
            SlotUnavailableError: If cancellation fired before a slot was acquired
        """
        self.waiting += 1
        try:
            if handle is None:
                await self._semaphore.acquire()
            else:
                await handle.run(self._semaphore.acquire())
        except JobCancelledError as e:
            raise SlotUnavailableError(f"Cancelled while waiting for a slot: {e}") from e
        finally:
            self.waiting -= 1

        self.in_use += 1
        self.peak = max(self.peak, self.in_use)
        logger.debug(f"Slot acquired ({self.in_use}/{self.capacity} in use)")
        return Slot(self)

    def _release(self) -> None:
        self.in_use -= 1
        self._semaphore.release()
        logger.debug(f"Slot released ({self.in_use}/{self.capacity} in use)")
