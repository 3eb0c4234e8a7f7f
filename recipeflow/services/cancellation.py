"""Per-job cancellation handles and the registry that tracks them.

A handle combines an explicit cancel request with an absolute deadline; whichever
fires first wins and its reason is kept. Handles live only in this process.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, TypeVar

from recipeflow.utils.errors import JobCancelledError

logger = logging.getLogger(__name__)
T = TypeVar("T")


class CancelReason(str, Enum):
    REQUESTED = "requested"
    DEADLINE = "deadline"
    SHUTDOWN = "shutdown"


class CancellationHandle:
    """Cancellation context for one job, from admission to its terminal state."""

    def __init__(self, job_id: str, timeout: Optional[float] = None) -> None:
        """
        Initialize the handle.

        Args:
            job_id: The job this handle belongs to
            timeout: Seconds until the deadline fires (no deadline when None)
        """
        self.job_id = job_id
        self.reason: Optional[CancelReason] = None
        self._event = asyncio.Event()
        self._sealed = False
        self._timer: Optional[asyncio.TimerHandle] = None
        if timeout is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(max(0.0, timeout), self._expire)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def sealed(self) -> bool:
        return self._sealed

    def cancel(self, reason: CancelReason = CancelReason.REQUESTED) -> bool:
        """
        Signal cancellation.

        Returns:
            False if the handle was sealed (the job already committed its result),
            True otherwise. A second cancel keeps the first reason.
        """
        if self._sealed:
            return False
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            self._stop_timer()
            logger.info(f"Job {self.job_id} cancellation signalled ({reason.value})")
        return True

    def seal(self) -> None:
        """Ignore any later cancel; called once the result is committed."""
        self._sealed = True
        self._stop_timer()

    def close(self) -> None:
        self._stop_timer()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason.value if self.reason else None)

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless cancellation fires first.

        On cancellation the inner task is cancelled and allowed to unwind (so its
        own cleanup runs) before ``JobCancelledError`` is raised. If the work
        finishes first its result or exception is returned unchanged.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done or (task.done() and not task.cancelled()):
            return task.result()

        await asyncio.gather(task, return_exceptions=True)
        # work that ignored the cancel and still finished keeps its result
        if not task.cancelled() and task.exception() is None:
            return task.result()
        raise JobCancelledError(self.reason.value if self.reason else None)

    def _expire(self) -> None:
        self._timer = None
        self.cancel(CancelReason.DEADLINE)

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class CancellationRegistry:
    """Thread-safe map from job id to its cancellation handle."""

    def __init__(self) -> None:
        self._handles: Dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def register(self, handle: CancellationHandle) -> None:
        with self._lock:
            self._handles[handle.job_id] = handle

    def get(self, job_id: str) -> Optional[CancellationHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def remove(self, job_id: str) -> Optional[CancellationHandle]:
        with self._lock:
            return self._handles.pop(job_id, None)

    def cancel(self, job_id: str, reason: CancelReason = CancelReason.REQUESTED) -> bool:
        """
        Signal the handle for ``job_id`` if one is registered.

        Returns:
            True if a live, unsealed handle was signalled
        """
        handle = self.get(job_id)
        if handle is None:
            return False
        return handle.cancel(reason)

    def cancel_all(self, reason: CancelReason = CancelReason.SHUTDOWN) -> int:
        with self._lock:
            handles = list(self._handles.values())
        return sum(1 for handle in handles if handle.cancel(reason))

    def job_ids(self) -> set[str]:
        with self._lock:
            return set(self._handles)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
