"""Property-based tests for the concurrency limiter.

Properties: bounded concurrency, idempotent release, cancellable acquire.
"""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from recipeflow.services.cancellation import CancellationHandle, CancelReason
from recipeflow.services.limiter import ConcurrencyLimiter
from recipeflow.utils.errors import SlotUnavailableError


class TestBoundedConcurrency:
    """
    *For any* capacity N and any burst of concurrent acquirers, at no point do
    more than N of them hold a slot, and every slot is returned at the end.
    """

    @settings(max_examples=50, deadline=None)
    @given(
        capacity=st.integers(min_value=1, max_value=6),
        jobs=st.integers(min_value=1, max_value=15),
        hold_ticks=st.integers(min_value=0, max_value=3),
    )
    def test_peak_never_exceeds_capacity(self, capacity: int, jobs: int, hold_ticks: int) -> None:
        observed = []

        async def run_test() -> ConcurrencyLimiter:
            limiter = ConcurrencyLimiter(capacity)

            async def worker() -> None:
                async with await limiter.acquire():
                    observed.append(limiter.in_use)
                    for _ in range(hold_ticks):
                        await asyncio.sleep(0)

            await asyncio.gather(*(worker() for _ in range(jobs)))
            return limiter

        limiter = asyncio.run(run_test())

        assert len(observed) == jobs
        assert max(observed) <= capacity
        assert limiter.peak <= capacity
        assert limiter.in_use == 0
        assert limiter.waiting == 0

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


class TestSlotRelease:
    @pytest.mark.asyncio
    async def test_release_is_idempotent(self) -> None:
        limiter = ConcurrencyLimiter(1)
        slot = await limiter.acquire()
        slot.release()
        slot.release()
        slot.release()

        assert limiter.in_use == 0
        # exactly one slot came back: a second concurrent acquire must wait
        first = await limiter.acquire()
        second = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0.01)
        assert not second.done()
        first.release()
        (await second).release()

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self) -> None:
        limiter = ConcurrencyLimiter(2)
        with pytest.raises(RuntimeError):
            async with await limiter.acquire():
                raise RuntimeError("stage blew up")
        assert limiter.in_use == 0


class TestCancellableAcquire:
    @pytest.mark.asyncio
    async def test_cancel_while_waiting_acquires_nothing(self) -> None:
        limiter = ConcurrencyLimiter(1)
        held = await limiter.acquire()
        handle = CancellationHandle("job-1")

        waiter = asyncio.create_task(limiter.acquire(handle))
        await asyncio.sleep(0.01)
        assert limiter.waiting == 1

        handle.cancel(CancelReason.REQUESTED)
        with pytest.raises(SlotUnavailableError):
            await waiter

        assert limiter.waiting == 0
        assert limiter.in_use == 1
        held.release()
        assert limiter.in_use == 0
        # the abandoned wait did not consume the freed slot
        slot = await asyncio.wait_for(limiter.acquire(), timeout=1)
        slot.release()

    @pytest.mark.asyncio
    async def test_already_cancelled_handle_fails_fast(self) -> None:
        limiter = ConcurrencyLimiter(3)
        handle = CancellationHandle("job-2")
        handle.cancel()

        with pytest.raises(SlotUnavailableError):
            await limiter.acquire(handle)
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_deadline_aborts_wait(self) -> None:
        limiter = ConcurrencyLimiter(1)
        held = await limiter.acquire()
        handle = CancellationHandle("job-3", timeout=0.02)

        with pytest.raises(SlotUnavailableError):
            await asyncio.wait_for(limiter.acquire(handle), timeout=2)
        assert handle.reason == CancelReason.DEADLINE
        held.release()
