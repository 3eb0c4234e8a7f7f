"""Tests for cancellation handles and the cancellation registry."""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from recipeflow.services.cancellation import CancellationHandle, CancellationRegistry, CancelReason
from recipeflow.utils.errors import JobCancelledError


class TestCancellationHandle:
    @pytest.mark.asyncio
    async def test_first_reason_wins(self) -> None:
        handle = CancellationHandle("job-1")
        assert handle.cancel(CancelReason.REQUESTED)
        assert handle.cancel(CancelReason.SHUTDOWN)

        assert handle.cancelled
        assert handle.reason == CancelReason.REQUESTED

    @pytest.mark.asyncio
    async def test_deadline_fires(self) -> None:
        handle = CancellationHandle("job-2", timeout=0.01)
        await asyncio.wait_for(handle.wait(), timeout=1)
        assert handle.reason == CancelReason.DEADLINE

    @pytest.mark.asyncio
    async def test_sealed_handle_ignores_cancel(self) -> None:
        handle = CancellationHandle("job-3", timeout=0.01)
        handle.seal()

        assert handle.cancel() is False
        await asyncio.sleep(0.03)
        assert not handle.cancelled

    @pytest.mark.asyncio
    async def test_run_returns_result(self) -> None:
        handle = CancellationHandle("job-4")

        async def work() -> str:
            await asyncio.sleep(0)
            return "done"

        assert await handle.run(work()) == "done"

    @pytest.mark.asyncio
    async def test_run_propagates_work_errors(self) -> None:
        handle = CancellationHandle("job-5")

        async def work() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await handle.run(work())

    @pytest.mark.asyncio
    async def test_run_aborts_pending_work_and_lets_it_unwind(self) -> None:
        handle = CancellationHandle("job-6")
        unwound = asyncio.Event()

        async def work() -> None:
            try:
                await asyncio.sleep(60)
            finally:
                unwound.set()

        task = asyncio.create_task(handle.run(work()))
        await asyncio.sleep(0.01)
        handle.cancel(CancelReason.REQUESTED)

        with pytest.raises(JobCancelledError) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.reason == "requested"
        assert unwound.is_set()

    @pytest.mark.asyncio
    async def test_run_on_cancelled_handle_does_not_start_work(self) -> None:
        handle = CancellationHandle("job-7")
        handle.cancel()
        started = False

        async def work() -> None:
            nonlocal started
            started = True

        with pytest.raises(JobCancelledError):
            await handle.run(work())
        assert not started


class TestCancellationRegistry:
    @settings(max_examples=50, deadline=None)
    @given(job_ids=st.lists(st.uuids().map(str), min_size=0, max_size=10, unique=True))
    def test_cancel_all_signals_every_handle(self, job_ids: list) -> None:
        async def run_test() -> list:
            registry = CancellationRegistry()
            handles = [CancellationHandle(job_id) for job_id in job_ids]
            for handle in handles:
                registry.register(handle)

            assert registry.cancel_all() == len(job_ids)
            return handles

        handles = asyncio.run(run_test())
        assert all(h.cancelled and h.reason == CancelReason.SHUTDOWN for h in handles)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_is_false(self) -> None:
        registry = CancellationRegistry()
        assert registry.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_register_and_remove(self) -> None:
        registry = CancellationRegistry()
        handle = CancellationHandle("job-8")
        registry.register(handle)

        assert "job-8" in registry
        assert len(registry) == 1
        assert registry.job_ids() == {"job-8"}
        assert registry.remove("job-8") is handle
        assert registry.remove("job-8") is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_sealed_handle_is_false(self) -> None:
        registry = CancellationRegistry()
        handle = CancellationHandle("job-9")
        registry.register(handle)
        handle.seal()

        assert registry.cancel("job-9") is False
        assert not handle.cancelled
