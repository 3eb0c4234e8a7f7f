"""Property-based tests for the retry decorator used on collaborator I/O."""

import asyncio
from typing import List
from unittest.mock import patch

import pytest
from hypothesis import given, settings, strategies as st

from recipeflow.utils.retry import with_retry


class FlakyError(Exception):
    pass


class TestRetryBackoff:
    """Failures listed in ``exceptions`` are retried with doubling delays."""

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=5),
        failures=st.integers(min_value=0, max_value=8),
    )
    def test_attempts_bounded_and_success_returned(self, max_attempts: int, failures: int) -> None:
        calls = 0
        delays: List[float] = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        @with_retry(max_attempts=max_attempts, base_delay=0.5, exceptions=(FlakyError,))
        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls <= failures:
                raise FlakyError(f"failure {calls}")
            return "ok"

        async def run() -> object:
            with patch("recipeflow.utils.retry.asyncio.sleep", fake_sleep):
                try:
                    return await flaky()
                except FlakyError as e:
                    return e

        outcome = asyncio.run(run())

        assert calls == min(failures + 1, max_attempts)
        assert delays == [0.5 * 2**i for i in range(calls - 1)]
        if failures < max_attempts:
            assert outcome == "ok"
        else:
            assert isinstance(outcome, FlakyError)
            assert str(outcome) == f"failure {max_attempts}"

    def test_unlisted_exceptions_not_retried(self) -> None:
        calls = 0

        @with_retry(max_attempts=4, base_delay=0, exceptions=(FlakyError,))
        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise KeyError("not transient")

        with pytest.raises(KeyError):
            asyncio.run(broken())
        assert calls == 1

    def test_task_cancellation_not_retried(self) -> None:
        calls = 0

        @with_retry(max_attempts=4, base_delay=0)
        async def cancelled() -> None:
            nonlocal calls
            calls += 1
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(cancelled())
        assert calls == 1

    def test_zero_attempts_still_calls_once(self) -> None:
        @with_retry(max_attempts=0)
        async def succeed() -> int:
            return 7

        assert asyncio.run(succeed()) == 7
