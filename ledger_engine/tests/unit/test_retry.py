"""Unit tests for ledger_engine.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from ledger_engine.retry import RetryConfig, async_retry_with_backoff, compute_delay

# ---------------------------------------------------------------------------
# RetryConfig
# ---------------------------------------------------------------------------


class TestRetryConfig:
    def test_default_values(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 0.5
        assert config.max_delay == 10.0
        assert config.jitter is True

    def test_zero_retries_allowed(self):
        assert RetryConfig(max_retries=0).max_retries == 0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)


# ---------------------------------------------------------------------------
# compute_delay
# ---------------------------------------------------------------------------


class TestComputeDelay:
    def test_exponential_growth_no_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=100.0, jitter=False)
        assert [compute_delay(attempt, config) for attempt in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert compute_delay(10, config) == 5.0

    def test_jitter_within_bounds(self):
        config = RetryConfig(base_delay=2.0, max_delay=100.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= compute_delay(0, config) <= 3.0


# ---------------------------------------------------------------------------
# async_retry_with_backoff
# ---------------------------------------------------------------------------


@pytest.fixture
def no_sleep():
    with patch("ledger_engine.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestAsyncRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep):
        fn = AsyncMock(return_value="ok")
        assert await async_retry_with_backoff(fn, RetryConfig()) == "ok"
        assert fn.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, no_sleep):
        fn = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        config = RetryConfig(max_retries=3, base_delay=1.0, jitter=False)

        assert await async_retry_with_backoff(fn, config, (ConnectionError,)) == "ok"
        assert fn.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, no_sleep):
        fn = AsyncMock(side_effect=[ConnectionError("first"), ConnectionError("last")])

        with pytest.raises(ConnectionError, match="last"):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=1), (ConnectionError,))
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_type_propagates_immediately(self, no_sleep):
        fn = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=5), (ConnectionError,))
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_should_retry_predicate_rejects(self, no_sleep):
        fn = AsyncMock(side_effect=ConnectionError("fatal"))

        with pytest.raises(ConnectionError, match="fatal"):
            await async_retry_with_backoff(
                fn,
                RetryConfig(max_retries=5),
                (ConnectionError,),
                should_retry=lambda exc: "transient" in str(exc),
            )
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self, no_sleep):
        fn = AsyncMock(side_effect=ConnectionError("once"))

        with pytest.raises(ConnectionError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=0), (ConnectionError,))
        assert fn.await_count == 1
