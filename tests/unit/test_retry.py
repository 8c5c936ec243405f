"""Tests for retry helpers."""

from unittest.mock import AsyncMock, patch

import pytest

from storysmith.utils.retry import async_retry, retry_with_backoff


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        operation = AsyncMock(return_value="ok")

        assert await retry_with_backoff(operation, max_attempts=3, base_delay=0) == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_until_success_with_exponential_delays(self):
        operation = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])

        with patch("storysmith.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await retry_with_backoff(operation, max_attempts=3, base_delay=1.5, label="implement")

        assert result == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_last_error_propagates_unchanged(self):
        errors = [TimeoutError("first"), TimeoutError("second")]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(TimeoutError) as exc_info:
            await retry_with_backoff(operation, max_attempts=2, base_delay=0)

        assert exc_info.value is errors[1]
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_non_matching_exception_is_not_retried(self):
        operation = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await retry_with_backoff(operation, max_attempts=5, base_delay=0, exceptions=(ConnectionError,))
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self):
        operation = AsyncMock(side_effect=ValueError("nope"))

        with patch("storysmith.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ValueError):
                await retry_with_backoff(operation, max_attempts=1, base_delay=10)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="at least 1"):
            await retry_with_backoff(AsyncMock(), max_attempts=0)


class TestAsyncRetryDecorator:
    @pytest.mark.asyncio
    async def test_decorator_retries_listed_exceptions(self):
        calls = []

        @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ConnectionError,))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "up"

        with patch("storysmith.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await flaky() == "up"

        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_decorator_gives_up(self):
        @async_retry(max_attempts=2, exceptions=(ConnectionError,))
        async def always_down():
            raise ConnectionError("down")

        with patch("storysmith.utils.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ConnectionError):
                await always_down()

    @pytest.mark.asyncio
    async def test_decorator_preserves_name(self):
        @async_retry()
        async def fetch_checks():
            return None

        assert fetch_checks.__name__ == "fetch_checks"
