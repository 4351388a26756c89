"""Tests for exponential backoff retries."""

from unittest.mock import AsyncMock

import pytest

from common.exceptions import ConditionalCheckFailedError, StoreUnavailableError
from common.retry import backoff_delay, retry_with_backoff


class TestBackoffDelay:

    def test_doubles_until_cap(self):
        assert [backoff_delay(a, 0.5, 3.0) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestRetryWithBackoff:
    """Test which failures are retried."""

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        operation = AsyncMock(side_effect=[StoreUnavailableError("locked"), "ok"])

        result = await retry_with_backoff(operation, "arg", max_retries=3, base_delay=0)

        assert result == "ok"
        assert operation.await_count == 2
        operation.assert_awaited_with("arg")

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self):
        operation = AsyncMock(side_effect=StoreUnavailableError("locked"))

        with pytest.raises(StoreUnavailableError):
            await retry_with_backoff(operation, max_retries=3, base_delay=0)

        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ConditionalCheckFailedError("k", "v", 1, 2))

        with pytest.raises(ConditionalCheckFailedError):
            await retry_with_backoff(operation, max_retries=3, base_delay=0)

        assert operation.await_count == 1
