"""Tests for the bounded-retry primitive, error classification and with_retry."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from botocore.exceptions import ClientError

from spotfleet.core.retryable import classify_error, retry_until, with_retry


def _client_error(code: str, operation: str = "DescribeSpotInstanceRequests") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "test error"}}, operation)


class TestRetryUntil:
    """Tests for retry_until."""

    async def test_returns_first_truthy_value(self) -> None:
        """Stops as soon as the action yields a value."""
        action = AsyncMock(side_effect=[None, "", "ready"])

        outcome = await retry_until(action, interval=0, max_attempts=5)

        assert outcome.ok is True
        assert outcome.value == "ready"
        assert outcome.attempts == 3

    async def test_attempt_cap_times_out(self) -> None:
        """max_attempts bounds the number of calls."""
        action = AsyncMock(return_value=False)

        outcome = await retry_until(action, interval=0, max_attempts=4)

        assert outcome.timed_out is True
        assert outcome.value is None
        assert action.await_count == 4

    async def test_deadline_times_out(self) -> None:
        """A wall-clock deadline ends polling."""
        action = AsyncMock(return_value=None)

        outcome = await retry_until(action, interval=0.01, deadline=0.05)

        assert outcome.timed_out is True
        assert action.await_count >= 1

    async def test_requires_a_bound(self) -> None:
        """Unbounded polling is refused."""
        with pytest.raises(ValueError):
            await retry_until(AsyncMock(return_value=None), interval=0)

    async def test_action_errors_propagate(self) -> None:
        """Exceptions from the action are not swallowed."""
        action = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            await retry_until(action, interval=0, max_attempts=3)
        assert action.await_count == 1


class TestClassifyError:
    """Tests for classify_error."""

    def test_asyncio_timeout_is_retryable(self) -> None:
        assert classify_error(asyncio.TimeoutError()) == "retryable"

    def test_connect_error_is_retryable(self) -> None:
        exc = httpx.ConnectError("connection failed")
        assert classify_error(exc) == "retryable"

    def test_webhook_4xx_is_permanent(self) -> None:
        request = httpx.Request("POST", "https://hooks.slack.test/x")
        response = httpx.Response(404, request=request)
        exc = httpx.HTTPStatusError("not found", request=request, response=response)
        assert classify_error(exc) == "permanent"

    def test_webhook_429_is_retryable(self) -> None:
        request = httpx.Request("POST", "https://hooks.slack.test/x")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("rate limited", request=request, response=response)
        assert classify_error(exc) == "retryable"

    def test_request_limit_exceeded_is_retryable(self) -> None:
        """EC2 API throttling should be retried."""
        assert classify_error(_client_error("RequestLimitExceeded")) == "retryable"

    def test_auth_failure_is_permanent(self) -> None:
        assert classify_error(_client_error("AuthFailure")) == "permanent"

    def test_s3_access_denied_is_permanent(self) -> None:
        assert classify_error(_client_error("AccessDenied", "GetObject")) == "permanent"

    def test_unknown_client_error(self) -> None:
        assert classify_error(_client_error("SomeUnknownCode")) == "unknown"

    def test_plain_exception_is_unknown(self) -> None:
        exc = ValueError("some value error")
        assert classify_error(exc) == "unknown"


class TestWithRetry:
    """Tests for with_retry."""

    async def test_success_on_first_attempt(self) -> None:
        factory = AsyncMock(return_value="ok")

        assert await with_retry(factory, max_retries=3) == "ok"
        assert factory.await_count == 1

    async def test_retries_transient_errors(self) -> None:
        """Retryable errors are retried until success."""
        factory = AsyncMock(side_effect=[httpx.ConnectError("down"), "ok"])

        with patch("spotfleet.core.retryable.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await with_retry(factory, max_retries=3)

        assert result == "ok"
        assert factory.await_count == 2
        sleep.assert_awaited_once()

    async def test_permanent_error_raised_immediately(self) -> None:
        factory = AsyncMock(side_effect=_client_error("AccessDenied", "GetObject"))

        with pytest.raises(ClientError):
            await with_retry(factory, max_retries=3)
        assert factory.await_count == 1

    async def test_gives_up_after_max_retries(self) -> None:
        factory = AsyncMock(side_effect=httpx.ConnectTimeout("timeout"))

        with patch("spotfleet.core.retryable.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.ConnectTimeout):
                await with_retry(factory, max_retries=2)
        assert factory.await_count == 3
