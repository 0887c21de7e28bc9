"""
Unit tests for RetryPolicy and is_retryable_error.

Sleeps are recorded instead of awaited, so no test waits in real time.
"""

import errno
import socket
from typing import List

import httpx
import pytest

from querypilot.config import RetryConfig
from querypilot.domain.errors import TransientProviderError
from querypilot.utils.retry import RetryPolicy, is_retryable_error, retry


class StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class FlakyCall:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.attempts = 0

    async def __call__(self) -> str:
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def policy(sleeps) -> RetryPolicy:
    async def record(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryPolicy(RetryConfig(max_retries=3, initial_delay_ms=1000, max_delay_ms=10000), sleep=record)


class TestIsRetryableError:

    @pytest.mark.parametrize("status", [429, 503])
    def test_retryable_statuses(self, status):
        assert is_retryable_error(StatusError(status))

    @pytest.mark.parametrize("status", [400, 401, 404, 500])
    def test_other_statuses(self, status):
        assert not is_retryable_error(StatusError(status))

    def test_status_on_wrapped_response(self):
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("rate limited", request=request, response=response)
        assert is_retryable_error(error)

    def test_transient_provider_error(self):
        assert is_retryable_error(TransientProviderError("Provider overloaded"))

    @pytest.mark.parametrize(
        "error",
        [
            ConnectionResetError(),
            TimeoutError(),
            socket.gaierror("name lookup failed"),
            OSError(errno.ECONNRESET, "reset by peer"),
            httpx.ConnectError("refused"),
        ],
    )
    def test_network_errors(self, error):
        assert is_retryable_error(error)

    def test_wrapped_cause(self):
        try:
            try:
                raise ConnectionResetError()
            except ConnectionResetError as inner:
                raise RuntimeError("sdk wrapper") from inner
        except RuntimeError as outer:
            assert is_retryable_error(outer)

    def test_error_raised_while_handling_a_network_error(self):
        try:
            try:
                raise TimeoutError()
            except TimeoutError:
                raise RuntimeError("provider client gave up")
        except RuntimeError as outer:
            assert outer.__cause__ is None
            assert is_retryable_error(outer)

    def test_plain_errors(self):
        assert not is_retryable_error(ValueError("bad json"))


class TestRetryPolicy:

    def test_delay_schedule(self):
        policy = RetryPolicy(RetryConfig(max_retries=5, initial_delay_ms=1000, max_delay_ms=5000))
        assert policy.schedule_ms() == [1000, 2000, 4000, 5000, 5000]

    @pytest.mark.asyncio
    async def test_two_rate_limits_then_success(self, policy, sleeps):
        call = FlakyCall(StatusError(429), StatusError(429))

        assert await policy.run(call) == "ok"
        assert call.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert sleeps == sorted(sleeps)

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self, policy, sleeps):
        call = FlakyCall(StatusError(400))

        with pytest.raises(StatusError):
            await policy.run(call)
        assert call.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, policy, sleeps):
        call = FlakyCall(StatusError(503), StatusError(503), StatusError(503), StatusError(429), StatusError(503))

        with pytest.raises(StatusError) as exc_info:
            await policy.run(call)
        # The error from the final attempt is the one raised
        assert exc_info.value.status_code == 429
        assert call.attempts == 4
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_zero_retries(self, sleeps):
        async def record(seconds: float) -> None:
            sleeps.append(seconds)

        call = FlakyCall(StatusError(429))
        with pytest.raises(StatusError):
            await RetryPolicy(RetryConfig(max_retries=0), sleep=record).run(call)
        assert call.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retry_function(self, sleeps):
        async def record(seconds: float) -> None:
            sleeps.append(seconds)

        call = FlakyCall(ConnectionResetError())
        assert await retry(call, RetryConfig(initial_delay_ms=10), sleep=record) == "ok"
        assert sleeps == [0.01]
