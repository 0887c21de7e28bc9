"""
Exponential backoff for model provider calls.

Only rate limiting (429), overload (503) and transient network failures
(connection reset, timeout, DNS lookup failure) are retried; anything else
propagates on the first attempt.

Usage:
    policy = RetryPolicy(settings.retry)
    reply = await policy.run(lambda: llm.ainvoke(messages))
"""

import asyncio
import errno
import socket
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import httpx

from querypilot.config import RetryConfig
from querypilot.utils.logging import get_module_logger
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 503})
RETRYABLE_ERRNOS = frozenset({errno.ECONNRESET, errno.ETIMEDOUT})
RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"})

SleepFn = Callable[[float], Awaitable[Any]]


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "http_status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """True for 429/503 responses and transient network errors."""
    if _status_of(error) in RETRYABLE_STATUS_CODES:
        return True

    if isinstance(error, (ConnectionResetError, TimeoutError, asyncio.TimeoutError, socket.gaierror)):
        return True
    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return True

    # SDK errors often wrap the network failure, explicitly or while handling it
    cause = error.__cause__ or error.__context__
    if cause is not None and cause is not error:
        return is_retryable_error(cause)
    return False


class RetryPolicy:
    """Retries a coroutine factory with capped exponential backoff."""

    def __init__(self, config: Optional[RetryConfig] = None, sleep: Optional[SleepFn] = None):
        self.config = config or RetryConfig()
        self._sleep: SleepFn = sleep or asyncio.sleep

    def delay_ms(self, attempt: int) -> float:
        """Delay before retrying after the 0-indexed `attempt` failed."""
        delay = self.config.initial_delay_ms * (self.config.backoff_multiplier ** attempt)
        return min(delay, self.config.max_delay_ms)

    def schedule_ms(self) -> List[float]:
        return [self.delay_ms(attempt) for attempt in range(self.config.max_retries)]

    async def run(self, fn: Callable[[], Awaitable[T]], operation: str = "llm_call") -> T:
        attempt = 0
        while True:
            try:
                result = await fn()
                if attempt > 0:
                    logger.info(
                        "Retry succeeded",
                        operation=operation,
                        attempt=attempt + 1,
                        trace_id=current_trace_id(),
                    )
                return result
            except Exception as exc:
                if not is_retryable_error(exc):
                    raise

                if attempt >= self.config.max_retries:
                    logger.error(
                        "All retry attempts failed",
                        operation=operation,
                        max_retries=self.config.max_retries,
                        error=str(exc),
                        trace_id=current_trace_id(),
                    )
                    raise

                delay = self.delay_ms(attempt)
                logger.warning(
                    "Transient provider error, backing off",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=self.config.max_retries,
                    delay_ms=delay,
                    error=str(exc),
                    trace_id=current_trace_id(),
                )
                await self._sleep(delay / 1000)
                attempt += 1


async def retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    sleep: Optional[SleepFn] = None,
) -> T:
    """One-shot form of RetryPolicy(config, sleep).run(fn)."""
    return await RetryPolicy(config, sleep).run(fn)
