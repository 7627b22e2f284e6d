"""
Retrying transport for LLM calls.

Wraps one network operation with bounded exponential backoff, honours the
server's retry-after hint on 429, never retries authentication failures, and
checks the cancellation token before every attempt.
"""

import asyncio
import random
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import openai
import structlog

from ..errors import (
    AbortedError,
    AuthError,
    RateLimitError,
    RetryExhaustedError,
    TransientTransportError,
    TransportError,
)
from .cancellation import CancellationToken

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 32.0
JITTER_RATIO = 0.3
DEFAULT_RETRY_AFTER = 60.0


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    RETRYABLE = "retryable"
    FATAL = "fatal"


def classify_error(error: BaseException) -> ErrorKind:
    """Decide how the transport treats an exception."""
    if isinstance(error, (AuthError, openai.AuthenticationError)):
        return ErrorKind.AUTH

    if isinstance(error, (RateLimitError, openai.RateLimitError)):
        return ErrorKind.RATE_LIMIT

    if isinstance(error, openai.APIStatusError):
        if error.status_code == 401:
            return ErrorKind.AUTH
        if error.status_code == 429:
            return ErrorKind.RATE_LIMIT
        if error.status_code in RETRYABLE_STATUS_CODES:
            return ErrorKind.RETRYABLE
        return ErrorKind.FATAL

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(error, (openai.APIConnectionError, httpx.TransportError)):
        return ErrorKind.RETRYABLE

    if isinstance(error, TransientTransportError):
        return ErrorKind.RETRYABLE

    if isinstance(error, TransportError):
        if error.status_code == 429:
            return ErrorKind.RATE_LIMIT
        if error.status_code in RETRYABLE_STATUS_CODES:
            return ErrorKind.RETRYABLE

    return ErrorKind.FATAL


def get_retry_after(error: BaseException) -> float:
    """Extract the server's retry-after hint in seconds."""
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        return error.retry_after

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after")
        if value is not None:
            try:
                return float(value)
            except ValueError:
                logger.warning("Unparseable retry-after header", value=value)

    return DEFAULT_RETRY_AFTER


def _status_code(error: BaseException) -> int | None:
    return getattr(error, "status_code", None)


class RetryingTransport:
    """Executes LLM operations with retries and cancellation."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter_ratio: float = JITTER_RATIO,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: Callable[[], float] | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.random

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryingTransport":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def compute_backoff(self, attempt: int) -> float:
        """Backoff for a zero-based attempt number, jittered and capped."""
        backoff = self.base_delay * (2 ** attempt)
        jitter = self._rng() * self.jitter_ratio * backoff
        return min(backoff + jitter, self.max_delay)

    async def _pause(self, delay: float, cancel_token: CancellationToken | None) -> None:
        if cancel_token is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_token.wait())
        _, pending = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails fatally, or runs out of attempts."""
        for attempt in range(self.max_attempts):
            if cancel_token is not None and cancel_token.cancelled:
                raise AbortedError()

            try:
                return await operation()
            except Exception as e:
                kind = classify_error(e)
                final = attempt == self.max_attempts - 1

                if kind is ErrorKind.AUTH:
                    logger.error("Authentication failed", error=str(e))
                    raise AuthError(str(e)) from e

                if kind is ErrorKind.RATE_LIMIT:
                    retry_after = get_retry_after(e)
                    if final:
                        raise RateLimitError(str(e), retry_after=retry_after) from e
                    logger.warning(
                        "Rate limited, waiting before retry",
                        retry_after=retry_after,
                        attempt=attempt + 1,
                        max_attempts=self.max_attempts,
                    )
                    await self._pause(retry_after, cancel_token)
                    continue

                if kind is ErrorKind.FATAL:
                    raise

                if final:
                    logger.error("All retry attempts failed", attempts=self.max_attempts, error=str(e))
                    raise RetryExhaustedError(
                        f"All {self.max_attempts} retry attempts failed: {e}",
                        attempts=self.max_attempts,
                        status_code=_status_code(e),
                    ) from e

                delay = self.compute_backoff(attempt)
                logger.warning(
                    "Request failed, retrying",
                    delay=round(delay, 3),
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                await self._pause(delay, cancel_token)

        raise RetryExhaustedError("Retry loop exited without a result", attempts=self.max_attempts)
