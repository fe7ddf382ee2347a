"""Retry Handler Utility

Applies one explicit RetryConfig policy to every external inference call.

Features:
- Configurable attempts and backoff strategy (fixed, linear, exponential)
- Jitter for request spreading
- Respects retry-after hints from rate limit errors
- Callback support for retry notifications
- Built-in structured logging for observability
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Set, Type, TypeVar

import structlog

from photojury.models.config import BackoffStrategy, RetryConfig
from photojury.utils.exceptions import RateLimitError, RetryableError

logger = structlog.get_logger(__name__)


T = TypeVar("T")

DEFAULT_RETRYABLE: Set[Type[BaseException]] = {RetryableError}


class RetryHandler:
    """Async retry handler driven by a RetryConfig policy.

    Delay per strategy (attempt is 0-indexed):
    - fixed:       base
    - linear:      base * (attempt + 1)
    - exponential: base * 2^attempt
    then +/- jitter_factor randomization, capped at max_delay_seconds.
    """

    def __init__(self, config: Optional[RetryConfig] = None) -> None:
        """Initialize retry handler with configuration.

        Args:
            config: Retry policy
        """
        self.config = config or RetryConfig()

    def calculate_delay(
        self, attempt: int, retry_after: Optional[float] = None
    ) -> float:
        """Calculate delay before the next attempt.

        If retry_after is provided (e.g., from rate limit errors), it is
        used as the base delay instead of the strategy value.

        Args:
            attempt: Current attempt number (0-indexed)
            retry_after: Optional retry-after value from error

        Returns:
            Delay in seconds to wait before next attempt
        """
        base = self.config.base_delay_seconds

        if retry_after is not None and retry_after > 0:
            base_delay = retry_after
        elif self.config.backoff == BackoffStrategy.FIXED:
            base_delay = base
        elif self.config.backoff == BackoffStrategy.LINEAR:
            base_delay = base * (attempt + 1)
        else:
            base_delay = base * (2**attempt)

        jitter = base_delay * self.config.jitter_factor
        delay = base_delay + random.uniform(-jitter, jitter)

        return max(0.0, min(delay, self.config.max_delay_seconds))

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        retryable_exceptions: Optional[Set[Type[BaseException]]] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        """Execute function with retry logic.

        Args:
            func: Async function to execute (called once per attempt)
            retryable_exceptions: Exception types that trigger a retry;
                defaults to RetryableError
            on_retry: Optional callback called before each retry with
                (attempt_number, exception, delay_seconds)

        Returns:
            Result of successful function execution

        Raises:
            Exception: The last exception if all attempts are exhausted,
                or any non-retryable exception immediately
        """
        retryable = tuple(retryable_exceptions or DEFAULT_RETRYABLE)

        for attempt in range(self.config.max_attempts):
            try:
                return await func()
            except retryable as e:
                if attempt + 1 >= self.config.max_attempts:
                    logger.warning(
                        "retries_exhausted",
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                    raise

                retry_after = None
                if isinstance(e, RateLimitError) and e.retry_after is not None:
                    retry_after = e.retry_after

                delay = self.calculate_delay(attempt, retry_after)

                logger.warning(
                    "retry_attempt",
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    delay_seconds=round(delay, 3),
                    retry_after=retry_after,
                )

                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)

                await asyncio.sleep(delay)

        raise RuntimeError(  # pragma: no cover
            "Retry loop completed without result or exception"
        )
