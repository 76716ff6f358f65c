"""Retry policy for transient backend failures.

Classes:
    RetryPolicy: Bounded exponential backoff with jitter

Example:
    >>> policy = RetryPolicy(max_attempts=3, initial_backoff=0.5)  # up to 4 calls
    >>> result = await policy.execute(breaker.call, connection.execute, query)
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..config.models import RetryConfig
from ..core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigError,
    ConnectionError,
    ExtractionError,
    PoolExhaustedError,
    SecurityError,
    TimeoutError,
    VersionMismatchError,
)
from ..logging import get_logger

R = TypeVar("R")

DEFAULT_RETRY_ON: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)
DEFAULT_NEVER_RETRY: Tuple[Type[BaseException], ...] = (
    AuthenticationError,
    ConfigError,
    VersionMismatchError,
    CircuitOpenError,
    ExtractionError,
    PoolExhaustedError,
    SecurityError,
)


class RetryPolicy:
    """Retry transient failures with bounded exponential backoff.

    ``max_attempts`` is the number of retries after the first call, so a
    transient failure is tried at most ``max_attempts + 1`` times. The delay
    before retry ``n`` is ``initial * multiplier**(n-1) * (1 + jitter * U)``
    capped at ``max_backoff``, and delays within one ``execute`` call never
    decrease. When attempts run out the last original exception is re-raised
    unchanged.

    Attributes:
        max_attempts: Retries after the first attempt
        initial_backoff: Seconds before the first retry
        max_backoff: Upper bound for a single delay
        multiplier: Exponential growth factor
        jitter: Random fraction added to each delay
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        *,
        retry_on: Tuple[Type[BaseException], ...] = DEFAULT_RETRY_ON,
        never_retry: Tuple[Type[BaseException], ...] = DEFAULT_NEVER_RETRY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        name: str = "default",
    ) -> None:
        if max_attempts < 0:
            raise ConfigError("max_attempts must not be negative", context={"max_attempts": max_attempts})
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.jitter = jitter
        self.retry_on = retry_on
        self.never_retry = never_retry
        self._sleep = sleep
        self._rng = rng
        self.logger = get_logger(f"resilience.retry.{name}")

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_backoff=config.backoff_ms / 1000.0,
            max_backoff=config.max_backoff_ms / 1000.0,
            multiplier=config.multiplier,
            jitter=config.jitter,
            **kwargs,
        )

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        base = self.initial_backoff * (self.multiplier ** (attempt - 1))
        return min(base * (1 + self.jitter * self._rng()), self.max_backoff)

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, self.never_retry):
            return False
        return isinstance(exc, self.retry_on)

    async def execute(self, func: Callable[..., Awaitable[R]], *args: Any, **kwargs: Any) -> R:
        """Run ``func`` until it succeeds, fails permanently, or attempts run out.

        Args:
            func: Coroutine function to call
            *args: Positional arguments for ``func``
            **kwargs: Keyword arguments for ``func``

        Returns:
            The result of the first successful attempt

        Raises:
            Exception: The original exception of the final failed attempt, or
                the first non-retryable exception
        """
        previous_delay = 0.0
        attempt = 1
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e) or attempt > self.max_attempts:
                    if attempt > 1:
                        self.logger.warning(
                            "Retries exhausted" if self.is_retryable(e) else "Non-retryable failure",
                            attempts=attempt,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    raise

                delay = max(self.backoff(attempt), previous_delay)
                previous_delay = delay
                self.logger.info(
                    "Retrying after transient failure",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._sleep(delay)
                attempt += 1

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_backoff={self.initial_backoff}, max_backoff={self.max_backoff})"
        )
