"""Circuit breaker for target systems.

Classes:
    CircuitState: Breaker states
    CircuitBreaker: Failure-isolation state machine

Example:
    >>> breaker = CircuitBreaker("cm-prod", failure_threshold=5, cool_down=30.0)
    >>> result = await breaker.call(connection.execute, query)
"""

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Type, TypeVar

from ..config.models import CircuitBreakerConfig
from ..core.exceptions import (
    CircuitOpenError,
    ConfigError,
    ErrorCodes,
    ExtractionError,
    VersionMismatchError,
)
from ..logging import get_logger

R = TypeVar("R")

DEFAULT_IGNORE: Tuple[Type[BaseException], ...] = (ConfigError, ExtractionError, VersionMismatchError)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker pattern implementation.

    ``CLOSED`` opens after ``failure_threshold`` consecutive failures inside
    the sliding ``window``. While ``OPEN`` every call fails fast with
    ``CircuitOpenError`` and performs no I/O. After ``cool_down`` seconds
    one probe call is admitted (``HALF_OPEN``); its success closes the
    breaker and its failure re-opens it. Exceptions listed in ``ignore``
    are neither failures nor successes.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window: float = 60.0,
        cool_down: float = 30.0,
        *,
        enabled: bool = True,
        ignore: Tuple[Type[BaseException], ...] = DEFAULT_IGNORE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            name: Breaker name, usually the target system id
            failure_threshold: Consecutive failures before opening
            window: Seconds a failure counts toward the threshold
            cool_down: Seconds before a probe is admitted
            enabled: When False every call passes straight through
            ignore: Exception types that do not count as failures
            clock: Monotonic clock, injectable for tests
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.window = window
        self.cool_down = cool_down
        self.enabled = enabled
        self.ignore = ignore
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

        self._total_calls = 0
        self._rejected_calls = 0
        self._open_count = 0
        self._last_failure_time: Optional[float] = None

        self.logger = get_logger(f"resilience.breaker.{name}")

    @classmethod
    def from_config(cls, name: str, config: CircuitBreakerConfig, **kwargs: Any) -> "CircuitBreaker":
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            window=config.window_seconds,
            cool_down=config.cool_down_seconds,
            enabled=config.enabled,
            **kwargs,
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until a probe call would be admitted."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.cool_down - (self._clock() - self._opened_at))

    def check(self) -> None:
        """Fail fast if a call would be rejected right now.

        Callers use this before acquiring a connection, so an open breaker
        never causes a new backend session to be opened. State is not
        changed; ``call`` still performs the admission.

        Raises:
            CircuitOpenError: If the breaker is cooling down or a probe is in flight
        """
        if not self.enabled:
            return
        if self._state is CircuitState.OPEN and self.retry_after > 0:
            self._reject(self.retry_after)
        if self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
            self._reject(self.cool_down)

    async def call(self, func: Callable[..., Awaitable[R]], *args: Any, **kwargs: Any) -> R:
        """Call ``func`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open or a probe is in flight
        """
        if not self.enabled:
            return await func(*args, **kwargs)

        is_probe = await self._admit()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            await self._release_probe(is_probe)
            raise
        except self.ignore:
            await self._release_probe(is_probe)
            raise
        except Exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _admit(self) -> bool:
        async with self._lock:
            self._total_calls += 1
            now = self._clock()

            if self._state is CircuitState.OPEN:
                if self._opened_at is not None and now - self._opened_at >= self.cool_down:
                    self._state = CircuitState.HALF_OPEN
                    self.logger.info("Circuit breaker half-open, admitting probe")
                else:
                    self._reject(self.retry_after)

            if self._state is CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self._reject(self.cool_down)
                self._probe_in_flight = True
                return True

            return False

    def _reject(self, retry_after: float) -> None:
        self._rejected_calls += 1
        raise CircuitOpenError(
            f"Circuit breaker {self.name!r} is {self._state.value}",
            retry_after=retry_after,
            code=ErrorCodes.CIRCUIT_OPEN,
            context={"breaker": self.name, "state": self._state.value, "retry_after": retry_after},
        )

    async def _release_probe(self, is_probe: bool) -> None:
        if is_probe:
            async with self._lock:
                self._probe_in_flight = False

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._probe_in_flight = False
                self.logger.info("Circuit breaker closed")

    async def _record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._last_failure_time = now

            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._open(now)
                self.logger.warning("Circuit breaker re-opened from half-open")
                return

            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window:
                self._failures.popleft()

            if self._state is CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._open(now)
                self.logger.warning(
                    "Circuit breaker opened",
                    failures=len(self._failures),
                    cool_down_seconds=self.cool_down,
                )

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._failures.clear()
        self._open_count += 1

    async def reset(self) -> None:
        """Force the breaker closed."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False
            self.logger.info("Circuit breaker reset")

    async def force_open(self) -> None:
        async with self._lock:
            self._open(self._clock())
            self.logger.warning("Circuit breaker force-opened")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "enabled": self.enabled,
            "consecutive_failures": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "total_calls": self._total_calls,
            "rejected_calls": self._rejected_calls,
            "open_count": self._open_count,
            "retry_after": self.retry_after,
        }

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value})"
