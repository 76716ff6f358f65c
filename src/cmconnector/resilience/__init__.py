"""Retry and circuit breaking for backend calls.

Classes:
    RetryPolicy: Bounded exponential backoff with jitter
    CircuitBreaker: Failure-isolation state machine
    CircuitState: Breaker states
"""

from .circuit_breaker import CircuitBreaker, CircuitState
from .retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
]
