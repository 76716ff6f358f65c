"""cmconnector structured logging framework.

This package provides structured logging with task-local correlation
context, secret masking, and per-operation performance timing.

Classes:
    StructuredLogger: Main structured logging interface
    PerformanceLogger: Performance monitoring and timing
    LoggerFactory: Logger creation and configuration

Example:
    >>> from cmconnector.logging import get_logger, get_performance_logger
    >>> logger = get_logger("connector")
    >>> logger.info("Detecting version", system_id="cm-prod")
    >>>
    >>> perf_logger = get_performance_logger("extraction")
    >>> with perf_logger.measure("extract_records"):
    ...     pass
"""

from .factory import (
    LoggerFactory,
    configure_logging,
    get_factory,
    get_logger,
    get_performance_logger,
    shutdown_logging,
)
from .performance import PerformanceLogger, PerformanceMetrics, TimingContext, TimingMetrics
from .structured import LogContext, StructuredLogger, mask_secrets_processor

__all__ = [
    # Factory and configuration
    "LoggerFactory",
    "configure_logging",
    "get_factory",
    "get_logger",
    "get_performance_logger",
    "shutdown_logging",

    # Performance logging
    "PerformanceLogger",
    "PerformanceMetrics",
    "TimingContext",
    "TimingMetrics",

    # Structured logging
    "StructuredLogger",
    "LogContext",
    "mask_secrets_processor",
]
