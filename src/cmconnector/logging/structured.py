"""Structured logging implementation for cmconnector.

This module provides structured logging with context management,
correlation IDs, and secret masking. Context lives in a ``ContextVar`` so
values bound inside one asyncio task never leak into another.

Classes:
    StructuredLogger: Main structured logging interface
    LogContext: Task-local context for log correlation

Functions:
    mask_secrets_processor: structlog processor redacting secret fields

Example:
    >>> logger = StructuredLogger("pool.cm-prod")
    >>> with logger.context(system_id="cm-prod", operation="extract_users"):
    ...     logger.info("Extraction started", page_size=500)
"""

import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Generator, MutableMapping, Optional

import structlog

from ..core.exceptions import ValidationError
from ..core.utils import mask_secrets

_log_context: ContextVar[Dict[str, Any]] = ContextVar("cmconnector_log_context", default={})


def mask_secrets_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Redact values stored under secret-looking keys."""
    return mask_secrets(event_dict)


class LogContext:
    """Task-local context for log correlation and metadata.

    Example:
        >>> context = LogContext()
        >>> context.set("system_id", "cm-prod")
        >>> context.get_all()
        {'system_id': 'cm-prod'}
    """

    def set(self, key: str, value: Any) -> None:
        current = dict(_log_context.get())
        current[key] = value
        _log_context.set(current)

    def get(self, key: str, default: Any = None) -> Any:
        return _log_context.get().get(key, default)

    def get_all(self) -> Dict[str, Any]:
        return dict(_log_context.get())

    def update(self, context: Dict[str, Any]) -> None:
        current = dict(_log_context.get())
        current.update(context)
        _log_context.set(current)

    def clear(self) -> None:
        _log_context.set({})


class StructuredLogger:
    """Structured logger with context management and correlation.

    Every event passes through secret masking before it reaches structlog,
    so a password in a keyword argument or bound context is never emitted.

    Attributes:
        name: Logger name

    Example:
        >>> logger = StructuredLogger("connection.database")
        >>> db_logger = logger.bind(system_id="cm-prod")
        >>> db_logger.info("Connected", duration_ms=12.5)
    """

    def __init__(
        self,
        name: str,
        *,
        level: str = "INFO",
        enable_correlation: bool = True,
        bound: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically a dotted component path)
            level: Initial log level
            enable_correlation: Whether to attach correlation IDs
            bound: Context bound permanently to this logger
        """
        self.name = name
        self._enable_correlation = enable_correlation
        self._bound: Dict[str, Any] = dict(bound or {})
        self._logger = structlog.get_logger(name)
        self._context = LogContext()
        self._stdlib_logger = logging.getLogger(name)
        self.set_level(level)

    def _ensure_correlation_id(self) -> str:
        correlation_id = self._context.get("correlation_id")
        if not correlation_id:
            correlation_id = str(uuid.uuid4())
            self._context.set("correlation_id", correlation_id)
        return correlation_id

    def _prepare_event_dict(self, **kwargs: Any) -> Dict[str, Any]:
        """Merge task context, bound values, and event data, then mask secrets.

        Args:
            **kwargs: Event data

        Returns:
            Prepared event dictionary
        """
        event_dict: Dict[str, Any] = {"logger_name": self.name}
        event_dict.update(self._context.get_all())
        event_dict.update(self._bound)
        if self._enable_correlation:
            event_dict["correlation_id"] = self._ensure_correlation_id()
        event_dict.update(kwargs)
        return mask_secrets(event_dict)

    @contextmanager
    def context(self, **context_data: Any) -> Generator[None, None, None]:
        """Context manager for adding temporary context data.

        Example:
            >>> with logger.context(system_id="cm-prod", operation="detect_version"):
            ...     logger.info("Probing TSYSTEM")
        """
        current = dict(_log_context.get())
        current.update(context_data)
        token = _log_context.set(current)
        try:
            yield
        finally:
            _log_context.reset(token)

    def bind(self, **context_data: Any) -> "StructuredLogger":
        """Create a new logger with additional bound context.

        Example:
            >>> pool_logger = logger.bind(system_id="cm-prod")
        """
        bound = dict(self._bound)
        bound.update(context_data)
        return StructuredLogger(
            self.name,
            level=self.get_level(),
            enable_correlation=self._enable_correlation,
            bound=bound,
        )

    def set_level(self, level: str) -> None:
        """Set logging level.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

        Raises:
            ValidationError: If the level name is unknown
        """
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            raise ValidationError(f"Unknown log level: {level}", code="UNKNOWN_LOG_LEVEL")
        self._stdlib_logger.setLevel(log_level)

    def get_level(self) -> str:
        return logging.getLevelName(self._stdlib_logger.getEffectiveLevel())

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(message, **self._prepare_event_dict(**kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(message, **self._prepare_event_dict(**kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(message, **self._prepare_event_dict(**kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(message, **self._prepare_event_dict(**kwargs))

    def critical(self, message: str, **kwargs: Any) -> None:
        self._logger.critical(message, **self._prepare_event_dict(**kwargs))

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the active exception's traceback."""
        self._logger.error(message, exc_info=True, **self._prepare_event_dict(**kwargs))

    def log_operation_start(self, operation: str, **context: Any) -> Dict[str, Any]:
        """Log operation start with timing context.

        Args:
            operation: Operation name
            **context: Operation context

        Returns:
            Operation context for completion logging
        """
        operation_context = {
            "operation_id": str(uuid.uuid4()),
            "operation": operation,
            "start_time": time.perf_counter(),
            **context,
        }
        self.info("Operation started", **operation_context)
        return operation_context

    def log_operation_success(self, operation_context: Dict[str, Any], **results: Any) -> None:
        """Log successful operation completion.

        Args:
            operation_context: Context from log_operation_start
            **results: Operation results
        """
        duration_ms = (time.perf_counter() - operation_context["start_time"]) * 1000
        self.info(
            "Operation completed successfully",
            duration_ms=duration_ms,
            **operation_context,
            **results,
        )

    def log_operation_failure(
        self, operation_context: Dict[str, Any], error: BaseException, **error_context: Any
    ) -> None:
        """Log operation failure.

        Args:
            operation_context: Context from log_operation_start
            error: Exception that occurred
            **error_context: Additional error context
        """
        duration_ms = (time.perf_counter() - operation_context["start_time"]) * 1000
        self.error(
            "Operation failed",
            duration_ms=duration_ms,
            error=str(error),
            error_type=type(error).__name__,
            error_code=getattr(error, "code", None),
            **operation_context,
            **error_context,
        )

    def set_correlation_id(self, correlation_id: str) -> None:
        if self._enable_correlation:
            self._context.set("correlation_id", correlation_id)

    def get_correlation_id(self) -> Optional[str]:
        if not self._enable_correlation:
            return None
        return self._context.get("correlation_id")

    def get_context(self) -> Dict[str, Any]:
        """Get the task context merged with bound values."""
        context = self._context.get_all()
        context.update(self._bound)
        return context

    def __repr__(self) -> str:
        return (
            f"StructuredLogger("
            f"name={self.name!r}, "
            f"level={self.get_level()!r}, "
            f"correlation={self._enable_correlation})"
        )
