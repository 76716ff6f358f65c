"""Logger factory and configuration for cmconnector.

This module provides centralized logger creation and configuration of the
stdlib/structlog pipeline. Every configured pipeline includes the secret
masking processor, so credentials never reach a handler.

Classes:
    LoggerFactory: Logger factory and configuration manager

Functions:
    get_logger: Convenience function for getting loggers
    get_performance_logger: Convenience function for performance loggers
    configure_logging: Configure logging system globally

Example:
    >>> from cmconnector.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", format="json")
    >>> logger = get_logger("connector")
    >>> logger.info("Connector started", system_id="cm-prod")
"""

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog

from ..config.models import LoggingConfig
from .performance import PerformanceLogger
from .structured import StructuredLogger, mask_secrets_processor


class LoggerFactory:
    """Factory for creating and configuring cmconnector loggers.

    Loggers are cached by name. Configuration is explicit: until
    ``configure`` runs, structlog's defaults are left untouched so host
    applications and test harnesses keep control of the pipeline.

    Example:
        >>> factory = LoggerFactory()
        >>> factory.configure(LoggingConfig(level="DEBUG", format="text"))
        >>> logger = factory.get_logger("pool.cm-prod")
    """

    def __init__(self, config: Optional[LoggingConfig] = None) -> None:
        self.config = config or LoggingConfig()
        self.initialized = False
        self._loggers: Dict[str, StructuredLogger] = {}
        self._performance_loggers: Dict[str, PerformanceLogger] = {}
        self._handlers: List[logging.Handler] = []

    def configure(self, config: Optional[LoggingConfig] = None) -> None:
        """Configure stdlib logging and structlog.

        Args:
            config: Logging configuration (defaults to the current one)
        """
        if config is not None:
            self.config = config
        self._configure_stdlib_logging()
        self._configure_structlog()
        for logger in self._loggers.values():
            logger.set_level(self.config.level)
        self.initialized = True

    def _configure_stdlib_logging(self) -> None:
        root_logger = logging.getLogger("cmconnector")
        root_logger.setLevel(self.config.level)

        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

        if self.config.console_output:
            self._handlers.append(logging.StreamHandler(sys.stdout))
        if self.config.file_path is not None:
            self.config.file_path.parent.mkdir(parents=True, exist_ok=True)
            self._handlers.append(logging.FileHandler(self.config.file_path, encoding="utf-8"))

        for handler in self._handlers:
            handler.setLevel(self.config.level)
            handler.setFormatter(logging.Formatter("%(message)s"))
            root_logger.addHandler(handler)

    def _configure_structlog(self) -> None:
        processors: List[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            mask_secrets_processor,
        ]

        if self.config.format == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=False,
        )

    def get_logger(self, name: str, *, level: Optional[str] = None) -> StructuredLogger:
        """Get or create a structured logger.

        Args:
            name: Logger name; prefixed with ``cmconnector.`` if needed
            level: Override default log level

        Returns:
            StructuredLogger instance
        """
        full_name = name if name.startswith("cmconnector") else f"cmconnector.{name}"
        if full_name not in self._loggers:
            self._loggers[full_name] = StructuredLogger(full_name, level=level or self.config.level)
        return self._loggers[full_name]

    def get_performance_logger(self, name: str, *, auto_log: bool = True) -> PerformanceLogger:
        """Get or create a performance logger.

        Args:
            name: Logger name
            auto_log: Whether to automatically log timing results

        Returns:
            PerformanceLogger instance
        """
        if name not in self._performance_loggers:
            self._performance_loggers[name] = PerformanceLogger(
                name=name,
                auto_log=auto_log,
                logger=self.get_logger(f"perf.{name}"),
            )
        return self._performance_loggers[name]

    def shutdown(self) -> None:
        """Detach handlers and clear logger caches."""
        root_logger = logging.getLogger("cmconnector")
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self._loggers.clear()
        self._performance_loggers.clear()
        self.initialized = False

    def __repr__(self) -> str:
        return (
            f"LoggerFactory("
            f"level={self.config.level!r}, "
            f"format={self.config.format!r}, "
            f"initialized={self.initialized})"
        )


# Global logger factory instance
_global_factory = LoggerFactory()


def configure_logging(config: Optional[LoggingConfig] = None, **options: Any) -> None:
    """Configure cmconnector logging globally.

    Args:
        config: Logging configuration
        **options: LoggingConfig fields, used when ``config`` is omitted

    Example:
        >>> configure_logging(level="DEBUG", format="text")
    """
    _global_factory.configure(config or LoggingConfig(**options))


def get_logger(name: str, *, level: Optional[str] = None) -> StructuredLogger:
    """Get or create a structured logger using the global factory.

    Example:
        >>> logger = get_logger("pool.cm-prod")
        >>> logger.info("Pool opened", max_size=10)
    """
    return _global_factory.get_logger(name, level=level)


def get_performance_logger(name: str, *, auto_log: bool = True) -> PerformanceLogger:
    """Get or create a performance logger using the global factory."""
    return _global_factory.get_performance_logger(name, auto_log=auto_log)


def get_factory() -> LoggerFactory:
    return _global_factory


def shutdown_logging() -> None:
    """Shutdown the global logging system."""
    _global_factory.shutdown()
