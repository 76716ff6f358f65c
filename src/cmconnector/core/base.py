"""Base classes for cmconnector components.

This module provides the lifecycle base classes shared by connections and
other long-lived components, giving them a consistent initialize/cleanup
contract, health reporting, and structured logging.

Classes:
    BaseComponent: Generic base class holding configuration and uptime
    AsyncComponent: Base class for components with async initialization

Example:
    >>> class DatabaseConnection(AsyncComponent[DirectDbConfig]):
    ...     async def _async_initialize(self) -> None:
    ...         self._raw = await driver.connect(self.config)
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, ClassVar, Dict, Generic, TypeVar

import structlog

from .exceptions import CMConnectorException, ErrorCodes, ValidationError

# Configuration type
T = TypeVar("T")


class BaseComponent(Generic[T], ABC):
    """Base class for all cmconnector components.

    Type Parameters:
        T: Type of configuration object this component accepts

    Attributes:
        component_name: Name of the component for logging and identification
        version: Component version for compatibility checking
    """

    component_name: ClassVar[str] = "BaseComponent"
    version: ClassVar[str] = "1.0.0"

    def __init__(self, config: T) -> None:
        """Initialize base component.

        Args:
            config: Configuration object for this component

        Raises:
            ValidationError: If configuration is missing
        """
        if config is None:
            raise ValidationError(
                "Configuration cannot be None",
                code=ErrorCodes.CONFIG_INVALID,
                context={"component": self.component_name},
            )

        self._config: T = config
        self._initialized: bool = False
        self._creation_time: float = time.time()
        self._logger = structlog.get_logger(self.__class__.__name__)

    @property
    def config(self) -> T:
        """Component configuration."""
        return self._config

    @property
    def is_initialized(self) -> bool:
        """True once initialization completed and cleanup has not run."""
        return self._initialized

    @property
    def uptime(self) -> float:
        """Seconds since the component was created."""
        return time.time() - self._creation_time

    def get_health_status(self) -> Dict[str, Any]:
        """Get component health status.

        Returns:
            Dictionary containing component health information
        """
        return {
            "component": self.component_name,
            "version": self.version,
            "initialized": self._initialized,
            "uptime_seconds": self.uptime,
            "status": "healthy" if self._initialized else "not_initialized",
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"name={self.component_name!r}, "
            f"initialized={self._initialized}, "
            f"uptime={self.uptime:.2f}s)"
        )


class AsyncComponent(BaseComponent[T]):
    """Base class for async-capable components.

    Initialization and cleanup are serialized by locks so concurrent callers
    cannot open or close the same component twice. Connector exceptions
    raised during initialization propagate unchanged; anything else is
    wrapped with an ``INIT_FAILED`` code.
    """

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._initialization_lock = asyncio.Lock()
        self._cleanup_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize component asynchronously.

        Raises:
            CMConnectorException: If initialization fails
        """
        async with self._initialization_lock:
            if self._initialized:
                return

            self._logger.debug("Initializing component", component=self.component_name)

            try:
                await self._async_initialize()
            except CMConnectorException as e:
                self._logger.error(
                    "Component initialization failed",
                    component=self.component_name,
                    error=str(e),
                )
                raise
            except Exception as e:
                self._logger.error(
                    "Component initialization failed",
                    component=self.component_name,
                    error=str(e),
                )
                raise CMConnectorException(
                    f"Failed to initialize {self.component_name}",
                    code=ErrorCodes.INIT_FAILED,
                    context={"component": self.component_name},
                    cause=e,
                ) from e

            self._initialized = True
            self._logger.debug("Component initialized", component=self.component_name)

    async def cleanup(self) -> None:
        """Clean up component resources asynchronously.

        Cleanup failures are logged and the component is still marked as
        not initialized so a later ``initialize()`` starts from scratch.
        """
        async with self._cleanup_lock:
            if not self._initialized:
                return

            self._logger.debug("Cleaning up component", component=self.component_name)
            try:
                await self._async_cleanup()
            except Exception as e:
                self._logger.warning(
                    "Component cleanup failed",
                    component=self.component_name,
                    error=str(e),
                )
            finally:
                self._initialized = False

    @abstractmethod
    async def _async_initialize(self) -> None:
        """Perform async initialization work."""

    async def _async_cleanup(self) -> None:
        """Perform async cleanup work."""

    @asynccontextmanager
    async def managed_lifecycle(self) -> AsyncGenerator["AsyncComponent[T]", None]:
        """Context manager for automatic lifecycle management.

        Example:
            >>> async with connection.managed_lifecycle() as conn:
            ...     await conn.execute(query)
        """
        try:
            await self.initialize()
            yield self
        finally:
            await self.cleanup()
