"""cmconnector core infrastructure.

This package provides the foundational pieces shared by every other
subpackage: the lifecycle base classes, the error taxonomy, capability
protocols, and small utilities.

Modules:
    base: Lifecycle base classes
    exceptions: Exception hierarchy
    protocols: Capability interfaces
    utils: Validation and masking helpers

Example:
    >>> from cmconnector.core import AsyncComponent
    >>> from cmconnector.core.exceptions import ConfigError
"""

from .base import AsyncComponent, BaseComponent
from .exceptions import (
    AcquireTimeoutError,
    AuthenticationError,
    CircuitOpenError,
    CMConnectorException,
    ConfigError,
    ConnectionError,
    DecryptionError,
    ErrorCodes,
    ExtractionError,
    PoolExhaustedError,
    QueryError,
    SecurityError,
    TimeoutError,
    ValidationError,
    VersionMismatchError,
    create_error_from_exception,
)
from .protocols import Connection
from .utils import ValidationUtils, mask_secrets

__all__ = [
    # Base classes
    "BaseComponent",
    "AsyncComponent",

    # Exceptions
    "CMConnectorException",
    "ConfigError",
    "ValidationError",
    "ConnectionError",
    "TimeoutError",
    "AuthenticationError",
    "VersionMismatchError",
    "CircuitOpenError",
    "ExtractionError",
    "QueryError",
    "PoolExhaustedError",
    "AcquireTimeoutError",
    "SecurityError",
    "DecryptionError",
    "ErrorCodes",
    "create_error_from_exception",

    # Protocols
    "Connection",

    # Utilities
    "ValidationUtils",
    "mask_secrets",
]
