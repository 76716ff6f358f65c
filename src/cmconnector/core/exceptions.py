"""cmconnector exception hierarchy.

This module defines the error taxonomy for the multi-version connector. Every
error carries a code, structured context, and an optional cause so callers can
tell "fix your configuration" apart from "try again later" and "this system
cannot be diagnosed with current support".

Classes:
    CMConnectorException: Base exception for all connector operations
    ConfigError: Invalid or incomplete configuration (never retried)
    ConnectionError: Transport-level failures (retryable)
    TimeoutError: Operation exceeded its timeout (retryable)
    AuthenticationError: Credential rejected (never retried)
    VersionMismatchError: Unsupported version or entity (never retried)
    CircuitOpenError: Circuit breaker is open (fail fast)
    ExtractionError: Data-shape problem after a successful connection
    PoolExhaustedError: Connection pool saturation
    SecurityError: Credential vault failures

Example:
    >>> try:
    ...     await connector.open()
    ... except AuthenticationError as e:
    ...     logger.error("Login rejected", error_code=e.code, hint=e.remediation_hint)
"""

import asyncio
import builtins
from typing import Any, Dict, Optional


class CMConnectorException(Exception):
    """Base exception for all cmconnector operations.

    Attributes:
        code: Unique error code for categorization
        context: Additional context information about the error
        cause: Original exception that caused this error (if any)

    Example:
        >>> raise CMConnectorException(
        ...     "Operation failed",
        ...     code="OPERATION_FAILED",
        ...     context={"operation": "extract_users", "system_id": "cm-prod"}
        ... )
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Initialize connector exception.

        Args:
            message: Human-readable error description
            code: Unique error code for categorization (defaults to class name)
            context: Additional context information
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message: str = message
        self.code: str = code or self.__class__.__name__
        self.context: Dict[str, Any] = context or {}
        self.cause: Optional[BaseException] = cause

    def __str__(self) -> str:
        """Return formatted error message with code."""
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation of the exception."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"context={self.context!r}, "
            f"cause={self.cause!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary representation of the exception
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigError(CMConnectorException):
    """Configuration related errors.

    Raised when a connection configuration is invalid, incomplete, or
    references something that does not exist. The caller must fix the input;
    these errors are never retried.
    """
    pass


class ValidationError(ConfigError):
    """Input validation errors.

    Raised when a value fails validation rules, such as an unsafe SQL
    identifier or an unsupported filter operator.
    """
    pass


class ConnectionError(CMConnectorException):
    """Transport-level connection errors.

    Raised when the backend cannot be reached or the session breaks. These
    errors are retried according to the active retry policy before they
    surface to the caller.
    """
    pass


class TimeoutError(CMConnectorException):
    """Operation timeout errors.

    Raised when connecting, executing a statement, or calling an endpoint
    exceeds its configured timeout. Retryable up to the policy's attempt limit.
    """
    pass


class AuthenticationError(CMConnectorException):
    """Credential rejection errors.

    Raised when the backend rejects the supplied credentials. Never retried.
    The message and context reference the credential identity only.

    Attributes:
        remediation_hint: Suggested fix shown to operators
    """

    def __init__(
        self,
        message: str,
        *,
        remediation_hint: Optional[str] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, code=code, context=context, cause=cause)
        self.remediation_hint: str = remediation_hint or (
            "Verify the username and the stored credential for this system"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["remediation_hint"] = self.remediation_hint
        return data


class VersionMismatchError(CMConnectorException):
    """Unsupported version errors.

    Raised when the detected release cannot be served, not even by the
    fallback adapter (for example an entity that does not exist in the
    release family at all).
    """
    pass


class CircuitOpenError(CMConnectorException):
    """Circuit breaker rejection.

    Raised without attempting any I/O while the breaker for a target system
    is open. Callers should back off independently.

    Attributes:
        retry_after: Seconds until the breaker admits a probe call
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after: float = 0.0,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, code=code, context=context, cause=cause)
        self.retry_after: float = retry_after


class ExtractionError(CMConnectorException):
    """Data extraction errors.

    Raised when a connection succeeded but the returned data cannot be
    shaped into a unified entity.

    Attributes:
        field: Name of the offending field, when known
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, code=code, context=context, cause=cause)
        self.field: Optional[str] = field
        if field is not None:
            self.context.setdefault("field", field)


class QueryError(ExtractionError):
    """Statement execution errors.

    Raised when the backend rejects a statement or endpoint call for a
    non-transport reason (missing table, bad column, HTTP 404).
    """
    pass


class PoolExhaustedError(CMConnectorException):
    """Connection pool saturation errors.

    Raised when the pool is closed or too many callers are already waiting
    for a connection.
    """
    pass


class AcquireTimeoutError(PoolExhaustedError):
    """Connection acquisition timeout.

    Raised when no connection became available within the pool's
    acquire timeout.
    """
    pass


class SecurityError(CMConnectorException):
    """Credential security errors."""
    pass


class DecryptionError(SecurityError):
    """Credential decryption errors.

    Raised when a credential record cannot be authenticated or its key
    version is unknown or retired. Never returns partial plaintext.
    """
    pass


# Error code constants for common scenarios
class ErrorCodes:
    """Common error codes for cmconnector exceptions."""

    # Configuration errors
    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_VALIDATION_FAILED = "CONFIG_VALIDATION_FAILED"
    CREDENTIAL_NOT_FOUND = "CREDENTIAL_NOT_FOUND"
    UNSAFE_IDENTIFIER = "UNSAFE_IDENTIFIER"

    # Connection errors
    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    AUTH_FAILED = "AUTH_FAILED"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"
    POOL_ACQUIRE_TIMEOUT = "POOL_ACQUIRE_TIMEOUT"
    POOL_CLOSED = "POOL_CLOSED"
    POOL_NOT_FOUND = "POOL_NOT_FOUND"
    CONNECTOR_NOT_FOUND = "CONNECTOR_NOT_FOUND"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"

    # Version errors
    VERSION_DETECTION_FAILED = "VERSION_DETECTION_FAILED"
    VERSION_UNSUPPORTED = "VERSION_UNSUPPORTED"
    VERSION_CHANGED = "VERSION_CHANGED"
    ADAPTER_NOT_FOUND = "ADAPTER_NOT_FOUND"

    # Extraction errors
    QUERY_EXECUTION_FAILED = "QUERY_EXECUTION_FAILED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    FIELD_INVALID = "FIELD_INVALID"
    ENTITY_ID_MISSING = "ENTITY_ID_MISSING"

    # Security errors
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    KEY_VERSION_UNKNOWN = "KEY_VERSION_UNKNOWN"
    KEY_INVALID = "KEY_INVALID"

    # Generic
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
    INIT_FAILED = "INIT_FAILED"


def create_error_from_exception(
    exc: BaseException,
    message: Optional[str] = None,
    code: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> CMConnectorException:
    """Create a connector exception from a builtin or driver exception.

    Connector exceptions are returned unchanged. Builtin transport errors map
    onto ``ConnectionError``/``TimeoutError`` so the retry policy can
    recognise them; value errors map onto ``ValidationError``.

    Args:
        exc: Original exception to convert
        message: Override message (uses original if not provided)
        code: Error code to assign
        context: Additional context information

    Returns:
        Appropriate connector exception type

    Example:
        >>> try:
        ...     await driver.connect()
        ... except OSError as e:
        ...     raise create_error_from_exception(
        ...         e, code=ErrorCodes.CONNECTION_REFUSED, context={"host": "cm01"}
        ...     ) from e
    """
    if isinstance(exc, CMConnectorException):
        return exc

    error_message = message or str(exc) or exc.__class__.__name__
    error_context = context or {}

    # Order matters: TimeoutError and ConnectionRefusedError are OSError subclasses
    exception_mapping = (
        (asyncio.TimeoutError, TimeoutError),
        (builtins.TimeoutError, TimeoutError),
        (builtins.ConnectionError, ConnectionError),
        (OSError, ConnectionError),
        (ValueError, ValidationError),
        (TypeError, ValidationError),
    )

    exception_class: type = CMConnectorException
    for source_type, target_type in exception_mapping:
        if isinstance(exc, source_type):
            exception_class = target_type
            break

    return exception_class(
        error_message,
        code=code,
        context=error_context,
        cause=exc,
    )
