"""Utility functions for cmconnector operations.

Functions:
    mask_secrets: Redact secret-looking values in nested mappings
    is_secret_key: Check whether a key names a secret

Classes:
    ValidationUtils: Identifier and value validation helpers

Example:
    >>> mask_secrets({"username": "svc", "password": "hunter2"})
    {'username': 'svc', 'password': '***MASKED***'}
"""

import re
from typing import Any, Mapping, Union

MASK = "***MASKED***"

SECRET_KEY_PATTERN = re.compile(
    r"(password|passwd|pwd|secret|token|api[_-]?key|authorization|credential|private[_-]?key)",
    re.IGNORECASE,
)


class ValidationUtils:
    """Utility class for validation operations."""

    IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
    # Optionally schema-qualified, e.g. INFORMATION_SCHEMA.TABLES
    SQL_IDENTIFIER_PATTERN = re.compile(
        r"^[a-zA-Z_][a-zA-Z0-9_$#]*(\.[a-zA-Z_][a-zA-Z0-9_$#]*)?$"
    )

    @classmethod
    def validate_identifier(cls, identifier: str, *, allow_empty: bool = False) -> bool:
        """Validate identifier string.

        Example:
            >>> ValidationUtils.validate_identifier("my_var_123")
            True
            >>> ValidationUtils.validate_identifier("123_invalid")
            False
        """
        if not identifier:
            return allow_empty

        return bool(cls.IDENTIFIER_PATTERN.match(identifier))

    @classmethod
    def validate_sql_identifier(cls, identifier: str) -> bool:
        """Validate a table or column name before it is placed into SQL text.

        Only identifiers are ever interpolated; values are always bound.

        Args:
            identifier: Table or column name, optionally schema-qualified

        Returns:
            True if the identifier is safe to interpolate
        """
        if not identifier or len(identifier) > 128:
            return False
        return bool(cls.SQL_IDENTIFIER_PATTERN.match(identifier))

    @staticmethod
    def validate_port(port: Union[int, str]) -> bool:
        """Validate network port number."""
        try:
            port_num = int(port)
        except (TypeError, ValueError):
            return False
        return 1 <= port_num <= 65535


def is_secret_key(key: str) -> bool:
    """Return True if ``key`` names a secret value."""
    return bool(SECRET_KEY_PATTERN.search(key))


def mask_secrets(value: Any) -> Any:
    """Recursively replace values stored under secret-looking keys.

    Args:
        value: Mapping, list, or scalar to mask

    Returns:
        A copy with secret values replaced by a fixed mask
    """
    if isinstance(value, Mapping):
        return {
            k: (MASK if isinstance(k, str) and is_secret_key(k) and v is not None else mask_secrets(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(mask_secrets(item) for item in value)
    return value
