"""cmconnector configuration management.

This package provides the type-safe configuration models for connections,
pools, retries, circuit breakers, logging, and the credential vault.

Classes:
    BaseConfig: Base configuration class
    DirectDbConfig: Direct database connection configuration
    RestApiConfig: REST/SOAP API connection configuration
    PoolConfig: Connection pool configuration
    LoggingConfig: Logging configuration

Example:
    >>> from cmconnector.config import parse_connection_config
    >>> config = parse_connection_config({"type": "REST_API", "host": "cm01", "apiKey": "k"})
    >>> config.resolved_base_url
    'https://cm01:8080/ContentManager'
"""

from .models import (
    BaseConfig,
    CircuitBreakerConfig,
    ConnectionConfig,
    DirectDbConfig,
    LoggingConfig,
    PoolConfig,
    RestApiConfig,
    RetryConfig,
    VaultConfig,
    parse_connection_config,
)

__all__ = [
    "BaseConfig",
    "CircuitBreakerConfig",
    "ConnectionConfig",
    "DirectDbConfig",
    "LoggingConfig",
    "PoolConfig",
    "RestApiConfig",
    "RetryConfig",
    "VaultConfig",
    "parse_connection_config",
]
