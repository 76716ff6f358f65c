"""cmconnector - Multi-version Content Manager connector.

A version-agnostic contract for reading Content Manager systems from
release 9.4 through 25.x, over direct SQL Server/Oracle database access or
the REST and SOAP APIs. The connector detects the release, binds the
matching version adapter, and returns stable, immutable unified entities.

Modules:
    core: Exceptions, lifecycle base classes, protocols
    config: Connection, pool, retry, breaker and logging configuration
    logging: Structured logging framework
    security: Credential vault
    resilience: Retry policy and circuit breaker
    connections: Database and remote API connections
    database: Query builders, pooling
    versions: Version detection and adapters
    extraction: Extractors and unified models
    api: Public connector API

Example:
    >>> from cmconnector import ConnectorManager, api
    >>> async with ConnectorManager() as manager:
    ...     connector = await api.connect(
    ...         {"type": "REST_API", "host": "cm-web01", "username": "svc", "password": "..."},
    ...         manager=manager,
    ...     )
    ...     info = await api.detect_version(connector)
"""

from . import api, config, core, logging
from .factory import ConnectionFactory, Connector, ConnectorManager

__version__ = "0.1.0"
__title__ = "cmconnector"
__description__ = "Multi-version Content Manager connector"
__license__ = "MIT"

__all__ = [
    "api",
    "config",
    "core",
    "logging",
    "ConnectionFactory",
    "Connector",
    "ConnectorManager",
    "__version__",
    "__title__",
    "__description__",
    "__license__",
]
