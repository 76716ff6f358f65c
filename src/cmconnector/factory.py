"""Connector construction and lifecycle management.

``ConnectionFactory`` turns a validated configuration into a ``Connector``:
it picks the Connection implementation from the configuration's ``type``
tag, resolves credentials through the credential store, and registers one
pool per target system. ``ConnectorManager`` tracks open connectors by
connection id and owns the pool registry they share.

Classes:
    Connector: Pool, breaker, retry policy and detector bound to one system
    ConnectionFactory: Builds connectors from configuration
    ConnectorManager: Tracks open connectors

Example:
    >>> async with ConnectorManager(credential_store=store) as manager:
    ...     connector = await manager.connect({
    ...         "type": "DIRECT_DB",
    ...         "databaseType": "sqlserver",
    ...         "host": "cm-sql01",
    ...         "database": "CM",
    ...         "username": "svc_cm",
    ...         "credentialRef": "cm-prod-db",
    ...     })
    ...     info = await connector.detect_version()
"""

import functools
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from .config.models import DirectDbConfig, RestApiConfig, parse_connection_config
from .connections.api import ApiConnection
from .connections.database import DatabaseConnection
from .core.exceptions import CMConnectorException, ConfigError, ErrorCodes
from .core.protocols import Connection
from .database.pool import ConnectionPool, PoolMetrics
from .database.registry import PoolRegistry
from .logging import get_logger
from .resilience.circuit_breaker import CircuitBreaker
from .resilience.retry import RetryPolicy
from .security.vault import CredentialStore
from .versions.adapters import AdapterRegistry, default_adapter_registry
from .versions.detector import VersionDetector
from .versions.models import VersionInfo

TargetConfig = Union[DirectDbConfig, RestApiConfig]

# Connection implementation per configuration ``type`` tag
CONNECTION_TYPES: Dict[str, Type[Any]] = {
    "DIRECT_DB": DatabaseConnection,
    "REST_API": ApiConnection,
}


class Connector:
    """Everything needed to talk to one target system.

    Attributes:
        config: Validated target configuration
        system_id: Target system identifier
        connection_id: Identifier of this connector
        pool: Shared connection pool for the system
        breaker: Circuit breaker shared by connectors of the system
        retry: Retry policy for transport failures
        detector: Version detector
        adapter_registry: Adapters available for extraction
        last_error: Message of the most recent failure seen by this connector
    """

    def __init__(
        self,
        config: TargetConfig,
        pool: ConnectionPool,
        *,
        adapter_registry: AdapterRegistry,
        breaker: Optional[CircuitBreaker] = None,
        retry: Optional[RetryPolicy] = None,
        detector: Optional[VersionDetector] = None,
    ) -> None:
        self.config = config
        self.system_id = config.system_id
        self.connection_id = str(uuid.uuid4())
        self.pool = pool
        self.breaker = breaker or CircuitBreaker.from_config(self.system_id, config.circuit_breaker)
        self.retry = retry or RetryPolicy.from_config(config.retry, name=self.system_id)
        self.detector = detector or VersionDetector()
        self.adapter_registry = adapter_registry
        self.created_at = datetime.now()
        self.last_error: Optional[str] = None
        self._closed = False

        self.logger = get_logger(f"connector.{config.kind}.{self.system_id}").bind(
            connection_id=self.connection_id
        )

    @property
    def is_open(self) -> bool:
        return not self._closed and self.pool.is_open

    def record_error(self, error: BaseException) -> None:
        self.last_error = str(error)

    async def open(self) -> None:
        """Open the system's pool; a pool that is already open is reused.

        Raises:
            CMConnectorException: If the initial connections cannot be opened
        """
        try:
            await self.pool.open()
        except CMConnectorException as e:
            self.record_error(e)
            raise
        self.logger.info("Connector opened", kind=self.config.kind, pool=repr(self.pool))

    async def close(self, *, close_pool: bool = True) -> None:
        """Close the connector.

        Args:
            close_pool: Also close the pool; pass False while other connectors share it
        """
        if self._closed:
            return
        self._closed = True
        if close_pool:
            await self.pool.close()
        self.logger.info("Connector closed", pool_closed=close_pool)

    async def ensure_version(self, connection: Connection) -> VersionInfo:
        """Detect the version of a pooled connection, once per connection."""
        return await self.detector.detect(
            connection, executor=functools.partial(self.breaker.call, connection.execute)
        )

    async def detect_version(self) -> VersionInfo:
        """Detect the version using a pooled connection.

        Raises:
            ConnectionError: If detection cannot reach the backend
            AuthenticationError: If the backend rejects the credentials
            CircuitOpenError: If the breaker is open; no connection is acquired
        """
        try:
            self.breaker.check()
            async with self.pool.connection() as connection:
                return await self.ensure_version(connection)
        except CMConnectorException as e:
            self.record_error(e)
            raise

    def get_metrics(self) -> PoolMetrics:
        return self.pool.get_metrics()

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "system_id": self.system_id,
            "open": self.is_open,
            "last_error": self.last_error,
            "pool": self.pool.get_metrics().to_dict(),
            "circuit_breaker": self.breaker.get_stats(),
        }

    def __repr__(self) -> str:
        return (
            f"Connector(system_id={self.system_id!r}, connection_id={self.connection_id!r}, "
            f"open={self.is_open})"
        )


class ConnectionFactory:
    """Factory for creating connectors with validation and credential resolution.

    Creating a connector performs no network I/O; connections are opened
    when the connector (or its pool) is opened.
    """

    def __init__(
        self,
        pool_registry: PoolRegistry,
        *,
        credential_store: Optional[CredentialStore] = None,
        adapter_registry: Optional[AdapterRegistry] = None,
    ) -> None:
        self.pool_registry = pool_registry
        self.credential_store = credential_store
        self.adapter_registry = adapter_registry or default_adapter_registry()
        self.logger = get_logger("connector.factory")
        self._breakers: Dict[str, CircuitBreaker] = {}

    def create_connector(self, config: Union[TargetConfig, Mapping[str, Any]]) -> Connector:
        """Create a connector from configuration.

        Args:
            config: Validated configuration or raw options with a ``type`` tag

        Returns:
            Unopened connector

        Raises:
            ConfigError: If the configuration is invalid or its credential
                reference cannot be resolved
        """
        if isinstance(config, Mapping):
            config = dict(config)
        config = parse_connection_config(config)

        connection_class = CONNECTION_TYPES.get(config.type)
        if connection_class is None:
            raise ConfigError(
                f"Unsupported connection type: {config.type}",
                code=ErrorCodes.CONFIG_INVALID,
                context={"type": config.type, "supported": sorted(CONNECTION_TYPES)},
            )
        self._check_credentials(config)

        pool = self.pool_registry.register(
            config.system_id,
            self._connection_factory(connection_class, config),
            config.pool,
        )
        connector = Connector(
            config,
            pool,
            adapter_registry=self.adapter_registry,
            breaker=self._breaker(config),
        )
        self.logger.info(
            "Connector created",
            system_id=config.system_id,
            type=config.type,
            connection_class=connection_class.__name__,
            connection_id=connector.connection_id,
        )
        return connector

    def _check_credentials(self, config: TargetConfig) -> None:
        if config.password is not None or config.credential_ref is None:
            return
        if self.credential_store is None or config.credential_ref not in self.credential_store:
            raise ConfigError(
                f"Credential reference {config.credential_ref!r} cannot be resolved",
                code=ErrorCodes.CREDENTIAL_NOT_FOUND,
                context={"system_id": config.system_id, "credential_ref": config.credential_ref},
            )

    def _resolve_password(self, config: TargetConfig) -> Optional[str]:
        if config.password is not None:
            return config.password.get_secret_value()
        if config.credential_ref is not None and self.credential_store is not None:
            return self.credential_store.resolve(config.credential_ref)
        return None

    def _connection_factory(self, connection_class: Type[Any], config: TargetConfig) -> Callable[[], Connection]:
        # Secrets are decrypted per connection and never cached here
        def create() -> Connection:
            return connection_class(config, password=self._resolve_password(config))

        return create

    def _breaker(self, config: TargetConfig) -> CircuitBreaker:
        breaker = self._breakers.get(config.system_id)
        if breaker is None:
            breaker = CircuitBreaker.from_config(config.system_id, config.circuit_breaker)
            self._breakers[config.system_id] = breaker
        return breaker

    def get_supported_types(self) -> List[str]:
        return sorted(CONNECTION_TYPES)


class ConnectorManager:
    """Tracks open connectors by connection id.

    The manager owns the pool registry; a system's pool is closed when the
    last connector pointing at it disconnects.

    Example:
        >>> manager = ConnectorManager()
        >>> connector = await manager.connect(config)
        >>> await manager.disconnect(connector.connection_id)
    """

    def __init__(
        self,
        *,
        credential_store: Optional[CredentialStore] = None,
        adapter_registry: Optional[AdapterRegistry] = None,
        pool_registry: Optional[PoolRegistry] = None,
    ) -> None:
        self.pool_registry = pool_registry or PoolRegistry()
        self.factory = ConnectionFactory(
            self.pool_registry,
            credential_store=credential_store,
            adapter_registry=adapter_registry,
        )
        self.logger = get_logger("connector.manager")
        self._connectors: Dict[str, Connector] = {}

    async def connect(self, config: Union[TargetConfig, Mapping[str, Any]]) -> Connector:
        """Create and open a connector.

        Raises:
            ConfigError: If the configuration is invalid
            ConnectionError: If the initial connections cannot be opened
            AuthenticationError: If the backend rejects the credentials
        """
        connector = self.factory.create_connector(config)
        try:
            await connector.open()
        except BaseException:
            await connector.close(close_pool=False)
            if not self._shares_pool(connector):
                await self.pool_registry.remove(connector.system_id)
            raise
        self._connectors[connector.connection_id] = connector
        self.logger.info(
            "Connector registered",
            connection_id=connector.connection_id,
            system_id=connector.system_id,
            active_connectors=len(self._connectors),
        )
        return connector

    def get(self, connection_id: str) -> Connector:
        """Get an open connector.

        Raises:
            CMConnectorException: If no connector has ``connection_id``
        """
        connector = self._connectors.get(connection_id)
        if connector is None:
            raise CMConnectorException(
                f"No open connector with id: {connection_id}",
                code=ErrorCodes.CONNECTOR_NOT_FOUND,
                context={"connection_id": connection_id},
            )
        return connector

    async def disconnect(self, connection_id: str) -> None:
        """Close a connector; unknown ids are ignored."""
        connector = self._connectors.pop(connection_id, None)
        if connector is None:
            self.logger.debug("Disconnect for unknown connector", connection_id=connection_id)
            return
        shared = self._shares_pool(connector)
        await connector.close(close_pool=False)
        if not shared:
            await self.pool_registry.remove(connector.system_id)
        self.logger.info(
            "Connector disconnected",
            connection_id=connection_id,
            system_id=connector.system_id,
            pool_closed=not shared,
        )

    async def close_all(self) -> None:
        """Close every connector and pool."""
        connectors = list(self._connectors.values())
        self._connectors.clear()
        for connector in connectors:
            await connector.close(close_pool=False)
        await self.pool_registry.close_all()

    def _shares_pool(self, connector: Connector) -> bool:
        return any(
            other.system_id == connector.system_id
            for other in self._connectors.values()
            if other is not connector
        )

    def list_connectors(self) -> List[str]:
        return list(self._connectors)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connectors

    def __len__(self) -> int:
        return len(self._connectors)

    async def __aenter__(self) -> "ConnectorManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close_all()
