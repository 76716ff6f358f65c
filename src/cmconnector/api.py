"""Public connector API.

Thin async functions over ``ConnectorManager`` and the extractors. Every
function takes an opened ``Connector`` (or a manager for connect and
disconnect) and returns unified, immutable results.

Example:
    >>> async with ConnectorManager() as manager:
    ...     connector = await connect(config, manager=manager)
    ...     system = await extract_system_config(connector)
    ...     async for user in extract_users(connector, page_size=200):
    ...         print(user.id, user.attributes.name)
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Sequence, Union

from .config.models import DirectDbConfig, RestApiConfig
from .core.exceptions import CMConnectorException, PoolExhaustedError
from .database.pool import PoolMetrics
from .extraction.extractors import (
    DEFAULT_PAGE_SIZE,
    DocumentExtractor,
    FilterSpec,
    RecordExtractor,
    SystemExtractor,
    UserExtractor,
)
from .extraction.unified import UnifiedDocument, UnifiedRecord, UnifiedSystem, UnifiedUser
from .factory import Connector, ConnectorManager
from .logging import get_logger
from .resilience.circuit_breaker import CircuitState
from .versions.models import VersionInfo

logger = get_logger("api")

# Probe latency above this is reported as ``warning``
WARNING_LATENCY_MS = 1000.0

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_CRITICAL = "critical"
STATUS_OFFLINE = "offline"


@dataclass(frozen=True)
class HealthStatus:
    """Result of a connector health check.

    Attributes:
        connected: A pooled connection answered the liveness probe
        last_error: Most recent failure message, if any
        latency_ms: Probe round trip, None when no probe ran
        status: ``healthy``, ``warning``, ``critical`` or ``offline``
        circuit_state: Circuit breaker state at check time
        checked_at: When the check ran (UTC)
    """
    connected: bool
    last_error: Optional[str]
    latency_ms: Optional[float]
    status: str
    circuit_state: str
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "last_error": self.last_error,
            "latency_ms": self.latency_ms,
            "status": self.status,
            "circuit_state": self.circuit_state,
            "checked_at": self.checked_at.isoformat(),
        }


async def connect(
    config: Union[DirectDbConfig, RestApiConfig, Mapping[str, Any]],
    *,
    manager: ConnectorManager,
) -> Connector:
    """Validate configuration, open the system's pool and register the connector.

    Raises:
        ConfigError: If the configuration is invalid
        ConnectionError: If the backend cannot be reached
        AuthenticationError: If the backend rejects the credentials
    """
    return await manager.connect(config)


async def disconnect(connection_id: str, *, manager: ConnectorManager) -> None:
    await manager.disconnect(connection_id)


async def detect_version(connector: Connector) -> VersionInfo:
    """Detect the release behind a connector.

    Returns:
        Detected VersionInfo, or an ``UNKNOWN`` one when no signature matched

    Raises:
        ConnectionError: If the backend cannot be probed
    """
    return await connector.detect_version()


async def extract_system_config(connector: Connector) -> UnifiedSystem:
    try:
        return await SystemExtractor(connector).extract()
    except CMConnectorException as e:
        connector.record_error(e)
        raise


def extract_users(
    connector: Connector,
    *,
    offset: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    limit: Optional[int] = None,
    filters: FilterSpec = None,
    fields: Sequence[str] = (),
) -> AsyncIterator[UnifiedUser]:
    """Lazily iterate users.

    The iterator is finite. To resume after an interruption, call again with
    ``offset`` set to the number of users already consumed.
    """
    return UserExtractor(connector).iter_users(
        offset=offset, page_size=page_size, limit=limit, filters=filters, fields=fields
    )


def extract_documents(
    connector: Connector,
    filter: FilterSpec = None,
    *,
    fields: Sequence[str] = (),
    offset: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    limit: Optional[int] = None,
) -> AsyncIterator[UnifiedDocument]:
    return DocumentExtractor(connector).iter_documents(
        filter, fields=fields, offset=offset, page_size=page_size, limit=limit
    )


def extract_records(
    connector: Connector,
    filter: FilterSpec = None,
    *,
    fields: Sequence[str] = (),
    offset: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    limit: Optional[int] = None,
) -> AsyncIterator[UnifiedRecord]:
    return RecordExtractor(connector).iter_records(
        filter, fields=fields, offset=offset, page_size=page_size, limit=limit
    )


async def check_health(connector: Connector, *, warning_latency_ms: float = WARNING_LATENCY_MS) -> HealthStatus:
    """Probe one pooled connection and classify the result.

    Status rules:
        - ``offline``: connector closed, or no connection could be opened
        - ``critical``: circuit open and cooling down, or the liveness probe failed
        - ``warning``: pool saturated, circuit not closed, or slow probe
        - ``healthy``: otherwise

    Returns:
        HealthStatus snapshot; check failures are reported, never raised
    """
    circuit_state = connector.breaker.state
    if not connector.is_open:
        return _status(connector, STATUS_OFFLINE, connected=False)
    if circuit_state == CircuitState.OPEN and connector.breaker.retry_after > 0:
        return _status(connector, STATUS_CRITICAL, connected=False)

    start = time.perf_counter()
    try:
        async with connector.pool.connection() as connection:
            alive = await connection.health_check()
            probe_error = getattr(connection, "last_error", None)
    except PoolExhaustedError as e:
        connector.record_error(e)
        logger.warning("Health check could not acquire a connection", system_id=connector.system_id, error=str(e))
        return _status(connector, STATUS_WARNING, connected=True)
    except CMConnectorException as e:
        connector.record_error(e)
        logger.warning("Health check failed to connect", system_id=connector.system_id, error=str(e))
        return _status(connector, STATUS_OFFLINE, connected=False)
    latency_ms = (time.perf_counter() - start) * 1000

    if not alive:
        if probe_error:
            connector.last_error = probe_error
        status = STATUS_CRITICAL
    elif latency_ms > warning_latency_ms or circuit_state != CircuitState.CLOSED:
        status = STATUS_WARNING
    else:
        status = STATUS_HEALTHY

    logger.debug(
        "Health check completed",
        system_id=connector.system_id,
        status=status,
        latency_ms=latency_ms,
    )
    return _status(connector, status, connected=alive, latency_ms=latency_ms)


def _status(
    connector: Connector, status: str, *, connected: bool, latency_ms: Optional[float] = None
) -> HealthStatus:
    return HealthStatus(
        connected=connected,
        last_error=connector.last_error,
        latency_ms=latency_ms,
        status=status,
        circuit_state=connector.breaker.state.value,
    )


def get_metrics(connector: Connector) -> PoolMetrics:
    return connector.get_metrics()
