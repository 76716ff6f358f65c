"""Version detection for Content Manager backends.

Runs an ordered list of signature probes against a live connection and
caches the resulting VersionInfo on it. Database connections are probed with
system-table and schema-presence queries; API connections with the system
information endpoints.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from ..core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    CMConnectorException,
    ConnectionError,
    ErrorCodes,
    QueryError,
    TimeoutError,
)
from ..core.protocols import Connection
from ..database.models import QueryResult, get_field
from ..database.query_builder import Filter
from ..logging import get_logger, get_performance_logger
from ..resilience.retry import RetryPolicy
from .models import (
    CATEGORY_FEATURES,
    MODULE_TABLES,
    Edition,
    Version,
    VersionInfo,
)

Executor = Callable[[Any], Awaitable[QueryResult]]

SYSTEM_TABLE_COLUMNS = ["TSYS_VERSION", "TSYS_DB_VERSION", "TSYS_PRODUCT_NAME", "TSYS_EDITION"]

# Checked in order; the first table present decides the release family
SCHEMA_SIGNATURES: Tuple[Tuple[str, str], ...] = (
    ("HP_EVENT_STREAM", "25.1"),
    ("HP_AI_SUGGESTIONS", "25.1"),
    ("HP_USER", "23.3"),
    ("TUSERPERSON", "9.4"),
)


class DetectorState(str, Enum):
    """Detection state of one connection."""
    UNPROBED = "UNPROBED"
    PROBING = "PROBING"
    DETECTED = "DETECTED"
    UNKNOWN = "UNKNOWN"


class VersionDetector:
    """Identifies the release behind a connection.

    Probe outcomes:
        - a statement error (missing table) or HTTP 404 is a non-match
        - retryable transport errors are retried, then count as a non-match
        - authentication and open-circuit errors surface unchanged
        - anything else aborts detection with ``ConnectionError``

    Example:
        >>> detector = VersionDetector()
        >>> info = await detector.detect(connection)
        >>> info.category
        <VersionCategory.MODERN: 'modern'>
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=1, initial_backoff=0.2, max_backoff=2.0, name="detector"
        )
        self.logger = get_logger("versions.detector")
        self.perf_logger = get_performance_logger("versions.detector", auto_log=False)
        self._probing: Set[str] = set()

    def state(self, connection: Connection) -> DetectorState:
        if connection.connection_id in self._probing:
            return DetectorState.PROBING
        info = connection.version_info
        if info is None:
            return DetectorState.UNPROBED
        return DetectorState.UNKNOWN if info.is_unknown else DetectorState.DETECTED

    async def detect(self, connection: Connection, *, executor: Optional[Executor] = None) -> VersionInfo:
        """Detect (or return the cached) version of the connection's backend.

        Args:
            connection: Open connection to probe
            executor: Runs one request; defaults to ``connection.execute``

        Returns:
            Detected VersionInfo, or ``VersionInfo.unknown()`` when no probe matched

        Raises:
            AuthenticationError: If the backend rejects the session
            ConnectionError: If a probe fails with a non-transport error
        """
        cached = connection.version_info
        if cached is not None:
            return cached

        run = executor or connection.execute
        self._probing.add(connection.connection_id)
        self.logger.info(
            "Starting version detection",
            system_id=connection.system_id,
            connection_id=connection.connection_id,
            kind=connection.kind,
        )
        try:
            with self.perf_logger.measure("detect", system_id=connection.system_id):
                if connection.kind == "database":
                    info = await self._detect_database(connection, run)
                else:
                    info = await self._detect_api(connection, run)
        finally:
            self._probing.discard(connection.connection_id)

        connection.cache_version_info(info)
        if info.is_unknown:
            self.logger.warning("No version signature matched, using fallback", system_id=connection.system_id)
        else:
            self.logger.info(
                "Version detection completed",
                system_id=connection.system_id,
                version=info.raw_version,
                category=info.category.value,
                probe=info.probe,
                supported=info.is_supported,
            )
        return info

    async def _probe(self, connection: Connection, run: Executor, request: Any, probe: str) -> Optional[QueryResult]:
        """Run one probe; None means the signature did not match."""
        try:
            return await self.retry_policy.execute(run, request)
        except (AuthenticationError, CircuitOpenError):
            raise
        except QueryError as e:
            self.logger.debug("Probe did not match", probe=probe, error=str(e))
            return None
        except (ConnectionError, TimeoutError) as e:
            self.logger.warning("Probe failed after retries, treating as non-match", probe=probe, error=str(e))
            return None
        except CMConnectorException as e:
            raise ConnectionError(
                f"Version detection aborted during probe {probe}",
                code=ErrorCodes.VERSION_DETECTION_FAILED,
                context={"system_id": connection.system_id, "probe": probe},
                cause=e,
            ) from e

    async def _table_present(self, connection: Connection, run: Executor, table: str) -> bool:
        result = await self._probe(connection, run, connection.query_builder.table_exists(table), f"table:{table}")
        if result is None:
            return False
        return int(result.scalar("table_count", 0) or 0) > 0

    async def _detect_database(self, connection: Connection, run: Executor) -> VersionInfo:
        builder = connection.query_builder

        result = await self._probe(
            connection,
            run,
            builder.select("TSYSTEM", SYSTEM_TABLE_COLUMNS, filters=[Filter("TSYS_ID", "eq", 1)]),
            "system_table",
        )
        row = result.first() if result else None
        if row is not None:
            raw = str(get_field(row, "TSYS_VERSION") or "").strip()
            version = Version.try_parse(raw)
            if version is not None:
                return await self._enrich(
                    connection,
                    run,
                    version,
                    raw_version=raw,
                    probe="system_table",
                    edition=Edition.parse(get_field(row, "TSYS_EDITION")),
                    database_version=get_field(row, "TSYS_DB_VERSION"),
                    product_name=get_field(row, "TSYS_PRODUCT_NAME"),
                )
            self.logger.debug("System table returned an unparseable version", raw_version=raw)

        for table, family in SCHEMA_SIGNATURES:
            if await self._table_present(connection, run, table):
                return await self._enrich(
                    connection,
                    run,
                    Version.parse(family),
                    raw_version=family,
                    probe=f"schema:{table}",
                )

        return VersionInfo.unknown()

    async def _enrich(
        self,
        connection: Connection,
        run: Executor,
        version: Version,
        *,
        raw_version: str,
        probe: str,
        edition: Edition = Edition.STANDARD,
        database_version: Optional[Any] = None,
        product_name: Optional[Any] = None,
    ) -> VersionInfo:
        """Add features, modules, and licensing to a matched database version."""
        builder = connection.query_builder

        features: FrozenSet[str] = CATEGORY_FEATURES[version.category]
        if version.major >= 23:
            result = await self._probe(
                connection,
                run,
                builder.select("TFEATURES", ["FEATURE_NAME"], filters=[Filter("FEATURE_STATUS", "eq", "ENABLED")]),
                "features",
            )
            if result and result.rows:
                features = frozenset(
                    str(get_field(r, "FEATURE_NAME")) for r in result.rows if get_field(r, "FEATURE_NAME")
                )

        modules = frozenset(
            [name for name, table in MODULE_TABLES.items() if await self._table_present(connection, run, table)]
        )

        licensed_users = 0
        result = await self._probe(
            connection,
            run,
            builder.select("TLICENSE", ["LICENSE_USERS"], filters=[Filter("LICENSE_ACTIVE", "eq", 1)]),
            "license",
        )
        if result is not None:
            licensed_users = self._licensed_users(result.scalar("LICENSE_USERS"), "license")

        return VersionInfo(
            version=version,
            raw_version=raw_version,
            edition=edition,
            features=features,
            modules=modules,
            database_version=str(database_version) if database_version is not None else None,
            product_name=str(product_name) if product_name is not None else None,
            licensed_users=licensed_users,
            probe=probe,
        )

    def _licensed_users(self, value: Any, probe: str) -> int:
        """Read a license count; non-numeric values such as ``Unlimited`` read as 0."""
        if value is None or value == "":
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            self.logger.debug("License count is not numeric", probe=probe, licensed_users=value)
            return 0

    def _api_probes(self, connection: Connection) -> List[Tuple[str, Any]]:
        builder = connection.query_builder
        if builder.protocol == "soap":
            return [("soap:GetSystemInfo", builder.system_info())]
        return [
            ("rest:v2", builder.system_info(api_version="v2")),
            ("rest:v1", builder.system_info(api_version="v1")),
        ]

    async def _detect_api(self, connection: Connection, run: Executor) -> VersionInfo:
        for probe, request in self._api_probes(connection):
            result = await self._probe(connection, run, request, probe)
            row = result.first() if result else None
            if row is None:
                continue
            raw = str(_first_of(row, "version", "productVersion", "systemVersion") or "").strip()
            version = Version.try_parse(raw)
            if version is None:
                self.logger.debug("System info returned an unparseable version", probe=probe, raw_version=raw)
                continue
            return VersionInfo(
                version=version,
                raw_version=raw,
                edition=Edition.parse(_first_of(row, "edition")),
                features=_as_names(_first_of(row, "features", "installedFeatures"))
                or CATEGORY_FEATURES[version.category],
                modules=_as_names(_first_of(row, "modules")),
                database_version=_optional_str(_first_of(row, "databaseVersion", "dbVersion")),
                product_name=_optional_str(_first_of(row, "productName", "product")),
                licensed_users=self._licensed_users(_first_of(row, "licensedUsers"), probe),
                probe=probe,
            )
        return VersionInfo.unknown()


def _first_of(row: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = get_field(row, name)
        if value is not None:
            return value
    return None


def _as_names(value: Any) -> FrozenSet[str]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        return frozenset(v.strip() for v in value.split(",") if v.strip())
    return frozenset(str(v) for v in value)


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
