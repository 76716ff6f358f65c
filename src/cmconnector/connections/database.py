"""Direct database connections for SQL Server and Oracle.

The connection delegates driver specifics to small strategy objects
selected by ``database_type``. Driver modules (``aioodbc``, ``oracledb``)
are imported when a session is opened, so the package imports on hosts
without native ODBC libraries.

Classes:
    SqlServerDriver: SQL Server via aioodbc
    OracleDriver: Oracle via python-oracledb (async thin mode)
    DatabaseConnection: Connection implementation for ``DIRECT_DB`` targets

Example:
    >>> connection = DatabaseConnection(config)
    >>> await connection.connect()
    >>> result = await connection.execute(connection.query_builder.ping())
"""

import asyncio
import re
import time
import uuid
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Type

from ..config.models import DirectDbConfig
from ..core.base import AsyncComponent
from ..core.exceptions import (
    AuthenticationError,
    CMConnectorException,
    ConfigError,
    ConnectionError,
    ErrorCodes,
    QueryError,
    TimeoutError,
    create_error_from_exception,
)
from ..database.models import QueryResult
from ..database.query_builder import BuiltQuery, QueryBuilder, get_query_builder
from ..logging import get_logger

SQLSTATE_PATTERN = re.compile(r"\b(\d{2}[0-9A-Z]{3}|HYT0\d)\b")
ORACLE_CODE_PATTERN = re.compile(r"\b(ORA|DPY)-(\d+)")


class SqlServerDriver:
    """SQL Server access through ``aioodbc``."""

    name = "sqlserver"

    def build_dsn(self, config: DirectDbConfig, password: str) -> str:
        """Build the ODBC connection string.

        Values are brace-quoted so separators inside a password are literal.
        """
        def quote(value: str) -> str:
            return "{" + value.replace("}", "}}") + "}"

        parts = [
            f"DRIVER={quote(config.odbc_driver)}",
            f"SERVER={config.host},{config.port}",
            f"DATABASE={quote(config.database)}",
            f"UID={quote(config.username or '')}",
            f"PWD={quote(password)}",
            f"Encrypt={'yes' if config.encrypt else 'no'}",
            f"TrustServerCertificate={'yes' if config.trust_server_certificate else 'no'}",
        ]
        return ";".join(parts)

    async def connect(self, config: DirectDbConfig, password: str) -> Any:
        import aioodbc

        return await aioodbc.connect(
            dsn=self.build_dsn(config, password),
            autocommit=True,
            timeout=int(config.timeout),
        )

    async def execute(self, raw: Any, query: BuiltQuery) -> QueryResult:
        start = time.perf_counter()
        async with raw.cursor() as cursor:
            await cursor.execute(query.text, query.params)
            columns = [d[0] for d in cursor.description or ()]
            rows = await cursor.fetchall() if columns else []
        return QueryResult(
            rows=[dict(zip(columns, row)) for row in rows],
            columns=columns,
            execution_time=time.perf_counter() - start,
            source=self.name,
        )

    async def close(self, raw: Any) -> None:
        await raw.close()

    def classify(self, exc: BaseException, *, phase: str, context: Dict[str, Any]) -> CMConnectorException:
        """Map a driver exception onto the error taxonomy.

        Args:
            exc: Driver exception
            phase: ``connect`` or ``execute``
            context: Context to attach
        """
        if not type(exc).__module__.startswith(("pyodbc", "aioodbc")):
            return create_error_from_exception(exc, context=context)

        text = " ".join(str(a) for a in exc.args) or str(exc)
        match = SQLSTATE_PATTERN.search(text)
        sqlstate = match.group(1) if match else ""

        if sqlstate.startswith("28") or "Login failed" in text or "18456" in text:
            return AuthenticationError(
                "SQL Server rejected the login",
                code=ErrorCodes.AUTH_FAILED,
                context=context,
                cause=exc,
            )
        if sqlstate.startswith("HYT"):
            return TimeoutError(f"SQL Server timeout: {text}", code=ErrorCodes.QUERY_TIMEOUT, context=context, cause=exc)
        if sqlstate.startswith("08") or phase == "connect":
            return ConnectionError(
                f"SQL Server connection failed: {text}",
                code=ErrorCodes.CONNECTION_FAILED,
                context=context,
                cause=exc,
            )
        return QueryError(
            f"SQL Server rejected the statement: {text}",
            code=ErrorCodes.QUERY_EXECUTION_FAILED,
            context={**context, "sqlstate": sqlstate or None},
            cause=exc,
        )


class OracleDriver:
    """Oracle access through python-oracledb async thin mode."""

    name = "oracle"

    AUTH_CODES = {"ORA-01017", "ORA-28000", "ORA-28001", "ORA-01045"}
    TIMEOUT_CODES = {"ORA-01013", "DPY-4024", "DPY-4011"}
    STATEMENT_PREFIXES = ("ORA-00", "ORA-01", "ORA-06", "ORA-12899")

    async def connect(self, config: DirectDbConfig, password: str) -> Any:
        import oracledb

        dsn = oracledb.makedsn(config.host, config.port, service_name=config.database)
        return await oracledb.connect_async(
            user=config.username,
            password=password,
            dsn=dsn,
            tcp_connect_timeout=config.timeout,
        )

    async def execute(self, raw: Any, query: BuiltQuery) -> QueryResult:
        start = time.perf_counter()
        with raw.cursor() as cursor:
            await cursor.execute(query.text, list(query.params))
            columns = [d[0] for d in cursor.description or ()]
            rows = await cursor.fetchall() if columns else []
        return QueryResult(
            rows=[dict(zip(columns, row)) for row in rows],
            columns=columns,
            execution_time=time.perf_counter() - start,
            source=self.name,
        )

    async def close(self, raw: Any) -> None:
        await raw.close()

    def classify(self, exc: BaseException, *, phase: str, context: Dict[str, Any]) -> CMConnectorException:
        if not type(exc).__module__.startswith("oracledb"):
            return create_error_from_exception(exc, context=context)

        text = str(exc)
        match = ORACLE_CODE_PATTERN.search(text)
        code = f"{match.group(1)}-{match.group(2)}" if match else ""

        if code in self.AUTH_CODES:
            return AuthenticationError(
                "Oracle rejected the login",
                code=ErrorCodes.AUTH_FAILED,
                context={**context, "oracle_code": code},
                cause=exc,
            )
        if code in self.TIMEOUT_CODES:
            return TimeoutError(f"Oracle timeout: {text}", code=ErrorCodes.QUERY_TIMEOUT, context=context, cause=exc)
        if phase == "execute" and code.startswith(self.STATEMENT_PREFIXES):
            return QueryError(
                f"Oracle rejected the statement: {text}",
                code=ErrorCodes.QUERY_EXECUTION_FAILED,
                context={**context, "oracle_code": code},
                cause=exc,
            )
        return ConnectionError(
            f"Oracle connection failed: {text}",
            code=ErrorCodes.CONNECTION_FAILED,
            context={**context, "oracle_code": code or None},
            cause=exc,
        )


DRIVERS: Dict[str, Type[Any]] = {
    "sqlserver": SqlServerDriver,
    "oracle": OracleDriver,
}


class DatabaseConnection(AsyncComponent[DirectDbConfig]):
    """A single session against a SQL Server or Oracle CM database.

    Attributes:
        kind: Protocol kind used for adapter resolution (``database``)
        created_at: When the object was created
        last_used: When the last statement finished
        use_count: Number of statements executed
        last_error: Message of the most recent failure
    """

    component_name: ClassVar[str] = "DatabaseConnection"
    kind = "database"

    def __init__(
        self,
        config: DirectDbConfig,
        *,
        password: Optional[str] = None,
        driver: Optional[Any] = None,
    ) -> None:
        """Initialize database connection.

        Args:
            config: Direct database configuration
            password: Resolved password; defaults to the inline config password
            driver: Driver strategy; selected by ``database_type`` if omitted

        Raises:
            ConfigError: If no password is available
        """
        super().__init__(config)
        if password is None and config.password is not None:
            password = config.password.get_secret_value()
        if password is None:
            raise ConfigError(
                "No password resolved for direct database access",
                code=ErrorCodes.CREDENTIAL_NOT_FOUND,
                context={"system_id": config.system_id, "credential_ref": config.credential_ref},
            )
        self._password = password
        self._driver = driver or DRIVERS[config.database_type]()
        self._raw: Any = None
        self._healthy = True
        self._version_info: Any = None
        self._connection_id = str(uuid.uuid4())
        self._query_builder: QueryBuilder = get_query_builder(
            config.database_type,
            **({"use_rownum": config.use_rownum_pagination} if config.database_type == "oracle" else {}),
        )

        self.created_at = datetime.now()
        self.last_used = self.created_at
        self.use_count = 0
        self.last_error: Optional[str] = None

        self.logger = get_logger(f"connector.database.{config.system_id}").bind(
            connection_id=self._connection_id
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def system_id(self) -> str:
        return self.config.system_id

    @property
    def is_open(self) -> bool:
        return self._initialized and self._raw is not None

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    @property
    def version_info(self) -> Any:
        return self._version_info

    @property
    def query_builder(self) -> QueryBuilder:
        return self._query_builder

    def cache_version_info(self, info: Any) -> None:
        """Cache detected version information; later calls are ignored."""
        if self._version_info is None:
            self._version_info = info

    def _context(self, **extra: Any) -> Dict[str, Any]:
        return {
            "system_id": self.system_id,
            "connection_id": self._connection_id,
            "database_type": self.config.database_type,
            **extra,
        }

    async def connect(self) -> None:
        await self.initialize()

    async def disconnect(self) -> None:
        await self.cleanup()

    async def reconnect(self) -> None:
        """Close and re-open the session, clearing cached version info."""
        await self.disconnect()
        self._version_info = None
        self._healthy = True
        await self.connect()

    async def _async_initialize(self) -> None:
        self.logger.debug("Opening database session", host=self.config.host, port=self.config.port)
        start = time.perf_counter()
        try:
            self._raw = await asyncio.wait_for(
                self._driver.connect(self.config, self._password),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError as e:
            self.last_error = "connect timed out"
            raise TimeoutError(
                f"Connecting to {self.system_id} timed out after {self.config.timeout}s",
                code=ErrorCodes.CONNECTION_TIMEOUT,
                context=self._context(timeout=self.config.timeout),
            ) from e
        except Exception as e:
            error = self._driver.classify(e, phase="connect", context=self._context(phase="connect"))
            self.last_error = error.message
            if error is e:
                raise
            raise error from e

        self._healthy = True
        self.logger.info(
            "Database session opened",
            host=self.config.host,
            database=self.config.database,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def _async_cleanup(self) -> None:
        raw, self._raw = self._raw, None
        if raw is not None:
            await self._driver.close(raw)
            self.logger.debug("Database session closed", use_count=self.use_count)

    async def execute(self, request: BuiltQuery, *, timeout: Optional[float] = None) -> QueryResult:
        """Execute a built statement.

        Args:
            request: Statement from this connection's query builder
            timeout: Statement timeout (defaults to ``query_timeout``)

        Returns:
            The statement result

        Raises:
            ConnectionError: If the session is closed or breaks
            TimeoutError: If the statement exceeds its timeout
            QueryError: If the backend rejects the statement
            AuthenticationError: If the session's login is rejected
        """
        if not self.is_open:
            raise ConnectionError(
                f"Connection to {self.system_id} is not open",
                code=ErrorCodes.CONNECTION_CLOSED,
                context=self._context(),
            )

        effective_timeout = timeout or self.config.query_timeout
        try:
            result = await asyncio.wait_for(self._driver.execute(self._raw, request), timeout=effective_timeout)
        except asyncio.CancelledError:
            # The driver may be mid-statement; the session cannot be reused
            self._healthy = False
            self.last_error = "cancelled"
            raise
        except asyncio.TimeoutError as e:
            self._healthy = False
            self.last_error = "statement timed out"
            raise TimeoutError(
                f"Statement on {self.system_id} timed out after {effective_timeout}s",
                code=ErrorCodes.QUERY_TIMEOUT,
                context=self._context(timeout=effective_timeout),
            ) from e
        except Exception as e:
            error = self._driver.classify(e, phase="execute", context=self._context(phase="execute"))
            if isinstance(error, (ConnectionError, TimeoutError)):
                self._healthy = False
            self.last_error = error.message
            if error is e:
                raise
            raise error from e

        self.use_count += 1
        self.last_used = datetime.now()
        return result

    async def health_check(self) -> bool:
        """Run the dialect's ping statement."""
        if not self.is_open:
            return False
        try:
            await self.execute(self._query_builder.ping(), timeout=min(5.0, self.config.query_timeout))
        except CMConnectorException as e:
            self.logger.debug("Health probe failed", error=str(e))
            self._healthy = False
            return False
        self._healthy = True
        return True

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status.update({
            "connection_id": self._connection_id,
            "system_id": self.system_id,
            "open": self.is_open,
            "healthy": self._healthy,
            "use_count": self.use_count,
            "last_error": self.last_error,
        })
        return status
