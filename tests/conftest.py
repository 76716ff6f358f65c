"""Pytest configuration and shared fixtures.

This module provides pytest configuration and shared fixtures for all tests
in the cmconnector test suite. ``FakeConnection`` implements the Connection
protocol in memory; ``FakeCMDatabase`` answers the statements the detector
and the SQL adapters send to a SQL Server hosted Content Manager.
"""

import re
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import structlog

from cmconnector.core.exceptions import ErrorCodes, QueryError
from cmconnector.database.models import QueryResult
from cmconnector.database.query_builder import ApiRequestBuilder, BuiltQuery, get_query_builder
from cmconnector.factory import CONNECTION_TYPES, ConnectorManager

# Configure test logging to suppress noise during tests
structlog.configure(
    processors=[structlog.testing.LogCapture()],
    wrapper_class=structlog.BoundLogger,
    logger_factory=structlog.testing.ReturnLoggerFactory(),
    cache_logger_on_first_use=False,
)

Outcome = Union[List[Dict[str, Any]], BaseException]
Responder = Callable[[Any], Outcome]

FROM_PATTERN = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)


class FakeConnection:
    """In-memory Connection; every request is answered by ``responder``.

    The responder returns a list of rows or an exception instance, which is
    raised from ``execute``.
    """

    def __init__(
        self,
        system_id: str = "cm-test",
        responder: Optional[Responder] = None,
        *,
        kind: str = "database",
        protocol: str = "rest",
        connect_error: Optional[BaseException] = None,
    ) -> None:
        self.connection_id = str(uuid.uuid4())
        self.system_id = system_id
        self.kind = kind
        self.responder = responder or (lambda request: [])
        self.connect_error = connect_error
        self.is_open = False
        self.is_healthy = True
        self.alive = True
        self.version_info = None
        self.last_error: Optional[str] = None
        self.executed: List[Any] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.health_checks = 0
        if kind == "database":
            self._builder: Any = get_query_builder("sqlserver")
        else:
            self._builder = ApiRequestBuilder(protocol=protocol)

    @property
    def query_builder(self) -> Any:
        return self._builder

    def cache_version_info(self, info: Any) -> None:
        if self.version_info is None:
            self.version_info = info

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.is_open = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.is_open = False

    async def reconnect(self) -> None:
        await self.disconnect()
        self.version_info = None
        await self.connect()

    async def execute(self, request: Any, *, timeout: Optional[float] = None) -> QueryResult:
        self.executed.append(request)
        outcome = self.responder(request)
        if isinstance(outcome, BaseException):
            self.last_error = str(outcome)
            raise outcome
        return QueryResult(rows=[dict(row) for row in outcome])

    async def health_check(self) -> bool:
        self.health_checks += 1
        if not self.alive:
            self.is_healthy = False
            self.last_error = "ping failed"
        return self.alive


def modern_tables(version: str = "23.4.0.1021") -> Dict[str, List[Dict[str, Any]]]:
    """Catalog of a SQL Server hosted 23.x system."""
    return {
        "TSYSTEM": [{
            "TSYS_VERSION": version,
            "TSYS_DB_VERSION": "Microsoft SQL Server 2019",
            "TSYS_PRODUCT_NAME": "Content Manager",
            "TSYS_EDITION": "Enterprise",
        }],
        "TFEATURES": [
            {"FEATURE_NAME": "ADVANCED_SEARCH"},
            {"FEATURE_NAME": "DOCUMENT_MANAGEMENT"},
        ],
        "TLICENSE": [{"LICENSE_USERS": 250}],
        "TRECORD": [],
        "HP_USER": [
            {
                "id": i,
                "name": f"user{i:02d}",
                "email": f"user{i:02d}@example.com",
                "active": 1,
                "type": "admin" if i == 1 else "normal",
                "created_date": "2024-01-15T09:30:00",
                "modified_date": None,
                "last_login_date": None,
                "permissions": '["read", "write"]',
            }
            for i in range(1, 6)
        ],
        "HP_SYSTEM_OPTIONS": [
            {"option_category": "Security", "option_name": "PasswordPolicy", "option_value": "strict",
             "option_type": "string", "is_encrypted": 0},
            {"option_category": "Security", "option_name": "SmtpPassword", "option_value": "c2VjcmV0",
             "option_type": "string", "is_encrypted": 1},
            {"option_category": None, "option_name": "DatasetName", "option_value": "PROD",
             "option_type": "string", "is_encrypted": 0},
        ],
        "HP_RECORD_TYPE": [{"id": 2, "name": "Document", "level": 1}],
        "HP_LOCATION": [{"id": 10, "name": "Records Unit", "type": "Organization"}],
        "HP_RECORD": [
            {"id": 100 + i, "record_number": f"R/24/{i}", "title": f"Record {i}", "record_type_id": 2,
             "container_id": None, "classification": "Finance", "date_created": "2024-02-01T00:00:00",
             "date_registered": "2024-02-01T00:00:00", "creator_id": 1, "status": "Active"}
            for i in range(1, 4)
        ],
    }


class FakeCMDatabase:
    """Responder emulating a SQL Server hosted Content Manager catalog.

    Tables are plain row lists. Unknown tables fail with QueryError, the
    way a missing table does on a real server. OFFSET/FETCH paging is honored.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables = modern_tables() if tables is None else tables
        self.statements: List[BuiltQuery] = []

    def __call__(self, request: Any) -> Outcome:
        self.statements.append(request)
        text = request.text
        if "INFORMATION_SCHEMA.TABLES" in text:
            return [{"table_count": 1 if request.params[0] in self.tables else 0}]
        if text.startswith("SELECT 1"):
            return [{"ok": 1}]

        match = FROM_PATTERN.search(text)
        table = match.group(1) if match else None
        if table not in self.tables:
            return QueryError(
                f"Invalid object name '{table}'",
                code=ErrorCodes.QUERY_EXECUTION_FAILED,
                context={"table": table},
            )

        rows = self.tables[table]
        if "FETCH NEXT" in text:
            offset, limit = request.params[-2], request.params[-1]
            rows = rows[offset:offset + limit]
        elif "OFFSET" in text:
            rows = rows[request.params[-1]:]
        return [dict(row) for row in rows]

    def selects_from(self, table: str) -> List[BuiltQuery]:
        selected = []
        for statement in self.statements:
            match = FROM_PATTERN.search(statement.text)
            if match and match.group(1) == table:
                selected.append(statement)
        return selected


@pytest.fixture
def make_connection() -> type:
    """The FakeConnection class, for tests that build their own."""
    return FakeConnection


@pytest.fixture
def make_database() -> type:
    """The FakeCMDatabase class, for tests that build their own catalog."""
    return FakeCMDatabase


@pytest.fixture
def catalog() -> Callable[..., Dict[str, List[Dict[str, Any]]]]:
    """Builder for a modern catalog at a chosen version."""
    return modern_tables


@pytest.fixture
def cm_database() -> FakeCMDatabase:
    """Fake 23.4 catalog."""
    return FakeCMDatabase()


@pytest.fixture
def fake_connection(cm_database: FakeCMDatabase) -> FakeConnection:
    """Unopened fake connection backed by the 23.4 catalog."""
    return FakeConnection("cm-test", cm_database)


@pytest.fixture
def connection_factory(cm_database: FakeCMDatabase) -> Callable[[], FakeConnection]:
    """Pool connection factory that records every connection it creates."""
    created: List[FakeConnection] = []

    def create() -> FakeConnection:
        connection = FakeConnection("cm-test", cm_database)
        created.append(connection)
        return connection

    create.created = created  # type: ignore[attr-defined]
    return create


class FakeBackend:
    """Stands in for the DIRECT_DB connection class.

    Connections are answered by ``responder`` as it is when each connection
    is created, so tests may swap the catalog before connecting.
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.connect_error: Optional[BaseException] = None
        self.created: List[FakeConnection] = []

    def connection_class(self, config: Any, *, password: Optional[str] = None) -> FakeConnection:
        connection = FakeConnection(config.system_id, self.responder, connect_error=self.connect_error)
        connection.password = password  # type: ignore[attr-defined]
        self.created.append(connection)
        return connection


@pytest.fixture
def fake_backend(monkeypatch: pytest.MonkeyPatch, cm_database: FakeCMDatabase) -> FakeBackend:
    """Route DIRECT_DB connectors to fake connections over the 23.4 catalog."""
    backend = FakeBackend(cm_database)
    monkeypatch.setitem(CONNECTION_TYPES, "DIRECT_DB", backend.connection_class)
    return backend


@pytest.fixture
async def manager():
    """Connector manager closed after each test."""
    manager = ConnectorManager()
    yield manager
    await manager.close_all()


@pytest.fixture
async def connector(manager, fake_backend, sqlserver_config_data):
    """Open connector over the fake 23.4 catalog."""
    return await manager.connect(sqlserver_config_data)


@pytest.fixture
def sqlserver_config_data() -> Dict[str, Any]:
    """Direct SQL Server configuration for testing."""
    return {
        "type": "DIRECT_DB",
        "databaseType": "sqlserver",
        "host": "cm-sql01",
        "database": "CM",
        "username": "svc_cm",
        "password": "test-password",
        "poolMin": 0,
        "poolMax": 2,
        "acquireTimeout": 5,
        "retryMaxAttempts": 2,
        "retryBackoffMs": 0,
    }


@pytest.fixture
def rest_config_data() -> Dict[str, Any]:
    """REST API configuration for testing."""
    return {
        "type": "REST_API",
        "host": "cm-web01",
        "username": "svc_cm",
        "password": "test-password",
    }


# Pytest markers for different test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (slower, real dependencies)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that take > 1 second"
    )
    config.addinivalue_line(
        "markers", "database: marks tests requiring database connection"
    )
    config.addinivalue_line(
        "markers", "network: marks tests requiring network access"
    )


# Auto-mark tests based on their location
def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        try:
            test_path = Path(item.fspath).relative_to(Path(config.rootdir) / "tests")
        except ValueError:
            continue

        if test_path.parts[0] == "unit":
            item.add_marker(pytest.mark.unit)
        elif test_path.parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
            if not any(mark.name == "slow" for mark in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset the global logger factory between tests."""
    yield
    from cmconnector.logging import shutdown_logging
    shutdown_logging()
