"""Tests for version detection."""

import pytest

from cmconnector.core.exceptions import (
    AuthenticationError,
    ConnectionError,
    ErrorCodes,
    QueryError,
    SecurityError,
)
from cmconnector.resilience.retry import RetryPolicy
from cmconnector.versions.detector import DetectorState, VersionDetector
from cmconnector.versions.models import (
    LEGACY_FEATURES,
    MODERN_FEATURES,
    Edition,
    Version,
    VersionCategory,
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def detector(sleep):
    return VersionDetector(retry_policy=RetryPolicy(max_attempts=1, initial_backoff=0.01, jitter=0, sleep=sleep))


class TestDatabaseDetection:
    """Test cases for probing SQL backends."""

    @pytest.mark.asyncio
    async def test_system_table(self, detector, fake_connection, cm_database):
        """Test the TSYSTEM row decides the version and is enriched."""
        info = await detector.detect(fake_connection)

        assert info.version == Version(23, 4, 0, 1021)
        assert info.raw_version == "23.4.0.1021"
        assert info.category is VersionCategory.MODERN
        assert info.edition is Edition.ENTERPRISE
        assert info.features == frozenset({"ADVANCED_SEARCH", "DOCUMENT_MANAGEMENT"})
        assert info.modules == frozenset({"RM"})
        assert info.licensed_users == 250
        assert info.product_name == "Content Manager"
        assert info.probe == "system_table"
        assert cm_database.selects_from("TSYSTEM")

    @pytest.mark.asyncio
    async def test_result_cached_on_connection(self, detector, fake_connection):
        """Test a second detection does not probe again."""
        first = await detector.detect(fake_connection)
        executed = len(fake_connection.executed)

        second = await detector.detect(fake_connection)

        assert second is first
        assert fake_connection.version_info is first
        assert len(fake_connection.executed) == executed

    @pytest.mark.asyncio
    async def test_unchanged_backend_detects_identically(self, detector, make_connection, cm_database):
        """Test two fresh connections to one backend report equal versions."""
        first = await detector.detect(make_connection("cm-test", cm_database))
        second = await detector.detect(make_connection("cm-test", cm_database))

        assert second is not first
        assert second == first
        assert second.to_dict() | {"detected_at": None} == first.to_dict() | {"detected_at": None}

    @pytest.mark.asyncio
    async def test_reconnect_clears_cache_and_redetects(self, detector, fake_connection, cm_database):
        """Test reconnect() forgets the cached version and detection repeats it."""
        await fake_connection.connect()
        first = await detector.detect(fake_connection)
        probes = len(cm_database.selects_from("TSYSTEM"))

        await fake_connection.reconnect()
        assert fake_connection.version_info is None
        assert detector.state(fake_connection) is DetectorState.UNPROBED

        second = await detector.detect(fake_connection)

        assert second is not first
        assert second == first
        assert len(cm_database.selects_from("TSYSTEM")) == probes + 1

    @pytest.mark.asyncio
    async def test_non_numeric_license_count(self, detector, make_connection, make_database, catalog):
        """Test a license count such as Unlimited does not abort detection."""
        tables = catalog()
        tables["TLICENSE"] = [{"LICENSE_USERS": "Unlimited"}]
        connection = make_connection("cm-test", make_database(tables))

        info = await detector.detect(connection)

        assert info.version == Version(23, 4, 0, 1021)
        assert info.licensed_users == 0
        assert detector.state(connection) is DetectorState.DETECTED

    @pytest.mark.asyncio
    async def test_schema_fallback(self, detector, make_connection, make_database):
        """Test table signatures are used when TSYSTEM is missing."""
        connection = make_connection("cm-test", make_database({"HP_USER": [], "TRECORD": []}))

        info = await detector.detect(connection)

        assert info.version == Version(23, 3)
        assert info.probe == "schema:HP_USER"
        assert info.features == MODERN_FEATURES
        assert info.modules == frozenset({"RM"})
        assert info.licensed_users == 0

    @pytest.mark.asyncio
    async def test_unparseable_system_version_falls_through(self, detector, make_connection, make_database):
        """Test a garbage TSYSTEM version does not stop the schema probes."""
        database = make_database({"TSYSTEM": [{"TSYS_VERSION": "garbage"}], "HP_EVENT_STREAM": []})
        connection = make_connection("cm-test", database)

        info = await detector.detect(connection)

        assert info.category is VersionCategory.LATEST
        assert info.probe == "schema:HP_EVENT_STREAM"

    @pytest.mark.asyncio
    async def test_legacy_schema(self, detector, make_connection, make_database):
        """Test a 9.x catalog is recognised by TUSERPERSON."""
        database = make_database({"TUSERPERSON": []})
        connection = make_connection("cm-test", database)

        info = await detector.detect(connection)

        assert info.version == Version(9, 4)
        assert info.category is VersionCategory.LEGACY
        assert info.features == LEGACY_FEATURES
        assert not database.selects_from("TFEATURES")

    @pytest.mark.asyncio
    async def test_unknown_when_nothing_matches(self, detector, make_connection, make_database):
        """Test an empty catalog yields the unknown placeholder."""
        connection = make_connection("cm-test", make_database({}))

        info = await detector.detect(connection)

        assert info.is_unknown
        assert detector.state(connection) is DetectorState.UNKNOWN

    @pytest.mark.asyncio
    async def test_authentication_error_surfaces(self, detector, make_connection):
        """Test a rejected session aborts detection unchanged."""
        connection = make_connection("cm-test", lambda request: AuthenticationError("expired"))

        with pytest.raises(AuthenticationError):
            await detector.detect(connection)

        assert len(connection.executed) == 1
        assert connection.version_info is None
        assert detector.state(connection) is DetectorState.UNPROBED

    @pytest.mark.asyncio
    async def test_other_errors_abort_detection(self, detector, make_connection):
        """Test unexpected library errors abort with VERSION_DETECTION_FAILED."""
        connection = make_connection("cm-test", lambda request: SecurityError("vault sealed"))

        with pytest.raises(ConnectionError) as exc_info:
            await detector.detect(connection)

        assert exc_info.value.code == ErrorCodes.VERSION_DETECTION_FAILED
        assert exc_info.value.context["probe"] == "system_table"

    @pytest.mark.asyncio
    async def test_transport_errors_retried_then_skipped(self, detector, make_connection, sleep):
        """Test transport failures are retried and then count as non-matches."""
        connection = make_connection("cm-test", lambda request: ConnectionError("reset"))

        info = await detector.detect(connection)

        assert info.is_unknown
        # TSYSTEM plus four schema signatures, two attempts each
        assert len(connection.executed) == 10
        assert len(sleep.delays) == 5

    @pytest.mark.asyncio
    async def test_state_while_probing(self, detector, make_connection, make_database):
        """Test the detector reports PROBING during detection."""
        database = make_database()
        seen = []

        def responder(request):
            seen.append(detector.state(connection))
            return database(request)

        connection = make_connection("cm-test", responder)
        assert detector.state(connection) is DetectorState.UNPROBED

        await detector.detect(connection)

        assert set(seen) == {DetectorState.PROBING}
        assert detector.state(connection) is DetectorState.DETECTED

    @pytest.mark.asyncio
    async def test_custom_executor(self, detector, fake_connection, cm_database):
        """Test probes can be routed through a caller-supplied executor."""
        routed = []

        async def executor(request):
            routed.append(request)
            return await fake_connection.execute(request)

        await detector.detect(fake_connection, executor=executor)

        assert routed
        assert len(routed) == len(fake_connection.executed)


class TestApiDetection:
    """Test cases for probing REST and SOAP services."""

    @pytest.mark.asyncio
    async def test_rest_v1_after_v2_missing(self, detector, make_connection):
        """Test the v1 endpoint is tried when v2 answers 404."""
        def responder(request):
            if request.path == "/api/v2/system/info":
                return QueryError("HTTP 404", code=ErrorCodes.QUERY_EXECUTION_FAILED)
            return [{"version": "10.1.0.55", "edition": "Standard", "features": "BASIC_SEARCH, WORKFLOW_CLASSIC"}]

        connection = make_connection("cm-api", responder, kind="api")

        info = await detector.detect(connection)

        assert info.version == Version(10, 1, 0, 55)
        assert info.probe == "rest:v1"
        assert info.features == frozenset({"BASIC_SEARCH", "WORKFLOW_CLASSIC"})
        assert [r.path for r in connection.executed] == ["/api/v2/system/info", "/api/v1/system/info"]

    @pytest.mark.asyncio
    async def test_rest_v2_full_payload(self, detector, make_connection):
        """Test edition, modules and licensing are read from the payload."""
        payload = {
            "productVersion": "25.1.0.7",
            "edition": "Enterprise",
            "modules": ["RM", "IDOL"],
            "licensedUsers": 1200,
            "productName": "Content Manager",
            "databaseVersion": "Oracle 19c",
        }
        connection = make_connection("cm-api", lambda request: [payload], kind="api")

        info = await detector.detect(connection)

        assert info.category is VersionCategory.LATEST
        assert info.edition is Edition.ENTERPRISE
        assert info.modules == frozenset({"RM", "IDOL"})
        assert info.licensed_users == 1200
        assert info.database_version == "Oracle 19c"
        assert info.probe == "rest:v2"
        assert info.has_feature("AI_CLASSIFICATION")

    @pytest.mark.asyncio
    async def test_soap_system_info(self, detector, make_connection):
        """Test SOAP services are probed with GetSystemInfo."""
        connection = make_connection(
            "cm-soap", lambda request: [{"Version": "9.4.0.1021"}], kind="api", protocol="soap"
        )

        info = await detector.detect(connection)

        assert info.version == Version(9, 4, 0, 1021)
        assert info.probe == "soap:GetSystemInfo"
        assert info.features == LEGACY_FEATURES
        assert connection.executed[0].soap_action == "GetSystemInfo"

    @pytest.mark.asyncio
    async def test_api_unknown(self, detector, make_connection):
        """Test services without a parseable version are unknown."""
        connection = make_connection("cm-api", lambda request: [{"status": "ok"}], kind="api")

        info = await detector.detect(connection)

        assert info.is_unknown

    @pytest.mark.asyncio
    async def test_rest_non_numeric_license_count(self, detector, make_connection):
        """Test a non-numeric licensedUsers value reads as zero."""
        payload = {"version": "24.3", "licensedUsers": "unlimited"}
        connection = make_connection("cm-api", lambda request: [payload], kind="api")

        info = await detector.detect(connection)

        assert info.version == Version(24, 3)
        assert info.licensed_users == 0
        assert info.probe == "rest:v2"
