"""Tests for version adapters and the adapter registry."""

import pytest

from cmconnector.core.exceptions import ErrorCodes, ExtractionError, VersionMismatchError
from cmconnector.database.query_builder import (
    ApiRequestBuilder,
    Filter,
    OracleQueryBuilder,
    SqlServerQueryBuilder,
)
from cmconnector.versions.adapters import (
    AI_SUGGESTION,
    EVENT,
    LEGACY_RANGE,
    LEGACY_SQL,
    MODERN_RANGE,
    MODERN_SQL,
    RECORD,
    SOAP_LEGACY,
    SYSTEM_OPTION,
    USER,
    AdapterRegistry,
    ApiVersionAdapter,
    ExtractionRequest,
    SqlVersionAdapter,
    adapter_kind,
    as_bool,
    as_json_list,
    as_user_type,
    default_adapter_registry,
)
from cmconnector.versions.models import Version, VersionInfo, VersionRange


def info(raw):
    return VersionInfo(version=Version.parse(raw), raw_version=raw)


@pytest.fixture
def registry():
    return default_adapter_registry()


@pytest.fixture
def legacy():
    return SqlVersionAdapter("legacy", LEGACY_RANGE, LEGACY_SQL)


@pytest.fixture
def modern():
    return SqlVersionAdapter("modern", MODERN_RANGE, MODERN_SQL)


class TestConverters:
    """Test cases for value converters."""

    @pytest.mark.parametrize("value, expected", [
        (1, True),
        (0, False),
        ("Y", True),
        ("false", False),
        (True, True),
        ("maybe", "maybe"),
    ])
    def test_as_bool(self, value, expected):
        assert as_bool(value) == expected

    @pytest.mark.parametrize("value, expected", [
        ('["read", "write"]', ["read", "write"]),
        ("", []),
        (("a",), ["a"]),
        ("not json", "not json"),
    ])
    def test_as_json_list(self, value, expected):
        assert as_json_list(value) == expected

    @pytest.mark.parametrize("value, expected", [
        (0, "normal"),
        (1, "admin"),
        ("3", "external"),
        ("Administrator", "admin"),
        ("SystemAccount", "system"),
        ("Contributor", "normal"),
        (9, 9),
    ])
    def test_as_user_type(self, value, expected):
        """Test legacy codes and modern names share one vocabulary."""
        assert as_user_type(value) == expected


class TestSqlVersionAdapter:
    """Test cases for SQL adapters."""

    def test_legacy_user_query(self, legacy):
        """Test unified names are translated to legacy columns."""
        request = ExtractionRequest(
            USER,
            fields=("name", "email"),
            filters=[Filter("active", "eq", True)],
            offset=0,
            limit=10,
        )

        query = legacy.build_query(request, SqlServerQueryBuilder())

        assert query.request.text == (
            "SELECT USP_ID, USP_NAME, USP_EMAIL FROM TUSERPERSON WHERE USP_ACTIVE = ?"
            " ORDER BY USP_NAME OFFSET ? ROWS FETCH NEXT ? ROWS ONLY"
        )
        assert query.request.params == (1, 0, 10)
        assert query.fields == ("id", "name", "email")
        assert query.unavailable_fields == ()

    def test_unavailable_fields_reported(self, legacy):
        """Test fields the legacy schema lacks are reported, not selected."""
        query = legacy.build_query(ExtractionRequest(USER, fields=("name", "lastLogin")), SqlServerQueryBuilder())

        assert query.fields == ("id", "name")
        assert query.unavailable_fields == ("lastLogin",)
        assert "lastLogin" not in query.request.text

    def test_all_fields_by_default(self, modern):
        """Test an empty field list selects every mapped field."""
        query = modern.build_query(ExtractionRequest(USER), SqlServerQueryBuilder())

        assert query.fields == modern.fields(USER)
        assert "FROM HP_USER" in query.request.text
        assert "last_login_date" in query.request.text

    def test_explicit_order(self, modern):
        """Test caller ordering replaces the default."""
        query = modern.build_query(
            ExtractionRequest(SYSTEM_OPTION, order_by=("name DESC",)), SqlServerQueryBuilder()
        )

        assert query.request.text.endswith("ORDER BY option_name DESC")

    def test_oracle_binds(self, modern):
        """Test the same request renders with Oracle binds."""
        query = modern.build_query(
            ExtractionRequest(RECORD, fields=("title",), filters=[Filter("status", "eq", "Active")], limit=5),
            OracleQueryBuilder(),
        )

        assert "WHERE status = :1" in query.request.text
        assert query.request.params == ("Active", 0, 5)

    def test_filter_on_unmapped_field(self, legacy):
        """Test filtering on a field the schema lacks is rejected."""
        request = ExtractionRequest(USER, filters=[Filter("lastLogin", "gt", "2024-01-01")])

        with pytest.raises(ExtractionError) as exc_info:
            legacy.build_query(request, SqlServerQueryBuilder())

        assert exc_info.value.code == ErrorCodes.FIELD_INVALID

    def test_unsupported_entity(self, legacy):
        """Test entities outside the adapter raise ADAPTER_NOT_FOUND."""
        assert not legacy.supports(AI_SUGGESTION)

        with pytest.raises(VersionMismatchError) as exc_info:
            legacy.build_query(ExtractionRequest(AI_SUGGESTION), SqlServerQueryBuilder())

        assert exc_info.value.code == ErrorCodes.ADAPTER_NOT_FOUND

    def test_map_legacy_row(self, legacy):
        """Test legacy rows are renamed and converted; missing columns are omitted."""
        row = {"USP_ID": 7, "USP_NAME": "jsmith", "USP_ACTIVE": 1, "USP_TYPE": 1}

        assert legacy.map_row(USER, row) == {"id": 7, "name": "jsmith", "active": True, "userType": "admin"}

    def test_map_modern_row(self, modern):
        """Test JSON columns are decoded and None values kept."""
        row = {"id": 1, "name": "admin", "type": "Administrator", "permissions": '["read"]', "last_login_date": None}

        mapped = modern.map_row(USER, row)

        assert mapped["userType"] == "admin"
        assert mapped["permissions"] == ["read"]
        assert mapped["lastLogin"] is None

    def test_map_row_case_insensitive(self, legacy):
        """Test Oracle upper-cased columns are matched."""
        assert legacy.map_row(SYSTEM_OPTION, {"SYS_OPTION_NAME": "x", "sys_option_value": "y"}) == {
            "name": "x",
            "value": "y",
        }


class TestApiVersionAdapter:
    """Test cases for API adapters."""

    def test_rest_collection(self, registry):
        """Test REST requests carry paging, fields and filters."""
        adapter = registry.resolve(info("23.4"), "api", protocol="rest")
        request = ExtractionRequest(
            USER, fields=("name",), filters=[Filter("lastLogin", "gt", "2024-01-01")], offset=20, limit=10
        )

        query = adapter.build_query(request, ApiRequestBuilder())

        assert query.request.path == "/api/v2/users"
        assert query.request.params == {
            "start": 20,
            "limit": 10,
            "fields": "id,name",
            "lastLoginDate[gt]": "2024-01-01",
        }

    def test_soap_query(self):
        """Test SOAP adapters build Query actions."""
        adapter = ApiVersionAdapter("soap-legacy", LEGACY_RANGE, SOAP_LEGACY, protocol="soap")
        request = ExtractionRequest(USER, fields=("name",), filters=[Filter("active", "eq", True)], limit=50)

        query = adapter.build_query(request, ApiRequestBuilder(protocol="soap"))

        assert query.request.soap_action == "Query"
        fields = query.request.soap_fields
        assert fields["ObjectType"] == "User"
        assert fields["Properties"] == "Uri,Name"
        assert fields["Filter"] == [{"Property": "Active", "Operator": "eq", "Value": 1}]
        assert fields["SortBy"] == "Name"
        assert fields["Count"] == 50

    def test_soap_row_mapping(self):
        """Test SOAP property names are mapped back."""
        adapter = ApiVersionAdapter("soap-legacy", LEGACY_RANGE, SOAP_LEGACY, protocol="soap")

        mapped = adapter.map_row(USER, {"Uri": "5", "Name": "jo", "Active": "true", "UserType": "0"})

        assert mapped == {"id": "5", "name": "jo", "active": True, "userType": "normal"}

    def test_protocol_pinning(self):
        adapter = ApiVersionAdapter("soap-legacy", LEGACY_RANGE, SOAP_LEGACY, protocol="soap")

        assert adapter.serves("soap")
        assert not adapter.serves("rest")


class TestAdapterRegistry:
    """Test cases for AdapterRegistry."""

    @pytest.mark.parametrize("raw, kind, protocol, expected", [
        ("9.4.0.1021", "sql", None, "legacy"),
        ("10.1", "sql", None, "legacy"),
        ("23.4", "sql", None, "modern"),
        ("24.4", "sql", None, "modern"),
        ("25.1", "sql", None, "latest"),
        ("23.4", "api", "rest", "rest-v2"),
        ("25.2", "api", "rest", "rest-v2-latest"),
        ("9.4", "api", "soap", "soap-legacy"),
        ("8.3", "sql", None, "fallback-sql"),
        ("9.4", "api", "rest", "fallback-api"),
    ])
    def test_default_bindings(self, registry, raw, kind, protocol, expected):
        """Test each release family resolves to its adapter."""
        assert registry.resolve(info(raw), kind, protocol=protocol).name == expected

    def test_unknown_version_uses_fallback(self, registry):
        """Test an undetected version gets the reduced-confidence fallback."""
        adapter = registry.resolve(VersionInfo.unknown(), "sql")

        assert adapter.name == "fallback-sql"
        assert adapter.reduced_confidence

    def test_latest_adds_entities(self, registry):
        """Test 25.x adapters expose AI suggestions and events."""
        latest = registry.resolve(info("25.1"), "sql")
        modern = registry.resolve(info("24.4"), "sql")

        assert latest.supports(AI_SUGGESTION) and latest.supports(EVENT)
        assert "aiClassification" in latest.fields(RECORD)
        assert not modern.supports(EVENT)

    def test_resolution_memoized(self, registry):
        """Test repeated lookups return the same adapter instance."""
        first = registry.resolve(info("23.4"), "sql")

        assert registry.resolve(info("23.4"), "sql") is first

    def test_register_overrides_and_clears_cache(self, registry):
        """Test a later registration is consulted after existing ones."""
        registry.resolve(info("8.3"), "sql")
        custom = SqlVersionAdapter("eight", LEGACY_RANGE, LEGACY_SQL)

        registry.register(custom, VersionRange.between("8.0", "9.0"))

        assert registry.resolve(info("8.3"), "sql") is custom
        assert len(registry) == 7

    def test_no_adapter_without_fallback(self):
        """Test a registry without fallbacks raises ADAPTER_NOT_FOUND."""
        registry = AdapterRegistry()

        with pytest.raises(VersionMismatchError) as exc_info:
            registry.resolve(info("23.4"), "sql")

        assert exc_info.value.code == ErrorCodes.ADAPTER_NOT_FOUND


def test_adapter_kind(make_connection):
    """Test connections map to adapter kinds."""
    assert adapter_kind(make_connection()) == ("sql", None)
    assert adapter_kind(make_connection(kind="api", protocol="soap")) == ("api", "soap")
