"""Tests for the extractors."""

import pytest

from cmconnector.core.exceptions import CircuitOpenError, ConnectionError, QueryError, ValidationError
from cmconnector.core.utils import MASK
from cmconnector.database.query_builder import Filter
from cmconnector.extraction.extractors import (
    DocumentExtractor,
    RecordExtractor,
    SystemExtractor,
    UserExtractor,
    coerce_filters,
)
from cmconnector.extraction.unified import FLAG_UNAVAILABLE

LEGACY_USERS = {
    "TUSERPERSON": [
        {"USP_ID": 1, "USP_NAME": "jsmith", "USP_EMAIL": "jsmith@example.com", "USP_ACTIVE": 1, "USP_TYPE": 1},
        {"USP_ID": 2, "USP_NAME": "mbrown", "USP_EMAIL": None, "USP_ACTIVE": 0, "USP_TYPE": 0},
    ],
}


async def collect(iterator):
    return [item async for item in iterator]


def test_coerce_filters():
    """Test mapping filters become equality filters."""
    assert coerce_filters(None) == ()
    assert coerce_filters({"active": True}) == (Filter("active", "eq", True),)
    assert coerce_filters([Filter("name", "like", "j%")]) == (Filter("name", "like", "j%"),)


class TestSystemExtractor:
    """Test cases for SystemExtractor."""

    @pytest.mark.asyncio
    async def test_extract_modern_system(self, connector):
        """Test the system entity combines version info and configuration."""
        system = await SystemExtractor(connector).extract()
        attributes = system.attributes

        assert system.id == "sqlserver://cm-sql01:1433/CM"
        assert attributes.version == "23.4.0.1021"
        assert attributes.category == "modern"
        assert attributes.edition == "Enterprise"
        assert attributes.database_type == "sqlserver"
        assert attributes.product_name == "Content Manager"
        assert attributes.is_supported is True
        assert attributes.licensed_users == 250
        assert attributes.modules == ("RM",)
        assert attributes.features == ("ADVANCED_SEARCH", "DOCUMENT_MANAGEMENT")
        assert system.provenance.adapter == "modern"
        assert system.provenance.extractor == "SystemExtractor"

    @pytest.mark.asyncio
    async def test_settings_grouped_and_masked(self, connector):
        """Test options are grouped by category and encrypted values masked."""
        system = await SystemExtractor(connector).extract()

        assert system.attributes.settings == {
            "Security": {"PasswordPolicy": "strict", "SmtpPassword": MASK},
            "DatasetName": "PROD",
        }
        assert system.attributes.record_types == ({"id": 2, "name": "Document"},)
        assert system.attributes.locations == ({"id": 10, "name": "Records Unit", "type": "Organization"},)


class TestUserExtractor:
    """Test cases for UserExtractor."""

    @pytest.mark.asyncio
    async def test_pages_through_all_users(self, connector, cm_database):
        """Test every user is produced across pages."""
        users = await collect(UserExtractor(connector).iter_users(page_size=2))

        assert [u.id for u in users] == ["1", "2", "3", "4", "5"]
        assert len(cm_database.selects_from("HP_USER")) == 3
        first = users[0]
        assert first.attributes.user_type == "admin"
        assert first.attributes.active is True
        assert first.attributes.permissions == ("read", "write")
        assert first.provenance.source_version == "23.4.0.1021"
        assert first.provenance.reduced_confidence is False

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, connector):
        """Test iteration can resume from an offset and stop at a limit."""
        users = await collect(UserExtractor(connector).iter_users(offset=1, page_size=2, limit=3))

        assert [u.id for u in users] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_invalid_page_size(self, connector):
        with pytest.raises(ValidationError):
            await collect(UserExtractor(connector).iter_users(page_size=0))

    @pytest.mark.asyncio
    async def test_legacy_users_flag_unavailable_fields(self, manager, fake_backend, make_database,
                                                        sqlserver_config_data):
        """Test a 9.x system serves users through the legacy adapter."""
        fake_backend.responder = make_database(LEGACY_USERS)
        connector = await manager.connect(sqlserver_config_data)

        users = await collect(UserExtractor(connector).iter_users(fields=("name", "lastLogin")))

        assert [u.attributes.name for u in users] == ["jsmith", "mbrown"]
        assert users[0].provenance.adapter == "legacy"
        assert users[0].provenance.source_version == "9.4"
        assert users[0].provenance.flagged_fields == {"lastLogin": FLAG_UNAVAILABLE}

    @pytest.mark.asyncio
    async def test_unknown_version_uses_fallback(self, manager, fake_backend, make_database,
                                                 sqlserver_config_data):
        """Test an undetectable system is read with reduced confidence."""
        database = make_database(LEGACY_USERS)

        def hide_catalog(request):
            if "INFORMATION_SCHEMA" in request.text:
                return [{"table_count": 0}]
            return database(request)

        fake_backend.responder = hide_catalog
        connector = await manager.connect(sqlserver_config_data)

        users = await collect(UserExtractor(connector).iter_users())

        assert len(users) == 2
        assert users[1].attributes.active is False
        assert users[0].provenance.adapter == "fallback-sql"
        assert users[0].provenance.source_version == "UNKNOWN"
        assert users[0].provenance.reduced_confidence is True

    @pytest.mark.asyncio
    async def test_transport_failure_retried(self, manager, fake_backend, cm_database, sqlserver_config_data):
        """Test a dropped connection during a page fetch is retried."""
        failures = [ConnectionError("Communication link failure")]

        def flaky(request):
            if "FROM HP_USER" in request.text and failures:
                return failures.pop()
            return cm_database(request)

        fake_backend.responder = flaky
        connector = await manager.connect(sqlserver_config_data)

        users = await collect(UserExtractor(connector).iter_users())

        assert len(users) == 5

    @pytest.mark.asyncio
    async def test_open_circuit_opens_no_session(self, connector, fake_backend):
        """Test an open breaker fails before a replacement connection is created."""
        fake_backend.created[0].is_healthy = False
        connect_calls = sum(c.connect_calls for c in fake_backend.created)
        executed = len(fake_backend.created[0].executed)
        await connector.breaker.force_open()

        with pytest.raises(CircuitOpenError):
            await collect(UserExtractor(connector).iter_users())

        assert len(fake_backend.created) == 1
        assert sum(c.connect_calls for c in fake_backend.created) == connect_calls
        assert len(fake_backend.created[0].executed) == executed


class TestRecordAndDocumentExtractors:
    """Test cases for RecordExtractor and DocumentExtractor."""

    @pytest.mark.asyncio
    async def test_records_with_filter(self, connector, cm_database):
        """Test record filters are passed as bound parameters."""
        records = await collect(RecordExtractor(connector).iter_records({"status": "Active"}))

        assert [r.attributes.record_number for r in records] == ["R/24/1", "R/24/2", "R/24/3"]
        assert records[0].attributes.record_type == "2"
        statement = cm_database.selects_from("HP_RECORD")[0]
        assert "WHERE status = ?" in statement.text
        assert statement.params[0] == "Active"

    @pytest.mark.asyncio
    async def test_missing_table_not_retried(self, connector, cm_database):
        """Test statement errors surface immediately."""
        with pytest.raises(QueryError):
            await collect(DocumentExtractor(connector).iter_documents())

        assert len(cm_database.selects_from("HP_DOCUMENT")) == 1
