"""Data extractors.

An extractor runs one ExtractionRequest end to end: acquire a pooled
connection, make sure its version is known, resolve the adapter, build the
query, execute it through the retry policy and circuit breaker, and map the
rows to unified field names. The resulting rows are normalized into unified
entities by ``UnifiedModelFactory``.

Classes:
    ExtractionBatch: Mapped rows from one request plus how they were obtained
    DataExtractor: Shared extraction pipeline
    SystemExtractor: System configuration
    UserExtractor: Users, paged
    RecordExtractor: Records, paged
    DocumentExtractor: Documents, paged
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..core.exceptions import ErrorCodes, ValidationError
from ..core.protocols import Connection
from ..core.utils import MASK
from ..database.query_builder import Filter
from ..logging import get_logger, get_performance_logger
from ..versions.adapters import (
    DOCUMENT,
    LOCATION,
    RECORD,
    RECORD_TYPE,
    SYSTEM_OPTION,
    USER,
    AdapterQuery,
    ExtractionRequest,
    VersionAdapter,
    adapter_kind,
)
from ..versions.models import VersionInfo
from .unified import (
    SourceMetadata,
    UnifiedDocument,
    UnifiedModelFactory,
    UnifiedRecord,
    UnifiedSystem,
    UnifiedUser,
)

if TYPE_CHECKING:
    from ..factory import Connector

DEFAULT_PAGE_SIZE = 100

FilterSpec = Union[Mapping[str, Any], Sequence[Filter], None]


def coerce_filters(filters: FilterSpec) -> tuple:
    """Accept ``{"field": value}`` equality filters or a sequence of Filter."""
    if not filters:
        return ()
    if isinstance(filters, Mapping):
        return tuple(Filter(name, "eq", value) for name, value in filters.items())
    return tuple(filters)


@dataclass(frozen=True)
class ExtractionBatch:
    """Rows mapped to unified field names, with the adapter that produced them."""
    rows: List[Dict[str, Any]]
    query: AdapterQuery
    adapter: VersionAdapter
    version_info: VersionInfo

    def source(self, system_id: str, extractor: str) -> SourceMetadata:
        return SourceMetadata(
            source_system_id=system_id,
            extractor=extractor,
            adapter=self.adapter.name,
            source_version=self.version_info.raw_version,
            reduced_confidence=self.adapter.reduced_confidence or self.version_info.is_unknown,
            unavailable_fields=self.query.unavailable_fields,
        )


class DataExtractor:
    """Shared pipeline for all extractors.

    Attributes:
        connector: Connector supplying the pool, breaker, retry policy,
            detector, and adapter registry
    """

    name = "DataExtractor"

    def __init__(self, connector: "Connector") -> None:
        self.connector = connector
        self.logger = get_logger(f"extraction.{self.name}").bind(system_id=connector.system_id)
        self.perf_logger = get_performance_logger(f"extraction.{self.name}", auto_log=False)

    async def fetch(self, request: ExtractionRequest) -> ExtractionBatch:
        """Run one request, retrying transport failures on a fresh connection each time."""
        with self.perf_logger.measure(request.entity, system_id=self.connector.system_id):
            return await self.connector.retry.execute(self._fetch_once, request)

    async def _fetch_once(self, request: ExtractionRequest) -> ExtractionBatch:
        self.connector.breaker.check()
        async with self.connector.pool.connection() as connection:
            info = await self.connector.ensure_version(connection)
            adapter = self._resolve_adapter(connection, info)
            query = adapter.build_query(request, connection.query_builder)
            result = await self.connector.breaker.call(connection.execute, query.request)

        rows = [adapter.map_row(request.entity, row) for row in result.rows]
        self.logger.debug(
            "Rows extracted",
            entity=request.entity,
            adapter=adapter.name,
            row_count=len(rows),
            unavailable_fields=list(query.unavailable_fields),
        )
        return ExtractionBatch(rows, query, adapter, info)

    def _resolve_adapter(self, connection: Connection, info: VersionInfo) -> VersionAdapter:
        kind, protocol = adapter_kind(connection)
        return self.connector.adapter_registry.resolve(info, kind, protocol=protocol)

    async def _iter_entities(
        self,
        entity: str,
        create: Callable[[Dict[str, Any], SourceMetadata], Any],
        *,
        fields: Sequence[str] = (),
        filters: FilterSpec = None,
        offset: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Any]:
        """Page through ``entity`` starting at ``offset``.

        The connection is held only while a page is fetched, never while the
        caller consumes entities.
        """
        if page_size < 1:
            raise ValidationError(
                "page_size must be at least 1",
                code=ErrorCodes.FIELD_INVALID,
                context={"page_size": page_size},
            )
        position = offset
        remaining = limit
        flt = coerce_filters(filters)
        operation = self.logger.log_operation_start(f"iter_{entity}", offset=offset, limit=limit)
        produced = 0
        try:
            while remaining is None or remaining > 0:
                size = page_size if remaining is None else min(page_size, remaining)
                batch = await self.fetch(
                    ExtractionRequest(entity, fields=tuple(fields), filters=flt, offset=position, limit=size)
                )
                source = batch.source(self.connector.system_id, self.name)
                for row in batch.rows:
                    yield create(row, source)
                count = len(batch.rows)
                produced += count
                position += count
                if remaining is not None:
                    remaining -= count
                if count < size:
                    break
        except Exception as e:
            self.logger.log_operation_failure(operation, e, produced=produced)
            raise
        self.logger.log_operation_success(operation, produced=produced, next_offset=position)


class SystemExtractor(DataExtractor):
    """Builds the UnifiedSystem for a connector."""

    name = "SystemExtractor"

    async def extract(self) -> UnifiedSystem:
        """Extract system configuration.

        Returns:
            System entity with version, features, settings, record types and locations

        Raises:
            ExtractionError: If the extracted data cannot be normalized
        """
        operation = self.logger.log_operation_start("extract_system")
        try:
            info = await self.connector.detect_version()
            options = await self.fetch(ExtractionRequest(SYSTEM_OPTION))
            record_types = await self._optional(RECORD_TYPE, options.adapter)
            locations = await self._optional(LOCATION, options.adapter)

            data = {
                "id": self.connector.system_id,
                "name": self.connector.config.id or info.product_name,
                "version": info.raw_version,
                "category": info.category.value,
                "edition": info.edition.value,
                "databaseType": getattr(self.connector.config, "database_type", None)
                or getattr(self.connector.config, "protocol", None),
                "databaseVersion": info.database_version,
                "productName": info.product_name,
                "isSupported": info.is_supported,
                "features": sorted(info.features),
                "modules": sorted(info.modules),
                "licensedUsers": info.licensed_users,
                "settings": self._settings(options.rows),
                "recordTypes": record_types,
                "locations": locations,
            }
            system = UnifiedModelFactory.create_system(data, options.source(self.connector.system_id, self.name))
        except Exception as e:
            self.logger.log_operation_failure(operation, e)
            raise
        self.logger.log_operation_success(operation, version=info.raw_version, settings=len(data["settings"]))
        return system

    async def _optional(self, entity: str, adapter: VersionAdapter) -> List[Dict[str, Any]]:
        if not adapter.supports(entity):
            self.logger.debug("Entity not served by adapter", entity=entity, adapter=adapter.name)
            return []
        return (await self.fetch(ExtractionRequest(entity))).rows

    @staticmethod
    def _settings(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Fold option rows into ``{category: {name: value}}`` (flat when uncategorized)."""
        settings: Dict[str, Any] = {}
        for row in rows:
            name = row.get("name")
            if name is None:
                continue
            value = MASK if row.get("isEncrypted") is True else row.get("value")
            category = row.get("category")
            if category:
                settings.setdefault(str(category), {})[str(name)] = value
            else:
                settings[str(name)] = value
        return settings


class UserExtractor(DataExtractor):
    """Pages users as UnifiedUser entities."""

    name = "UserExtractor"

    def iter_users(
        self,
        offset: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        limit: Optional[int] = None,
        filters: FilterSpec = None,
        *,
        fields: Sequence[str] = (),
    ) -> AsyncIterator[UnifiedUser]:
        """Lazily iterate users.

        Args:
            offset: Users to skip; resume a previous iteration from here
            page_size: Users fetched per round trip
            limit: Maximum users to yield
            filters: Equality mapping or Filter sequence on unified fields
            fields: Unified fields to request; empty for all

        Returns:
            Async iterator of users
        """
        return self._iter_entities(
            USER,
            UnifiedModelFactory.create_user,
            fields=fields,
            filters=filters,
            offset=offset,
            page_size=page_size,
            limit=limit,
        )


class RecordExtractor(DataExtractor):
    """Pages records as UnifiedRecord entities."""

    name = "RecordExtractor"

    def iter_records(
        self,
        filter: FilterSpec = None,
        *,
        fields: Sequence[str] = (),
        offset: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        limit: Optional[int] = None,
    ) -> AsyncIterator[UnifiedRecord]:
        return self._iter_entities(
            RECORD,
            UnifiedModelFactory.create_record,
            fields=fields,
            filters=filter,
            offset=offset,
            page_size=page_size,
            limit=limit,
        )


class DocumentExtractor(DataExtractor):
    """Pages documents as UnifiedDocument entities."""

    name = "DocumentExtractor"

    def iter_documents(
        self,
        filter: FilterSpec = None,
        *,
        fields: Sequence[str] = (),
        offset: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        limit: Optional[int] = None,
    ) -> AsyncIterator[UnifiedDocument]:
        return self._iter_entities(
            DOCUMENT,
            UnifiedModelFactory.create_document,
            fields=fields,
            filters=filter,
            offset=offset,
            page_size=page_size,
            limit=limit,
        )
