"""Version adapters and the adapter registry.

An adapter translates a version-agnostic ExtractionRequest into the query or
API call one release family understands, and maps the rows it returns back
onto unified field names. Adapters are plain instances configured with
per-entity mapping tables; the registry binds them to version ranges.

Built-in adapters:
    legacy: SQL, 9.x-10.x ``T*`` tables
    modern: SQL, 23.x-24.x ``HP_*`` tables
    latest: SQL, 25.x+ (modern plus AI classification and event stream)
    rest-v2: REST ``/api/v2`` for 23.x-24.x
    rest-v2-latest: REST ``/api/v2`` for 25.x+
    soap-legacy: SOAP ``ServiceAPI.svc`` for 9.x-10.x
    fallback-sql / fallback-api: core fields only, reduced confidence
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.exceptions import ErrorCodes, ExtractionError, VersionMismatchError
from ..database.models import get_field
from ..database.query_builder import (
    ApiRequestBuilder,
    Filter,
    FilterOperator,
    QueryBuilder,
    bind_value,
)
from ..logging import get_logger
from .models import Version, VersionInfo, VersionRange

# Unified entity names
SYSTEM_OPTION = "system_option"
USER = "user"
RECORD = "record"
DOCUMENT = "document"
RECORD_TYPE = "record_type"
LOCATION = "location"
AI_SUGGESTION = "ai_suggestion"
EVENT = "event"

LEGACY_USER_TYPES = {0: "normal", 1: "admin", 2: "system", 3: "external"}

_MISSING = object()


@dataclass(frozen=True)
class ExtractionRequest:
    """A version-agnostic request for one entity type.

    Attributes:
        entity: Unified entity name
        fields: Unified fields wanted; empty means every field the adapter knows
        filters: Conjunctive filters on unified field names
        offset: Rows to skip
        limit: Maximum rows to return
        order_by: Unified fields, each optionally followed by ASC/DESC
    """
    entity: str
    fields: Tuple[str, ...] = ()
    filters: Tuple[Filter, ...] = ()
    offset: Optional[int] = None
    limit: Optional[int] = None
    order_by: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "filters", tuple(self.filters))
        object.__setattr__(self, "order_by", tuple(self.order_by))


@dataclass(frozen=True)
class AdapterQuery:
    """An executable request plus what the adapter could and could not serve."""
    request: Any
    entity: str
    fields: Tuple[str, ...]
    unavailable_fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityMapping:
    """How one entity is stored by one release family.

    Attributes:
        source: Table name or REST collection
        fields: Unified field name to column or property name
        order_by: Default ordering, in unified field names
        converters: Per-field value converters applied in ``map_row``
        object_type: SOAP object type, when served over SOAP
    """
    source: str
    fields: Dict[str, str]
    order_by: Tuple[str, ...] = ("id",)
    converters: Dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    object_type: Optional[str] = None

    def extend(self, fields: Dict[str, str], **converters: Callable[[Any], Any]) -> "EntityMapping":
        return EntityMapping(
            self.source,
            {**self.fields, **fields},
            self.order_by,
            {**self.converters, **converters},
            self.object_type,
        )


def as_bool(value: Any) -> Any:
    """Coerce driver/SOAP truth values; unrecognized values pass through."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("1", "true", "yes", "y"):
            return True
        if normalized in ("0", "false", "no", "n"):
            return False
    return value


def as_json_list(value: Any) -> Any:
    """Decode a JSON array column; undecodable values pass through."""
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def as_user_type(value: Any) -> Any:
    """Normalize legacy numeric codes and modern type names."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        return LEGACY_USER_TYPES.get(int(value), value)
    if isinstance(value, str):
        normalized = value.lower()
        for name in ("admin", "system", "external"):
            if name in normalized:
                return name
        return "normal"
    return value


USER_CONVERTERS = {"active": as_bool, "userType": as_user_type}


class VersionAdapter(ABC):
    """Translates extraction requests for one release range.

    Attributes:
        name: Adapter identifier recorded in provenance
        kind: ``sql`` or ``api``
        version_range: Releases the adapter is meant for
        reduced_confidence: True for fallback adapters
    """

    kind: str = ""

    def __init__(
        self,
        name: str,
        version_range: VersionRange,
        mappings: Dict[str, EntityMapping],
        *,
        reduced_confidence: bool = False,
    ) -> None:
        self.name = name
        self.version_range = version_range
        self.reduced_confidence = reduced_confidence
        self._mappings = dict(mappings)

    def serves(self, protocol: Optional[str]) -> bool:
        return True

    def supports(self, entity: str) -> bool:
        return entity in self._mappings

    def entities(self) -> Tuple[str, ...]:
        return tuple(self._mappings)

    def fields(self, entity: str) -> Tuple[str, ...]:
        return tuple(self._mapping(entity).fields)

    def _mapping(self, entity: str) -> EntityMapping:
        mapping = self._mappings.get(entity)
        if mapping is None:
            raise VersionMismatchError(
                f"Adapter {self.name} cannot extract {entity!r}",
                code=ErrorCodes.ADAPTER_NOT_FOUND,
                context={"adapter": self.name, "entity": entity, "supported": sorted(self._mappings)},
            )
        return mapping

    def _plan(self, request: ExtractionRequest) -> Tuple[EntityMapping, Tuple[str, ...], Tuple[str, ...]]:
        """Split requested fields into selectable and unavailable ones."""
        mapping = self._mapping(request.entity)
        requested = request.fields or tuple(mapping.fields)
        selected = [f for f in requested if f in mapping.fields]
        if "id" in mapping.fields and "id" not in selected:
            selected.insert(0, "id")
        unavailable = tuple(f for f in requested if f not in mapping.fields)
        return mapping, tuple(selected), unavailable

    def _source_field(self, mapping: EntityMapping, name: str, entity: str) -> str:
        source = mapping.fields.get(name)
        if source is None:
            raise ExtractionError(
                f"Field {name!r} of {entity} cannot be used with adapter {self.name}",
                code=ErrorCodes.FIELD_INVALID,
                field=name,
                context={"adapter": self.name, "entity": entity},
            )
        return source

    def _map_filters(self, mapping: EntityMapping, request: ExtractionRequest) -> List[Filter]:
        return [flt.with_field(self._source_field(mapping, flt.field, request.entity)) for flt in request.filters]

    def _map_order(self, mapping: EntityMapping, request: ExtractionRequest) -> List[str]:
        order = []
        for entry in request.order_by or mapping.order_by:
            name, _, direction = entry.partition(" ")
            if name not in mapping.fields and not request.order_by:
                continue
            source = self._source_field(mapping, name, request.entity)
            order.append(f"{source} {direction}".rstrip())
        return order

    @abstractmethod
    def build_query(self, request: ExtractionRequest, builder: Any) -> AdapterQuery:
        """Build the executable request for ``request``."""

    def map_row(self, entity: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Rename a backend row to unified field names.

        Columns missing from the row are left out rather than set to None.
        """
        mapping = self._mapping(entity)
        mapped: Dict[str, Any] = {}
        for name, source in mapping.fields.items():
            value = get_field(row, source, _MISSING)
            if value is _MISSING:
                continue
            convert = mapping.converters.get(name)
            mapped[name] = convert(value) if convert is not None and value is not None else value
        return mapped

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, range={self.version_range})"


class SqlVersionAdapter(VersionAdapter):
    """Adapter producing parameterized SQL through a dialect QueryBuilder."""

    kind = "sql"

    def build_query(self, request: ExtractionRequest, builder: QueryBuilder) -> AdapterQuery:
        mapping, selected, unavailable = self._plan(request)
        query = builder.select(
            mapping.source,
            [mapping.fields[f] for f in selected],
            filters=self._map_filters(mapping, request),
            order_by=self._map_order(mapping, request),
            offset=request.offset,
            limit=request.limit,
        )
        return AdapterQuery(query, request.entity, selected, unavailable)


class ApiVersionAdapter(VersionAdapter):
    """Adapter producing REST collection calls or SOAP ``Query`` actions.

    ``protocol`` pins the adapter to one protocol; None serves both and
    follows the request builder.
    """

    kind = "api"

    def __init__(
        self,
        name: str,
        version_range: VersionRange,
        mappings: Dict[str, EntityMapping],
        *,
        protocol: Optional[str] = None,
        api_version: str = "v2",
        reduced_confidence: bool = False,
    ) -> None:
        super().__init__(name, version_range, mappings, reduced_confidence=reduced_confidence)
        self.protocol = protocol
        self.api_version = api_version

    def serves(self, protocol: Optional[str]) -> bool:
        return self.protocol is None or protocol is None or protocol == self.protocol

    def build_query(self, request: ExtractionRequest, builder: ApiRequestBuilder) -> AdapterQuery:
        mapping, selected, unavailable = self._plan(request)
        properties = [mapping.fields[f] for f in selected]
        filters = self._map_filters(mapping, request)

        if (self.protocol or builder.protocol) == "soap":
            api_request = builder.soap(
                "Query",
                {
                    "ObjectType": mapping.object_type or mapping.source,
                    "Properties": ",".join(properties),
                    "Filter": [_soap_filter(flt) for flt in filters],
                    "SortBy": ",".join(self._map_order(mapping, request)) or None,
                    "Start": request.offset,
                    "Count": request.limit,
                },
            )
        else:
            api_request = builder.list_entities(
                mapping.source,
                fields=properties,
                filters=filters,
                offset=request.offset,
                limit=request.limit,
                api_version=self.api_version,
            )
        return AdapterQuery(api_request, request.entity, selected, unavailable)


def _soap_filter(flt: Filter) -> Dict[str, Any]:
    value = flt.value
    if flt.op is FilterOperator.IN:
        value = ",".join(str(bind_value(v)) for v in (value or ()))
    else:
        value = bind_value(value)
    return {"Property": flt.field, "Operator": flt.op.value, "Value": value}


# SQL mappings

LEGACY_SQL: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "TUSERPERSON",
        {
            "id": "USP_ID",
            "name": "USP_NAME",
            "email": "USP_EMAIL",
            "active": "USP_ACTIVE",
            "userType": "USP_TYPE",
        },
        order_by=("name",),
        converters=USER_CONVERTERS,
    ),
    DOCUMENT: EntityMapping(
        "TDOCUMENT",
        {
            "id": "DOC_ID",
            "title": "DOC_TITLE",
            "number": "DOC_NUMBER",
            "registeredDate": "DOC_DATEREGISTERED",
            "createdDate": "DOC_DATECREATED",
        },
    ),
    RECORD: EntityMapping(
        "TRECORD",
        {
            "id": "REC_ID",
            "recordNumber": "REC_NUMBER",
            "title": "REC_TITLE",
            "recordType": "REC_RECORDTYPE",
            "container": "REC_CONTAINER",
        },
    ),
    RECORD_TYPE: EntityMapping(
        "TRECORDTYPE",
        {"id": "RCT_ID", "name": "RCT_NAME", "description": "RCT_DESCRIPTION", "active": "RCT_ACTIVE"},
        order_by=("name",),
        converters={"active": as_bool},
    ),
    LOCATION: EntityMapping(
        "TLOCATION",
        {
            "id": "LOC_ID",
            "name": "LOC_NAME",
            "formalName": "LOC_FORMAL_NAME",
            "type": "LOC_TYPE",
            "parentId": "LOC_PARENT",
        },
        order_by=("formalName",),
    ),
    SYSTEM_OPTION: EntityMapping(
        "TSYSTEMOPTIONS",
        {"name": "SYS_OPTION_NAME", "value": "SYS_OPTION_VALUE", "type": "SYS_OPTION_TYPE"},
        order_by=("name",),
    ),
}

MODERN_SQL: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "HP_USER",
        {
            "id": "id",
            "name": "name",
            "email": "email",
            "active": "active",
            "userType": "type",
            "createdDate": "created_date",
            "modifiedDate": "modified_date",
            "lastLogin": "last_login_date",
            "permissions": "permissions",
        },
        order_by=("name",),
        converters={**USER_CONVERTERS, "permissions": as_json_list},
    ),
    DOCUMENT: EntityMapping(
        "HP_DOCUMENT",
        {
            "id": "id",
            "title": "title",
            "number": "document_number",
            "createdDate": "date_created",
            "registeredDate": "date_registered",
            "record": "record_id",
            "creator": "creator_id",
            "checksum": "hash",
            "mimeType": "mime_type",
            "size": "file_size",
        },
    ),
    RECORD: EntityMapping(
        "HP_RECORD",
        {
            "id": "id",
            "recordNumber": "record_number",
            "title": "title",
            "recordType": "record_type_id",
            "container": "container_id",
            "classification": "classification",
            "createdDate": "date_created",
            "registeredDate": "date_registered",
            "creator": "creator_id",
            "status": "status",
        },
    ),
    RECORD_TYPE: EntityMapping(
        "HP_RECORD_TYPE",
        {
            "id": "id",
            "name": "name",
            "description": "description",
            "active": "active",
            "features": "features",
            "retentionPolicyId": "retention_policy_id",
            "defaultSecurityLevel": "default_security_level",
        },
        order_by=("name",),
        converters={"active": as_bool, "features": as_json_list},
    ),
    LOCATION: EntityMapping(
        "HP_LOCATION",
        {
            "id": "id",
            "name": "name",
            "formalName": "formal_name",
            "type": "type",
            "parentId": "parent_id",
            "timeZone": "time_zone",
            "businessUnitId": "business_unit_id",
        },
        order_by=("formalName",),
    ),
    SYSTEM_OPTION: EntityMapping(
        "HP_SYSTEM_OPTIONS",
        {
            "category": "option_category",
            "name": "option_name",
            "value": "option_value",
            "type": "option_type",
            "isEncrypted": "is_encrypted",
        },
        order_by=("category", "name"),
        converters={"isEncrypted": as_bool},
    ),
}

LATEST_SQL: Dict[str, EntityMapping] = {
    **MODERN_SQL,
    RECORD: MODERN_SQL[RECORD].extend({"aiClassification": "ai_classification"}),
    AI_SUGGESTION: EntityMapping(
        "HP_AI_SUGGESTIONS",
        {
            "id": "suggestion_id",
            "suggestionType": "suggestion_type",
            "confidenceScore": "confidence_score",
            "suggestedValue": "suggested_value",
            "contextData": "context_data",
            "entityType": "entity_type",
            "entityId": "entity_id",
        },
        order_by=("confidenceScore DESC",),
    ),
    EVENT: EntityMapping(
        "HP_EVENT_STREAM",
        {
            "id": "event_id",
            "eventType": "event_type",
            "eventData": "event_data",
            "timestamp": "event_timestamp",
            "sourceSystem": "source_system",
        },
        order_by=("timestamp",),
    ),
}

# Core fields present in every schema generation
FALLBACK_SQL: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "TUSERPERSON",
        {"id": "USP_ID", "name": "USP_NAME", "email": "USP_EMAIL", "active": "USP_ACTIVE"},
        converters={"active": as_bool},
    ),
    DOCUMENT: EntityMapping("TDOCUMENT", {"id": "DOC_ID", "title": "DOC_TITLE", "number": "DOC_NUMBER"}),
    RECORD: EntityMapping("TRECORD", {"id": "REC_ID", "recordNumber": "REC_NUMBER", "title": "REC_TITLE"}),
    RECORD_TYPE: EntityMapping("TRECORDTYPE", {"id": "RCT_ID", "name": "RCT_NAME"}),
    LOCATION: EntityMapping("TLOCATION", {"id": "LOC_ID", "name": "LOC_NAME"}),
    SYSTEM_OPTION: EntityMapping(
        "TSYSTEMOPTIONS", {"name": "SYS_OPTION_NAME", "value": "SYS_OPTION_VALUE"}, order_by=("name",)
    ),
}

# API mappings

REST_V2: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "users",
        {
            "id": "id",
            "name": "name",
            "email": "email",
            "active": "active",
            "userType": "type",
            "createdDate": "createdDate",
            "modifiedDate": "modifiedDate",
            "lastLogin": "lastLoginDate",
            "permissions": "permissions",
        },
        order_by=("name",),
        converters={**USER_CONVERTERS, "permissions": as_json_list},
    ),
    DOCUMENT: EntityMapping(
        "documents",
        {
            "id": "id",
            "title": "title",
            "number": "number",
            "createdDate": "dateCreated",
            "registeredDate": "dateRegistered",
            "record": "recordId",
            "creator": "creatorId",
            "checksum": "hash",
            "mimeType": "mimeType",
            "size": "size",
        },
    ),
    RECORD: EntityMapping(
        "records",
        {
            "id": "id",
            "recordNumber": "number",
            "title": "title",
            "recordType": "recordType",
            "container": "container",
            "classification": "classification",
            "createdDate": "dateCreated",
            "registeredDate": "dateRegistered",
            "creator": "creatorId",
            "status": "status",
        },
    ),
    RECORD_TYPE: EntityMapping(
        "recordtypes",
        {"id": "id", "name": "name", "description": "description", "active": "active", "features": "features"},
        order_by=("name",),
        converters={"active": as_bool, "features": as_json_list},
    ),
    LOCATION: EntityMapping(
        "locations",
        {"id": "id", "name": "name", "formalName": "formalName", "type": "type", "parentId": "parentId"},
        order_by=("formalName",),
    ),
    SYSTEM_OPTION: EntityMapping(
        "systemoptions",
        {"category": "category", "name": "name", "value": "value", "type": "type", "isEncrypted": "isEncrypted"},
        order_by=("category", "name"),
        converters={"isEncrypted": as_bool},
    ),
}

REST_V2_LATEST: Dict[str, EntityMapping] = {
    **REST_V2,
    RECORD: REST_V2[RECORD].extend({"aiClassification": "aiClassification"}),
}

SOAP_LEGACY: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "users",
        {"id": "Uri", "name": "Name", "email": "EmailAddress", "active": "Active", "userType": "UserType"},
        order_by=("name",),
        converters=USER_CONVERTERS,
        object_type="User",
    ),
    DOCUMENT: EntityMapping(
        "documents",
        {
            "id": "Uri",
            "title": "Title",
            "number": "Number",
            "createdDate": "DateCreated",
            "registeredDate": "DateRegistered",
        },
        object_type="Document",
    ),
    RECORD: EntityMapping(
        "records",
        {
            "id": "Uri",
            "recordNumber": "Number",
            "title": "Title",
            "recordType": "RecordType",
            "container": "Container",
            "createdDate": "DateCreated",
            "registeredDate": "DateRegistered",
            "creator": "Creator",
        },
        object_type="Record",
    ),
    RECORD_TYPE: EntityMapping(
        "recordtypes",
        {"id": "Uri", "name": "Name", "description": "Description", "active": "Active"},
        order_by=("name",),
        converters={"active": as_bool},
        object_type="RecordType",
    ),
    LOCATION: EntityMapping(
        "locations",
        {"id": "Uri", "name": "Name", "formalName": "FormalName", "type": "LocationType", "parentId": "Parent"},
        order_by=("formalName",),
        object_type="Location",
    ),
    SYSTEM_OPTION: EntityMapping(
        "systemoptions",
        {"name": "Name", "value": "Value", "type": "Type"},
        order_by=("name",),
        object_type="SystemOption",
    ),
}

FALLBACK_API: Dict[str, EntityMapping] = {
    USER: EntityMapping(
        "users",
        {"id": "id", "name": "name", "email": "email", "active": "active"},
        converters={"active": as_bool},
        object_type="User",
    ),
    DOCUMENT: EntityMapping(
        "documents", {"id": "id", "title": "title", "number": "number"}, object_type="Document"
    ),
    RECORD: EntityMapping(
        "records", {"id": "id", "recordNumber": "number", "title": "title"}, object_type="Record"
    ),
    RECORD_TYPE: EntityMapping("recordtypes", {"id": "id", "name": "name"}, object_type="RecordType"),
    LOCATION: EntityMapping("locations", {"id": "id", "name": "name"}, object_type="Location"),
    SYSTEM_OPTION: EntityMapping(
        "systemoptions", {"name": "name", "value": "value"}, order_by=("name",), object_type="SystemOption"
    ),
}

LEGACY_RANGE = VersionRange.between("9.0", "23.0")
MODERN_RANGE = VersionRange.between("23.0", "25.0")
LATEST_RANGE = VersionRange.between("25.0")
ANY_RANGE = VersionRange(Version(0, 0))


@dataclass(frozen=True)
class AdapterBinding:
    """One registry entry."""
    kind: str
    version_range: VersionRange
    adapter: VersionAdapter


class AdapterRegistry:
    """Flat ``(kind, VersionRange) -> adapter`` lookup with per-kind fallbacks.

    ``resolve`` returns the first matching binding in registration order and
    memoizes the answer per (kind, protocol, version).
    """

    def __init__(self) -> None:
        self.logger = get_logger("versions.adapters")
        self._bindings: List[AdapterBinding] = []
        self._fallbacks: Dict[str, VersionAdapter] = {}
        self._resolved: Dict[Tuple[str, Optional[str], str], VersionAdapter] = {}

    def register(self, adapter: VersionAdapter, version_range: Optional[VersionRange] = None) -> None:
        """Bind ``adapter`` to ``version_range`` (default: the adapter's own range)."""
        binding = AdapterBinding(adapter.kind, version_range or adapter.version_range, adapter)
        self._bindings.append(binding)
        self._resolved.clear()
        self.logger.debug(
            "Adapter registered", adapter=adapter.name, kind=adapter.kind, version_range=str(binding.version_range)
        )

    def register_fallback(self, adapter: VersionAdapter) -> None:
        self._fallbacks[adapter.kind] = adapter
        self._resolved.clear()

    @property
    def bindings(self) -> Tuple[AdapterBinding, ...]:
        return tuple(self._bindings)

    def resolve(self, version_info: VersionInfo, kind: str, *, protocol: Optional[str] = None) -> VersionAdapter:
        """Find the adapter for a detected version.

        Args:
            version_info: Detected version
            kind: ``sql`` or ``api``
            protocol: ``rest`` or ``soap`` for API connections

        Returns:
            The first matching adapter, or the kind's fallback

        Raises:
            VersionMismatchError: If nothing, not even a fallback, serves ``kind``
        """
        key = (kind, protocol, version_info.raw_version)
        cached = self._resolved.get(key)
        if cached is not None:
            return cached

        adapter = next(
            (
                b.adapter
                for b in self._bindings
                if b.kind == kind and b.adapter.serves(protocol) and b.version_range.contains(version_info.version)
            ),
            None,
        )
        if adapter is None:
            adapter = self._fallbacks.get(kind)
        if adapter is None:
            raise VersionMismatchError(
                f"No {kind} adapter for version {version_info.raw_version}",
                code=ErrorCodes.ADAPTER_NOT_FOUND,
                context={"kind": kind, "protocol": protocol, "version": version_info.raw_version},
            )

        self._resolved[key] = adapter
        self.logger.info(
            "Adapter resolved",
            adapter=adapter.name,
            kind=kind,
            protocol=protocol,
            version=version_info.raw_version,
            reduced_confidence=adapter.reduced_confidence,
        )
        return adapter

    def __len__(self) -> int:
        return len(self._bindings)


def default_adapter_registry() -> AdapterRegistry:
    """Build a new registry holding the built-in adapters."""
    registry = AdapterRegistry()
    registry.register(SqlVersionAdapter("legacy", LEGACY_RANGE, LEGACY_SQL))
    registry.register(SqlVersionAdapter("modern", MODERN_RANGE, MODERN_SQL))
    registry.register(SqlVersionAdapter("latest", LATEST_RANGE, LATEST_SQL))
    registry.register(ApiVersionAdapter("rest-v2", MODERN_RANGE, REST_V2, protocol="rest"))
    registry.register(ApiVersionAdapter("rest-v2-latest", LATEST_RANGE, REST_V2_LATEST, protocol="rest"))
    registry.register(ApiVersionAdapter("soap-legacy", LEGACY_RANGE, SOAP_LEGACY, protocol="soap"))
    registry.register_fallback(
        SqlVersionAdapter("fallback-sql", ANY_RANGE, FALLBACK_SQL, reduced_confidence=True)
    )
    registry.register_fallback(
        ApiVersionAdapter("fallback-api", ANY_RANGE, FALLBACK_API, api_version="v1", reduced_confidence=True)
    )
    return registry


def adapter_kind(connection: Any) -> Tuple[str, Optional[str]]:
    """Adapter kind and protocol for a connection."""
    if connection.kind == "database":
        return "sql", None
    return "api", connection.query_builder.protocol
