"""Unified, version-independent entity models.

Every entity shares an envelope (``id``, ``type``, ``provenance``) and carries
a type-specific ``attributes`` payload. Entities are frozen pydantic models
and are only built by ``UnifiedModelFactory``, which validates each attribute
on its own, drops values that fail validation, and records why in the
provenance instead of fabricating anything.

Classes:
    Provenance: Where and how an entity was extracted
    SourceMetadata: Inputs the factory records into provenance
    UnifiedSystem / UnifiedUser / UnifiedRecord / UnifiedDocument: Entities
    UnifiedModelFactory: Raw row to entity normalization

Functions:
    to_json: Serialize one entity or a sequence of entities
    from_json: Parse entities serialized by ``to_json``
    normalize: Index entities by ``"type:id"``
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Type, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from ..core.exceptions import ErrorCodes, ExtractionError

FLAG_INVALID = "invalid"
FLAG_UNAVAILABLE = "unavailable_in_version"


def _freeze(value: Any) -> Any:
    """Read-only copy: mappings become MappingProxyType, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(item) for item in value]
    return value


# Payload mappings are read-only so a frozen entity cannot change through them
FrozenMapping = Annotated[Dict[str, Any], AfterValidator(_freeze), PlainSerializer(_thaw)]
FrozenLabels = Annotated[Dict[str, str], AfterValidator(_freeze), PlainSerializer(_thaw)]


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        coerce_numbers_to_str=True,
    )


class Provenance(_FrozenModel):
    """Audit trail attached to every entity."""

    source_system_id: str
    extractor: str
    extracted_at: datetime
    adapter: Optional[str] = None
    source_version: Optional[str] = None
    reduced_confidence: bool = False
    dropped_fields: Tuple[str, ...] = ()
    flagged_fields: FrozenLabels = Field(default_factory=dict, validate_default=True)


class SystemAttributes(_FrozenModel):
    name: Optional[str] = None
    version: Optional[str] = None
    category: Optional[str] = None
    edition: Optional[str] = None
    database_type: Optional[str] = None
    database_version: Optional[str] = None
    product_name: Optional[str] = None
    is_supported: Optional[bool] = None
    features: Tuple[str, ...] = ()
    modules: Tuple[str, ...] = ()
    licensed_users: Optional[int] = None
    settings: FrozenMapping = Field(default_factory=dict, validate_default=True)
    record_types: Tuple[FrozenMapping, ...] = ()
    locations: Tuple[FrozenMapping, ...] = ()


class UserAttributes(_FrozenModel):
    name: Optional[str] = None
    email: Optional[str] = None
    active: Optional[bool] = None
    user_type: Optional[Literal["normal", "admin", "system", "external"]] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None
    last_login: Optional[datetime] = None
    permissions: Tuple[str, ...] = ()


class RecordAttributes(_FrozenModel):
    record_number: Optional[str] = None
    title: Optional[str] = None
    record_type: Optional[str] = None
    container: Optional[str] = None
    classification: Optional[str] = None
    created_date: Optional[datetime] = None
    registered_date: Optional[datetime] = None
    creator: Optional[str] = None
    status: Optional[str] = None
    ai_classification: Optional[str] = None


class DocumentAttributes(_FrozenModel):
    title: Optional[str] = None
    number: Optional[str] = None
    created_date: Optional[datetime] = None
    registered_date: Optional[datetime] = None
    record: Optional[str] = None
    creator: Optional[str] = None
    checksum: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None


class UnifiedSystem(_FrozenModel):
    id: str
    type: Literal["system"] = "system"
    provenance: Provenance
    attributes: SystemAttributes


class UnifiedUser(_FrozenModel):
    id: str
    type: Literal["user"] = "user"
    provenance: Provenance
    attributes: UserAttributes


class UnifiedRecord(_FrozenModel):
    id: str
    type: Literal["record"] = "record"
    provenance: Provenance
    attributes: RecordAttributes


class UnifiedDocument(_FrozenModel):
    id: str
    type: Literal["document"] = "document"
    provenance: Provenance
    attributes: DocumentAttributes


UnifiedModel = Annotated[
    Union[UnifiedSystem, UnifiedUser, UnifiedRecord, UnifiedDocument],
    Field(discriminator="type"),
]

_ENTITY_ADAPTER: TypeAdapter = TypeAdapter(UnifiedModel)
_ENTITY_LIST_ADAPTER: TypeAdapter = TypeAdapter(List[UnifiedModel])


@dataclass(frozen=True)
class SourceMetadata:
    """Extraction context recorded into provenance.

    Attributes:
        source_system_id: System the data came from
        extractor: Name of the extractor that produced it
        adapter: Version adapter used
        source_version: Raw version string of the source
        reduced_confidence: True when a fallback adapter served the request
        unavailable_fields: Requested fields the adapter could not serve
        extracted_at: Extraction time; defaults to now
    """
    source_system_id: str
    extractor: str
    adapter: Optional[str] = None
    source_version: Optional[str] = None
    reduced_confidence: bool = False
    unavailable_fields: Tuple[str, ...] = ()
    extracted_at: Optional[datetime] = None


# Alternate spellings, resolved per entity type before validation
ID_ALIASES: Dict[str, Tuple[str, ...]] = {
    "system": ("id", "systemId"),
    "user": ("id", "userId"),
    "record": ("id", "recordId"),
    "document": ("id", "documentId"),
}

FIELD_ALIASES: Dict[str, Dict[str, str]] = {
    "system": {},
    "user": {
        "type": "userType",
        "dateCreated": "createdDate",
        "lastLoginDate": "lastLogin",
    },
    "record": {
        "number": "recordNumber",
        "dateCreated": "createdDate",
        "dateRegistered": "registeredDate",
        "creatorId": "creator",
    },
    "document": {
        "dateCreated": "createdDate",
        "dateRegistered": "registeredDate",
        "creatorId": "creator",
        "hash": "checksum",
        "recordId": "record",
    },
}

ENTITY_MODELS: Dict[str, Tuple[Type[_FrozenModel], Type[_FrozenModel]]] = {
    "system": (UnifiedSystem, SystemAttributes),
    "user": (UnifiedUser, UserAttributes),
    "record": (UnifiedRecord, RecordAttributes),
    "document": (UnifiedDocument, DocumentAttributes),
}


def _attribute_names(attributes_model: Type[_FrozenModel]) -> Dict[str, str]:
    """Map both camelCase aliases and snake_case names to the alias."""
    names = {}
    for name, info in attributes_model.model_fields.items():
        alias = info.alias or name
        names[alias] = alias
        names[name] = alias
    return names


class UnifiedModelFactory:
    """Pure normalization of raw rows into unified entities.

    Example:
        >>> source = SourceMetadata("cm-prod", "UserExtractor", adapter="modern")
        >>> user = UnifiedModelFactory.create_user({"userId": 7, "name": "jdoe", "type": "admin"}, source)
        >>> user.id, user.attributes.user_type
        ('7', 'admin')
    """

    @classmethod
    def create(cls, entity_type: str, data: Mapping[str, Any], source: SourceMetadata) -> Any:
        """Build one entity.

        Args:
            entity_type: ``system``, ``user``, ``record`` or ``document``
            data: Raw row keyed by unified names or their aliases
            source: Extraction context

        Returns:
            The frozen entity

        Raises:
            ExtractionError: If the entity type is unknown or the row has no id
        """
        models = ENTITY_MODELS.get(entity_type)
        if models is None:
            raise ExtractionError(
                f"Unknown entity type: {entity_type}",
                code=ErrorCodes.EXTRACTION_FAILED,
                context={"entity_type": entity_type, "source_system_id": source.source_system_id},
            )
        entity_model, attributes_model = models

        id_keys = ID_ALIASES[entity_type]
        entity_id = next((data[k] for k in id_keys if data.get(k) not in (None, "")), None)
        if entity_id is None:
            raise ExtractionError(
                f"{entity_type} row has no identifier",
                code=ErrorCodes.ENTITY_ID_MISSING,
                field=id_keys[-1],
                context={"entity_type": entity_type, "source_system_id": source.source_system_id},
            )

        known = _attribute_names(attributes_model)
        aliases = FIELD_ALIASES[entity_type]
        values: Dict[str, Any] = {}
        dropped: List[str] = []
        flagged: Dict[str, str] = {}

        for key, value in data.items():
            if key in id_keys:
                continue
            name = known.get(aliases.get(key, key))
            if name is None:
                dropped.append(key)
                continue
            if value is None or name in values:
                continue
            try:
                attributes_model.model_validate({name: value})
            except PydanticValidationError:
                flagged[name] = FLAG_INVALID
                continue
            values[name] = value

        for name in source.unavailable_fields:
            alias = known.get(name, name)
            if alias not in values:
                flagged[alias] = FLAG_UNAVAILABLE

        provenance = Provenance(
            source_system_id=source.source_system_id,
            extractor=source.extractor,
            extracted_at=source.extracted_at or datetime.now(timezone.utc),
            adapter=source.adapter,
            source_version=source.source_version,
            reduced_confidence=source.reduced_confidence,
            dropped_fields=tuple(dropped),
            flagged_fields=flagged,
        )
        return entity_model(
            id=str(entity_id),
            provenance=provenance,
            attributes=attributes_model.model_validate(values),
        )

    @classmethod
    def create_system(cls, data: Mapping[str, Any], source: SourceMetadata) -> UnifiedSystem:
        return cls.create("system", data, source)

    @classmethod
    def create_user(cls, data: Mapping[str, Any], source: SourceMetadata) -> UnifiedUser:
        return cls.create("user", data, source)

    @classmethod
    def create_record(cls, data: Mapping[str, Any], source: SourceMetadata) -> UnifiedRecord:
        return cls.create("record", data, source)

    @classmethod
    def create_document(cls, data: Mapping[str, Any], source: SourceMetadata) -> UnifiedDocument:
        return cls.create("document", data, source)


def to_json(entities: Union[BaseModel, Sequence[BaseModel]]) -> str:
    """Serialize one entity, or a sequence of entities as a JSON array."""
    if isinstance(entities, BaseModel):
        return entities.model_dump_json(by_alias=True)
    return _ENTITY_LIST_ADAPTER.dump_json(list(entities), by_alias=True).decode("utf-8")


def from_json(text: Union[str, bytes]) -> Any:
    """Parse output of ``to_json``; entities are told apart by ``type``.

    Raises:
        ExtractionError: If the text is not valid entity JSON
    """
    try:
        data = json.loads(text)
        if isinstance(data, list):
            return _ENTITY_LIST_ADAPTER.validate_python(data)
        return _ENTITY_ADAPTER.validate_python(data)
    except (ValueError, PydanticValidationError) as e:
        raise ExtractionError(
            f"Invalid unified entity JSON: {e}",
            code=ErrorCodes.EXTRACTION_FAILED,
        ) from e


def normalize(entities: Sequence[Any]) -> Dict[str, Any]:
    """Index entities by ``"type:id"``; later entities replace earlier ones."""
    return {f"{entity.type}:{entity.id}": entity for entity in entities}
