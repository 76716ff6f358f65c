"""Data extraction and unified models.

Modules:
    extractors: System, user, record and document extractors
    unified: Unified entity models, factory and serialization helpers
"""

from .extractors import (
    DataExtractor,
    DocumentExtractor,
    ExtractionBatch,
    RecordExtractor,
    SystemExtractor,
    UserExtractor,
)
from .unified import (
    Provenance,
    SourceMetadata,
    UnifiedDocument,
    UnifiedModel,
    UnifiedModelFactory,
    UnifiedRecord,
    UnifiedSystem,
    UnifiedUser,
    from_json,
    normalize,
    to_json,
)

__all__ = [
    # Extractors
    "DataExtractor",
    "DocumentExtractor",
    "ExtractionBatch",
    "RecordExtractor",
    "SystemExtractor",
    "UserExtractor",

    # Unified models
    "Provenance",
    "SourceMetadata",
    "UnifiedDocument",
    "UnifiedModel",
    "UnifiedModelFactory",
    "UnifiedRecord",
    "UnifiedSystem",
    "UnifiedUser",
    "from_json",
    "normalize",
    "to_json",
]
