"""Release detection and version-specific adapters.

Modules:
    models: Version, VersionRange, VersionInfo and feature sets
    detector: VersionDetector signature probing
    adapters: VersionAdapter variants and AdapterRegistry
"""

from .adapters import (
    AdapterBinding,
    AdapterQuery,
    AdapterRegistry,
    ApiVersionAdapter,
    EntityMapping,
    ExtractionRequest,
    SqlVersionAdapter,
    VersionAdapter,
    adapter_kind,
    default_adapter_registry,
)
from .detector import DetectorState, VersionDetector
from .models import (
    SUPPORTED_VERSIONS,
    Edition,
    Feature,
    Version,
    VersionCategory,
    VersionInfo,
    VersionRange,
)

__all__ = [
    # Models
    "Edition",
    "Feature",
    "SUPPORTED_VERSIONS",
    "Version",
    "VersionCategory",
    "VersionInfo",
    "VersionRange",

    # Detection
    "DetectorState",
    "VersionDetector",

    # Adapters
    "AdapterBinding",
    "AdapterQuery",
    "AdapterRegistry",
    "ApiVersionAdapter",
    "EntityMapping",
    "ExtractionRequest",
    "SqlVersionAdapter",
    "VersionAdapter",
    "adapter_kind",
    "default_adapter_registry",
]
