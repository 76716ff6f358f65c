"""Version model for Content Manager releases.

Classes:
    Version: Parsed release number
    VersionRange: Half-open range of releases
    VersionCategory: Release family (legacy, modern, latest)
    Edition: Product edition
    Feature: Known feature flags
    VersionInfo: Everything detection learned about one system
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from ..core.exceptions import ErrorCodes, VersionMismatchError

VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?(?:\.(\d+))?")

UNKNOWN_VERSION = "UNKNOWN"

SUPPORTED_VERSIONS: Tuple[Tuple[int, int], ...] = (
    (9, 4),
    (10, 0),
    (10, 1),
    (23, 3),
    (23, 4),
    (24, 2),
    (24, 3),
    (24, 4),
    (25, 1),
    (25, 2),
)

# Catalog tables whose presence marks an installed module
MODULE_TABLES: Dict[str, str] = {
    "RM": "TRECORD",
    "IDOL": "TIDOLCONFIG",
    "ES": "TESENTERPRISE",
    "WGS": "TWGSCONFIG",
}


class VersionCategory(str, Enum):
    """Release family."""
    LEGACY = "legacy"
    MODERN = "modern"
    LATEST = "latest"
    UNKNOWN = "unknown"


class Edition(str, Enum):
    """Product edition."""
    STANDARD = "Standard"
    ENTERPRISE = "Enterprise"
    CLOUD = "Cloud"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Edition":
        normalized = (value or "").lower()
        if "enterprise" in normalized:
            return cls.ENTERPRISE
        if "cloud" in normalized:
            return cls.CLOUD
        return cls.STANDARD


class Feature(str, Enum):
    """Feature flags reported by or implied for a release."""
    BASIC_SEARCH = "BASIC_SEARCH"
    ADVANCED_SEARCH = "ADVANCED_SEARCH"
    DOCUMENT_MANAGEMENT = "DOCUMENT_MANAGEMENT"
    WORKFLOW_CLASSIC = "WORKFLOW_CLASSIC"
    WORKFLOW_ADVANCED = "WORKFLOW_ADVANCED"
    SECURITY_BASIC = "SECURITY_BASIC"
    SECURITY_ADVANCED = "SECURITY_ADVANCED"
    FEDERATION = "FEDERATION"
    CONTENT_ANALYTICS = "CONTENT_ANALYTICS"
    RETENTION_MANAGEMENT = "RETENTION_MANAGEMENT"
    PHYSICAL_RECORDS = "PHYSICAL_RECORDS"
    EMAIL_MANAGEMENT = "EMAIL_MANAGEMENT"
    AI_CLASSIFICATION = "AI_CLASSIFICATION"
    SMART_AUTOMATION = "SMART_AUTOMATION"
    CLOUD_NATIVE = "CLOUD_NATIVE"
    MICROSERVICES = "MICROSERVICES"
    GRAPHQL_API = "GRAPHQL_API"
    EVENT_STREAMING = "EVENT_STREAMING"


def _names(features: Iterable[Feature]) -> FrozenSet[str]:
    return frozenset(f.value for f in features)


LEGACY_FEATURES = _names([
    Feature.BASIC_SEARCH,
    Feature.DOCUMENT_MANAGEMENT,
    Feature.WORKFLOW_CLASSIC,
    Feature.SECURITY_BASIC,
])

MODERN_FEATURES = _names([
    Feature.ADVANCED_SEARCH,
    Feature.DOCUMENT_MANAGEMENT,
    Feature.WORKFLOW_ADVANCED,
    Feature.SECURITY_ADVANCED,
    Feature.FEDERATION,
    Feature.CONTENT_ANALYTICS,
    Feature.RETENTION_MANAGEMENT,
    Feature.PHYSICAL_RECORDS,
    Feature.EMAIL_MANAGEMENT,
])

LATEST_FEATURES = MODERN_FEATURES | _names([
    Feature.AI_CLASSIFICATION,
    Feature.SMART_AUTOMATION,
    Feature.CLOUD_NATIVE,
    Feature.MICROSERVICES,
    Feature.GRAPHQL_API,
    Feature.EVENT_STREAMING,
])

CATEGORY_FEATURES: Dict[VersionCategory, FrozenSet[str]] = {
    VersionCategory.LEGACY: LEGACY_FEATURES,
    VersionCategory.MODERN: MODERN_FEATURES,
    VersionCategory.LATEST: LATEST_FEATURES,
    VersionCategory.UNKNOWN: frozenset(),
}


@dataclass(frozen=True, order=True)
class Version:
    """A parsed release number such as ``9.4.0.1234`` or ``25.1``."""
    major: int
    minor: int
    patch: int = 0
    build: int = 0

    @classmethod
    def try_parse(cls, value: Any) -> Optional["Version"]:
        """Parse a version string, returning None when it does not look like one."""
        if value is None:
            return None
        match = VERSION_PATTERN.match(str(value).strip())
        if not match:
            return None
        major, minor, patch, build = match.groups()
        return cls(int(major), int(minor), int(patch or 0), int(build or 0))

    @classmethod
    def parse(cls, value: Any) -> "Version":
        """Parse a version string.

        Raises:
            VersionMismatchError: If ``value`` is not a version number
        """
        version = cls.try_parse(value)
        if version is None:
            raise VersionMismatchError(
                f"Invalid version format: {value!r}",
                code=ErrorCodes.VERSION_UNSUPPORTED,
                context={"version": value},
            )
        return version

    @property
    def family(self) -> str:
        return f"{self.major}.{self.minor}"

    @property
    def category(self) -> VersionCategory:
        if self.major < 23:
            return VersionCategory.LEGACY
        if self.major < 25:
            return VersionCategory.MODERN
        return VersionCategory.LATEST

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        return f"{text}.{self.build}" if self.build else text


@dataclass(frozen=True)
class VersionRange:
    """Releases ``minimum <= v < maximum``; an open upper bound when ``maximum`` is None."""
    minimum: Version
    maximum: Optional[Version] = None

    @classmethod
    def between(cls, minimum: str, maximum: Optional[str] = None) -> "VersionRange":
        return cls(Version.parse(minimum), Version.parse(maximum) if maximum else None)

    def contains(self, version: Optional[Version]) -> bool:
        if version is None:
            return False
        if version < self.minimum:
            return False
        return self.maximum is None or version < self.maximum

    def __contains__(self, version: object) -> bool:
        return isinstance(version, Version) and self.contains(version)

    def __str__(self) -> str:
        upper = f",<{self.maximum.family}" if self.maximum else ""
        return f">={self.minimum.family}{upper}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VersionInfo:
    """Detected release information for one target system.

    Two infos describing the same backend compare equal; the detection
    timestamp is not part of the comparison.
    """
    version: Optional[Version]
    raw_version: str = UNKNOWN_VERSION
    edition: Edition = Edition.STANDARD
    features: FrozenSet[str] = frozenset()
    modules: FrozenSet[str] = frozenset()
    database_version: Optional[str] = None
    product_name: Optional[str] = None
    licensed_users: int = 0
    probe: Optional[str] = None
    detected_at: datetime = field(default_factory=_utcnow, compare=False)

    @classmethod
    def unknown(cls, *, probe: Optional[str] = None) -> "VersionInfo":
        """Info for a backend no probe could identify."""
        return cls(version=None, raw_version=UNKNOWN_VERSION, probe=probe)

    @property
    def is_unknown(self) -> bool:
        return self.version is None

    @property
    def category(self) -> VersionCategory:
        return self.version.category if self.version else VersionCategory.UNKNOWN

    @property
    def is_supported(self) -> bool:
        if self.version is None:
            return False
        return (self.version.major, self.version.minor) in SUPPORTED_VERSIONS

    @property
    def supports_rest(self) -> bool:
        return self.version is not None and self.version.major >= 23

    @property
    def supports_records_module(self) -> bool:
        return "RM" in self.modules

    def has_feature(self, feature: "Feature | str") -> bool:
        name = feature.value if isinstance(feature, Feature) else feature
        return name in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": str(self.version) if self.version else None,
            "raw_version": self.raw_version,
            "edition": self.edition.value,
            "category": self.category.value,
            "features": sorted(self.features),
            "modules": sorted(self.modules),
            "database_version": self.database_version,
            "product_name": self.product_name,
            "licensed_users": self.licensed_users,
            "probe": self.probe,
            "is_supported": self.is_supported,
            "supports_rest": self.supports_rest,
            "supports_records_module": self.supports_records_module,
            "detected_at": self.detected_at.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.raw_version} ({self.category.value}, {self.edition.value})"
