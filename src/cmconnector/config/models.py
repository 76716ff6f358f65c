"""Configuration models for cmconnector.

This module defines the pydantic models for every configuration object the
connector accepts. A connection configuration is a tagged union of
``DirectDbConfig`` and ``RestApiConfig`` selected by its ``type`` field, so
protocol-specific fields are validated exhaustively at construction time.

Classes:
    BaseConfig: Base configuration class (frozen, env-var aware)
    PoolConfig: Connection pool configuration
    RetryConfig: Retry policy configuration
    CircuitBreakerConfig: Circuit breaker configuration
    DirectDbConfig: Direct SQL Server / Oracle access
    RestApiConfig: REST or SOAP API access
    LoggingConfig: Logging configuration
    VaultConfig: Credential vault key material

Functions:
    parse_connection_config: Validate a mapping into a ConnectionConfig

Example:
    >>> config = parse_connection_config({
    ...     "type": "DIRECT_DB",
    ...     "databaseType": "sqlserver",
    ...     "host": "cm-sql01",
    ...     "database": "CM",
    ...     "username": "svc_cm",
    ...     "password": "${CM_DB_PASSWORD}",
    ...     "poolMax": 4,
    ... })
    >>> config.pool.max_size
    4
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from ..core.exceptions import ConfigError, ErrorCodes, ValidationError
from ..core.utils import ValidationUtils

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

DEFAULT_PORTS = {"sqlserver": 1433, "oracle": 1521}

DATABASE_TYPE_ALIASES = {
    "mssql": "sqlserver",
    "sql_server": "sqlserver",
    "sqlserver": "sqlserver",
    "oracledb": "oracle",
    "oracle": "oracle",
}

# Flat connection options folded into nested sections: key -> (section, field)
FLAT_OPTIONS = {
    "poolMin": ("pool", "min_size"),
    "pool_min": ("pool", "min_size"),
    "poolMax": ("pool", "max_size"),
    "pool_max": ("pool", "max_size"),
    "acquireTimeout": ("pool", "acquire_timeout"),
    "idleTimeout": ("pool", "idle_timeout"),
    "idle_timeout": ("pool", "idle_timeout"),
    "healthCheckInterval": ("pool", "health_check_interval"),
    "health_check_interval": ("pool", "health_check_interval"),
    "retryMaxAttempts": ("retry", "max_attempts"),
    "retry_max_attempts": ("retry", "max_attempts"),
    "retryBackoffMs": ("retry", "backoff_ms"),
    "retry_backoff_ms": ("retry", "backoff_ms"),
}


def _resolve_env(value: Any) -> Any:
    """Resolve ``${VAR}`` and ``${VAR:default}`` references recursively."""
    if isinstance(value, str):
        def replace_env_var(match: "re.Match[str]") -> str:
            var_spec = match.group(1)
            if ":" in var_spec:
                var_name, default = var_spec.split(":", 1)
            else:
                var_name, default = var_spec, ""
            return os.getenv(var_name, default)

        return ENV_VAR_PATTERN.sub(replace_env_var, value)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(item) for item in value]
    return value


class BaseConfig(BaseModel):
    """Base configuration class with common functionality.

    Configurations are immutable once constructed, reject unknown keys,
    accept both snake_case and camelCase names, and resolve environment
    variable references in string values.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        validate_default=True,
    )

    @model_validator(mode="before")
    @classmethod
    def resolve_environment_variables(cls, data: Any) -> Any:
        """Resolve environment variables and fold flat options.

        Args:
            data: Raw input values

        Returns:
            Values with environment variables resolved
        """
        if not isinstance(data, dict):
            return data
        return cls._prepare_input(_resolve_env(data))

    @classmethod
    def _prepare_input(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    def to_dict(self, *, mask_secrets: bool = True) -> Dict[str, Any]:
        """Convert configuration to dictionary.

        Args:
            mask_secrets: Whether to mask secret values

        Returns:
            Dictionary representation of configuration
        """
        def convert(value: Any) -> Any:
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            if isinstance(value, list):
                return [convert(item) for item in value]
            if isinstance(value, SecretStr):
                return "***MASKED***" if mask_secrets else value.get_secret_value()
            if isinstance(value, Path):
                return str(value)
            return value

        return convert(self.model_dump())


class PoolConfig(BaseConfig):
    """Connection pool configuration.

    Attributes:
        min_size: Connections kept open while idle
        max_size: Hard cap on live connections for one system
        acquire_timeout: Seconds a caller may wait for a connection
        idle_timeout: Seconds an idle connection survives before eviction
        health_check_interval: Seconds between background maintenance runs
        max_lifetime: Seconds before a connection is recycled
        max_pending: Maximum queued waiters before failing fast (None = unbounded)
        validate_on_release: Probe connections before returning them to idle
    """

    min_size: int = Field(1, ge=0, description="Minimum pool size")
    max_size: int = Field(10, ge=1, description="Maximum pool size")
    acquire_timeout: float = Field(30.0, gt=0, description="Acquire timeout in seconds")
    idle_timeout: float = Field(300.0, gt=0, description="Idle eviction timeout in seconds")
    health_check_interval: float = Field(60.0, gt=0, description="Maintenance interval in seconds")
    max_lifetime: float = Field(3600.0, gt=0, description="Connection lifetime in seconds")
    max_pending: Optional[int] = Field(None, ge=1, description="Maximum queued waiters")
    validate_on_release: bool = Field(True, description="Probe connections on release")

    @model_validator(mode="after")
    def validate_sizes(self) -> "PoolConfig":
        """Ensure max_size >= min_size.

        Raises:
            ValidationError: If max_size < min_size
        """
        if self.max_size < self.min_size:
            raise ValidationError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
            )
        return self


class RetryConfig(BaseConfig):
    """Retry policy configuration.

    Attributes:
        max_attempts: Retries after the first attempt
        backoff_ms: Delay before the first retry in milliseconds
        max_backoff_ms: Upper bound for any single delay
        multiplier: Exponential growth factor between retries
        jitter: Fraction of the delay added at random (0..1)
    """

    max_attempts: int = Field(3, ge=0, description="Retries after the first attempt")
    backoff_ms: int = Field(1000, ge=0, description="Initial backoff in milliseconds")
    max_backoff_ms: int = Field(30000, ge=0, description="Maximum backoff in milliseconds")
    multiplier: float = Field(2.0, ge=1.0, description="Backoff multiplier")
    jitter: float = Field(0.1, ge=0.0, le=1.0, description="Jitter ratio")


class CircuitBreakerConfig(BaseConfig):
    """Circuit breaker configuration."""

    enabled: bool = Field(True, description="Enable the circuit breaker")
    failure_threshold: int = Field(5, ge=1, description="Consecutive failures before opening")
    window_seconds: float = Field(60.0, gt=0, description="Sliding failure window")
    cool_down_seconds: float = Field(30.0, gt=0, description="Seconds before a probe is allowed")


class _TargetConfig(BaseConfig):
    """Fields shared by every connection target."""

    id: Optional[str] = Field(None, min_length=1, description="Target system identifier")
    username: Optional[str] = Field(None, description="Login name")
    password: Optional[SecretStr] = Field(None, description="Inline password")
    credential_ref: Optional[str] = Field(None, description="Reference into the credential store")
    timeout: float = Field(30.0, gt=0, description="Connect timeout in seconds")
    pool: PoolConfig = Field(default_factory=PoolConfig, description="Pool configuration")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Retry configuration")
    circuit_breaker: CircuitBreakerConfig = Field(
        default_factory=CircuitBreakerConfig, description="Circuit breaker configuration"
    )
    options: Dict[str, Any] = Field(default_factory=dict, description="Additional options")

    @classmethod
    def _prepare_input(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        for key, (section, field_name) in FLAT_OPTIONS.items():
            if key not in data:
                continue
            value = data.pop(key)
            nested = data.get(section)
            if isinstance(nested, BaseModel):
                nested = nested.model_dump()
            nested = dict(nested or {})
            nested[field_name] = value
            data[section] = nested
        return data

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: Optional[str]) -> Optional[str]:
        """Strip surrounding whitespace from the login name."""
        if v is None:
            return v
        if not v.strip():
            raise ValidationError("Username cannot be empty or whitespace")
        return v.strip()

    @property
    def has_secret(self) -> bool:
        """True if a password or a credential reference is configured."""
        return self.password is not None or self.credential_ref is not None


class DirectDbConfig(_TargetConfig):
    """Direct relational database access.

    Attributes:
        host: Database server host
        port: Database port (1433 for SQL Server, 1521 for Oracle by default)
        database: Database name or Oracle service name
        database_type: ``sqlserver`` or ``oracle``
        encrypt: Request TLS for SQL Server connections
        trust_server_certificate: Skip SQL Server certificate validation
        odbc_driver: ODBC driver name for SQL Server
        use_rownum_pagination: Use ROWNUM wrapping for Oracle before 12c
        query_timeout: Per-statement timeout in seconds

    Example:
        >>> config = DirectDbConfig(
        ...     host="cm-sql01",
        ...     database="CM",
        ...     database_type="sqlserver",
        ...     username="svc_cm",
        ...     password=SecretStr("secret"),
        ... )
        >>> config.port
        1433
    """

    type: Literal["DIRECT_DB"] = "DIRECT_DB"
    host: str = Field(..., min_length=1, description="Database host")
    port: int = Field(..., description="Database port")
    database: str = Field(..., min_length=1, description="Database or service name")
    database_type: Literal["sqlserver", "oracle"] = Field(..., description="SQL dialect")
    encrypt: bool = Field(True, description="Encrypt SQL Server connections")
    trust_server_certificate: bool = Field(False, description="Trust self-signed certificates")
    odbc_driver: str = Field("ODBC Driver 18 for SQL Server", description="ODBC driver name")
    use_rownum_pagination: bool = Field(False, description="Oracle ROWNUM pagination")
    query_timeout: float = Field(300.0, gt=0, description="Statement timeout in seconds")

    @classmethod
    def _prepare_input(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        data = super()._prepare_input(data)
        db_type = data.get("database_type", data.get("databaseType"))
        if isinstance(db_type, str):
            db_type = DATABASE_TYPE_ALIASES.get(db_type.lower(), db_type)
            data.pop("databaseType", None)
            data["database_type"] = db_type
        if data.get("port") is None and db_type in DEFAULT_PORTS:
            data["port"] = DEFAULT_PORTS[db_type]
        return data

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Validate host format."""
        if not v.strip():
            raise ValidationError("Host cannot be empty")
        return v.strip()

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port range."""
        if not ValidationUtils.validate_port(v):
            raise ValidationError(f"Invalid port: {v}", code=ErrorCodes.CONFIG_VALIDATION_FAILED)
        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> "DirectDbConfig":
        """Require a login name and a password or credential reference.

        Raises:
            ValidationError: If credentials are incomplete
        """
        if not self.username:
            raise ValidationError(
                "Direct database access requires a username",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
                context={"host": self.host, "database": self.database},
            )
        if not self.has_secret:
            raise ValidationError(
                "Direct database access requires a password or credentialRef",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
                context={"host": self.host, "database": self.database},
            )
        return self

    @property
    def system_id(self) -> str:
        """Identifier of the target system."""
        return self.id or f"{self.database_type}://{self.host}:{self.port}/{self.database}"

    @property
    def kind(self) -> str:
        return "database"


class RestApiConfig(_TargetConfig):
    """Remote API access (REST or SOAP).

    Attributes:
        base_url: Full service URL; derived from host/port when omitted
        host: API server host
        port: API server port
        use_ssl: Use https when deriving the base URL
        protocol: ``rest`` or ``soap``
        api_version: REST API version prefix
        api_key: Static API key used instead of a login call
        domain: Optional login domain
        headers: Extra request headers
        verify_ssl: Verify TLS certificates
    """

    type: Literal["REST_API"] = "REST_API"
    base_url: Optional[str] = Field(None, description="Service base URL")
    host: Optional[str] = Field(None, description="API host")
    port: int = Field(8080, description="API port")
    use_ssl: bool = Field(True, description="Use https for derived URLs")
    protocol: Literal["rest", "soap"] = Field("rest", description="API protocol")
    api_version: Literal["v1", "v2"] = Field("v2", description="REST API version")
    api_key: Optional[SecretStr] = Field(None, description="Static API key")
    domain: Optional[str] = Field(None, description="Login domain")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers")
    verify_ssl: bool = Field(True, description="Verify TLS certificates")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate URL scheme and strip the trailing slash."""
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Invalid base URL: {v}", code=ErrorCodes.CONFIG_VALIDATION_FAILED)
        return v.rstrip("/")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port range."""
        if not ValidationUtils.validate_port(v):
            raise ValidationError(f"Invalid port: {v}", code=ErrorCodes.CONFIG_VALIDATION_FAILED)
        return v

    @model_validator(mode="after")
    def validate_target(self) -> "RestApiConfig":
        """Require an address and a way to authenticate.

        Raises:
            ValidationError: If neither base_url nor host is set, or if no
                credentials are configured
        """
        if not self.base_url and not self.host:
            raise ValidationError(
                "Remote API access requires baseUrl or host",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
            )
        if self.api_key is None and not (self.username and self.has_secret):
            raise ValidationError(
                "Remote API access requires an apiKey or username with password/credentialRef",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
                context={"target": self.resolved_base_url},
            )
        return self

    @property
    def resolved_base_url(self) -> str:
        """Base URL, derived as ``http(s)://host:port/ContentManager`` if unset."""
        if self.base_url:
            return self.base_url
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}:{self.port}/ContentManager"

    @property
    def system_id(self) -> str:
        """Identifier of the target system."""
        if self.id:
            return self.id
        return f"{self.protocol}://{urlparse(self.resolved_base_url).netloc}"

    @property
    def kind(self) -> str:
        return "api"


ConnectionConfig = Annotated[Union[DirectDbConfig, RestApiConfig], Field(discriminator="type")]

_connection_config_adapter: TypeAdapter = TypeAdapter(ConnectionConfig)


def parse_connection_config(data: Union[Dict[str, Any], DirectDbConfig, RestApiConfig]) -> Union[DirectDbConfig, RestApiConfig]:
    """Validate raw options into a connection configuration.

    Args:
        data: Mapping with a ``type`` of ``DIRECT_DB`` or ``REST_API``, or an
            already constructed configuration

    Returns:
        The validated, immutable configuration

    Raises:
        ConfigError: If the options are invalid for the declared type
    """
    if isinstance(data, (DirectDbConfig, RestApiConfig)):
        return data

    try:
        return _connection_config_adapter.validate_python(data)
    except PydanticValidationError as e:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigError(
            f"Invalid connection configuration: {len(errors)} error(s)",
            code=ErrorCodes.CONFIG_INVALID,
            context={"errors": errors, "type": data.get("type") if isinstance(data, dict) else None},
            cause=e,
        ) from e


class LoggingConfig(BaseConfig):
    """Logging configuration.

    Attributes:
        level: Minimum log level
        format: ``json`` or ``text`` rendering
        console_output: Emit logs to stdout
        file_path: Optional log file
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field("json", description="Log format")
    console_output: bool = Field(True, description="Enable console output")
    file_path: Optional[Path] = Field(None, description="Log file path")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class VaultConfig(BaseConfig):
    """Credential vault key material.

    Attributes:
        keys: Key version -> base64-encoded 256-bit key
        current_version: Key version used for new encryptions
    """

    keys: Dict[int, SecretStr] = Field(..., min_length=1, description="Versioned keys")
    current_version: int = Field(..., description="Active key version")

    @model_validator(mode="after")
    def validate_current_version(self) -> "VaultConfig":
        if self.current_version not in self.keys:
            raise ValidationError(
                f"Current key version {self.current_version} has no key",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
                context={"available_versions": sorted(self.keys)},
            )
        return self
