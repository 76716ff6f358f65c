"""Dialect-aware query construction for cmconnector.

Statements are always built from validated identifiers and bound
parameters; a filter value is never interpolated into SQL text.

Classes:
    FilterOperator: Supported comparison operators
    Filter: One field comparison
    BuiltQuery: Statement text, parameters, and dialect
    QueryBuilder: Abstract SQL builder
    SqlServerQueryBuilder: SQL Server dialect (qmark parameters)
    OracleQueryBuilder: Oracle dialect (numeric binds)
    ApiRequest: One REST or SOAP call
    ApiRequestBuilder: Builder for remote API requests

Example:
    >>> builder = SqlServerQueryBuilder()
    >>> query = builder.select(
    ...     "TUSERPERSON",
    ...     ["USP_ID", "USP_NAME"],
    ...     filters=[Filter("USP_ACTIVE", FilterOperator.EQ, True)],
    ...     offset=0,
    ...     limit=100,
    ... )
    >>> query.text
    'SELECT USP_ID, USP_NAME FROM TUSERPERSON WHERE USP_ACTIVE = ? ORDER BY (SELECT NULL) OFFSET ? ROWS FETCH NEXT ? ROWS ONLY'
    >>> query.params
    (1, 0, 100)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.exceptions import ErrorCodes, ValidationError
from ..core.utils import ValidationUtils


class FilterOperator(str, Enum):
    """Comparison operators accepted in filters."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    LIKE = "like"
    IN = "in"
    IS_NULL = "is_null"


SQL_OPERATORS = {
    FilterOperator.EQ: "=",
    FilterOperator.NE: "<>",
    FilterOperator.GT: ">",
    FilterOperator.GE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LE: "<=",
    FilterOperator.LIKE: "LIKE",
}


@dataclass(frozen=True)
class Filter:
    """A single field comparison.

    Attributes:
        field: Unified field name (or column name once mapped by an adapter)
        op: Comparison operator
        value: Comparison value; a sequence for ``in``, a bool for ``is_null``
    """
    field: str
    op: FilterOperator = FilterOperator.EQ
    value: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.op, FilterOperator):
            try:
                object.__setattr__(self, "op", FilterOperator(self.op))
            except ValueError as e:
                raise ValidationError(
                    f"Unsupported filter operator: {self.op!r}",
                    code=ErrorCodes.FIELD_INVALID,
                    context={"field": self.field},
                ) from e

    def with_field(self, new_field: str) -> "Filter":
        return Filter(new_field, self.op, self.value)


@dataclass(frozen=True)
class BuiltQuery:
    """A parameterized statement ready for execution."""
    text: str
    params: Tuple[Any, ...] = ()
    dialect: str = "sqlserver"


def bind_value(value: Any) -> Any:
    """Convert a Python value into a driver-friendly parameter."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Enum):
        return value.value
    return value


class QueryBuilder(ABC):
    """Base class for SQL dialect builders.

    Subclasses provide placeholder syntax, pagination, and catalog queries.
    """

    dialect: str = "sql"

    def _identifier(self, name: str) -> str:
        if name != "*" and not ValidationUtils.validate_sql_identifier(name):
            raise ValidationError(
                f"Unsafe SQL identifier: {name!r}",
                code=ErrorCodes.UNSAFE_IDENTIFIER,
                context={"identifier": name, "dialect": self.dialect},
            )
        return name

    @abstractmethod
    def _placeholder(self, index: int) -> str:
        """Placeholder for the parameter at 1-based ``index``."""

    def _where(self, filters: Sequence[Filter], params: List[Any]) -> str:
        clauses = [self._predicate(f, params) for f in filters]
        return f" WHERE {' AND '.join(clauses)}" if clauses else ""

    def _predicate(self, flt: Filter, params: List[Any]) -> str:
        column = self._identifier(flt.field)

        if flt.op is FilterOperator.IS_NULL:
            return f"{column} IS NULL" if flt.value in (None, True) else f"{column} IS NOT NULL"

        if flt.op is FilterOperator.IN:
            values = list(flt.value or ())
            if not values:
                return "1 = 0"
            placeholders = []
            for value in values:
                params.append(bind_value(value))
                placeholders.append(self._placeholder(len(params)))
            return f"{column} IN ({', '.join(placeholders)})"

        if flt.value is None and flt.op in (FilterOperator.EQ, FilterOperator.NE):
            return f"{column} IS NULL" if flt.op is FilterOperator.EQ else f"{column} IS NOT NULL"

        params.append(bind_value(flt.value))
        return f"{column} {SQL_OPERATORS[flt.op]} {self._placeholder(len(params))}"

    def _order_by(self, order_by: Optional[Sequence[str]]) -> str:
        if not order_by:
            return ""
        parts = []
        for item in order_by:
            column, _, direction = item.partition(" ")
            direction = direction.strip().upper()
            if direction not in ("", "ASC", "DESC"):
                raise ValidationError(
                    f"Invalid sort direction: {direction!r}",
                    code=ErrorCodes.FIELD_INVALID,
                    context={"order_by": item},
                )
            parts.append(f"{self._identifier(column)} {direction}".rstrip())
        return f" ORDER BY {', '.join(parts)}"

    def select(
        self,
        table: str,
        columns: Sequence[str],
        *,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> BuiltQuery:
        """Build a SELECT statement.

        Args:
            table: Table name
            columns: Column names (``*`` allowed)
            filters: Conjunctive filters on column names
            order_by: Columns, each optionally followed by ASC/DESC
            offset: Rows to skip
            limit: Maximum rows to return

        Returns:
            The parameterized statement

        Raises:
            ValidationError: If an identifier is unsafe or paging values are negative
        """
        if (offset is not None and offset < 0) or (limit is not None and limit < 0):
            raise ValidationError(
                "offset and limit must be non-negative",
                code=ErrorCodes.FIELD_INVALID,
                context={"offset": offset, "limit": limit},
            )
        params: List[Any] = []
        column_list = ", ".join(self._identifier(c) for c in columns) or "*"
        base = f"SELECT {column_list} FROM {self._identifier(table)}{self._where(filters, params)}"
        text = self._paginate(base, self._order_by(order_by), params, offset, limit)
        return BuiltQuery(text, tuple(params), self.dialect)

    def count(self, table: str, *, filters: Sequence[Filter] = ()) -> BuiltQuery:
        """Build a row count statement returning a ``total`` column."""
        params: List[Any] = []
        text = f"SELECT COUNT(*) AS total FROM {self._identifier(table)}{self._where(filters, params)}"
        return BuiltQuery(text, tuple(params), self.dialect)

    @abstractmethod
    def _paginate(
        self, base: str, order: str, params: List[Any], offset: Optional[int], limit: Optional[int]
    ) -> str:
        """Append ordering and pagination to ``base``."""

    @abstractmethod
    def table_exists(self, table: str) -> BuiltQuery:
        """Build a catalog lookup returning a ``table_count`` column."""

    @abstractmethod
    def ping(self) -> BuiltQuery:
        """Build the cheapest possible liveness statement."""


class SqlServerQueryBuilder(QueryBuilder):
    """SQL Server dialect using qmark parameters for the ODBC driver."""

    dialect = "sqlserver"

    def _placeholder(self, index: int) -> str:
        return "?"

    def _paginate(
        self, base: str, order: str, params: List[Any], offset: Optional[int], limit: Optional[int]
    ) -> str:
        if offset is None and limit is None:
            return base + order
        # OFFSET/FETCH requires an ORDER BY clause
        text = base + (order or " ORDER BY (SELECT NULL)")
        params.append(offset or 0)
        text += " OFFSET ? ROWS"
        if limit is not None:
            params.append(limit)
            text += " FETCH NEXT ? ROWS ONLY"
        return text

    def table_exists(self, table: str) -> BuiltQuery:
        return BuiltQuery(
            "SELECT COUNT(*) AS table_count FROM INFORMATION_SCHEMA.TABLES WHERE TABLE_NAME = ?",
            (self._identifier(table),),
            self.dialect,
        )

    def ping(self) -> BuiltQuery:
        return BuiltQuery("SELECT 1 AS ok", (), self.dialect)


class OracleQueryBuilder(QueryBuilder):
    """Oracle dialect using numeric binds (``:1``, ``:2``, ...).

    Args:
        use_rownum: Wrap queries with ROWNUM instead of OFFSET/FETCH, for
            servers older than 12c
    """

    dialect = "oracle"

    def __init__(self, *, use_rownum: bool = False) -> None:
        self.use_rownum = use_rownum

    def _placeholder(self, index: int) -> str:
        return f":{index}"

    def _paginate(
        self, base: str, order: str, params: List[Any], offset: Optional[int], limit: Optional[int]
    ) -> str:
        if offset is None and limit is None:
            return base + order

        if self.use_rownum:
            start = offset or 0
            inner = f"SELECT q.*, ROWNUM AS rn__ FROM ({base}{order}) q"
            if limit is not None:
                params.append(start + limit)
                inner += f" WHERE ROWNUM <= :{len(params)}"
            params.append(start)
            return f"SELECT * FROM ({inner}) WHERE rn__ > :{len(params)}"

        text = base + order
        params.append(offset or 0)
        text += f" OFFSET :{len(params)} ROWS"
        if limit is not None:
            params.append(limit)
            text += f" FETCH NEXT :{len(params)} ROWS ONLY"
        return text

    def table_exists(self, table: str) -> BuiltQuery:
        # Unquoted Oracle identifiers are stored upper-case
        return BuiltQuery(
            "SELECT COUNT(*) AS table_count FROM ALL_TABLES WHERE TABLE_NAME = :1",
            (self._identifier(table).upper(),),
            self.dialect,
        )

    def ping(self) -> BuiltQuery:
        return BuiltQuery("SELECT 1 AS ok FROM DUAL", (), self.dialect)


def get_query_builder(dialect: str, **options: Any) -> QueryBuilder:
    """Return a builder for ``sqlserver`` or ``oracle``.

    Raises:
        ValidationError: If the dialect is unknown
    """
    builders = {
        "sqlserver": SqlServerQueryBuilder,
        "oracle": OracleQueryBuilder,
    }
    builder_class = builders.get(dialect)
    if builder_class is None:
        raise ValidationError(
            f"Unsupported SQL dialect: {dialect}",
            code=ErrorCodes.CONFIG_INVALID,
            context={"supported": sorted(builders)},
        )
    return builder_class(**options)


@dataclass(frozen=True)
class ApiRequest:
    """One remote API call.

    Attributes:
        method: HTTP method
        path: Path relative to the service base URL
        params: Query string parameters
        json: JSON request body
        soap_action: SOAP action name; set for SOAP calls only
        soap_fields: Child elements of the SOAP action element
    """
    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    json: Optional[Dict[str, Any]] = None
    soap_action: Optional[str] = None
    soap_fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_soap(self) -> bool:
        return self.soap_action is not None


class ApiRequestBuilder:
    """Builder for REST and SOAP requests.

    Example:
        >>> builder = ApiRequestBuilder(protocol="rest", api_version="v2")
        >>> builder.list_entities("users", offset=0, limit=50).params
        {'start': 0, 'limit': 50}
    """

    dialect = "api"
    SOAP_PATH = "/ServiceAPI.svc"

    def __init__(self, *, protocol: str = "rest", api_version: str = "v2") -> None:
        self.protocol = protocol
        self.api_version = api_version

    def _segment(self, name: str) -> str:
        if not ValidationUtils.validate_identifier(name.replace("/", "_").replace("-", "_")):
            raise ValidationError(
                f"Unsafe API path segment: {name!r}",
                code=ErrorCodes.UNSAFE_IDENTIFIER,
                context={"segment": name},
            )
        return name

    def list_entities(
        self,
        entity: str,
        *,
        fields: Sequence[str] = (),
        filters: Sequence[Filter] = (),
        offset: Optional[int] = None,
        limit: Optional[int] = None,
        api_version: Optional[str] = None,
    ) -> ApiRequest:
        """Build a paged REST collection request.

        Equality filters become ``field=value``; other operators become
        ``field[op]=value``.
        """
        params: Dict[str, Any] = {}
        if offset is not None:
            params["start"] = offset
        if limit is not None:
            params["limit"] = limit
        if fields:
            params["fields"] = ",".join(self._segment(f) for f in fields)
        for flt in filters:
            name = self._segment(flt.field)
            value = flt.value
            if flt.op is FilterOperator.IN:
                value = ",".join(str(bind_value(v)) for v in (value or ()))
            else:
                value = bind_value(value)
            key = name if flt.op is FilterOperator.EQ else f"{name}[{flt.op.value}]"
            params[key] = value
        version = api_version or self.api_version
        return ApiRequest("GET", f"/api/{version}/{self._segment(entity)}", params=params)

    def get(self, path: str, **params: Any) -> ApiRequest:
        return ApiRequest("GET", path, params=dict(params))

    def system_info(self, api_version: Optional[str] = None) -> ApiRequest:
        """Request for the system information endpoint."""
        if self.protocol == "soap":
            return self.soap("GetSystemInfo")
        return ApiRequest("GET", f"/api/{api_version or self.api_version}/system/info")

    def soap(self, action: str, fields: Optional[Dict[str, Any]] = None) -> ApiRequest:
        """Build a SOAP call of ``action`` with child ``fields``."""
        return ApiRequest(
            "POST",
            self.SOAP_PATH,
            soap_action=self._segment(action),
            soap_fields=dict(fields or {}),
        )

    def ping(self) -> ApiRequest:
        return self.system_info()
