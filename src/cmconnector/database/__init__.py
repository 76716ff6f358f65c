"""
cmconnector database layer.

Query building for the supported CM database dialects and remote API, query
result value types, and per-system connection pooling.

Supported dialects:
- Microsoft SQL Server (aioodbc)
- Oracle Database (oracledb)
"""

from .models import QueryResult, get_field
from .pool import ConnectionPool, PooledSlot, PoolMetrics
from .query_builder import (
    ApiRequest,
    ApiRequestBuilder,
    BuiltQuery,
    Filter,
    FilterOperator,
    OracleQueryBuilder,
    QueryBuilder,
    SqlServerQueryBuilder,
    get_query_builder,
)
from .registry import PoolRegistry

__all__ = [
    # Models
    "QueryResult",
    "get_field",

    # Query building
    "ApiRequest",
    "ApiRequestBuilder",
    "BuiltQuery",
    "Filter",
    "FilterOperator",
    "OracleQueryBuilder",
    "QueryBuilder",
    "SqlServerQueryBuilder",
    "get_query_builder",

    # Pooling
    "ConnectionPool",
    "PooledSlot",
    "PoolMetrics",
    "PoolRegistry",
]
