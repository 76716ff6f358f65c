"""Connection implementations for cmconnector.

Modules:
    database: Direct SQL Server / Oracle sessions
    api: REST / SOAP sessions
"""

from .api import ApiConnection
from .database import DRIVERS, DatabaseConnection, OracleDriver, SqlServerDriver

__all__ = [
    "ApiConnection",
    "DRIVERS",
    "DatabaseConnection",
    "OracleDriver",
    "SqlServerDriver",
]
