"""Capability protocols for cmconnector.

Connections and version adapters are independent implementations of small
capability interfaces; callers depend on these protocols rather than on a
shared base class.

Protocols:
    Connection: A single live link to one backend instance

Example:
    >>> async def ping(connection: Connection) -> bool:
    ...     return await connection.health_check()
"""

from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..versions.models import VersionInfo


@runtime_checkable
class Connection(Protocol):
    """Capability interface for backend connections.

    Implemented by the direct-database and remote-API variants. A connection
    caches the VersionInfo detected on it until ``reconnect()`` is called.
    """

    kind: str

    @property
    def connection_id(self) -> str:
        """Unique id of this live session."""
        ...

    @property
    def system_id(self) -> str:
        """Id of the target system this connection talks to."""
        ...

    @property
    def is_open(self) -> bool:
        """True while the session is established."""
        ...

    @property
    def is_healthy(self) -> bool:
        """False once a failure or cancellation made the session suspect."""
        ...

    @property
    def version_info(self) -> Optional["VersionInfo"]:
        """Cached version information, or None before detection."""
        ...

    @property
    def query_builder(self) -> Any:
        """Builder producing requests this connection can execute."""
        ...

    def cache_version_info(self, info: "VersionInfo") -> None:
        """Store detected version information (write once)."""
        ...

    async def connect(self) -> None:
        """Establish the session."""
        ...

    async def disconnect(self) -> None:
        """Close the session."""
        ...

    async def reconnect(self) -> None:
        """Close and re-open the session, clearing cached version info."""
        ...

    async def execute(self, request: Any, *, timeout: Optional[float] = None) -> Any:
        """Execute a built query or API request and return its result."""
        ...

    async def health_check(self) -> bool:
        """Run a lightweight liveness probe."""
        ...
