"""Pool registry for cmconnector.

One ConnectionPool per target system, shared by every connector that points
at that system.
"""

from typing import Callable, Dict, List, Optional

from ..config.models import PoolConfig
from ..core.exceptions import CMConnectorException, ErrorCodes
from ..core.protocols import Connection
from ..logging import get_logger
from .pool import ConnectionPool, PoolMetrics


class PoolRegistry:
    """Registry of connection pools keyed by system id.

    Registration is idempotent: registering a system id that already has a
    pool returns the existing pool unchanged.
    """

    def __init__(self) -> None:
        self.logger = get_logger("database.registry")
        self._pools: Dict[str, ConnectionPool] = {}

    def register(
        self,
        system_id: str,
        connection_factory: Callable[[], Connection],
        config: Optional[PoolConfig] = None,
    ) -> ConnectionPool:
        """Register a pool for a system unless one already exists.

        Args:
            system_id: Target system identifier
            connection_factory: Returns a new, unopened Connection
            config: Pool configuration

        Returns:
            The pool registered for ``system_id``
        """
        existing = self._pools.get(system_id)
        if existing is not None and not existing.is_closed:
            self.logger.debug("Pool already registered", system_id=system_id)
            return existing

        pool = ConnectionPool(system_id, connection_factory, config)
        self._pools[system_id] = pool
        self.logger.info(
            "Connection pool registered",
            system_id=system_id,
            min_size=pool.config.min_size,
            max_size=pool.config.max_size,
        )
        return pool

    def get(self, system_id: str) -> ConnectionPool:
        """Get the pool for a system.

        Raises:
            CMConnectorException: If no pool is registered for ``system_id``
        """
        if system_id not in self._pools:
            raise CMConnectorException(
                f"No connection pool registered for system: {system_id}",
                code=ErrorCodes.POOL_NOT_FOUND,
                context={"system_id": system_id, "available_systems": list(self._pools)},
            )
        return self._pools[system_id]

    def __contains__(self, system_id: object) -> bool:
        return system_id in self._pools

    def __len__(self) -> int:
        return len(self._pools)

    async def remove(self, system_id: str) -> None:
        """Close and unregister the pool for a system, if any."""
        pool = self._pools.pop(system_id, None)
        if pool is None:
            return
        await pool.close()
        self.logger.info("Connection pool removed", system_id=system_id)

    async def close_all(self) -> None:
        """Close every registered pool."""
        pools = list(self._pools.items())
        self._pools.clear()
        for system_id, pool in pools:
            try:
                await pool.close()
            except Exception as e:
                self.logger.error("Error closing pool", system_id=system_id, error=str(e))
        self.logger.info("All connection pools closed", count=len(pools))

    def list_pools(self) -> List[str]:
        return list(self._pools)

    def get_metrics(self) -> Dict[str, PoolMetrics]:
        """Get a metrics snapshot for every registered pool."""
        return {system_id: pool.get_metrics() for system_id, pool in self._pools.items()}
