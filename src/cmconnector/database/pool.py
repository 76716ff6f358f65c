"""Connection pool implementation for cmconnector.

Provides per-system async connection pooling with bounded size, waiter
limits, background maintenance, and monitoring. Pool bookkeeping is guarded
by a single ``asyncio.Condition``; connecting, probing, and closing happen
outside it.

Classes:
    PooledSlot: Pool bookkeeping around one Connection
    PoolMetrics: Point-in-time pool snapshot
    ConnectionPool: Per-system connection pool

Example:
    >>> pool = ConnectionPool("cm-prod", lambda: DatabaseConnection(config), PoolConfig(max_size=4))
    >>> await pool.open()
    >>> async with pool.connection() as conn:
    ...     result = await conn.execute(conn.query_builder.ping())
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Set

from ..config.models import PoolConfig
from ..core.exceptions import (
    AcquireTimeoutError,
    ErrorCodes,
    PoolExhaustedError,
    TimeoutError,
)
from ..core.protocols import Connection
from ..logging import get_logger, get_performance_logger


class PooledSlot:
    """Wrapper for a pooled connection with bookkeeping."""

    def __init__(self, connection: Connection, clock: Callable[[], float]) -> None:
        self.connection = connection
        self._clock = clock
        self.created_at = clock()
        self.last_used = self.created_at
        self.use_count = 0
        self.is_in_use = False

    @property
    def slot_id(self) -> str:
        return self.connection.connection_id

    @property
    def is_healthy(self) -> bool:
        return self.connection.is_healthy

    def mark_used(self) -> None:
        self.last_used = self._clock()
        self.use_count += 1
        self.is_in_use = True

    def mark_returned(self) -> None:
        self.last_used = self._clock()
        self.is_in_use = False

    def get_age(self) -> float:
        return self._clock() - self.created_at

    def get_idle_time(self) -> float:
        return self._clock() - self.last_used


@dataclass(frozen=True)
class PoolMetrics:
    """Point-in-time pool snapshot.

    Attributes:
        total: Live connections, including ones being opened
        available: Idle connections ready for use
        in_use: Connections handed out
        pending: Callers waiting for a connection
    """
    total: int
    available: int
    in_use: int
    pending: int
    max_size: int = 0
    system_id: str = ""
    closed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system_id": self.system_id,
            "total": self.total,
            "available": self.available,
            "in_use": self.in_use,
            "pending": self.pending,
            "max_size": self.max_size,
            "closed": self.closed,
        }


class ConnectionPool:
    """Async connection pool for one target system.

    Never holds more than ``max_size`` live connections. ``acquire`` prefers
    an idle healthy connection, opens a new one while below ``max_size``,
    and otherwise waits up to ``acquire_timeout``.
    """

    def __init__(
        self,
        system_id: str,
        connection_factory: Callable[[], Connection],
        config: Optional[PoolConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize connection pool.

        Args:
            system_id: Target system identifier
            connection_factory: Returns a new, unopened Connection
            config: Pool configuration
            clock: Monotonic clock, injectable for tests
        """
        self.system_id = system_id
        self.config = config or PoolConfig()
        self._connection_factory = connection_factory
        self._clock = clock

        self._cond = asyncio.Condition()
        self._idle: Deque[PooledSlot] = deque()
        self._in_use: Dict[str, PooledSlot] = {}
        self._live = 0
        self._pending = 0
        self._closed = False
        self._opened = False

        self._maintenance_task: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._last_maintenance: Optional[float] = None

        self._stats: Dict[str, Any] = {
            "total_created": 0,
            "total_closed": 0,
            "total_acquired": 0,
            "total_released": 0,
            "acquire_timeouts": 0,
            "pool_exhausted_count": 0,
            "evictions": 0,
            "unhealthy_connections_closed": 0,
            "maintenance_runs": 0,
            "average_wait_time": 0.0,
            "max_wait_time": 0.0,
        }

        self.logger = get_logger(f"pool.{system_id}")
        self.perf_logger = get_performance_logger(f"pool.{system_id}", auto_log=False)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self) -> None:
        """Open ``min_size`` connections (or one probe connection) and start maintenance.

        Raises:
            CMConnectorException: If a connection cannot be opened
        """
        if self._opened:
            return
        self._check_not_closed()
        initial = max(self.config.min_size, 1)
        self.logger.info("Opening connection pool", min_size=self.config.min_size, max_size=self.config.max_size)

        try:
            for _ in range(initial):
                async with self._cond:
                    self._live += 1
                slot = await self._create_slot()
                async with self._cond:
                    self._idle.append(slot)
                    self._cond.notify()
        except BaseException:
            await self.close()
            raise

        self._opened = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        self.logger.info("Connection pool opened", initial_connections=initial)

    def _check_not_closed(self) -> None:
        if self._closed:
            raise PoolExhaustedError(
                f"Connection pool for {self.system_id} is closed",
                code=ErrorCodes.POOL_CLOSED,
                context={"system_id": self.system_id},
            )

    def _expired(self, slot: PooledSlot) -> bool:
        return slot.get_age() > self.config.max_lifetime

    async def _create_slot(self) -> PooledSlot:
        """Open a new connection for a slot already reserved in ``_live``."""
        try:
            connection = self._connection_factory()
            await connection.connect()
        except BaseException:
            async with self._cond:
                self._live -= 1
                self._cond.notify()
            raise
        self._stats["total_created"] += 1
        self.logger.debug("New connection created", connection_id=connection.connection_id, live=self._live)
        return PooledSlot(connection, self._clock)

    async def _destroy(self, slot: PooledSlot, *, reason: str) -> None:
        try:
            await slot.connection.disconnect()
        except Exception as e:
            self.logger.warning(
                "Error closing connection",
                connection_id=slot.slot_id,
                reason=reason,
                error=str(e),
            )
        self._stats["total_closed"] += 1
        self.logger.debug(
            "Connection closed",
            connection_id=slot.slot_id,
            reason=reason,
            age_seconds=slot.get_age(),
            use_count=slot.use_count,
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def acquire(self) -> Connection:
        """Acquire a connection from the pool.

        Returns:
            A connection exclusively owned by the caller until released

        Raises:
            PoolExhaustedError: If the pool is closed or too many callers wait
            AcquireTimeoutError: If no connection frees up within acquire_timeout
        """
        start = self._clock()
        deadline = start + self.config.acquire_timeout
        stale = []
        slot: Optional[PooledSlot] = None

        with self.perf_logger.measure("acquire"):
            async with self._cond:
                self._check_not_closed()
                while True:
                    while self._idle:
                        candidate = self._idle.popleft()
                        if candidate.is_healthy and not self._expired(candidate):
                            slot = candidate
                            break
                        self._live -= 1
                        stale.append(candidate)
                    if slot is not None:
                        break

                    if self._live < self.config.max_size:
                        # Reserve a slot; it is created below, outside the lock
                        self._live += 1
                        break

                    if self.config.max_pending is not None and self._pending >= self.config.max_pending:
                        self._stats["pool_exhausted_count"] += 1
                        raise PoolExhaustedError(
                            f"Connection pool for {self.system_id} has {self._pending} waiters",
                            code=ErrorCodes.POOL_EXHAUSTED,
                            context={
                                "system_id": self.system_id,
                                "max_size": self.config.max_size,
                                "max_pending": self.config.max_pending,
                            },
                        )

                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        self._raise_acquire_timeout()

                    self._pending += 1
                    try:
                        await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        self._raise_acquire_timeout()
                    finally:
                        self._pending -= 1
                    self._check_not_closed()

                if slot is not None:
                    slot.mark_used()
                    self._in_use[slot.slot_id] = slot

            for old in stale:
                self._stats["unhealthy_connections_closed"] += 1
                self._spawn(self._destroy(old, reason="stale"))

            if slot is None:
                slot = await self._create_slot()
                async with self._cond:
                    if self._closed:
                        self._live -= 1
                        self._spawn(self._destroy(slot, reason="pool_closed"))
                        self._check_not_closed()
                    slot.mark_used()
                    self._in_use[slot.slot_id] = slot

        self._record_wait(self._clock() - start)
        self._stats["total_acquired"] += 1
        self.logger.debug("Connection acquired", connection_id=slot.slot_id, use_count=slot.use_count)
        return slot.connection

    def _raise_acquire_timeout(self) -> None:
        self._stats["acquire_timeouts"] += 1
        self.logger.warning(
            "Connection pool exhausted, acquire timed out",
            live=self._live,
            max_size=self.config.max_size,
            pending=self._pending,
        )
        raise AcquireTimeoutError(
            f"No connection available for {self.system_id} within {self.config.acquire_timeout}s",
            code=ErrorCodes.POOL_ACQUIRE_TIMEOUT,
            context={
                "system_id": self.system_id,
                "max_size": self.config.max_size,
                "timeout": self.config.acquire_timeout,
            },
        )

    def _record_wait(self, wait_time: float) -> None:
        self._stats["max_wait_time"] = max(self._stats["max_wait_time"], wait_time)
        acquired = self._stats["total_acquired"] + 1
        current_avg = self._stats["average_wait_time"]
        self._stats["average_wait_time"] = (current_avg * (acquired - 1) + wait_time) / acquired

    async def release(self, connection: Connection, *, healthy: bool = True) -> None:
        """Return a connection to the pool.

        Healthy connections go back to the idle set (after a probe when
        ``validate_on_release`` is set); anything else is closed.

        Args:
            connection: Connection obtained from ``acquire``
            healthy: False if the caller saw the connection fail
        """
        async with self._cond:
            slot = self._in_use.pop(connection.connection_id, None)
        if slot is None:
            self.logger.warning("Release of unknown connection ignored", connection_id=connection.connection_id)
            return

        keep = healthy and connection.is_healthy and not self._closed and not self._expired(slot)
        try:
            if keep and self.config.validate_on_release:
                keep = await connection.health_check()
        except BaseException:
            self._spawn(self._return_slot(slot, keep=False))
            raise
        await self._return_slot(slot, keep=keep)

    def discard(self, connection: Connection) -> None:
        """Drop a connection without awaiting; it is closed in the background."""
        slot = self._in_use.pop(connection.connection_id, None)
        if slot is not None:
            self._spawn(self._return_slot(slot, keep=False))

    async def _return_slot(self, slot: PooledSlot, *, keep: bool) -> None:
        async with self._cond:
            slot.mark_returned()
            self._stats["total_released"] += 1
            if keep and not self._closed:
                self._idle.append(slot)
            else:
                self._live -= 1
                keep = False
            self._cond.notify()
        if not keep:
            self._stats["unhealthy_connections_closed"] += 1
            await self._destroy(slot, reason="released_unhealthy")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Connection]:
        """Acquire a connection for the duration of the block.

        On cancellation or timeout inside the block the connection is
        discarded in the background instead of being returned.
        """
        conn = await self.acquire()
        try:
            yield conn
        except (asyncio.CancelledError, asyncio.TimeoutError, TimeoutError):
            self.discard(conn)
            raise
        except BaseException:
            await self.release(conn, healthy=conn.is_healthy)
            raise
        else:
            await self.release(conn)

    async def _maintenance_loop(self) -> None:
        """Background task running maintenance every health_check_interval."""
        while not self._closed:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                self.logger.error("Error in pool maintenance", error=str(e), error_type=type(e).__name__)

    async def run_maintenance(self) -> None:
        """Evict idle or expired connections, probe idle ones, top up to min_size."""
        evicted = []
        to_check = []
        async with self._cond:
            if self._closed:
                return
            self._stats["maintenance_runs"] += 1
            self._last_maintenance = self._clock()
            for slot in list(self._idle):
                idle_too_long = (
                    slot.get_idle_time() > self.config.idle_timeout and self._live > self.config.min_size
                )
                if self._expired(slot) or idle_too_long or not slot.is_healthy:
                    self._idle.remove(slot)
                    self._live -= 1
                    evicted.append(slot)
            # Idle slots are taken out while probed so no caller receives one mid-check
            while self._idle:
                slot = self._idle.popleft()
                slot.is_in_use = True
                to_check.append(slot)

        for slot in evicted:
            self._stats["evictions"] += 1
            await self._destroy(slot, reason="evicted")

        for slot in to_check:
            healthy = await slot.connection.health_check()
            async with self._cond:
                slot.is_in_use = False
                if healthy and not self._closed:
                    self._idle.append(slot)
                else:
                    self._live -= 1
                self._cond.notify()
            if not healthy or self._closed:
                self._stats["unhealthy_connections_closed"] += 1
                await self._destroy(slot, reason="health_check_failed")

        await self._top_up()

        if evicted:
            self.logger.info("Idle connections evicted", count=len(evicted), live=self._live)

    async def _top_up(self) -> None:
        while True:
            async with self._cond:
                if self._closed or self._live >= self.config.min_size:
                    return
                self._live += 1
            try:
                slot = await self._create_slot()
            except Exception as e:
                self.logger.warning("Failed to top up pool", error=str(e), error_type=type(e).__name__)
                return
            async with self._cond:
                if self._closed:
                    self._live -= 1
                    closing = True
                else:
                    self._idle.append(slot)
                    self._cond.notify()
                    closing = False
            if closing:
                await self._destroy(slot, reason="pool_closed")
                return

    async def close(self) -> None:
        """Close the pool and all idle connections.

        In-use connections are closed when their holders release them.
        Waiting callers fail with ``PoolExhaustedError``.
        """
        if self._closed:
            return
        self.logger.info("Closing connection pool")

        async with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._live -= len(idle)
            self._cond.notify_all()

        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass

        for slot in idle:
            await self._destroy(slot, reason="pool_closed")

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        self.logger.info(
            "Connection pool closed",
            total_created=self._stats["total_created"],
            total_closed=self._stats["total_closed"],
        )

    def get_metrics(self) -> PoolMetrics:
        return PoolMetrics(
            total=self._live,
            available=len(self._idle),
            in_use=len(self._in_use),
            pending=self._pending,
            max_size=self.config.max_size,
            system_id=self.system_id,
            closed=self._closed,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics."""
        return {
            **self.get_metrics().to_dict(),
            "min_size": self.config.min_size,
            "last_maintenance": self._last_maintenance,
            **self._stats,
        }

    def __repr__(self) -> str:
        metrics = self.get_metrics()
        return (
            f"ConnectionPool(system_id={self.system_id!r}, total={metrics.total}, "
            f"in_use={metrics.in_use}, closed={self._closed})"
        )
