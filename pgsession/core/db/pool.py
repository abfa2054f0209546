"""
PostgreSQL connection pool registry.

Sessions never open connections themselves: they ask a PoolRegistry for a
connection and receive it together with the callback that gives it back.
Pools are created lazily, one per connection string and event loop, since
an AsyncConnectionPool is bound to the loop that opened it.
"""
import asyncio
import hashlib
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row, DictRow
from psycopg_pool import AsyncConnectionPool

from pgsession.core.config import Settings, get_settings
from pgsession.core.errors import AcquireFailure, classify_postgres_error
from pgsession.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

__all__ = [
    'PoolRegistry',
    'Release',
    'get_default_registry',
    'close_default_registry',
]

Release = Callable[[], Awaitable[None]]


def _create_pool_key(connection_string: str) -> str:
    """
    Create a cache key from connection string and the running loop.

    The connection string is hashed so passwords never end up in keys or logs.
    """
    digest = hashlib.sha256(connection_string.encode()).hexdigest()
    return f"{digest}:{id(asyncio.get_running_loop())}"


async def _reset_connection(conn: AsyncConnection) -> None:
    """Drop server-side LISTEN subscriptions before a connection is reused."""
    await conn.execute("UNLISTEN *")


class PoolRegistry:
    """
    Owns the AsyncConnectionPool instances shared by sessions.

    Construct one explicitly and pass it to sessions (tests build isolated
    registries); ``get_default_registry()`` returns a lazily created one.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pool_name: str = "pgsession",
        pool_factory=AsyncConnectionPool,
    ):
        self.settings = settings or get_settings()
        self.pool_name = pool_name
        self._pool_factory = pool_factory
        self._pools: Dict[str, AsyncConnectionPool[AsyncConnection[DictRow]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get_or_create_pool(self, connection_string: str) -> AsyncConnectionPool[AsyncConnection[DictRow]]:
        """
        Get existing pool or create and open a new one for the connection string.

        Connections are created in autocommit mode: a transaction exists only
        between an explicit BEGIN and COMMIT/ROLLBACK issued by a Session.
        """
        pool_key = _create_pool_key(connection_string)
        lock = self._locks.setdefault(pool_key, asyncio.Lock())

        async with lock:
            pool = self._pools.get(pool_key)
            if pool is not None:
                return pool

            pool_kwargs = self.settings.pool_kwargs()
            logger.info(
                f"Creating Postgres pool: {self.pool_name} (key: {pool_key[:12]}...) | "
                f"Config: min={pool_kwargs['min_size']}, max={pool_kwargs['max_size']}, "
                f"timeout={pool_kwargs['timeout']}s, max_waiting={pool_kwargs['max_waiting']}"
            )
            pool = self._pool_factory(
                connection_string,
                kwargs={"row_factory": dict_row, "autocommit": True},
                reset=_reset_connection,
                name=f"{self.pool_name}_{pool_key[:8]}",
                open=False,
                **pool_kwargs,
            )
            try:
                await pool.open(wait=True, timeout=pool_kwargs["timeout"])
            except Exception:
                await pool.close()
                raise
            self._pools[pool_key] = pool
            logger.info(f"Postgres pool opened: {pool.name}")
            return pool

    async def acquire(self, connection_string: str) -> Tuple[AsyncConnection[DictRow], Release]:
        """
        Take a connection out of the pool for ``connection_string``.

        Returns the connection and an awaitable release callback. The callback
        returns the connection to its pool the first time it is awaited; later
        calls only log a warning.

        Raises:
            AcquireFailure: the pool could not be opened or could not provide
                a connection in time. The pool error is kept as ``__cause__``.
        """
        acquire_start = time.time()
        try:
            pool = await self.get_or_create_pool(connection_string)
            conn = await pool.getconn()
        except psycopg.Error as e:
            info = classify_postgres_error(e)
            logger.error(
                f"Failed to acquire connection from {self.pool_name} after "
                f"{time.time() - acquire_start:.2f}s: {e}",
                extra=info.log_extra(),
            )
            raise AcquireFailure(f"Could not acquire a connection from {self.pool_name}: {e}", info=info) from e

        logger.debug(f"Connection acquired from {pool.name} in {(time.time() - acquire_start) * 1000:.1f}ms")
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                logger.warning(f"Connection already returned to {pool.name}")
                return
            released = True
            release_start = time.time()
            await pool.putconn(conn)
            logger.debug(f"Connection returned to {pool.name} (release took {(time.time() - release_start) * 1000:.1f}ms)")

        return conn, release

    def get_pool_stats(self) -> Dict[str, Dict]:
        """
        Statistics for every open pool, keyed by "<short hash>:<loop id>":
        name, size, available, waiting.
        """
        stats = {}
        for pool_key, pool in self._pools.items():
            digest, loop_id = pool_key.split(":")
            short_key = f"{digest[:12]}:{loop_id}"
            try:
                pool_stats = pool.get_stats()
                stats[short_key] = {
                    "name": pool.name,
                    "size": pool_stats.get("pool_size", 0),
                    "available": pool_stats.get("pool_available", 0),
                    "waiting": pool_stats.get("requests_waiting", 0),
                }
            except Exception as e:
                logger.debug(f"Could not get stats for pool {short_key}: {e}")
                stats[short_key] = {"error": str(e)}
        return stats

    async def close_pool(self, connection_string: str) -> None:
        """Close the pool serving ``connection_string`` on the running loop."""
        pool_key = _create_pool_key(connection_string)
        pool = self._pools.pop(pool_key, None)
        self._locks.pop(pool_key, None)
        if pool is None:
            logger.warning(f"No pool found for key {pool_key[:12]}")
            return
        logger.info(f"Closing Postgres pool: {pool.name}")
        await pool.close()

    async def close_all(self) -> None:
        """
        Close every pool opened on the running loop.

        Pools of other loops are left alone; they must be closed from their
        own loop.
        """
        loop_suffix = f":{id(asyncio.get_running_loop())}"
        for pool_key in [k for k in self._pools if k.endswith(loop_suffix)]:
            pool = self._pools.pop(pool_key)
            self._locks.pop(pool_key, None)
            try:
                logger.info(f"Closing Postgres pool: {pool.name}")
                await pool.close()
            except Exception as e:
                logger.error(f"Error closing pool {pool.name}: {e}")


_default_registry: Optional[PoolRegistry] = None


def get_default_registry() -> PoolRegistry:
    """Registry used by sessions created without an explicit one."""
    global _default_registry
    if _default_registry is None:
        _default_registry = PoolRegistry()
    return _default_registry


async def close_default_registry() -> None:
    global _default_registry
    if _default_registry is not None:
        await _default_registry.close_all()
        _default_registry = None
