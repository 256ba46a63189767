"""Leased connections checked out from the pool.

A `LeasedConnection` is owned by exactly one unit of work until it is
released. Release is guarded by a flag so that every exit path can call
`release()` without risking a double return to the pool.
"""

from __future__ import annotations

import inspect
from types import TracebackType
from typing import Any

import structlog

from pglifecycle.infra.types.db import ConnectionProtocol, PoolProtocol

LOGGER = structlog.get_logger(__name__)


class LeasedConnection:
    """A pooled connection exclusively held by one caller.

    Usage:
        lease = await acquire_connection(pool)
        try:
            await lease.execute("SELECT 1")
        finally:
            await lease.release()
    """

    def __init__(
        self, pool: PoolProtocol | None, connection: ConnectionProtocol, *, owned: bool = True
    ) -> None:
        """Wrap a connection.

        Args:
            pool: The pool the connection came from. None for borrowed connections.
            connection: The asyncpg connection.
            owned: False when the connection belongs to someone else; release()
                is then a no-op.
        """
        self._pool = pool
        self._conn = connection
        self._owned = owned and pool is not None
        self._released = False
        self._broken = False

    @property
    def raw(self) -> ConnectionProtocol:
        """The underlying asyncpg connection."""
        return self._conn

    @property
    def owned(self) -> bool:
        return self._owned

    @property
    def released(self) -> bool:
        return self._released

    @property
    def broken(self) -> bool:
        return self._broken

    def mark_broken(self) -> None:
        """Flag the session state as untrustworthy so release() terminates it."""
        self._broken = True

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> Any:  # noqa: ASYNC109
        return await self._conn.execute(query, *args, timeout=timeout)

    async def executemany(
        self, command: str, args: Any, *, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        return await self._conn.executemany(command, args, timeout=timeout)

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:  # noqa: ASYNC109
        return await self._conn.fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:  # noqa: ASYNC109
        return await self._conn.fetchrow(query, *args, timeout=timeout)

    async def fetchval(
        self, query: str, *args: Any, column: int = 0, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        return await self._conn.fetchval(query, *args, column=column, timeout=timeout)

    async def release(self, force: bool = False) -> bool:
        """Return the connection to the pool once.

        Args:
            force: Terminate the connection instead of resetting it for reuse.
                Implied when the lease was marked broken.

        Returns:
            True when this call released the connection, False when it was a no-op.
        """
        if self._released or not self._owned:
            return False
        self._released = True
        force = force or self._broken

        if force:
            try:
                self._conn.terminate()
            except Exception:
                LOGGER.debug("db.lease.terminate_failed", exc_info=True)

        release = self._pool.release
        if inspect.iscoroutinefunction(release):
            await release(self._conn)
        else:
            result = release(self._conn)
            if inspect.isawaitable(result):
                await result
        LOGGER.debug("db.lease.released", forced=force)
        return True

    async def __aenter__(self) -> LeasedConnection:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()


async def acquire_connection(pool: PoolProtocol, *, timeout: float | None = None) -> LeasedConnection:  # noqa: ASYNC109
    """Check a connection out of the pool and wrap it in a lease.

    Lease errors (pool exhaustion, connect failure) propagate unchanged.
    """
    connection = await pool.acquire(timeout=timeout)
    return LeasedConnection(pool, connection)


def borrow_connection(connection: Any) -> LeasedConnection:
    """Wrap a connection the caller already holds; it will never be released here."""
    if isinstance(connection, LeasedConnection):
        return LeasedConnection(None, connection.raw, owned=False)
    return LeasedConnection(None, connection, owned=False)


__all__ = ["LeasedConnection", "acquire_connection", "borrow_connection"]
