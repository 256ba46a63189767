"""Runtime context wiring the pool, registry and managers together.

The hosting process builds exactly one `Runtime` at startup and passes it
around; nothing here lives at module level.
"""

from __future__ import annotations

import inspect
from typing import Any, TypeVar

import structlog

from pglifecycle.config.db_settings import PoolConfig
from pglifecycle.db import pool as db_pool
from pglifecycle.infra.db.connection_context import acquire_connection
from pglifecycle.infra.lifecycle import LifecycleRegistry
from pglifecycle.infra.listener import FatalHook, ListenerHandle, ListenerManager, MessageHandler
from pglifecycle.infra.transaction import (
    TransactionManager,
    TransactionOptions,
    TransactionResult,
    Work,
)
from pglifecycle.infra.types.db import PoolProtocol

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")


class Runtime:
    """Process-wide database runtime: one pool, one registry, two managers."""

    def __init__(
        self,
        pool: PoolProtocol,
        *,
        config: PoolConfig | None = None,
        registry: LifecycleRegistry | None = None,
        on_fatal: FatalHook | None = None,
    ) -> None:
        self.pool = pool
        self.config = config
        self.registry = registry if registry is not None else LifecycleRegistry()
        self.transactions = TransactionManager(
            pool,
            default_timeout=config.transaction_timeout if config is not None else 2.0,
            probe=config.transaction_probe if config is not None else True,
        )
        self.listeners = ListenerManager(pool, self.registry, on_fatal=on_fatal)
        self._closed = False

    async def with_transaction(
        self,
        work: Work[T],
        options: TransactionOptions | None = None,
        *,
        connection: Any | None = None,
    ) -> TransactionResult[T]:
        return await self.transactions.with_transaction(work, options, connection=connection)

    async def listen(
        self,
        channel: str,
        on_message: MessageHandler,
        *,
        exclusive: bool = True,
        parse_json: bool = True,
    ) -> ListenerHandle:
        return await self.listeners.listen(
            channel, on_message, exclusive=exclusive, parse_json=parse_json
        )

    async def with_connection(self, work: Work[T]) -> T:
        """Run `work` on a leased connection without opening a transaction."""
        async with await acquire_connection(self.pool) as lease:
            result = work(lease)
            if inspect.isawaitable(result):
                result = await result
            return result

    async def query(self, sql: str, *args: Any) -> list[Any]:
        """Run a single statement on a pooled connection and return its rows."""
        async with await acquire_connection(self.pool) as lease:
            return await lease.fetch(sql, *args)

    async def close(self) -> None:
        """Stop every registered listener, then close the pool."""
        if self._closed:
            return
        self._closed = True
        failures = await self.registry.shutdown_all()
        await db_pool.close_pool(self.pool)
        LOGGER.info("runtime.closed", listener_failures=len(failures))


async def create_runtime(
    config: PoolConfig | None = None,
    *,
    on_fatal: FatalHook | None = None,
) -> Runtime:
    """Create the pool from configuration and build the runtime around it."""
    pool_config = config if config is not None else db_pool.load_config()
    pool = await db_pool.create_pool(pool_config)
    return Runtime(pool, config=pool_config, on_fatal=on_fatal)


__all__ = ["Runtime", "create_runtime"]
