from __future__ import annotations

import json
from typing import Any, cast

import asyncpg
import structlog
from dotenv import load_dotenv

from pglifecycle.config.db_settings import PoolConfig
from pglifecycle.infra.retry import startup_retry

LOGGER = structlog.get_logger(__name__)

# 啟動期間資料庫尚未就緒時會出現的錯誤；僅在建立 pool 時重試
CONNECT_RETRY_ERRORS: tuple[type[Exception], ...] = (
    OSError,
    TimeoutError,
    asyncpg.CannotConnectNowError,
)

DEFAULT_ACQUIRE_TIMEOUT = 60.0


def load_config() -> PoolConfig:
    """Read PoolConfig from the environment, loading `.env` first."""
    load_dotenv(override=False)
    return PoolConfig()  # type: ignore[call-arg]


async def create_pool(config: PoolConfig | None = None) -> asyncpg.Pool:
    """Open the one pool the runtime uses.

    Connection errors while the server is still coming up are retried
    `DB_CONNECT_ATTEMPTS` times; anything else (bad DSN, auth) fails at once.
    """
    cfg = config if config is not None else load_config()
    _apg = cast(Any, asyncpg)

    pool: asyncpg.Pool | None = None
    async for attempt in startup_retry(
        attempts=cfg.db_connect_attempts,
        wait_seconds=cfg.db_connect_wait_seconds,
        retry_on=CONNECT_RETRY_ERRORS,
    ):
        with attempt:
            pool = await _apg.create_pool(
                dsn=cfg.dsn,
                min_size=cfg.min_size,
                max_size=cfg.max_size,
                timeout=cfg.timeout or DEFAULT_ACQUIRE_TIMEOUT,
                init=_configure_connection,
            )
    assert pool is not None

    LOGGER.info(
        "db.pool.initialised",
        database=cfg.redacted_dsn,
        min_size=cfg.min_size,
        max_size=cfg.max_size,
    )
    return pool


async def close_pool(pool: asyncpg.Pool) -> None:
    await pool.close()
    LOGGER.info("db.pool.closed")


async def _configure_connection(connection: asyncpg.Connection) -> None:
    # json/jsonb 欄位直接以 Python 物件往返
    conn = cast(Any, connection)
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            schema="pg_catalog",
            encoder=json.dumps,
            decoder=json.loads,
            format="text",
        )
