"""Turn asyncpg failures into log-friendly context.

Nothing here changes what propagates to callers. When a cleanup step
(rollback, UNLISTEN, unlock, release) fails and the failure is swallowed,
`describe_error()` provides the structlog fields recorded for it.
"""

from __future__ import annotations

from typing import Any

import asyncpg

from pglifecycle.infra.errors import DatabaseError, Error, SystemError

# asyncpg 並未在型別註解中公開 PoolError，因此以 getattr 動態取得
PoolError: type[BaseException] = getattr(asyncpg, "PoolError", Exception)

# SQLSTATEs seen around transaction boundaries, advisory locks and LISTEN connections
SQLSTATE_NAMES: dict[str, str] = {
    "08000": "connection_exception",
    "08003": "connection_does_not_exist",
    "08006": "connection_failure",
    "25000": "invalid_transaction_state",
    "25001": "active_sql_transaction",
    "25P01": "no_active_sql_transaction",
    "25P02": "in_failed_sql_transaction",
    "3B000": "savepoint_exception",
    "3B001": "invalid_savepoint_specification",
    "40001": "serialization_failure",
    "40P01": "deadlock_detected",
    "55P03": "lock_not_available",
    "57014": "query_canceled",
    "57P01": "admin_shutdown",
    "57P02": "crash_shutdown",
    "57P03": "cannot_connect_now",
}


def sqlstate_of(error: BaseException) -> str | None:
    raw = getattr(error, "sqlstate", None)
    return str(raw) if raw is not None else None


def is_connection_loss(error: BaseException) -> bool:
    """True when the session itself is gone, not just the statement."""
    if isinstance(error, (asyncpg.InterfaceError, ConnectionError)):
        return True
    sqlstate = sqlstate_of(error)
    return sqlstate is not None and (sqlstate.startswith("08") or sqlstate.startswith("57P"))


def map_postgres_error(error: asyncpg.PostgresError) -> DatabaseError:
    sqlstate = sqlstate_of(error)
    context: dict[str, Any] = {
        "sqlstate": sqlstate,
        "error_type": SQLSTATE_NAMES.get(sqlstate or "", "unknown_postgres_error"),
    }
    detail = getattr(error, "detail", None)
    if detail:
        context["detail"] = detail
    if sqlstate in ("40001", "40P01"):
        context["retry_possible"] = True
    if sqlstate == "57014":
        context["timeout"] = True
    if is_connection_loss(error):
        context["connection_lost"] = True
    return DatabaseError(str(error), context=context, cause=error)


def map_asyncpg_error(error: BaseException) -> Error:
    """Wrap any database-side exception in the package's Error hierarchy."""
    if isinstance(error, Error):
        return error
    if isinstance(error, asyncpg.PostgresError):
        return map_postgres_error(error)

    context: dict[str, Any] = {"error_type": type(error).__name__}
    if isinstance(error, PoolError):
        context["pool_error"] = True
        return SystemError(f"Connection pool error: {error}", context=context, cause=error)
    if isinstance(error, TimeoutError):
        context["timeout"] = True
        return SystemError(f"Database operation timed out: {error}", context=context, cause=error)
    if is_connection_loss(error):
        context["connection_lost"] = True
        return SystemError(f"Database connection lost: {error}", context=context, cause=error)
    return SystemError(f"Database error: {error}", context=context, cause=error)


def describe_error(error: BaseException) -> dict[str, Any]:
    """Log-safe structlog fields for an error."""
    mapped = map_asyncpg_error(error)
    return {
        "error": mapped.message,
        "error_class": type(error).__name__,
        "error_context": mapped.log_safe_context(),
    }


__all__ = [
    "SQLSTATE_NAMES",
    "describe_error",
    "is_connection_loss",
    "map_asyncpg_error",
    "map_postgres_error",
    "sqlstate_of",
]
