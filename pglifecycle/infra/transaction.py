"""Transaction lifecycle management on top of pooled asyncpg connections.

`TransactionManager.with_transaction()` leases a connection (or borrows one
the caller already holds), detects whether a transaction is already open on
it, and opens either a root transaction (`BEGIN`) or a savepoint. The caller's
work runs inside that boundary and the result comes back as a tagged outcome:

- `Finalized(value, outcome)` when the manager committed or rolled back itself;
- `Deferred(value, ...)` when the caller decides later via `commit()` /
  `rollback()`. An optional deadline forces a rollback if neither happens.

The lease is released on every exit path exactly once; borrowed connections
are never released here.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union
from uuid import uuid4

import structlog

from pglifecycle.infra.db.connection_context import (
    LeasedConnection,
    acquire_connection,
    borrow_connection,
)
from pglifecycle.infra.db_errors import describe_error
from pglifecycle.infra.errors import TransactionStateError, TransactionTimeoutError
from pglifecycle.infra.types.db import PoolProtocol

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")

Work = Callable[[LeasedConnection], Union[Awaitable[T], T]]

# 先建立一個交易範圍的暫存表，強制 PostgreSQL 配置交易 ID，
# 之後 pg_current_xact_id_if_assigned() 才能可靠地反映是否處於交易中。
PROBE_SQL = "CREATE TEMPORARY TABLE IF NOT EXISTS pglifecycle_txn_probe (b int) ON COMMIT DROP"
STATUS_SQL = "SELECT pg_current_xact_id_if_assigned() IS NOT NULL"


async def _release_quietly(lease: LeasedConnection) -> None:
    """Release on an error path; a release failure is logged so the original error survives."""
    try:
        await lease.release()
    except Exception as exc:
        LOGGER.error("db.transaction.release_failed", **describe_error(exc))


class TransactionKind(Enum):
    ROOT = "root"
    NESTED = "nested"


class _Default(Enum):
    TIMEOUT = "default"


# 代表「沿用 manager 的預設逾時」；None 則表示不設期限
DEFAULT_TIMEOUT = _Default.TIMEOUT


class Outcome(Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def new_savepoint_id() -> str:
    return f"trx_{uuid4().hex}"


@dataclass(frozen=True, slots=True)
class TransactionContext:
    """Boundary opened by one `with_transaction()` call."""

    kind: TransactionKind
    savepoint: str | None = None

    @classmethod
    def root(cls) -> TransactionContext:
        return cls(TransactionKind.ROOT)

    @classmethod
    def nested(cls, savepoint: str | None = None) -> TransactionContext:
        return cls(TransactionKind.NESTED, savepoint or new_savepoint_id())

    @property
    def is_nested(self) -> bool:
        return self.kind is TransactionKind.NESTED

    @property
    def begin_statement(self) -> str:
        return f'SAVEPOINT "{self.savepoint}"' if self.is_nested else "BEGIN"

    @property
    def commit_statement(self) -> str:
        return f'RELEASE SAVEPOINT "{self.savepoint}"' if self.is_nested else "COMMIT"

    @property
    def rollback_statement(self) -> str:
        return f'ROLLBACK TO SAVEPOINT "{self.savepoint}"' if self.is_nested else "ROLLBACK"


@dataclass(frozen=True, slots=True)
class TransactionOptions:
    """How `with_transaction()` finalizes a successful unit of work.

    `auto_rollback` wins over `auto_commit`. With both off the caller gets a
    `Deferred` handle; `timeout` (seconds) bounds how long it may stay open.
    Left at `DEFAULT_TIMEOUT` it takes the manager's configured default;
    None arms no deadline at all.
    """

    auto_commit: bool = True
    auto_rollback: bool = False
    timeout: float | None | _Default = DEFAULT_TIMEOUT

    @classmethod
    def deferred(cls, timeout: float | None | _Default = DEFAULT_TIMEOUT) -> TransactionOptions:
        return cls(auto_commit=False, auto_rollback=False, timeout=timeout)

    @property
    def is_deferred(self) -> bool:
        return not self.auto_commit and not self.auto_rollback


@dataclass(frozen=True, slots=True)
class Finalized(Generic[T]):
    """The manager already committed or rolled back; the connection is released."""

    value: T
    outcome: Outcome

    @property
    def committed(self) -> bool:
        return self.outcome is Outcome.COMMITTED


class Deferred(Generic[T]):
    """Open transaction whose fate the caller decides.

    `commit()` and `rollback()` each finalize, release the connection once and
    return the original value. If a deadline is set and expires first, the
    transaction is rolled back, the connection released and waiters get
    `TransactionTimeoutError`.
    """

    def __init__(
        self,
        value: T,
        lease: LeasedConnection,
        context: TransactionContext,
        manager: TransactionManager,
        *,
        timeout: float | None = None,
    ) -> None:
        self.value = value
        self._lease = lease
        self._context = context
        self._manager = manager
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._outcome: Outcome | None = None
        self._error: BaseException | None = None
        self._timed_out = False
        self._timeout = timeout
        self._timer: asyncio.Task[None] | None = None
        if timeout is not None:
            self._timer = asyncio.create_task(
                self._expire_after(timeout), name=f"db-transaction-timeout-{id(self):x}"
            )

    @property
    def context(self) -> TransactionContext:
        return self._context

    @property
    def outcome(self) -> Outcome | None:
        return self._outcome

    @property
    def resolved(self) -> bool:
        return self._done.is_set()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    async def commit(self) -> T:
        async with self._lock:
            if self._timed_out:
                raise self._timeout_error()
            if self._outcome is Outcome.COMMITTED:
                return self.value
            if self._outcome is Outcome.ROLLED_BACK:
                raise TransactionStateError("Transaction was already rolled back")

            self._cancel_timer()
            try:
                await self._manager._commit(self._lease, self._context)
            except BaseException as exc:
                self._outcome = Outcome.ROLLED_BACK
                self._error = exc
                await _release_quietly(self._lease)
                self._done.set()
                raise

            self._outcome = Outcome.COMMITTED
            try:
                await self._lease.release()
            finally:
                self._done.set()
            return self.value

    async def rollback(self) -> T:
        async with self._lock:
            if self._outcome is Outcome.ROLLED_BACK:
                return self.value
            if self._outcome is Outcome.COMMITTED:
                raise TransactionStateError("Transaction was already committed")

            self._cancel_timer()
            self._outcome = Outcome.ROLLED_BACK
            try:
                await self._lease.execute(self._context.rollback_statement)
            except BaseException as exc:
                self._lease.mark_broken()
                self._error = exc
                await _release_quietly(self._lease)
                self._done.set()
                raise

            try:
                await self._lease.release()
            finally:
                self._done.set()
            return self.value

    async def wait(self) -> T:
        """Block until the handle resolves; raise if it timed out or failed."""
        await self._done.wait()
        if self._timed_out:
            raise self._timeout_error()
        if self._error is not None:
            raise self._error
        return self.value

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _timeout_error(self) -> TransactionTimeoutError:
        return TransactionTimeoutError(
            "Transaction timed out",
            context={"timeout_seconds": self._timeout, "kind": self._context.kind.value},
        )

    async def _expire_after(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        async with self._lock:
            if self._outcome is not None:
                return
            self._timed_out = True
            self._outcome = Outcome.ROLLED_BACK
            LOGGER.warning(
                "db.transaction.timed_out",
                timeout_seconds=timeout,
                kind=self._context.kind.value,
            )
            await self._manager._rollback_quietly(self._lease, self._context)
            await _release_quietly(self._lease)
            self._done.set()


TransactionResult = Union[Finalized[T], Deferred[T]]


class TransactionManager:
    """Runs units of work inside root transactions or savepoints."""

    def __init__(
        self,
        pool: PoolProtocol,
        *,
        default_timeout: float | None = 2.0,
        probe: bool = True,
    ) -> None:
        self._pool = pool
        self._default_timeout = default_timeout
        self._probe = probe

    async def with_transaction(
        self,
        work: Work[T],
        options: TransactionOptions | None = None,
        *,
        connection: Any | None = None,
    ) -> TransactionResult[T]:
        """Run `work` inside a transaction boundary.

        Args:
            work: Called with the leased connection; may be sync or async.
            options: Finalization behaviour, defaults to auto commit.
            connection: A connection (or lease) the caller already holds. When
                given, no new lease is taken and the connection is not released.

        Returns:
            `Finalized` when auto commit/rollback applied, otherwise `Deferred`.

        Raises:
            Whatever `work` raised, after rolling back; lease and statement errors.
        """
        opts = options or TransactionOptions()
        if connection is not None:
            lease = borrow_connection(connection)
        else:
            lease = await acquire_connection(self._pool)

        handed_off = False
        try:
            context = await self.detect_context(lease)
            await lease.execute(context.begin_statement)
            LOGGER.debug(
                "db.transaction.begin", kind=context.kind.value, savepoint=context.savepoint
            )

            try:
                value = work(lease)
                if inspect.isawaitable(value):
                    value = await value
            except BaseException:
                await self._rollback_quietly(lease, context)
                raise

            if opts.auto_rollback:
                try:
                    await lease.execute(context.rollback_statement)
                except BaseException:
                    lease.mark_broken()
                    raise
                return Finalized(value, Outcome.ROLLED_BACK)

            if opts.auto_commit:
                await self._commit(lease, context)
                return Finalized(value, Outcome.COMMITTED)

            timeout = self._default_timeout if opts.timeout is DEFAULT_TIMEOUT else opts.timeout
            deferred: Deferred[T] = Deferred(value, lease, context, self, timeout=timeout)
            handed_off = True
            return deferred
        except BaseException:
            await _release_quietly(lease)
            raise
        finally:
            # 成功路徑才讓 release 的錯誤往外拋；錯誤路徑上已釋放，這裡是 no-op
            if not handed_off:
                await lease.release()

    async def detect_context(self, lease: LeasedConnection) -> TransactionContext:
        """Decide between a root transaction and a savepoint for this connection."""
        if self._probe:
            await lease.execute(PROBE_SQL)
            in_transaction = bool(await lease.fetchval(STATUS_SQL))
        else:
            in_transaction = bool(lease.raw.is_in_transaction())
        return TransactionContext.nested() if in_transaction else TransactionContext.root()

    async def _commit(self, lease: LeasedConnection, context: TransactionContext) -> None:
        """Commit; on failure attempt a rollback, then re-raise the commit error."""
        try:
            await lease.execute(context.commit_statement)
        except BaseException as exc:
            LOGGER.warning(
                "db.transaction.commit_failed",
                kind=context.kind.value,
                **describe_error(exc),
            )
            await self._rollback_quietly(lease, context)
            raise

    async def _rollback_quietly(self, lease: LeasedConnection, context: TransactionContext) -> bool:
        """Roll back on an error path; failures are logged, never raised.

        A failed rollback marks the lease broken so it is terminated on release.
        """
        try:
            await lease.execute(context.rollback_statement)
        except Exception as exc:
            lease.mark_broken()
            LOGGER.error(
                "db.transaction.rollback_failed",
                kind=context.kind.value,
                savepoint=context.savepoint,
                **describe_error(exc),
            )
            return False
        return True


__all__ = [
    "DEFAULT_TIMEOUT",
    "Deferred",
    "Finalized",
    "Outcome",
    "TransactionContext",
    "TransactionKind",
    "TransactionManager",
    "TransactionOptions",
    "TransactionResult",
    "new_savepoint_id",
]
