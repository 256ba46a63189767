from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Awaitable, Callable
from inspect import iscoroutinefunction
from typing import Any

import structlog

from pglifecycle.infra.db.connection_context import LeasedConnection, acquire_connection
from pglifecycle.infra.db_errors import describe_error
from pglifecycle.infra.errors import ListenerError
from pglifecycle.infra.lifecycle import LifecycleRegistry
from pglifecycle.infra.types.db import PoolProtocol

LOGGER = structlog.get_logger(__name__)

MessageHandler = Callable[[Any], Awaitable[None] | None]
FatalHook = Callable[[BaseException], None]

LOCK_SQL = "SELECT pg_advisory_lock($1)"
UNLOCK_SQL = "SELECT pg_advisory_unlock($1)"


def advisory_lock_key(channel: str) -> int:
    """Derive the advisory lock key for a channel.

    Same value as PostgreSQL's
    ``('x'||substr(md5('listen-'||channel),1,16))::bit(64)::bigint``, so every
    process (and plain SQL sessions) contend on one key per channel.
    """
    digest = hashlib.md5(f"listen-{channel}".encode("utf-8"), usedforsecurity=False)
    key = int(digest.hexdigest()[:16], 16)
    if key >= 1 << 63:
        key -= 1 << 64
    return key


def exit_process(error: BaseException) -> None:
    """Default fatal hook: end the process with a non-zero status."""
    LOGGER.critical("db.listener.fatal", **describe_error(error))
    raise SystemExit(1)


class ListenerHandle:
    """A live channel subscription; awaiting the handle stops it.

    The handle owns a dedicated connection for its whole lifetime. Stopping
    unsubscribes, releases the advisory lock when exclusive, returns the
    connection and removes the handle from the lifecycle registry. Only the
    first stop does anything.
    """

    def __init__(
        self,
        manager: ListenerManager,
        lease: LeasedConnection,
        channel: str,
        handler: MessageHandler,
        *,
        exclusive: bool,
        parse_json: bool,
        lock_key: int,
    ) -> None:
        self._manager = manager
        self._lease = lease
        self._channel = channel
        self._handler = handler
        self._exclusive = exclusive
        self._parse_json = parse_json
        self._lock_key = lock_key
        self._stopped = False
        self._is_async = iscoroutinefunction(handler)
        self._queue: asyncio.Queue[Any] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._teardown_done: asyncio.Future[None] | None = None

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def exclusive(self) -> bool:
        return self._exclusive

    @property
    def parse_json(self) -> bool:
        return self._parse_json

    @property
    def lock_key(self) -> int:
        return self._lock_key

    @property
    def stopped(self) -> bool:
        return self._stopped

    def __repr__(self) -> str:
        return f"<ListenerHandle channel={self._channel!r} stopped={self._stopped}>"

    async def __call__(self) -> None:
        await self.stop()

    async def stop(self) -> None:
        """Tear the listener down; later calls are no-ops.

        Every step runs even if an earlier one failed. The first failure is
        raised once all steps are done. A call made while another stop is
        still running waits for it to finish.
        """
        await self._teardown(swallow=False)

    async def drain(self) -> None:
        """Wait until queued notifications for a coroutine handler are processed."""
        if self._queue is not None and not self._stopped:
            await self._queue.join()

    def _start(self) -> None:
        if self._is_async:
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(
                self._dispatch_queued(), name=f"db-listener-{self._channel}"
            )
        self._lease.raw.add_termination_listener(self._on_termination)

    def _decode(self, payload: str) -> tuple[bool, Any]:
        if not self._parse_json:
            return True, payload
        try:
            return True, json.loads(payload)
        except json.JSONDecodeError:
            LOGGER.warning(
                "db.listener.payload.unparseable",
                channel=self._channel,
                payload=payload,
            )
            return False, None

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        del connection, pid
        if self._stopped or channel != self._channel:
            return
        ok, message = self._decode(payload)
        if not ok:
            return
        if self._queue is not None:
            # 協程處理器依序排隊執行，維持同一頻道的訊息順序
            self._queue.put_nowait(message)
            return
        try:
            self._handler(message)
        except Exception:
            LOGGER.exception("db.listener.handler_failed", channel=self._channel)

    async def _dispatch_queued(self) -> None:
        assert self._queue is not None
        while not self._stopped:
            message = await self._queue.get()
            try:
                result = self._handler(message)
                if result is not None:
                    await result
            except Exception:
                LOGGER.exception("db.listener.handler_failed", channel=self._channel)
            finally:
                self._queue.task_done()

    def _on_termination(self, connection: Any) -> None:
        del connection
        if self._stopped:
            return
        error = ListenerError(
            "Database listener connection lost",
            context={"channel": self._channel, "exclusive": self._exclusive},
        )
        LOGGER.error("db.listener.connection_lost", channel=self._channel)
        self._manager._schedule_fatal(self, error)

    async def _teardown(self, *, swallow: bool) -> None:
        if self._teardown_done is not None:
            # 後到的呼叫等待第一次 teardown 完成，確保關閉 pool 前連線已歸還
            await asyncio.shield(self._teardown_done)
            return
        self._teardown_done = asyncio.get_running_loop().create_future()
        self._stopped = True
        try:
            await self._run_teardown(swallow=swallow)
        finally:
            if not self._teardown_done.done():
                self._teardown_done.set_result(None)

    async def _run_teardown(self, *, swallow: bool) -> None:
        conn = self._lease.raw
        failures: list[BaseException] = []

        try:
            conn.remove_termination_listener(self._on_termination)
        except Exception:
            LOGGER.debug("db.listener.remove_termination_listener_failed", exc_info=True)

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()

        closed = bool(conn.is_closed())
        if closed:
            self._lease.mark_broken()
        else:
            try:
                await conn.remove_listener(self._channel, self._on_notification)
            except Exception as exc:
                failures.append(exc)
                self._lease.mark_broken()
                LOGGER.warning(
                    "db.listener.unlisten_failed", channel=self._channel, **describe_error(exc)
                )

            if self._exclusive:
                try:
                    await self._lease.execute(UNLOCK_SQL, self._lock_key)
                except Exception as exc:
                    failures.append(exc)
                    self._lease.mark_broken()
                    LOGGER.warning(
                        "db.listener.unlock_failed", channel=self._channel, **describe_error(exc)
                    )

        try:
            await self._lease.release()
        except Exception as exc:
            failures.append(exc)
            LOGGER.warning(
                "db.listener.release_failed", channel=self._channel, **describe_error(exc)
            )

        self._manager.registry.unregister(self)
        LOGGER.info(
            "db.listener.stopped",
            channel=self._channel,
            exclusive=self._exclusive,
            failures=len(failures),
        )

        if failures and not swallow:
            raise failures[0]


class ListenerManager:
    """Subscribes leased connections to NOTIFY channels."""

    def __init__(
        self,
        pool: PoolProtocol,
        registry: LifecycleRegistry,
        *,
        on_fatal: FatalHook | None = None,
    ) -> None:
        self._pool = pool
        self.registry = registry
        self._on_fatal = on_fatal or exit_process
        self._fatal_tasks: set[asyncio.Task[None]] = set()

    async def listen(
        self,
        channel: str,
        on_message: MessageHandler,
        *,
        exclusive: bool = True,
        parse_json: bool = True,
    ) -> ListenerHandle:
        """Start listening on `channel` and return the stop handle.

        Args:
            channel: Channel name, non-empty.
            on_message: Called once per notification with the decoded payload.
                Coroutine functions are awaited one message at a time.
            exclusive: Hold a cluster-wide advisory lock so only one listener
                per channel is active; blocks until the lock is free.
            parse_json: Decode payloads as JSON before dispatch.

        Raises:
            ValueError: Empty channel.
            Lease, lock and LISTEN errors propagate after cleanup.
        """
        if not channel or not channel.strip():
            raise ValueError("channel must be a non-empty string")

        lock_key = advisory_lock_key(channel)
        lease = await acquire_connection(self._pool)
        handle = ListenerHandle(
            self,
            lease,
            channel,
            on_message,
            exclusive=exclusive,
            parse_json=parse_json,
            lock_key=lock_key,
        )

        locked = False
        try:
            if exclusive:
                LOGGER.info("db.listener.lock_waiting", channel=channel, lock_key=lock_key)
                await lease.execute(LOCK_SQL, lock_key)
                locked = True
            await lease.raw.add_listener(channel, handle._on_notification)
        except BaseException:
            if locked:
                try:
                    await lease.execute(UNLOCK_SQL, lock_key)
                except Exception as exc:
                    lease.mark_broken()
                    LOGGER.warning("db.listener.unlock_failed", channel=channel, **describe_error(exc))
            try:
                await lease.release()
            except Exception as exc:
                LOGGER.error("db.listener.release_failed", channel=channel, **describe_error(exc))
            raise

        handle._start()
        self.registry.register(handle)
        LOGGER.info(
            "db.listener.started",
            channel=channel,
            exclusive=exclusive,
            parse_json=parse_json,
        )
        return handle

    def _schedule_fatal(self, handle: ListenerHandle, error: BaseException) -> None:
        task = asyncio.get_running_loop().create_task(
            self._handle_fatal(handle, error), name=f"db-listener-fatal-{handle.channel}"
        )
        self._fatal_tasks.add(task)
        task.add_done_callback(self._fatal_tasks.discard)

    async def _handle_fatal(self, handle: ListenerHandle, error: BaseException) -> None:
        try:
            await handle._teardown(swallow=True)
        except Exception:
            LOGGER.exception("db.listener.cleanup_failed", channel=handle.channel)
        self._on_fatal(error)


__all__ = [
    "ListenerHandle",
    "ListenerManager",
    "MessageHandler",
    "advisory_lock_key",
    "exit_process",
]
