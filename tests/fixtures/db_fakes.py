"""In-memory stand-ins for asyncpg pools and connections.

The fakes record every statement so tests can assert the exact transaction
and listener protocol, and let tests inject failures by statement prefix.
"""

from __future__ import annotations

from typing import Any, Callable

from pglifecycle.infra.transaction import STATUS_SQL


class FakeConnection:
    def __init__(
        self,
        *,
        in_transaction: bool = False,
        fail_on: dict[str, BaseException] | None = None,
        rows: list[Any] | None = None,
    ) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_on: dict[str, BaseException] = dict(fail_on or {})
        self.rows = rows or []
        self.listeners: dict[str, list[Callable[..., Any]]] = {}
        self.termination_listeners: list[Callable[[Any], Any]] = []
        self.closed = False
        self.terminated = False
        self._in_transaction = in_transaction

    @property
    def statements(self) -> list[str]:
        return [query for query, _ in self.calls]

    def _record(self, query: str, args: tuple[Any, ...] = ()) -> None:
        self.calls.append((query, args))
        for prefix, exc in self.fail_on.items():
            if query.startswith(prefix):
                raise exc

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        self._record(query, args)
        if query == "BEGIN":
            self._in_transaction = True
        elif query in ("COMMIT", "ROLLBACK"):
            self._in_transaction = False
        return "OK"

    async def executemany(self, command: str, args: Any, *, timeout: float | None = None) -> None:
        self._record(command, tuple(args))

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        self._record(query, args)
        return list(self.rows)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        self._record(query, args)
        return self.rows[0] if self.rows else None

    async def fetchval(
        self, query: str, *args: Any, column: int = 0, timeout: float | None = None
    ) -> Any:
        self._record(query, args)
        if query == STATUS_SQL:
            return self._in_transaction
        return None

    async def add_listener(self, channel: str, callback: Callable[..., Any]) -> None:
        self._record(f"LISTEN {channel}")
        self.listeners.setdefault(channel, []).append(callback)

    async def remove_listener(self, channel: str, callback: Callable[..., Any]) -> None:
        self._record(f"UNLISTEN {channel}")
        callbacks = self.listeners.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def add_termination_listener(self, callback: Callable[[Any], Any]) -> None:
        self.termination_listeners.append(callback)

    def remove_termination_listener(self, callback: Callable[[Any], Any]) -> None:
        if callback in self.termination_listeners:
            self.termination_listeners.remove(callback)

    def is_in_transaction(self) -> bool:
        return self._in_transaction

    def is_closed(self) -> bool:
        return self.closed

    def terminate(self) -> None:
        self.terminated = True
        self.closed = True

    # --- test helpers ---

    def notify(self, channel: str, payload: str, pid: int = 4242) -> None:
        """Deliver a notification the way asyncpg calls plain listener callbacks."""
        for callback in list(self.listeners.get(channel, [])):
            callback(self, pid, channel, payload)

    def lose_connection(self) -> None:
        self.closed = True
        for callback in list(self.termination_listeners):
            callback(self)


class FakePool:
    def __init__(self, *connections: FakeConnection) -> None:
        self._queued = list(connections)
        self.acquired: list[FakeConnection] = []
        self.released: list[FakeConnection] = []
        self.acquire_error: BaseException | None = None
        self.closed = False

    async def acquire(self, *, timeout: float | None = None) -> FakeConnection:
        if self.acquire_error is not None:
            raise self.acquire_error
        conn = self._queued.pop(0) if self._queued else FakeConnection()
        self.acquired.append(conn)
        return conn

    async def release(self, connection: FakeConnection, *, timeout: float | None = None) -> None:
        self.released.append(connection)

    async def close(self) -> None:
        self.closed = True

    def release_count(self, connection: FakeConnection) -> int:
        return sum(1 for c in self.released if c is connection)
