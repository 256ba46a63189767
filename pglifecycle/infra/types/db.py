"""Structural types for the slice of asyncpg the managers touch.

`asyncpg.Pool` / `asyncpg.Connection` satisfy these at runtime, as do the
in-memory fakes in the test suite.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol

# asyncpg calls listener callbacks as (connection, pid, channel, payload)
NotificationCallback = Callable[[Any, int, str, str], Any]
TerminationCallback = Callable[[Any], Any]


class StatementRunner(Protocol):
    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109

    async def executemany(
        self, command: str, args: Any, *, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any: ...

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]: ...  # noqa: ASYNC109

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109

    async def fetchval(
        self, query: str, *args: Any, column: int = 0, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any: ...


class ConnectionProtocol(StatementRunner, Protocol):
    """A session: statements plus notification and lifecycle hooks."""

    async def add_listener(self, channel: str, callback: NotificationCallback) -> None: ...
    async def remove_listener(self, channel: str, callback: NotificationCallback) -> None: ...
    def add_termination_listener(self, callback: TerminationCallback) -> None: ...
    def remove_termination_listener(self, callback: TerminationCallback) -> None: ...
    def is_in_transaction(self) -> bool: ...
    def is_closed(self) -> bool: ...
    def terminate(self) -> None: ...


class PoolProtocol(Protocol):
    async def acquire(self, *, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109
    async def release(self, connection: Any, *, timeout: float | None = None) -> None: ...  # noqa: ASYNC109
    async def close(self) -> None: ...


__all__ = [
    "ConnectionProtocol",
    "NotificationCallback",
    "PoolProtocol",
    "StatementRunner",
    "TerminationCallback",
]
