"""Registry of active listener stop callables, for bulk shutdown.

The registry is plain process state owned by the runtime. Stop callables
remove themselves through `unregister()`; `shutdown_all()` only iterates a
snapshot, so entries disappearing mid-shutdown is expected.
"""

from __future__ import annotations

import asyncio
import inspect
import signal
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog

from pglifecycle.infra.db_errors import describe_error

LOGGER = structlog.get_logger(__name__)

StopCallable = Callable[[], Awaitable[Any]]


async def _invoke(stop: StopCallable) -> None:
    result = stop()
    if inspect.isawaitable(result):
        await result


class LifecycleRegistry:
    """Ordered collection of stop callables for active listeners."""

    def __init__(self) -> None:
        self._entries: list[StopCallable] = []
        self._shutdown_tasks: set[asyncio.Task[list[BaseException]]] = set()

    def register(self, stop: StopCallable) -> None:
        self._entries.append(stop)

    def unregister(self, stop: StopCallable) -> None:
        """Remove the first matching entry; no-op when it is already gone."""
        try:
            self._entries.remove(stop)
        except ValueError:
            pass

    def entries(self) -> list[StopCallable]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, stop: object) -> bool:
        return stop in self._entries

    async def shutdown_all(self) -> list[BaseException]:
        """Invoke every registered stop callable and collect failures.

        Failures are logged and returned, never raised, so one listener's
        cleanup cannot block the others.
        """
        snapshot = list(self._entries)
        if not snapshot:
            return []

        LOGGER.info("lifecycle.shutdown.start", count=len(snapshot))
        results = await asyncio.gather(
            *(_invoke(stop) for stop in snapshot), return_exceptions=True
        )

        failures: list[BaseException] = []
        for stop, result in zip(snapshot, results):
            if isinstance(result, BaseException):
                failures.append(result)
                LOGGER.error(
                    "lifecycle.shutdown.stop_failed",
                    stop=repr(stop),
                    **describe_error(result),
                )
        LOGGER.info("lifecycle.shutdown.done", count=len(snapshot), failures=len(failures))
        return failures

    def request_shutdown(self) -> asyncio.Task[list[BaseException]]:
        """Schedule `shutdown_all()` without waiting for it (signal handler entry point)."""
        task = asyncio.get_running_loop().create_task(
            self.shutdown_all(), name="lifecycle-shutdown"
        )
        # 保留強參照，避免 task 在完成前被 GC 回收
        self._shutdown_tasks.add(task)
        task.add_done_callback(self._shutdown_tasks.discard)
        return task


def install_signal_handlers(
    registry: LifecycleRegistry,
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    signals: Iterable[signal.Signals] = (signal.SIGTERM,),
    on_signal: Callable[[signal.Signals], None] | None = None,
) -> None:
    """Wire termination signals to `registry.request_shutdown()`.

    Meant to be called once by the hosting process at startup.

    Args:
        registry: The runtime's registry.
        loop: Loop to install on, defaults to the running loop.
        signals: Signals that trigger shutdown.
        on_signal: Extra hook run after shutdown was requested, e.g. to stop
            the host's own main loop.
    """
    target_loop = loop or asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        LOGGER.warning("lifecycle.signal.received", signal=sig.name, listeners=len(registry))
        registry.request_shutdown()
        if on_signal is not None:
            on_signal(sig)

    for sig in signals:
        target_loop.add_signal_handler(sig, _handle, sig)


__all__ = ["LifecycleRegistry", "StopCallable", "install_signal_handlers"]
