"""Transaction and LISTEN/NOTIFY lifecycle management for asyncpg pools."""

from pglifecycle.infra.errors import (
    DatabaseError,
    Error,
    ListenerError,
    SystemError,
    TransactionError,
    TransactionStateError,
    TransactionTimeoutError,
)
from pglifecycle.infra.lifecycle import LifecycleRegistry, install_signal_handlers
from pglifecycle.infra.listener import ListenerHandle, ListenerManager, advisory_lock_key
from pglifecycle.infra.runtime import Runtime, create_runtime
from pglifecycle.infra.transaction import (
    DEFAULT_TIMEOUT,
    Deferred,
    Finalized,
    Outcome,
    TransactionManager,
    TransactionOptions,
)

__all__ = [
    "DEFAULT_TIMEOUT",
    "DatabaseError",
    "Deferred",
    "Error",
    "Finalized",
    "LifecycleRegistry",
    "ListenerError",
    "ListenerHandle",
    "ListenerManager",
    "Outcome",
    "Runtime",
    "SystemError",
    "TransactionError",
    "TransactionManager",
    "TransactionOptions",
    "TransactionStateError",
    "TransactionTimeoutError",
    "advisory_lock_key",
    "create_runtime",
    "install_signal_handlers",
]
