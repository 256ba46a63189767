"""Exceptions raised by the transaction and listener managers.

每個錯誤帶有 message、context 與 cause；寫入日誌前以 `log_safe_context()`
遮罩含有密碼、DSN 等敏感字樣的欄位。
"""

from __future__ import annotations

from typing import Any, Mapping

_MASK = "***redacted***"
_SENSITIVE_FRAGMENTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "dsn",
    "database_url",
    "authorization",
)


def _is_sensitive(key: object) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def _masked(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: (_MASK if _is_sensitive(k) else _masked(v)) for k, v in value.items()}
    return value


class Error(Exception):
    """Base error: a message, structured context and the underlying cause."""

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

    def __str__(self) -> str:
        return self.message

    def log_safe_context(self) -> dict[str, Any]:
        return _masked(self.context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "context": dict(self.context),
            "cause": None if self.cause is None else repr(self.cause),
        }


class DatabaseError(Error):
    """The server rejected a statement."""


class SystemError(Error):
    """Pool, driver or network failure below the statement level."""


class TransactionError(Error):
    """Base for failures around a deferred transaction handle."""


class TransactionTimeoutError(TransactionError):
    """A deferred transaction hit its deadline and was rolled back."""


class TransactionStateError(TransactionError):
    """commit() after rollback, or rollback() after commit, on a deferred handle."""


class ListenerError(Error):
    """A listener's dedicated connection failed."""


__all__ = [
    "DatabaseError",
    "Error",
    "ListenerError",
    "SystemError",
    "TransactionError",
    "TransactionStateError",
    "TransactionTimeoutError",
]
