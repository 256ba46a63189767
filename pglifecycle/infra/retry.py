"""Startup retry for reaching the database.

Only pool creation goes through here. Leases, statements and locks taken
later are never retried; their errors go straight to the caller.
"""

from __future__ import annotations

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

LOGGER = structlog.get_logger(__name__)

RetryOn = type[BaseException] | tuple[type[BaseException], ...]


def _log_retry(state: RetryCallState) -> None:
    outcome = state.outcome
    error = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "db.connect.retrying",
        attempt=state.attempt_number,
        error_class=type(error).__name__ if error is not None else None,
        error=str(error) if error is not None else None,
    )


def startup_retry(
    *,
    attempts: int,
    wait_seconds: float,
    retry_on: RetryOn,
) -> AsyncRetrying:
    """Build the retry loop used while the server may still be starting.

    Usage:
        async for attempt in startup_retry(attempts=3, wait_seconds=1, retry_on=OSError):
            with attempt:
                pool = await asyncpg.create_pool(...)

    The last error is re-raised unchanged once attempts run out.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(wait_seconds),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


__all__ = ["RetryOn", "startup_retry"]
