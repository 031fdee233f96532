"""Retry helpers for submission store writes that hit a dropped connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from app.config import settings

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")

_CONNECTION_ERROR_MARKERS = (
    "connection is closed",
    "underlying connection is closed",
    "server closed the connection unexpectedly",
    "connection was closed",
    "connection reset by peer",
)
_MAX_DELAY_SECONDS = 5.0


def is_transient_connection_error(exc: Exception) -> bool:
    """True when the store lost its connection rather than rejecting the write."""
    if isinstance(exc, (InterfaceError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True

    lowered = str(exc).lower()
    return any(marker in lowered for marker in _CONNECTION_ERROR_MARKERS)


def _backoff_seconds(base_delay_seconds: float, attempt: int) -> float:
    return min(base_delay_seconds * (2 ** (attempt - 1)), _MAX_DELAY_SECONDS)


async def run_with_transient_db_retry(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    operation_name: str,
    attempts: int | None = None,
    base_delay_seconds: float | None = None,
    log_context: Mapping[str, Any] | None = None,
) -> _ResultT:
    """Run one read-modify-write against the store, retrying dropped connections.

    The operation must be safe to repeat: every submission write re-reads the
    row and merges by key, so replaying it converges on the same record.
    """
    max_attempts = attempts if attempts is not None else settings.database_retry_attempts
    if max_attempts < 1:
        raise ValueError("attempts must be >= 1")
    base_delay = (
        base_delay_seconds
        if base_delay_seconds is not None
        else settings.database_retry_base_delay_seconds
    )

    context = dict(log_context or {})
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_transient_connection_error(exc) or attempt >= max_attempts:
                raise
            delay = _backoff_seconds(base_delay, attempt)
            logger.warning(
                "Submission store connection dropped; retrying",
                extra={
                    **context,
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay_seconds": delay,
                },
            )
            await asyncio.sleep(delay)
            attempt += 1
