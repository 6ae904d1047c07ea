"""
Database connection factory utilities for stockwatch.

Connections are opened per operation and released right after: the services
never hold a session across scheduler ticks. Connection attempts retry on
transient failures using tenacity.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Awaitable, Callable, Optional

import psycopg
from psycopg import AsyncConnection, Connection
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from stockwatch.config import Settings, get_settings

# Zero-argument coroutine factory handed to the repositories.
ConnectionFactory = Callable[[], Awaitable[AsyncConnection]]


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_sync_connection(settings: Optional[Settings] = None) -> Connection:
    """
    Acquire a dedicated synchronous connection with automatic retry.

    Used by maintenance scripts; the sync loop itself is async.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    settings = settings or get_settings()
    return psycopg.connect(build_dsn(settings), connect_timeout=settings.db_connect_timeout_s)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
async def get_async_connection(settings: Optional[Settings] = None) -> AsyncConnection:
    """
    Acquire an asynchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection
    errors. The caller owns the connection and should use it as an async
    context manager so it is committed and closed on exit.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    settings = settings or get_settings()
    return await AsyncConnection.connect(
        build_dsn(settings), connect_timeout=settings.db_connect_timeout_s
    )


def connection_factory(settings: Settings) -> ConnectionFactory:
    """Bind settings into a zero-argument connection factory."""
    return partial(get_async_connection, settings)


async def apply_statement_timeout(cursor: Any, timeout_ms: int) -> None:
    """
    Apply a server-side statement timeout to the cursor's session.

    A value of 0 leaves the server default untouched. Statements exceeding
    the timeout fail with `psycopg.errors.QueryCanceled`.
    """
    if timeout_ms <= 0:
        return
    await cursor.execute(
        "SELECT set_config('statement_timeout', %s, false)", (str(int(timeout_ms)),)
    )


__all__ = [
    "ConnectionFactory",
    "apply_statement_timeout",
    "build_dsn",
    "connection_factory",
    "get_async_connection",
    "get_sync_connection",
]
