"""
Infrastructure package for stockwatch.

Centralizes database connectivity concerns (DSN composition, per-operation
connections, statement timeouts). Keep this layer focused on I/O and
resource management, decoupled from the sync logic.
"""

from stockwatch.infrastructure.db_factory import (
    ConnectionFactory,
    apply_statement_timeout,
    build_dsn,
    connection_factory,
    get_async_connection,
    get_sync_connection,
)

__all__ = [
    "ConnectionFactory",
    "apply_statement_timeout",
    "build_dsn",
    "connection_factory",
    "get_async_connection",
    "get_sync_connection",
]
