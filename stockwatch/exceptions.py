"""
Error taxonomy for stockwatch.

Transport failures are not represented here: `BatchTransport.send` reports
ordinary delivery failures as `False`, and shutdown surfaces as
`asyncio.CancelledError`.
"""

from __future__ import annotations


class StockWatchError(Exception):
    """Base exception for all stockwatch errors."""


class DataAccessError(StockWatchError):
    """Raised when a catalog query fails."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class QueryTimeoutError(DataAccessError):
    """Raised when a catalog query exceeds the configured statement timeout."""


class StorageError(StockWatchError):
    """Raised when the change-tracking store cannot be reached or updated."""


__all__ = [
    "StockWatchError",
    "DataAccessError",
    "QueryTimeoutError",
    "StorageError",
]
