"""
stockwatch - change-driven catalog synchronization for the Busy accounting database.

The package polls the item master and transaction tables, works out which
records changed, and pushes them in batches to a downstream HTTP endpoint:

- Trigger-fed change log with a persistent sync cursor
- Chunked keyed lookups and full snapshots of the catalog
- Batched, optionally gzip-compressed delivery with retry and backoff
- Load-adaptive polling interval and business-hours gating
- In-memory metrics with threshold alerts
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from stockwatch.config import Settings, get_settings
from stockwatch.domain.models import ChangeEvent, ChangeOperation, Record, SyncCursor
from stockwatch.exceptions import DataAccessError, QueryTimeoutError, StockWatchError, StorageError
from stockwatch.scheduler import CycleResult, SchedulerState, SyncScheduler
from stockwatch.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Domain
    "ChangeEvent",
    "ChangeOperation",
    "Record",
    "SyncCursor",
    # Errors
    "DataAccessError",
    "QueryTimeoutError",
    "StockWatchError",
    "StorageError",
    # Scheduling
    "CycleResult",
    "SchedulerState",
    "SyncScheduler",
    # Logging
    "configure_logging",
    "get_logger",
]
