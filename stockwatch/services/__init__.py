"""
Services package for stockwatch.

Re-exports the role interfaces and the concrete service classes the scheduler
is wired with, so callers can import from `stockwatch.services` directly.
"""

from stockwatch.services.abstract import (
    ChangeLog,
    LoadAdvisor,
    RecordSender,
    RecordSource,
)
from stockwatch.services.alerting import AlertManager
from stockwatch.services.change_tracking import ChangeTrackingStore
from stockwatch.services.data_access import CatalogRepository
from stockwatch.services.load_monitor import LoadMonitor, LoadSnapshot
from stockwatch.services.metrics import MetricsStore
from stockwatch.services.transport import BatchTransport

__all__ = [
    # Interfaces
    "ChangeLog",
    "LoadAdvisor",
    "RecordSender",
    "RecordSource",
    # Implementations
    "AlertManager",
    "BatchTransport",
    "CatalogRepository",
    "ChangeTrackingStore",
    "LoadMonitor",
    "LoadSnapshot",
    "MetricsStore",
]
