"""
Role interfaces for the services the scheduler is wired with.

Each role has exactly one production implementation; the protocols exist so
the scheduler can be constructed with in-memory stand-ins in tests and so the
collaborators it relies on are spelled out in one place.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Protocol, Sequence, runtime_checkable

from stockwatch.domain.models import ChangeEvent, ChangeOperation, Record, SyncCursor

if TYPE_CHECKING:
    from stockwatch.services.load_monitor import LoadSnapshot


@runtime_checkable
class ChangeLog(Protocol):
    """
    Persistent log of per-record change events plus the sync cursor.
    """

    async def ensure_schema(self) -> None:
        """Create the change-log and cursor storage if absent."""
        ...

    async def record_change(self, code: int, operation: ChangeOperation | str) -> None:
        """Append a change event; never raises."""
        ...

    async def pending_changes(self) -> List[ChangeEvent]:
        """Return unprocessed events, oldest first."""
        ...

    async def mark_processed(self, ids: Iterable[int]) -> None:
        """Flag the given events as processed, atomically."""
        ...

    async def get_cursor(self) -> SyncCursor:
        ...

    async def set_cursor(self, sync_time: datetime, count: int) -> None:
        ...


@runtime_checkable
class RecordSource(Protocol):
    """
    Read access to the catalog records being synchronized.
    """

    async def fetch_all(self) -> List[Record]:
        ...

    async def fetch_by_keys(self, keys: Iterable[int]) -> List[Record]:
        ...

    async def count(self) -> int:
        ...


@runtime_checkable
class RecordSender(Protocol):
    """
    Delivery of one batch of records to the downstream endpoint.

    Ordinary delivery failures are reported as False, never raised.
    """

    async def send(self, records: Sequence[Record]) -> bool:
        ...


@runtime_checkable
class LoadAdvisor(Protocol):
    """
    Source of the load readings and the load-adjusted polling delay.
    """

    async def snapshot(self) -> LoadSnapshot:
        ...


__all__ = [
    "ChangeLog",
    "LoadAdvisor",
    "RecordSender",
    "RecordSource",
]
