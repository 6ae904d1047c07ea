from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

import pytest

from stockwatch.domain.models import ChangeEvent, ChangeOperation, Record, SyncCursor
from stockwatch.exceptions import DataAccessError, StorageError
from stockwatch.scheduler import SchedulerState, SyncScheduler, within_business_hours
from stockwatch.services import metrics as metric_names
from stockwatch.services.alerting import SYNC_FAILURE, AlertManager, thresholds_from_settings
from stockwatch.services.load_monitor import LoadSnapshot
from stockwatch.services.metrics import MetricsStore

CHANGED_AT = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _record(code: int) -> Record:
    return Record(code=code, item_name=f"Item {code}", total_available_stock=Decimal("1"))


class _FakeChangeLog:
    def __init__(self, events: Sequence[ChangeEvent] = (), schema_error: Exception | None = None) -> None:
        self.events = list(events)
        self.schema_error = schema_error
        self.schema_calls = 0
        self.processed: list[list[int]] = []
        self.cursor = SyncCursor()
        self.calls = 0

    async def ensure_schema(self) -> None:
        self.schema_calls += 1
        if self.schema_error is not None:
            raise self.schema_error

    async def record_change(self, code: int, operation: Any) -> None:
        self.calls += 1

    async def pending_changes(self) -> list[ChangeEvent]:
        self.calls += 1
        return [e for e in self.events if not any(e.id in ids for ids in self.processed)]

    async def mark_processed(self, ids: Iterable[int]) -> None:
        self.calls += 1
        self.processed.append(list(ids))

    async def get_cursor(self) -> SyncCursor:
        self.calls += 1
        return self.cursor

    async def set_cursor(self, sync_time: datetime, count: int) -> None:
        self.calls += 1
        self.cursor = SyncCursor(last_sync_time=sync_time, last_sync_count=count)


class _FakeRecords:
    def __init__(self, records: Sequence[Record] = (), error: Exception | None = None) -> None:
        self.records = list(records)
        self.error = error
        self.full_reads = 0
        self.keyed_reads: list[set[int]] = []

    async def fetch_all(self) -> list[Record]:
        self.full_reads += 1
        if self.error is not None:
            raise self.error
        return list(self.records)

    async def fetch_by_keys(self, keys: Iterable[int]) -> list[Record]:
        wanted = set(keys)
        self.keyed_reads.append(wanted)
        return [r for r in self.records if r.code in wanted]

    async def count(self) -> int:
        return len(self.records)


class _FakeSender:
    """Delivers batches; the 1-based batch numbers in `failing` fail."""

    def __init__(self, failing: Iterable[int] = ()) -> None:
        self.failing = set(failing)
        self.batches: list[list[int]] = []

    async def send(self, records: Sequence[Record]) -> bool:
        self.batches.append([r.code for r in records])
        return len(self.batches) not in self.failing


class _FakeLoad:
    def __init__(self, delay_seconds: float = 75.0, high_load: bool = True) -> None:
        self.delay_seconds = delay_seconds
        self.high_load = high_load

    async def snapshot(self) -> LoadSnapshot:
        return LoadSnapshot(
            cpu_percent=85.0,
            memory_mb=200.0,
            database_load=30.0,
            high_load=self.high_load,
            delay=timedelta(seconds=self.delay_seconds),
        )


class _Sleeper:
    """Records sleeps; raises CancelledError once `cancel_after` sleeps happened."""

    def __init__(self, cancel_after: int | None = None) -> None:
        self.calls: list[float] = []
        self.cancel_after = cancel_after

    async def __call__(self, seconds: float) -> None:
        if self.cancel_after is not None and len(self.calls) >= self.cancel_after:
            raise asyncio.CancelledError()
        self.calls.append(seconds)


def _scheduler(
    settings,
    changes: _FakeChangeLog | None = None,
    records: _FakeRecords | None = None,
    sender: _FakeSender | None = None,
    load: _FakeLoad | None = None,
    sleep: _Sleeper | None = None,
    clock=datetime.now,
) -> SyncScheduler:
    return SyncScheduler(
        settings=settings,
        changes=changes or _FakeChangeLog(),
        records=records or _FakeRecords(),
        sender=sender or _FakeSender(),
        metrics=MetricsStore(),
        alerts=AlertManager(thresholds_from_settings(settings)),
        load=load or _FakeLoad(),
        sleep=sleep or _Sleeper(),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_snapshot_cycle_batches_and_advances_cursor_despite_failed_batch(make_settings) -> None:
    changes = _FakeChangeLog()
    sender = _FakeSender(failing={2})
    sleeper = _Sleeper()
    scheduler = _scheduler(
        make_settings(batch_size=200, batch_pause_ms=100),
        changes=changes,
        records=_FakeRecords([_record(code) for code in range(1, 451)]),
        sender=sender,
        sleep=sleeper,
    )

    result = await scheduler.run_cycle()

    assert [len(batch) for batch in sender.batches] == [200, 200, 50]
    assert sender.batches[0][0] == 1 and sender.batches[2][-1] == 450
    assert result.mode == "snapshot"
    assert (result.batches_succeeded, result.batches_failed) == (2, 1)
    assert changes.cursor.last_sync_count == 450
    assert not changes.cursor.never_synced
    # Paced between batches, not before the first.
    assert sleeper.calls == [0.1, 0.1]
    assert scheduler.last_result is result


@pytest.mark.asyncio
async def test_change_cycle_acknowledges_events_for_deleted_keys(make_settings) -> None:
    events = [
        ChangeEvent(id=1, code=10, operation=ChangeOperation.UPDATE, timestamp=CHANGED_AT),
        ChangeEvent(id=2, code=20, operation=ChangeOperation.INSERT, timestamp=CHANGED_AT),
        ChangeEvent(id=3, code=30, operation=ChangeOperation.DELETE, timestamp=CHANGED_AT),
    ]
    changes = _FakeChangeLog(events)
    records = _FakeRecords([_record(10), _record(20), _record(99)])
    sender = _FakeSender()
    scheduler = _scheduler(make_settings(), changes=changes, records=records, sender=sender)

    result = await scheduler.run_cycle()

    assert records.keyed_reads == [{10, 20, 30}]
    assert records.full_reads == 0
    assert sender.batches == [[10, 20]]
    assert sorted(changes.processed[0]) == [1, 2, 3]
    assert result.mode == "changes"
    assert result.changes_pending == 3
    assert result.changes_acknowledged == 3
    assert changes.cursor.last_sync_count == 2


@pytest.mark.asyncio
async def test_events_of_undelivered_batches_stay_pending(make_settings) -> None:
    events = [
        ChangeEvent(id=1, code=10, operation=ChangeOperation.UPDATE, timestamp=CHANGED_AT),
        ChangeEvent(id=2, code=20, operation=ChangeOperation.UPDATE, timestamp=CHANGED_AT),
        ChangeEvent(id=3, code=30, operation=ChangeOperation.DELETE, timestamp=CHANGED_AT),
    ]
    changes = _FakeChangeLog(events)
    scheduler = _scheduler(
        make_settings(batch_size=1),
        changes=changes,
        records=_FakeRecords([_record(10), _record(20)]),
        sender=_FakeSender(failing={2}),
    )

    result = await scheduler.run_cycle()

    assert sorted(changes.processed[0]) == [1, 3]
    assert result.changes_acknowledged == 2
    assert [e.id for e in await changes.pending_changes()] == [2]


@pytest.mark.asyncio
async def test_ack_before_delivery_marks_everything_processed(make_settings) -> None:
    events = [ChangeEvent(id=5, code=10, operation=ChangeOperation.UPDATE, timestamp=CHANGED_AT)]
    changes = _FakeChangeLog(events)
    scheduler = _scheduler(
        make_settings(change_tracking_ack_on_delivery=False),
        changes=changes,
        records=_FakeRecords([_record(10)]),
        sender=_FakeSender(failing={1}),
    )

    result = await scheduler.run_cycle()

    assert changes.processed == [[5]]
    assert result.batches_failed == 1


@pytest.mark.asyncio
async def test_no_pending_changes_falls_back_to_full_snapshot(make_settings) -> None:
    records = _FakeRecords([_record(1), _record(2)])
    sender = _FakeSender()
    scheduler = _scheduler(make_settings(), records=records, sender=sender)

    result = await scheduler.run_cycle()

    assert records.full_reads == 1
    assert records.keyed_reads == []
    assert sender.batches == [[1, 2]]
    assert result.changes_acknowledged == 0


@pytest.mark.asyncio
async def test_disabled_change_tracking_never_touches_the_store(make_settings) -> None:
    changes = _FakeChangeLog()
    scheduler = _scheduler(
        make_settings(change_tracking_enabled=False),
        changes=changes,
        records=_FakeRecords([_record(1)]),
    )

    await scheduler.run_cycle()

    assert changes.calls == 0
    assert changes.schema_calls == 0


@pytest.mark.asyncio
async def test_empty_catalog_sends_nothing(make_settings) -> None:
    sender = _FakeSender()
    changes = _FakeChangeLog()
    scheduler = _scheduler(make_settings(), changes=changes, sender=sender)

    result = await scheduler.run_cycle()

    assert sender.batches == []
    assert result.batches_total == 0
    assert changes.cursor.last_sync_count == 0


@pytest.mark.asyncio
async def test_cycle_records_metrics(make_settings) -> None:
    scheduler = _scheduler(make_settings(), records=_FakeRecords([_record(1), _record(2)]))

    await scheduler.run_cycle()

    averages = scheduler.metrics.recent_averages(50)
    assert averages[metric_names.RECORDS_SYNCED] == 2
    assert averages[metric_names.FAILED_BATCHES] == 0
    assert averages[metric_names.SYNC_FAILURE] == 0
    assert metric_names.SYNC_DURATION_MS in averages


@pytest.mark.asyncio
async def test_failing_cycle_alerts_and_reraises(make_settings) -> None:
    scheduler = _scheduler(
        make_settings(),
        records=_FakeRecords(error=DataAccessError("fetch_all failed", operation="fetch_all")),
    )

    with pytest.raises(DataAccessError):
        await scheduler.run_cycle()

    assert scheduler.metrics.recent_averages(1) == {metric_names.SYNC_FAILURE: 1.0}
    (alert,) = scheduler.alerts.history
    assert alert.type == SYNC_FAILURE
    assert alert.context["error_type"] == "DataAccessError"
    assert scheduler.last_result is None


@pytest.mark.asyncio
async def test_adaptive_interval_follows_load_snapshot(make_settings) -> None:
    scheduler = _scheduler(
        make_settings(adaptive_interval_enabled=True, polling_interval_seconds=30),
        records=_FakeRecords([_record(1)]),
        load=_FakeLoad(delay_seconds=75.0),
    )
    assert scheduler.interval == 30

    result = await scheduler.run_cycle()

    assert scheduler.interval == 75.0
    assert result.next_interval_seconds == 75.0
    assert scheduler.metrics.recent_averages(2) == {
        metric_names.CPU_USAGE_PERCENT: 85.0,
        metric_names.MEMORY_USAGE_MB: 200.0,
    }


@pytest.mark.asyncio
async def test_fixed_interval_when_adaptive_disabled(make_settings) -> None:
    scheduler = _scheduler(make_settings(polling_interval_seconds=45), load=_FakeLoad(delay_seconds=300))

    result = await scheduler.run_cycle()

    assert scheduler.interval == 45
    assert result.next_interval_seconds is None


@pytest.mark.asyncio
async def test_ensure_schema_retries_then_gives_up(make_settings) -> None:
    changes = _FakeChangeLog(schema_error=StorageError("database unreachable"))
    sleeper = _Sleeper()
    scheduler = _scheduler(make_settings(schema_retry_attempts=3), changes=changes, sleep=sleeper)

    with pytest.raises(StorageError):
        await scheduler.ensure_schema()

    assert changes.schema_calls == 3
    assert len(sleeper.calls) == 2


@pytest.mark.asyncio
async def test_run_forever_stops_on_cancellation(make_settings) -> None:
    records = _FakeRecords([_record(1)])
    sleeper = _Sleeper(cancel_after=2)
    scheduler = _scheduler(make_settings(polling_interval_seconds=5), records=records, sleep=sleeper)

    with pytest.raises(asyncio.CancelledError):
        await scheduler.run_forever()

    assert scheduler.state is SchedulerState.STOPPED
    assert records.full_reads == 2
    assert sleeper.calls == [5, 5]


@pytest.mark.asyncio
async def test_run_forever_skips_cycles_outside_business_hours(make_settings) -> None:
    records = _FakeRecords([_record(1)])
    scheduler = _scheduler(
        make_settings(business_hours_enabled=True, business_hours_start=9, business_hours_end=18),
        records=records,
        sleep=_Sleeper(cancel_after=3),
        clock=lambda: datetime(2024, 5, 1, 22, 15),
    )

    with pytest.raises(asyncio.CancelledError):
        await scheduler.run_forever()

    assert records.full_reads == 0


@pytest.mark.asyncio
async def test_run_forever_propagates_cycle_failure(make_settings) -> None:
    scheduler = _scheduler(
        make_settings(),
        records=_FakeRecords(error=DataAccessError("boom")),
    )

    with pytest.raises(DataAccessError):
        await scheduler.run_forever()

    assert scheduler.state is SchedulerState.FAILED


@pytest.mark.asyncio
async def test_run_forever_refuses_to_start_without_schema(make_settings) -> None:
    changes = _FakeChangeLog(schema_error=StorageError("nope"))
    records = _FakeRecords([_record(1)])
    scheduler = _scheduler(make_settings(schema_retry_attempts=2), changes=changes, records=records)

    with pytest.raises(StorageError):
        await scheduler.run_forever()

    assert records.full_reads == 0


@pytest.mark.parametrize(
    ("hour", "start", "end", "expected"),
    [
        (9, 9, 18, True),
        (17, 9, 18, True),
        (18, 9, 18, False),
        (3, 9, 18, False),
        (23, 22, 6, True),
        (5, 22, 6, True),
        (12, 22, 6, False),
        (12, 0, 0, True),
    ],
)
def test_within_business_hours(hour: int, start: int, end: int, expected: bool) -> None:
    assert within_business_hours(datetime(2024, 5, 1, hour, 30), start, end) is expected
