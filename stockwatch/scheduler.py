"""
Scheduler for the poll -> detect -> batch -> transmit loop.

Usage (example from the CLI):
    from stockwatch.scheduler import SyncScheduler

    scheduler = SyncScheduler.from_settings(get_settings())
    try:
        await scheduler.run_forever()
    finally:
        await scheduler.aclose()

One cycle runs to completion before the next tick is considered, batches go
out one at a time, and every wait is an asyncio suspension point so that
cancelling the task stops the loop promptly.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from stockwatch.config import Settings
from stockwatch.domain.models import ChangeEvent, Record, utcnow
from stockwatch.exceptions import StorageError
from stockwatch.infrastructure.db_factory import connection_factory
from stockwatch.services import metrics as metric_names
from stockwatch.services.abstract import ChangeLog, LoadAdvisor, RecordSender, RecordSource
from stockwatch.services.alerting import SYNC_FAILURE, AlertManager
from stockwatch.services.change_tracking import ChangeTrackingStore
from stockwatch.services.data_access import CatalogRepository
from stockwatch.services.load_monitor import LoadMonitor
from stockwatch.services.metrics import MetricsStore
from stockwatch.services.transport import BatchTransport
from stockwatch.utils.batching import partition
from stockwatch.utils.logging import get_logger
from stockwatch.utils.profiler import profile_block

log = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    TICKING = "ticking"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Outcome of one synchronization cycle."""

    mode: str
    records: int = 0
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    changes_pending: int = 0
    changes_acknowledged: int = 0
    retrieval_ms: float = 0.0
    transmission_ms: float = 0.0
    duration_ms: float = 0.0
    next_interval_seconds: Optional[float] = None


def within_business_hours(now: datetime, start_hour: int, end_hour: int) -> bool:
    """
    Whether `now` falls in [start_hour, end_hour).

    A window with start_hour > end_hour wraps past midnight; equal bounds mean
    the window is open all day.
    """
    if start_hour == end_hour:
        return True
    if start_hour < end_hour:
        return start_hour <= now.hour < end_hour
    return now.hour >= start_hour or now.hour < end_hour


class SyncScheduler:
    """
    Owns the cadence and orchestrates one synchronization cycle per tick.

    All collaborators are injected; `from_settings` wires the production ones.
    """

    def __init__(
        self,
        settings: Settings,
        changes: ChangeLog,
        records: RecordSource,
        sender: RecordSender,
        metrics: MetricsStore,
        alerts: AlertManager,
        load: LoadAdvisor,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.changes = changes
        self.records = records
        self.sender = sender
        self.metrics = metrics
        self.alerts = alerts
        self.load = load
        self._sleep = sleep
        self._clock = clock
        self.interval: float = settings.polling_interval_seconds
        self.state = SchedulerState.IDLE
        self.last_result: Optional[CycleResult] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncScheduler":
        connect = connection_factory(settings)
        repository = CatalogRepository(
            connect,
            statement_timeout_ms=settings.db_statement_timeout_ms,
            lookup_chunk_size=settings.lookup_chunk_size,
        )
        headers = {}
        if settings.api_auth_header_name and settings.api_auth_header_value:
            headers[settings.api_auth_header_name] = settings.api_auth_header_value
        transport = BatchTransport(
            settings.api_endpoint,
            max_retries=settings.max_retries,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            compression_enabled=settings.compression_enabled,
            compression_threshold_records=settings.compression_threshold_records,
            timeout_seconds=settings.api_timeout_seconds,
            headers=headers,
        )
        load = LoadMonitor(
            repository,
            base_interval_seconds=settings.polling_interval_seconds,
            cpu_threshold_percent=settings.cpu_threshold_percent,
            memory_threshold_mb=settings.memory_threshold_mb,
            min_delay_seconds=settings.min_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            max_query_time_ms=settings.max_query_time_ms,
        )
        metrics = MetricsStore(
            max_samples=settings.metrics_max_samples,
            retention=timedelta(hours=settings.metrics_retention_hours),
        )
        return cls(
            settings=settings,
            changes=ChangeTrackingStore(connect),
            records=repository,
            sender=transport,
            metrics=metrics,
            alerts=AlertManager.from_settings(settings),
            load=load,
        )

    async def aclose(self) -> None:
        close = getattr(self.sender, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------ loop

    async def ensure_schema(self) -> None:
        """Create the tracking tables, retrying before giving up for good."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.schema_retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            retry=retry_if_exception_type(StorageError),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            await retrying(self.changes.ensure_schema)
        except StorageError:
            log.critical(
                "Change-tracking schema unavailable; refusing to start",
                extra={"attempts": self.settings.schema_retry_attempts},
            )
            raise

    def in_business_hours(self) -> bool:
        if not self.settings.business_hours_enabled:
            return True
        return within_business_hours(
            self._clock(),
            self.settings.business_hours_start,
            self.settings.business_hours_end,
        )

    async def run_forever(self) -> None:
        """
        Tick until cancelled.

        A failing cycle propagates out of this method so the process
        supervisor can restart the service.
        """
        log.info(
            "[WATCHER START] Product watcher running",
            extra={
                "interval_seconds": self.interval,
                "change_tracking": self.settings.change_tracking_enabled,
                "adaptive_interval": self.settings.adaptive_interval_enabled,
            },
        )
        if self.settings.change_tracking_enabled:
            await self.ensure_schema()

        eviction = asyncio.create_task(
            self.metrics.run_eviction(timedelta(minutes=self.settings.metrics_cleanup_minutes)),
            name="metrics-eviction",
        )
        try:
            while True:
                self.state = SchedulerState.IDLE
                await self._sleep(self.interval)
                self.state = SchedulerState.TICKING
                if not self.in_business_hours():
                    log.debug("Outside business hours; skipping cycle")
                    continue
                self.state = SchedulerState.RUNNING
                await self.run_cycle()
        except asyncio.CancelledError:
            self.state = SchedulerState.STOPPED
            log.info("[WATCHER STOP] Product watcher stopped")
            raise
        except Exception:
            self.state = SchedulerState.FAILED
            raise
        finally:
            eviction.cancel()
            await asyncio.gather(eviction, return_exceptions=True)

    # ----------------------------------------------------------------- cycle

    async def run_cycle(self) -> CycleResult:
        """
        Run one synchronization cycle.

        Any exception is logged, measured and alerted on, then re-raised.
        """
        started = time.perf_counter()
        try:
            result = await self._run_cycle(started)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            log.exception(
                "[SYNC FAILED] Synchronization cycle failed",
                extra={"duration_ms": round(duration_ms, 1), "error_type": type(exc).__name__},
            )
            self.metrics.record(metric_names.SYNC_FAILURE, 1)
            self.alerts.notify(
                SYNC_FAILURE,
                f"Synchronization cycle failed: {exc}",
                {"duration_ms": round(duration_ms, 1), "error_type": type(exc).__name__},
            )
            raise
        self.last_result = result
        return result

    async def _resolve_candidates(self) -> Tuple[List[ChangeEvent], List[Record]]:
        if self.settings.change_tracking_enabled:
            events = await self.changes.pending_changes()
            if events:
                codes = {event.code for event in events}
                records = await self.records.fetch_by_keys(codes)
                log.info(
                    f"Resolved {len(events)} change event(s) to {len(records)} record(s)",
                    extra={"events": len(events), "keys": len(codes), "records": len(records)},
                )
                return events, records
        records = await self.records.fetch_all()
        log.debug("No tracked changes; using full snapshot", extra={"records": len(records)})
        return [], records

    async def _send_batches(self, batches: Sequence[List[Record]]) -> List[bool]:
        outcomes: List[bool] = []
        pause = self.settings.batch_pause_ms / 1000.0
        for index, batch in enumerate(batches, start=1):
            if index > 1 and pause > 0:
                await self._sleep(pause)
            ok = await self.sender.send(batch)
            outcomes.append(ok)
            if ok:
                log.debug(f"Batch {index}/{len(batches)} sent", extra={"batch": index, "records": len(batch)})
            else:
                log.warning(
                    f"Batch {index}/{len(batches)} failed",
                    extra={"batch": index, "records": len(batch)},
                )
        return outcomes

    def _acknowledgeable(
        self,
        events: Sequence[ChangeEvent],
        records: Sequence[Record],
        delivered: Set[int],
    ) -> List[int]:
        # Keys with no record left (deletes) have nothing to deliver.
        found = {record.code for record in records}
        return [event.id for event in events if event.code in delivered or event.code not in found]

    async def _run_cycle(self, started: float) -> CycleResult:
        with profile_block("data_retrieval") as retrieval:
            events, records = await self._resolve_candidates()

        result = CycleResult(
            mode="changes" if events else "snapshot",
            records=len(records),
            changes_pending=len(events),
            retrieval_ms=retrieval.duration_ms,
        )

        ack_on_delivery = self.settings.change_tracking_ack_on_delivery
        if events and not ack_on_delivery:
            await self.changes.mark_processed(event.id for event in events)
            result.changes_acknowledged = len(events)

        batches = partition(records, self.settings.batch_size)
        with profile_block("transmission") as transmission:
            outcomes = await self._send_batches(batches)
        result.transmission_ms = transmission.duration_ms
        result.batches_total = len(batches)
        result.batches_succeeded = sum(1 for ok in outcomes if ok)
        result.batches_failed = result.batches_total - result.batches_succeeded

        if events and ack_on_delivery:
            delivered = {r.code for batch, ok in zip(batches, outcomes) if ok for r in batch}
            ack_ids = self._acknowledgeable(events, records, delivered)
            await self.changes.mark_processed(ack_ids)
            result.changes_acknowledged = len(ack_ids)

        if self.settings.change_tracking_enabled:
            await self.changes.set_cursor(utcnow(), len(records))

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._record_cycle_metrics(result)
        log.info(
            f"[SYNC COMPLETE] {result.records} records in {result.batches_total} batch(es)",
            extra={
                "mode": result.mode,
                "records": result.records,
                "batches_succeeded": result.batches_succeeded,
                "batches_failed": result.batches_failed,
                "changes_acknowledged": result.changes_acknowledged,
                "duration_ms": round(result.duration_ms, 1),
            },
        )

        self.alerts.evaluate(self.metrics.recent_averages(self.settings.alert_metric_window))

        if self.settings.adaptive_interval_enabled:
            await self._adapt_interval()
            result.next_interval_seconds = self.interval
        return result

    def _record_cycle_metrics(self, result: CycleResult) -> None:
        record = self.metrics.record
        record(metric_names.DATA_RETRIEVAL_DURATION_MS, result.retrieval_ms)
        record(metric_names.TRANSMISSION_DURATION_MS, result.transmission_ms)
        record(metric_names.SYNC_DURATION_MS, result.duration_ms)
        record(metric_names.RECORDS_SYNCED, result.records)
        record(metric_names.FAILED_BATCHES, result.batches_failed)
        record(metric_names.PENDING_CHANGES, result.changes_pending)
        record(metric_names.SYNC_FAILURE, 0)

    async def _adapt_interval(self) -> None:
        snapshot = await self.load.snapshot()
        self.metrics.record(metric_names.CPU_USAGE_PERCENT, snapshot.cpu_percent)
        self.metrics.record(metric_names.MEMORY_USAGE_MB, snapshot.memory_mb)
        if snapshot.high_load:
            log.warning(
                "System under high load",
                extra={"cpu_percent": round(snapshot.cpu_percent, 1), "memory_mb": round(snapshot.memory_mb, 1)},
            )
        new_interval = snapshot.delay.total_seconds()
        if new_interval != self.interval:
            log.info(
                f"Polling interval adjusted to {new_interval:.1f}s",
                extra={"previous_seconds": self.interval, "interval_seconds": new_interval},
            )
        self.interval = new_interval


__all__ = [
    "CycleResult",
    "SchedulerState",
    "SyncScheduler",
    "within_business_hours",
]
