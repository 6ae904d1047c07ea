"""
Host and database load sampling, and the adaptive polling delay.

The delay is the base polling interval scaled by one multiplier per load
signal (catalog size, process CPU, process memory). The multipliers compound,
so simultaneous pressure on several signals backs off further than any one of
them would alone.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import psutil

from stockwatch.domain.models import utcnow
from stockwatch.exceptions import DataAccessError
from stockwatch.services.abstract import RecordSource
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)

CPU_SAMPLE_WINDOW_SECONDS = 0.5
HISTORY_LENGTH = 10
UNKNOWN_DATABASE_LOAD = 50.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class LoadSnapshot:
    cpu_percent: float
    memory_mb: float
    database_load: float
    high_load: bool
    delay: timedelta
    taken_at: datetime = field(default_factory=utcnow)


def database_load_from_count(record_count: int) -> float:
    """Map the catalog size onto a 0-100 load estimate."""
    if record_count > 10_000:
        return 90.0
    if record_count > 5_000:
        return 70.0
    if record_count > 1_000:
        return 40.0
    return 20.0


def _database_multiplier(database_load: float) -> float:
    if database_load > 80:
        return 3.0
    if database_load > 60:
        return 2.0
    if database_load > 40:
        return 1.5
    return 1.0


def _cpu_multiplier(cpu_percent: float) -> float:
    if cpu_percent > 80:
        return 2.5
    if cpu_percent > 60:
        return 1.5
    if cpu_percent > 40:
        return 1.2
    return 1.0


def _memory_multiplier(memory_mb: float, memory_threshold_mb: float) -> float:
    if memory_mb > memory_threshold_mb * 0.9:
        return 2.0
    if memory_mb > memory_threshold_mb * 0.7:
        return 1.5
    return 1.0


def compute_recommended_delay(
    base_interval_seconds: float,
    cpu_percent: float,
    memory_mb: float,
    database_load: float,
    memory_threshold_mb: float,
    min_delay_seconds: float,
    max_delay_seconds: float,
) -> timedelta:
    """
    Scale the base interval by the compounded load multipliers and clamp it.

    Non-decreasing in each of cpu_percent, memory_mb and database_load, and
    always within [min_delay_seconds, max_delay_seconds].
    """
    multiplier = (
        _database_multiplier(database_load)
        * _cpu_multiplier(cpu_percent)
        * _memory_multiplier(memory_mb, memory_threshold_mb)
    )
    seconds = base_interval_seconds * multiplier
    seconds = min(max(seconds, min_delay_seconds), max_delay_seconds)
    return timedelta(seconds=seconds)


class LoadMonitor:
    """
    Samples the current process and the catalog size.

    Owns its rolling CPU/memory history; build one per process and hand it to
    the scheduler.
    """

    def __init__(
        self,
        records: RecordSource,
        base_interval_seconds: float = 30.0,
        cpu_threshold_percent: float = 70.0,
        memory_threshold_mb: float = 1000.0,
        min_delay_seconds: float = 10.0,
        max_delay_seconds: float = 300.0,
        max_query_time_ms: float = 5000.0,
        sample_window_seconds: float = CPU_SAMPLE_WINDOW_SECONDS,
        sleep: Sleep = asyncio.sleep,
        process: Optional[psutil.Process] = None,
    ) -> None:
        self._records = records
        self.base_interval_seconds = base_interval_seconds
        self.cpu_threshold_percent = cpu_threshold_percent
        self.memory_threshold_mb = memory_threshold_mb
        self.min_delay_seconds = min_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_query_time_ms = max_query_time_ms
        self.sample_window_seconds = sample_window_seconds
        self._sleep = sleep
        self._process = process
        self.cpu_history: Deque[float] = deque(maxlen=HISTORY_LENGTH)
        self.memory_history: Deque[float] = deque(maxlen=HISTORY_LENGTH)

    def _proc(self) -> psutil.Process:
        if self._process is None:
            self._process = psutil.Process()
        return self._process

    async def cpu_usage_percent(self) -> float:
        """
        Process CPU usage over a 500 ms window, as a share of all cores.

        Returns 0 when the process cannot be measured.
        """
        try:
            proc = self._proc()
            wall_start = time.perf_counter()
            cpu_start = sum(proc.cpu_times()[:2])
            await self._sleep(self.sample_window_seconds)
            cpu_used = sum(proc.cpu_times()[:2]) - cpu_start
            wall_elapsed = time.perf_counter() - wall_start
        except (psutil.Error, OSError):
            log.warning("Could not determine CPU usage", exc_info=True)
            return 0.0
        if wall_elapsed <= 0:
            return 0.0

        percent = cpu_used / ((os.cpu_count() or 1) * wall_elapsed) * 100.0
        self.cpu_history.append(percent)
        return percent

    async def memory_usage_mb(self) -> float:
        """Resident memory of the process in MB; 0 when unavailable."""
        try:
            rss = self._proc().memory_info().rss
        except (psutil.Error, OSError):
            log.warning("Could not determine memory usage", exc_info=True)
            return 0.0
        memory_mb = rss / (1024 * 1024)
        self.memory_history.append(memory_mb)
        return memory_mb

    async def database_load_estimate(self) -> float:
        try:
            record_count = await self._records.count()
        except DataAccessError:
            log.warning("Could not estimate database load", exc_info=True)
            return UNKNOWN_DATABASE_LOAD
        log.debug(f"Estimated database load based on {record_count} products")
        return database_load_from_count(record_count)

    def _is_high(self, cpu_percent: float, memory_mb: float) -> bool:
        return cpu_percent > self.cpu_threshold_percent or memory_mb > self.memory_threshold_mb

    async def is_under_high_load(self) -> bool:
        cpu = await self.cpu_usage_percent()
        memory = await self.memory_usage_mb()
        high = self._is_high(cpu, memory)
        log.debug(
            "System load check",
            extra={"cpu_percent": round(cpu, 1), "memory_mb": round(memory, 1), "high_load": high},
        )
        return high

    async def snapshot(self) -> LoadSnapshot:
        """Sample every signal once and derive the delay from that sample."""
        database_load = await self.database_load_estimate()
        cpu = await self.cpu_usage_percent()
        memory = await self.memory_usage_mb()
        delay = compute_recommended_delay(
            self.base_interval_seconds,
            cpu,
            memory,
            database_load,
            self.memory_threshold_mb,
            self.min_delay_seconds,
            self.max_delay_seconds,
        )
        return LoadSnapshot(
            cpu_percent=cpu,
            memory_mb=memory,
            database_load=database_load,
            high_load=self._is_high(cpu, memory),
            delay=delay,
        )

    async def recommended_delay(self) -> timedelta:
        return (await self.snapshot()).delay

    async def probe_database(self) -> Dict[str, Any]:
        """
        Time a count query and flag it against the configured query budget.
        """
        metrics: Dict[str, Any] = {}
        try:
            started = time.perf_counter()
            metrics["product_count"] = await self._records.count()
            duration_ms = (time.perf_counter() - started) * 1000
            metrics["test_query_duration_ms"] = round(duration_ms, 1)
            metrics["query_threshold_exceeded"] = duration_ms > self.max_query_time_ms
        except DataAccessError as exc:
            log.warning("Could not retrieve database server metrics", exc_info=True)
            metrics["error"] = str(exc)
        metrics["timestamp"] = utcnow().isoformat()
        return metrics


__all__ = [
    "LoadMonitor",
    "LoadSnapshot",
    "compute_recommended_delay",
    "database_load_from_count",
]
