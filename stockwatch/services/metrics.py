"""
In-memory store of named numeric samples.

Bounded two ways: a sample cap (oldest evicted first on every `record`) and a
retention period enforced by `evict_expired`, which `run_eviction` calls on a
fixed period independent of writes.
"""

from __future__ import annotations

import asyncio
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta
from itertools import islice
from typing import Callable, Deque, Dict, List, Optional

from stockwatch.domain.models import MetricSample, utcnow
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)

Clock = Callable[[], datetime]

# Metric names recorded by the scheduler and understood by the alert manager.
SYNC_DURATION_MS = "sync.duration_ms"
SYNC_FAILURE = "sync.failure"
DATA_RETRIEVAL_DURATION_MS = "data_retrieval.duration_ms"
TRANSMISSION_DURATION_MS = "transmission.duration_ms"
RECORDS_SYNCED = "records_synced"
FAILED_BATCHES = "failed_batches"
PENDING_CHANGES = "pending_changes"
CPU_USAGE_PERCENT = "cpu_usage_percent"
MEMORY_USAGE_MB = "memory_usage_mb"


def _average_by_name(samples: List[MetricSample]) -> Dict[str, float]:
    grouped: Dict[str, List[float]] = defaultdict(list)
    for sample in samples:
        grouped[sample.name].append(sample.value)
    return {name: sum(values) / len(values) for name, values in grouped.items()}


class MetricsStore:
    def __init__(
        self,
        max_samples: int = 10_000,
        retention: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be positive")
        self.max_samples = max_samples
        self.retention = retention
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: Deque[MetricSample] = deque()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def record(self, name: str, value: float, timestamp: Optional[datetime] = None) -> None:
        sample = MetricSample(name=name, value=float(value), timestamp=timestamp or self._clock())
        with self._lock:
            self._samples.append(sample)
            while len(self._samples) > self.max_samples:
                self._samples.popleft()
        log.debug(f"Recorded metric: {name} = {value}")

    def averages_over(self, window: timedelta) -> Dict[str, float]:
        """Average per name of the samples taken within `window` of now."""
        cutoff = self._clock() - window
        with self._lock:
            in_window = [s for s in self._samples if s.timestamp >= cutoff]
        return _average_by_name(in_window)

    def recent_averages(self, n: int) -> Dict[str, float]:
        """Average per name over the last `n` samples of all names together."""
        if n <= 0:
            return {}
        with self._lock:
            start = max(len(self._samples) - n, 0)
            tail = list(islice(self._samples, start, None))
        return _average_by_name(tail)

    def evict_expired(self) -> int:
        """Drop samples older than the retention period; returns how many."""
        cutoff = self._clock() - self.retention
        with self._lock:
            before = len(self._samples)
            self._samples = deque(s for s in self._samples if s.timestamp >= cutoff)
            removed = before - len(self._samples)
        log.debug("Cleaned up old metrics", extra={"removed": removed})
        return removed

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
        log.info("Performance metrics reset")

    async def run_eviction(self, period: timedelta) -> None:
        """Evict expired samples every `period` until cancelled."""
        seconds = period.total_seconds()
        while True:
            await asyncio.sleep(seconds)
            try:
                self.evict_expired()
            except Exception:
                log.exception("Metric eviction failed; retrying next period")


__all__ = [
    "CPU_USAGE_PERCENT",
    "DATA_RETRIEVAL_DURATION_MS",
    "FAILED_BATCHES",
    "MEMORY_USAGE_MB",
    "MetricsStore",
    "PENDING_CHANGES",
    "RECORDS_SYNCED",
    "SYNC_DURATION_MS",
    "SYNC_FAILURE",
    "TRANSMISSION_DURATION_MS",
]
