"""
Phase timing utilities for stockwatch.

The scheduler times the retrieval and transmission phases of every cycle and
feeds the durations into the metrics store. `profile_block` measures
wall-clock time with `perf_counter` and, when psutil can read the process,
the resident-memory delta across the block.

Usage:
    from stockwatch.utils.profiler import profile_block

    with profile_block("data_retrieval") as stats:
        records = await repository.fetch_all()

    metrics.record("data_retrieval.duration_ms", stats.duration_ms)
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for the measurements of one profiled block.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    rss_delta_bytes: Optional[int] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        return self.duration_seconds * 1000.0


def _current_rss(process: Optional[psutil.Process]) -> Optional[int]:
    if process is None:
        return None
    try:
        return process.memory_info().rss
    except psutil.Error:
        return None


@contextlib.contextmanager
def profile_block(label: str, track_memory: bool = True) -> Generator[ProfileStats, None, None]:
    """
    Context manager timing a block of (possibly async) code.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    track_memory : bool
        Whether to record the RSS difference between entry and exit.

    Notes
    -----
    The stats are filled in on exit, including when the block raises, so the
    caller can still log how long a failing phase ran.
    """
    stats = ProfileStats(label=label)
    process: Optional[psutil.Process] = None
    if track_memory:
        try:
            process = psutil.Process()
        except psutil.Error:
            process = None
    rss_before = _current_rss(process)

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        rss_after = _current_rss(process)
        if rss_before is not None and rss_after is not None:
            stats.rss_delta_bytes = rss_after - rss_before


__all__ = ["ProfileStats", "profile_block"]
