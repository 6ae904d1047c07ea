"""
Threshold evaluation and cooldown-gated alert emission.

Alerts are written to the `stockwatch.alerts` logger at WARNING level with
their context attached as structured fields; log shipping takes it from there.
An identical (type, message) pair is emitted at most once per cooldown window.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from stockwatch.config import Settings
from stockwatch.domain.models import Alert
from stockwatch.services import metrics as metric_names
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)
alert_log = get_logger("stockwatch.alerts")

PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
SYNC_FAILURE = "SYNC_FAILURE"
HISTORY_LENGTH = 100


def thresholds_from_settings(settings: Settings) -> Dict[str, float]:
    """Static per-metric alert thresholds."""
    return {
        metric_names.SYNC_DURATION_MS: settings.alert_sync_duration_ms,
        metric_names.DATA_RETRIEVAL_DURATION_MS: settings.alert_data_retrieval_ms,
        metric_names.TRANSMISSION_DURATION_MS: settings.alert_transmission_ms,
        metric_names.SYNC_FAILURE: 0.5,
        metric_names.FAILED_BATCHES: settings.alert_failed_batches,
        metric_names.CPU_USAGE_PERCENT: settings.alert_cpu_percent,
        metric_names.MEMORY_USAGE_MB: settings.alert_memory_mb,
        metric_names.PENDING_CHANGES: settings.alert_pending_changes,
    }


class AlertManager:
    """
    Owns the thresholds table and the last-emission index used for cooldowns.
    """

    def __init__(
        self,
        thresholds: Mapping[str, float],
        cooldown: timedelta = timedelta(minutes=10),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._thresholds = dict(thresholds)
        self.cooldown_seconds = cooldown.total_seconds()
        self._clock = clock
        self._lock = threading.Lock()
        self._last_emitted: Dict[Tuple[str, str], float] = {}
        self.history: Deque[Alert] = deque(maxlen=HISTORY_LENGTH)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertManager":
        return cls(
            thresholds_from_settings(settings),
            cooldown=timedelta(minutes=settings.alert_cooldown_minutes),
        )

    def threshold_for(self, metric_name: str) -> float:
        """Threshold for `metric_name`; unknown metrics never alert."""
        return self._thresholds.get(metric_name, math.inf)

    def is_exceeded(self, metric_name: str, value: float) -> bool:
        return value > self.threshold_for(metric_name)

    def _claim(self, key: Tuple[str, str]) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_emitted.get(key)
            if last is not None and now - last < self.cooldown_seconds:
                return False
            self._last_emitted[key] = now
            return True

    def notify(
        self, alert_type: str, message: str, context: Optional[Dict[str, Any]] = None
    ) -> Optional[Alert]:
        """
        Emit an alert unless the same one went out within the cooldown.

        Returns the emitted Alert, or None when it was suppressed.
        """
        if not self._claim((alert_type, message)):
            log.debug(f"Alert suppressed due to cooldown: {alert_type}")
            return None

        alert = Alert(type=alert_type, message=message, context=dict(context or {}))
        alert_log.warning(
            f"ALERT [{alert_type}]: {message}",
            extra={"alert_type": alert_type, "context": alert.context},
        )
        self.history.append(alert)
        return alert

    def evaluate(self, metrics: Mapping[str, float]) -> List[Alert]:
        """Raise a performance alert for every metric above its threshold."""
        emitted: List[Alert] = []
        for metric_name, value in metrics.items():
            if not self.is_exceeded(metric_name, value):
                continue
            threshold = self.threshold_for(metric_name)
            message = f"Metric '{metric_name}' exceeded threshold: {value:g} (threshold: {threshold:g})"
            alert = self.notify(
                PERFORMANCE_DEGRADATION,
                message,
                {"metric": metric_name, "value": value, "threshold": threshold},
            )
            if alert is not None:
                emitted.append(alert)
        return emitted


__all__ = [
    "AlertManager",
    "PERFORMANCE_DEGRADATION",
    "SYNC_FAILURE",
    "thresholds_from_settings",
]
