"""
Domain package for stockwatch.

Exports the value types shared by the services and the scheduler. Keep this
package focused on data definitions and validation concerns.
"""

from stockwatch.domain.models import (
    Alert,
    ChangeEvent,
    ChangeOperation,
    MetricSample,
    Record,
    SyncCursor,
)

__all__ = [
    "Alert",
    "ChangeEvent",
    "ChangeOperation",
    "MetricSample",
    "Record",
    "SyncCursor",
]
