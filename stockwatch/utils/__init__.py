"""
Utilities package for stockwatch.

Exports shared helpers for logging and phase timing. Keep this package
lightweight and free of domain-specific logic.
"""

from stockwatch.utils.batching import partition
from stockwatch.utils.logging import configure_logging, get_logger
from stockwatch.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "partition",
    "ProfileStats",
    "profile_block",
]
