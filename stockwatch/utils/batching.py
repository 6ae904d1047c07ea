"""Fixed-size partitioning shared by the keyed lookup and the batch loop."""

from __future__ import annotations

from typing import List, Sequence, TypeVar

T = TypeVar("T")


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    """
    Split `items` into consecutive groups of `size`; the last may be shorter.

    Returns ceil(len(items) / size) groups, none of them empty.
    """
    if size < 1:
        raise ValueError(f"partition size must be positive, got {size}")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


__all__ = ["partition"]
