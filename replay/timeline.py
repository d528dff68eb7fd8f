"""Time-indexed lookup over sorted sample sequences."""
from typing import Any, Callable, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

NOT_FOUND = -1


def _timestamp(item: Any) -> int:
    return item.timestamp


def index_at_or_before(
    samples: Sequence[T], t: float, key: Callable[[T], float] = _timestamp
) -> int:
    """Return the index of the last sample with key(sample) <= t, or NOT_FOUND.

    `samples` must already be sorted ascending by key.
    """
    low, high = 0, len(samples) - 1
    result = NOT_FOUND
    while low <= high:
        mid = (low + high) // 2
        if key(samples[mid]) <= t:
            result = mid
            low = mid + 1
        else:
            high = mid - 1
    return result


def bracket(
    samples: Sequence[T], t: float, key: Callable[[T], float] = _timestamp
) -> Tuple[Optional[T], Optional[T]]:
    """Return (prev, next) around t; prev is None when nothing is at or before t."""
    idx = index_at_or_before(samples, t, key)
    if idx == NOT_FOUND:
        return None, None
    nxt = samples[idx + 1] if idx + 1 < len(samples) else None
    return samples[idx], nxt


def latest_at_or_before(
    samples: Sequence[T], t: float, key: Callable[[T], float] = _timestamp
) -> Optional[T]:
    idx = index_at_or_before(samples, t, key)
    return None if idx == NOT_FOUND else samples[idx]
