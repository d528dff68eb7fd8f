"""Blend two bracketing samples for an instant between them."""
from numbers import Number
from typing import Iterable, Optional

from replay.models import Sample


def interpolate(
    prev: Sample,
    nxt: Optional[Sample],
    t: float,
    continuous: Iterable[str] = (),
    rounded: bool = False,
) -> Sample:
    """Linear blend of `continuous` fields; every other field comes from prev.

    No next sample, or a tie in timestamps, returns prev unchanged (the last
    known state holds, nothing is extrapolated).
    """
    if nxt is None or nxt.timestamp == prev.timestamp:
        return prev

    ratio = (t - prev.timestamp) / (nxt.timestamp - prev.timestamp)
    ratio = min(max(ratio, 0.0), 1.0)
    if ratio == 0.0:
        return prev

    blended = {}
    for name in continuous:
        a, b = prev.get(name), nxt.get(name)
        # bool is a Number too; flags are never blended
        if not isinstance(a, Number) or not isinstance(b, Number) or isinstance(a, bool):
            continue
        value = a + (b - a) * ratio
        blended[name] = int(round(value)) if rounded else value

    if not blended:
        return prev
    return prev.with_payload(**blended)
