"""Stream buffers.

A buffer is a sorted cache of samples plus a watermark: `buffered_until`
is the exclusive bound up to which the source has been asked, whether or
not it returned anything. Every invalidation bumps `generation`, and merges
tagged with an older generation are dropped.
"""
import logging
from typing import Dict, Iterable, List, Optional

from replay.models import Sample
from replay.timeline import NOT_FOUND, index_at_or_before

logger = logging.getLogger(__name__)


class StreamBuffer:
    def __init__(self, anchor: int = 0, until: Optional[int] = None):
        self.samples: List[Sample] = []
        self.buffered_from = anchor
        self.buffered_until = anchor if until is None else until
        self.generation = 0

    def __len__(self) -> int:
        return len(self.samples)

    def invalidate(self, anchor: int) -> None:
        self.samples = []
        self.buffered_from = anchor
        self.buffered_until = anchor
        self.generation += 1

    def append(self, batch: List[Sample]) -> None:
        """Append an already-sorted batch, keeping the stream ascending."""
        if not batch:
            return
        tail_behind = self.samples and batch[0].timestamp < self.samples[-1].timestamp
        self.samples.extend(batch)
        if tail_behind:
            # Out-of-order range; stable sort keeps arrival order for ties.
            self.samples.sort(key=lambda s: s.timestamp)

    def merge(self, samples: Iterable[Sample], end: int, generation: int) -> bool:
        if generation != self.generation:
            return False
        self.append(sorted(samples, key=lambda s: s.timestamp))
        self.buffered_until = max(self.buffered_until, end)
        return True

    def trim_before(self, t: int) -> None:
        """Drop history older than the last sample at or before t."""
        idx = index_at_or_before(self.samples, t)
        if idx == NOT_FOUND or idx == 0:
            return
        del self.samples[:idx]
        self.buffered_from = max(self.buffered_from, self.samples[0].timestamp)

    def covers(self, t: int, retention: int) -> bool:
        return self.buffered_from <= t < self.buffered_until and self.buffered_until - t <= retention


class SubjectBuffers:
    """One stream per subject behind a single shared watermark.

    Used for streams the source returns for every subject in one response.
    """

    def __init__(self, anchor: int = 0):
        self.streams: Dict[int, StreamBuffer] = {}
        self.buffered_from = anchor
        self.buffered_until = anchor
        self.generation = 0

    def __len__(self) -> int:
        return sum(len(b) for b in self.streams.values())

    def subjects(self) -> List[int]:
        return list(self.streams)

    def stream(self, subject: int) -> List[Sample]:
        buf = self.streams.get(subject)
        return buf.samples if buf else []

    def invalidate(self, anchor: int) -> None:
        self.streams = {}
        self.buffered_from = anchor
        self.buffered_until = anchor
        self.generation += 1

    def merge(self, samples: Iterable[Sample], end: int, generation: int) -> bool:
        if generation != self.generation:
            return False
        grouped: Dict[int, List[Sample]] = {}
        for s in samples:
            if s.subject is None:
                continue
            grouped.setdefault(s.subject, []).append(s)
        for subject, batch in grouped.items():
            buf = self.streams.get(subject)
            if buf is None:
                buf = self.streams[subject] = StreamBuffer(self.buffered_from)
            buf.append(sorted(batch, key=lambda s: s.timestamp))
        self.buffered_until = max(self.buffered_until, end)
        return True

    def trim_before(self, t: int) -> None:
        for buf in self.streams.values():
            buf.trim_before(t)
        if self.buffered_from < t:
            self.buffered_from = min(t, self.buffered_until)

    def covers(self, t: int, retention: int) -> bool:
        return self.buffered_from <= t < self.buffered_until and self.buffered_until - t <= retention
