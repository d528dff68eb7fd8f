"""Prefetcher: keeps chunk-fetched buffers ahead of the playback head.

Fetches run as asyncio tasks on the caller's loop and never block a tick.
Each stream group allows one outstanding fetch; the outstanding marker is
the buffer generation the fetch was issued under. Invalidating a group
cancels its running fetch, frees the group for a new one and turns any
result already on its way stale.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional, Set, Union

from replay.buffer import StreamBuffer, SubjectBuffers
from replay.config import ReplayConfig
from replay.models import StreamKind

logger = logging.getLogger(__name__)


class StreamGroup:
    def __init__(self, name: str, kind: StreamKind, buffer: Union[StreamBuffer, SubjectBuffers]):
        self.name = name
        self.kind = kind
        self.buffer = buffer
        # Set for groups scoped to one subject (the focus car).
        self.subject: Optional[int] = None
        self.scoped = False
        self.pending: Optional[int] = None
        self.pending_end: Optional[int] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self.scoped or self.subject is not None

    @property
    def in_flight(self) -> bool:
        return self.pending is not None and self.pending == self.buffer.generation

    def invalidate(self, anchor: int) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None
        self.buffer.invalidate(anchor)

    def keeps(self, t: int, retention: int) -> bool:
        """True when t is inside what is buffered, or about to be."""
        until = self.buffer.buffered_until
        if self.in_flight:
            until = max(until, self.pending_end)
        return self.buffer.buffered_from <= t < until and until - t <= retention


class Prefetcher:
    def __init__(
        self,
        source: Any,
        session_key: int,
        groups: List[StreamGroup],
        config: ReplayConfig,
        on_merge: Optional[Callable[[StreamGroup], None]] = None,
    ):
        self.source = source
        self.session_key = session_key
        self.groups = groups
        self.config = config
        self.on_merge = on_merge
        self._tasks: Set[asyncio.Task] = set()

    def maybe_prefetch(self, now: int, speed: float) -> List[asyncio.Task]:
        """Request the next chunk for every group whose lookahead ran low."""
        threshold = self.config.threshold(speed)
        chunk = int(self.config.chunk(speed))
        issued = []
        for group in self.groups:
            if not group.active or group.in_flight:
                continue
            group.buffer.trim_before(now - self.config.retention_ms)
            lookahead = group.buffer.buffered_until - now
            if lookahead >= threshold:
                continue
            task = self.request(group, group.buffer.buffered_until, chunk)
            if task is not None:
                issued.append(task)
        return issued

    def request(self, group: StreamGroup, start: int, duration: int) -> Optional[asyncio.Task]:
        if not group.active or group.in_flight:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Prefetch skipped, no running event loop | group={group.name}")
            return None

        end = start + duration
        generation = group.buffer.generation
        group.pending = generation
        group.pending_end = end
        logger.debug(
            f"Prefetch issued | group={group.name} | start={start} | end={end} | gen={generation}"
        )
        task = loop.create_task(self._fetch(group, start, end, generation, group.subject))
        group.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fetch(
        self, group: StreamGroup, start: int, end: int, generation: int, subject: Optional[int]
    ) -> None:
        try:
            samples = await self.source.fetch_range(
                self.session_key, group.kind, start, end, subject
            )
        except Exception:
            # Sources are expected to return [] on failure; anything else
            # still only costs this range.
            logger.exception(f"Prefetch failed | group={group.name} | start={start} | end={end}")
            samples = []
        finally:
            if group.pending == generation:
                group.pending = None

        if not group.buffer.merge(samples, end, generation):
            logger.debug(
                f"Prefetch dropped stale result | group={group.name} | gen={generation} "
                f"| current_gen={group.buffer.generation}"
            )
            return
        logger.debug(f"Prefetch merged | group={group.name} | samples={len(samples)} | until={end}")
        if self.on_merge is not None:
            self.on_merge(group)

    @property
    def outstanding(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every fetch issued so far (session load, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
