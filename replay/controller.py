"""Replay controller.

Owns everything that changes while a session replays: the clock, the
buffers, the prefetch groups and the focus car. All mutation happens on
the event loop thread; fetches are tasks that merge into the buffers when
they complete, possibly several ticks later.

Frame flow: tick -> clock.advance -> materialize -> maybe_prefetch.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from replay.buffer import StreamBuffer, SubjectBuffers
from replay.clock import SessionClock
from replay.config import ReplayConfig
from replay.models import Sample, Snapshot, StreamKind
from replay.prefetch import Prefetcher, StreamGroup
from replay.snapshot import LatestBySubject, SnapshotMaterializer, leaderboard

logger = logging.getLogger(__name__)


def whole_session(samples: Iterable[Sample], start: int, end: int) -> StreamBuffer:
    buf = StreamBuffer(start, until=end)
    buf.append(sorted(samples, key=lambda s: s.timestamp))
    return buf


class ReplayController:
    def __init__(
        self,
        source: Any,
        session_key: int,
        session_start: int,
        session_end: int,
        drivers: Optional[List[Dict[str, Any]]] = None,
        laps: Iterable[Sample] = (),
        weather: Iterable[Sample] = (),
        race_control: Iterable[Sample] = (),
        team_radio: Iterable[Sample] = (),
        positions: Iterable[Sample] = (),
        intervals: Iterable[Sample] = (),
        starting_positions: Optional[Dict[int, int]] = None,
        track_layout: Optional[List[Sample]] = None,
        config: Optional[ReplayConfig] = None,
    ):
        self.config = config or ReplayConfig()
        self.source = source
        self.session_key = session_key
        self.clock = SessionClock(session_start, session_end, self.config)

        self.drivers = drivers or []
        self.laps = sorted(laps, key=lambda s: s.timestamp)
        self.total_laps = max((lap.get("lap_number") or 0 for lap in self.laps), default=0)
        self.starting_positions = starting_positions or {}
        self.track_layout = track_layout or []
        self.focus: Optional[int] = None

        self.locations = SubjectBuffers(session_start)
        self.car_data = StreamBuffer(session_start)
        self.location_group = StreamGroup("location", StreamKind.LOCATION, self.locations)
        self.car_data_group = StreamGroup("car_data", StreamKind.CAR_DATA, self.car_data)
        self.car_data_group.scoped = True
        self.prefetcher = Prefetcher(
            source,
            session_key,
            [self.location_group, self.car_data_group],
            self.config,
            on_merge=self._on_merge,
        )

        self.materializer = SnapshotMaterializer(
            locations=self.locations,
            car_data=self.car_data,
            weather=whole_session(weather, session_start, session_end),
            race_control=whole_session(race_control, session_start, session_end),
            team_radio=whole_session(team_radio, session_start, session_end),
            positions=LatestBySubject(positions),
            intervals=LatestBySubject(intervals),
            laps=self.laps,
        )
        self.snapshot: Snapshot = self.materializer.materialize(session_start)
        self._loop_task: Optional[asyncio.Task] = None
        self.closed = False

    # ---- outputs ----

    @property
    def current_time(self) -> int:
        return self.clock.current_time

    @property
    def current_lap(self) -> Optional[int]:
        return self.snapshot.current_lap

    @property
    def is_playing(self) -> bool:
        return self.clock.is_playing

    def leaderboard(self) -> List[Dict[str, Any]]:
        return leaderboard(self.snapshot, self.drivers, self.laps, self.starting_positions)

    def state(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "current_time": self.current_time,
            "session_start": self.clock.session_start,
            "session_end": self.clock.session_end,
            "current_lap": self.current_lap,
            "total_laps": self.total_laps,
            "playing": self.is_playing,
            "speed": self.clock.speed,
            "progress": self.clock.progress,
            "focus": self.focus,
            "buffered_until": self.locations.buffered_until,
        }

    # ---- frame ----

    def refresh(self) -> Snapshot:
        self.snapshot = self.materializer.materialize(self.clock.current_time, self.focus)
        return self.snapshot

    def tick(self, now: float) -> bool:
        """Process one host frame at wall time `now` (ms). Never blocks."""
        if self.closed or not self.clock.advance(now):
            return False
        self.refresh()
        self.prefetcher.maybe_prefetch(self.clock.current_time, self.clock.speed)
        return True

    def _on_merge(self, group: StreamGroup) -> None:
        # While playing the next tick picks the data up.
        if not self.clock.is_playing and not self.closed:
            self.refresh()

    # ---- controls ----

    def play(self, now: Optional[float] = None) -> bool:
        if self.closed:
            return False
        return self.clock.play(now)

    def pause(self) -> None:
        self.clock.pause()

    def set_speed(self, multiplier: float) -> None:
        self.clock.set_speed(multiplier)
        logger.info(f"Replay speed changed | session={self.session_key} | speed={multiplier}")

    def seek(self, target: float) -> Snapshot:
        t = self.clock.seek(target)
        stale = []
        for group in self.prefetcher.groups:
            if not group.active or group.keeps(t, self.config.retention_ms):
                continue
            group.invalidate(t)
            stale.append(group)

        self.refresh()
        for group in stale:
            self.prefetcher.request(group, t, self.config.initial_chunk_ms)
        logger.info(
            f"Replay seek | session={self.session_key} | time={t} "
            f"| refetch={[g.name for g in stale]}"
        )
        return self.snapshot

    def seek_fraction(self, fraction: float) -> Snapshot:
        fraction = min(max(fraction, 0.0), 1.0)
        span = self.clock.session_end - self.clock.session_start
        return self.seek(self.clock.session_start + span * fraction)

    def select_focus_subject(self, subject: Optional[int]) -> Snapshot:
        if subject == self.focus:
            return self.snapshot
        group = self.car_data_group
        group.invalidate(self.clock.current_time)
        group.subject = subject
        self.focus = subject
        if subject is not None:
            self.prefetcher.request(group, self.clock.current_time, self.config.focus_chunk_ms)
        logger.info(f"Replay focus changed | session={self.session_key} | driver={subject}")
        return self.refresh()

    # ---- lifecycle ----

    async def buffer_initial(self) -> Snapshot:
        """Fetch the first chunk from the current time and wait for it."""
        t = self.clock.current_time
        for group in self.prefetcher.groups:
            if group.active and not group.in_flight and not group.buffer.covers(t, self.config.retention_ms):
                self.prefetcher.request(group, t, self.config.initial_chunk_ms)
        await self.prefetcher.drain()
        return self.refresh()

    def start(self, fps: Optional[int] = None) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(
                run_loop(self, fps or self.config.fps)
            )
        return self._loop_task

    def close(self) -> None:
        self.closed = True
        self.clock.pause()
        for group in self.prefetcher.groups:
            group.invalidate(self.clock.current_time)
        self.prefetcher.cancel_all()
        if self._loop_task is not None:
            self._loop_task.cancel()
        logger.info(f"Replay closed | session={self.session_key}")


async def run_loop(controller: ReplayController, fps: int = 60) -> None:
    """Host scheduler: call tick once per frame until the controller closes."""
    loop = asyncio.get_running_loop()
    frame = 1.0 / fps
    while not controller.closed:
        try:
            controller.tick(loop.time() * 1000)
        except Exception:
            logger.exception(f"Replay tick failed | session={controller.session_key}")
        await asyncio.sleep(frame)
