"""Snapshot materializer.

Reads the buffers at one instant and builds the composite view. It never
mutates what it reads; a backward seek simply materializes again from
scratch.
"""
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional

from replay.buffer import StreamBuffer, SubjectBuffers
from replay.interpolate import interpolate
from replay.models import Sample, Snapshot, StreamKind
from replay.timeline import NOT_FOUND, bracket, index_at_or_before, latest_at_or_before


class LatestBySubject:
    """Exact latest-sample-per-subject lookup over a sparse global stream.

    Keeps one sorted list per subject, so a lookup is one binary search per
    subject instead of a bounded backward scan through the shared stream.
    """

    def __init__(self, samples: Iterable[Sample] = ()):
        self._by_subject: Dict[int, List[Sample]] = {}
        for s in sorted(samples, key=lambda s: s.timestamp):
            if s.subject is not None:
                self._by_subject.setdefault(s.subject, []).append(s)

    def __len__(self) -> int:
        return len(self._by_subject)

    def latest(self, t: int) -> Dict[int, Sample]:
        out = {}
        for subject, samples in self._by_subject.items():
            s = latest_at_or_before(samples, t)
            if s is not None:
                out[subject] = s
        return out

    def stream(self, subject: int) -> List[Sample]:
        return self._by_subject.get(subject, [])


def _revealed(samples: List[Sample], t: int) -> List[Sample]:
    idx = index_at_or_before(samples, t)
    return [] if idx == NOT_FOUND else samples[: idx + 1]


class SnapshotMaterializer:
    def __init__(
        self,
        locations: SubjectBuffers,
        car_data: StreamBuffer,
        weather: StreamBuffer,
        race_control: StreamBuffer,
        team_radio: StreamBuffer,
        positions: LatestBySubject,
        intervals: LatestBySubject,
        laps: List[Sample],
    ):
        self.locations = locations
        self.car_data = car_data
        self.weather = weather
        self.race_control = race_control
        self.team_radio = team_radio
        self.positions = positions
        self.intervals = intervals
        self.laps = laps

    def materialize(self, t: int, focus: Optional[int] = None) -> Snapshot:
        loc_spec = StreamKind.LOCATION.spec
        cars = {}
        for subject in self.locations.subjects():
            prev, nxt = bracket(self.locations.stream(subject), t)
            if prev is None:
                continue
            cars[subject] = interpolate(prev, nxt, t, loc_spec.continuous)

        car_data = None
        if focus is not None:
            prev, nxt = bracket(self.car_data.samples, t)
            if prev is not None:
                spec = StreamKind.CAR_DATA.spec
                car_data = interpolate(prev, nxt, t, spec.continuous, rounded=spec.rounded)

        return Snapshot(
            time=t,
            cars=cars,
            car_data=car_data,
            weather=latest_at_or_before(self.weather.samples, t),
            positions=self.positions.latest(t),
            intervals=self.intervals.latest(t),
            race_control=_revealed(self.race_control.samples, t),
            team_radio=_revealed(self.team_radio.samples, t),
            current_lap=self.current_lap(t),
        )

    def current_lap(self, t: int) -> Optional[int]:
        lap = latest_at_or_before(self.laps, t)
        return None if lap is None else lap.get("lap_number")


def last_completed_lap(laps: List[Sample], subject: int, t: int) -> Optional[Sample]:
    """Latest lap of `subject` whose start plus duration is at or before t."""
    best = None
    for lap in laps:
        if lap.subject != subject:
            continue
        duration = lap.get("lap_duration")
        if not duration:
            continue
        if lap.timestamp + duration * 1000 <= t and (best is None or lap.timestamp > best.timestamp):
            best = lap
    return best


def _gap_key(interval: Optional[Sample]) -> float:
    gap = interval.get("gap_to_leader") if interval else None
    if gap is None:
        return 0.0
    # Lapped cars report strings like "+1 LAP".
    if isinstance(gap, Number):
        return float(gap)
    return float("inf")


def leaderboard(
    snapshot: Snapshot,
    drivers: List[Dict[str, Any]],
    laps: List[Sample],
    starting_positions: Dict[int, int],
) -> List[Dict[str, Any]]:
    """Driver rows ordered by gap to leader, then by position."""
    rows = []
    for d in drivers:
        num = d["driver_number"]
        pos_sample = snapshot.positions.get(num)
        position = pos_sample.get("position") if pos_sample else starting_positions.get(num)
        interval = snapshot.intervals.get(num)
        last_lap = last_completed_lap(laps, num, snapshot.time)
        rows.append(
            {
                "driver": num,
                "code": d.get("code"),
                "name": d.get("name"),
                "team": d.get("team"),
                "position": position,
                "start_position": starting_positions.get(num),
                "gap_to_leader": interval.get("gap_to_leader") if interval else None,
                "interval": interval.get("interval") if interval else None,
                "last_lap": last_lap.get("lap_number") if last_lap else None,
                "last_lap_duration": last_lap.get("lap_duration") if last_lap else None,
                "_has_interval": interval is not None,
                "_gap": _gap_key(interval),
            }
        )

    # Sometimes the feed has no position for the leader yet; if exactly one
    # driver is missing a position and nobody is P1, that driver is P1.
    known = {r["position"] for r in rows if r["position"] is not None}
    missing = [r for r in rows if r["position"] is None]
    if len(missing) == 1 and 1 not in known:
        missing[0]["position"] = 1

    rows.sort(
        key=lambda r: (
            not r["_has_interval"],
            r["_gap"] if r["_has_interval"] else 0.0,
            r["position"] if r["position"] is not None else 999,
        )
    )
    for r in rows:
        del r["_has_interval"], r["_gap"]
    return rows
