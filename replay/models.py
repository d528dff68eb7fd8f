"""Replay data model.

Samples are what the data source hands back, Snapshots are what the
presentation layer reads. Timestamps are integer milliseconds since epoch.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class PlayState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"


@dataclass(frozen=True)
class StreamSpec:
    endpoint: str
    time_field: str = "date"
    required: Tuple[str, ...] = ()
    # Blended between samples; everything else is held from the earlier one.
    continuous: Tuple[str, ...] = ()
    rounded: bool = False
    per_subject: bool = True


class StreamKind(Enum):
    LOCATION = StreamSpec("location", required=("x", "y"), continuous=("x", "y", "z"))
    CAR_DATA = StreamSpec(
        "car_data",
        required=("speed",),
        continuous=("speed", "rpm", "throttle", "brake"),
        rounded=True,
    )
    POSITION = StreamSpec("position", required=("position",))
    INTERVAL = StreamSpec("intervals")
    WEATHER = StreamSpec("weather", per_subject=False)
    RACE_CONTROL = StreamSpec("race_control", required=("message",), per_subject=False)
    TEAM_RADIO = StreamSpec("team_radio", required=("recording_url",))
    LAP = StreamSpec("laps", time_field="date_start", required=("lap_number",))

    @property
    def spec(self) -> StreamSpec:
        return self.value

    @property
    def endpoint(self) -> str:
        return self.value.endpoint


@dataclass(frozen=True)
class Sample:
    timestamp: int
    subject: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def with_payload(self, **changes: Any) -> "Sample":
        return replace(self, payload={**self.payload, **changes})

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.payload)
        d["timestamp"] = self.timestamp
        if self.subject is not None:
            d["driver_number"] = self.subject
        return d


@dataclass(frozen=True)
class Snapshot:
    """Composite state of the session at one instant."""

    time: int
    cars: Dict[int, Sample] = field(default_factory=dict)
    car_data: Optional[Sample] = None
    weather: Optional[Sample] = None
    positions: Dict[int, Sample] = field(default_factory=dict)
    intervals: Dict[int, Sample] = field(default_factory=dict)
    race_control: List[Sample] = field(default_factory=list)
    team_radio: List[Sample] = field(default_factory=list)
    current_lap: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "current_lap": self.current_lap,
            "cars": [s.to_dict() for s in self.cars.values()],
            "car_data": self.car_data.to_dict() if self.car_data else None,
            "weather": self.weather.to_dict() if self.weather else None,
            "positions": [s.to_dict() for s in self.positions.values()],
            "intervals": [s.to_dict() for s in self.intervals.values()],
            "race_control": [s.to_dict() for s in self.race_control],
            "team_radio": [s.to_dict() for s in self.team_radio],
        }
