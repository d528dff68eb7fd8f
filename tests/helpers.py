"""Sample builders and an in-memory data source for the tests."""
import asyncio
from typing import Dict, List, Optional

from replay.controller import ReplayController
from replay.models import Sample, StreamKind


def loc(t, driver, x, y=0.0, z=0.0):
    return Sample(t, driver, {"x": x, "y": y, "z": z})


def car(t, driver, speed, rpm=10000, gear=5, drs=0, throttle=100, brake=0):
    return Sample(
        t,
        driver,
        {"speed": speed, "rpm": rpm, "n_gear": gear, "drs": drs, "throttle": throttle, "brake": brake},
    )


def pos(t, driver, position):
    return Sample(t, driver, {"position": position})


def gap(t, driver, gap_to_leader, interval=None):
    return Sample(t, driver, {"gap_to_leader": gap_to_leader, "interval": interval})


def lap(t, driver, number, duration=None, pit_out=False):
    return Sample(t, driver, {"lap_number": number, "lap_duration": duration, "is_pit_out_lap": pit_out})


def msg(t, text):
    return Sample(t, None, {"message": text, "category": "Other", "flag": None})


def radio(t, driver):
    return Sample(t, driver, {"recording_url": f"https://example.invalid/{driver}_{t}.mp3"})


def weather(t, air):
    return Sample(t, None, {"air_temperature": air, "rainfall": 0})


class FakeSource:
    """Serves prepared samples by range, recording every call.

    Set `gate` to an asyncio.Event (inside the running loop) to hold fetches
    until the test releases them.
    """

    def __init__(self, streams: Optional[Dict[StreamKind, List[Sample]]] = None, session=None,
                 drivers=None, laps=None, fail=False):
        self.streams = streams or {}
        self.session = session
        self.drivers = drivers or []
        self.laps = laps or []
        self.fail = fail
        self.calls = []
        self.gate: Optional[asyncio.Event] = None

    async def fetch_range(self, session_key, kind, start, end, subject=None):
        self.calls.append((kind, start, end, subject))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("source down")
        out = [
            s for s in self.streams.get(kind, [])
            if start <= s.timestamp < end and (subject is None or s.subject == subject)
        ]
        # Sources do not promise ordering.
        return list(reversed(out))

    def calls_for(self, kind):
        return [c for c in self.calls if c[0] is kind]

    async def get_session(self, session_key):
        return self.session

    async def get_drivers(self, session_key):
        return list(self.drivers)

    async def get_laps(self, session_key, driver_number=None):
        return list(self.laps)


def make_controller(source=None, start=0, end=100_000, **kwargs):
    return ReplayController(source or FakeSource(), 9158, start, end, **kwargs)
