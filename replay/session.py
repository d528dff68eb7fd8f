"""Session loader.

Builds a ReplayController for one OpenF1 session: metadata and the sparse
streams are downloaded for the whole session up front, the dense location
and car telemetry streams are left to the prefetcher.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from replay.config import ReplayConfig
from replay.controller import ReplayController
from replay.models import Sample, StreamKind
from services.openf1 import to_ms

logger = logging.getLogger(__name__)

TRACK_FALLBACK_MS = 60_000


class SessionNotFound(LookupError):
    pass


def starting_positions(drivers: List[Dict[str, Any]], positions: List[Sample]) -> Dict[int, int]:
    """First positive position per driver, else the first reported one."""
    starts: Dict[int, int] = {}
    for d in drivers:
        num = d["driver_number"]
        mine = [p for p in positions if p.subject == num]
        first = next((p for p in mine if (p.get("position") or 0) > 0), None)
        if first is None and mine:
            first = mine[0]
        if first is not None:
            starts[num] = first.get("position")
    return starts


async def track_layout(
    source: Any, session_key: int, laps: List[Sample], drivers: List[Dict[str, Any]], start: int
) -> List[Sample]:
    """Location trace of the fastest clean lap, used to draw the circuit."""
    clean = [l for l in laps if l.get("lap_duration") and not l.get("is_pit_out_lap")]
    if clean:
        best = min(clean, key=lambda l: l.get("lap_duration"))
        end = best.timestamp + int(best.get("lap_duration") * 1000)
        trace = await source.fetch_range(session_key, StreamKind.LOCATION, best.timestamp, end, best.subject)
    elif drivers:
        driver = drivers[0]["driver_number"]
        trace = await source.fetch_range(
            session_key, StreamKind.LOCATION, start, start + TRACK_FALLBACK_MS, driver
        )
    else:
        trace = []
    return sorted(trace, key=lambda s: s.timestamp)


async def load_session(
    source: Any, session_key: int, config: Optional[ReplayConfig] = None
) -> ReplayController:
    logger.info(f"Session load started | session_key={session_key}")
    meta = await source.get_session(session_key)
    if meta is None:
        raise SessionNotFound(f"Session {session_key} not found or missing dates")
    start, end = to_ms(meta["date_start"]), to_ms(meta["date_end"])

    drivers = await source.get_drivers(session_key)
    laps = await source.get_laps(session_key)
    layout = await track_layout(source, session_key, laps, drivers, start)

    weather, race_control, team_radio, positions, intervals = await asyncio.gather(
        source.fetch_range(session_key, StreamKind.WEATHER, start, end),
        source.fetch_range(session_key, StreamKind.RACE_CONTROL, start, end),
        source.fetch_range(session_key, StreamKind.TEAM_RADIO, start, end),
        source.fetch_range(session_key, StreamKind.POSITION, start, end),
        source.fetch_range(session_key, StreamKind.INTERVAL, start, end),
    )
    positions = sorted(positions, key=lambda s: s.timestamp)

    controller = ReplayController(
        source,
        session_key,
        start,
        end,
        drivers=drivers,
        laps=laps,
        weather=weather,
        race_control=race_control,
        team_radio=team_radio,
        positions=positions,
        intervals=intervals,
        starting_positions=starting_positions(drivers, positions),
        track_layout=layout,
        config=config,
    )
    await controller.buffer_initial()
    logger.info(
        f"Session load finished | session_key={session_key} | drivers={len(drivers)} "
        f"| laps={controller.total_laps} | positions={len(positions)} | intervals={len(intervals)}"
    )
    return controller
