"""OpenF1 Replay API (FastAPI)

Replays a historical OpenF1 session like a video: load a session, then
play / pause / change speed / seek / pick a focus driver, and read the
reconstructed snapshot at the current session time.

Folders:
- services/: calls OpenF1 and normalizes rows into samples
- replay/: clock, buffers, prefetching and snapshot reconstruction
"""
from contextlib import asynccontextmanager
from typing import Optional

import requests
from fastapi import Depends, FastAPI, HTTPException, Query

from replay.config import ALLOWED_SPEEDS, ReplayConfig
from replay.controller import ReplayController
from replay.session import SessionNotFound, load_session
from services.openf1 import OpenF1Source, fetch_meetings, fetch_sessions
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ReplayHub:
    """Holds the single active replay. Loading a new session replaces it."""

    def __init__(self):
        self.controller: Optional[ReplayController] = None

    def replace(self, controller: Optional[ReplayController]) -> None:
        if self.controller is not None:
            self.controller.close()
        self.controller = controller
        if controller is not None:
            controller.start()


hub = ReplayHub()
_source = OpenF1Source()
_config = ReplayConfig.from_env()


def get_source():
    return _source


def get_config() -> ReplayConfig:
    return _config


def get_controller() -> ReplayController:
    if hub.controller is None:
        raise HTTPException(status_code=404, detail="No session loaded")
    return hub.controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    hub.replace(None)


app = FastAPI(title="OpenF1 Replay API", lifespan=lifespan)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/meetings")
def meetings(year: int = Query(...)):
    try:
        return {"year": year, "meetings": fetch_meetings(year)}
    except requests.RequestException as e:
        logger.error(f"Meeting listing failed | year={year} | error={e}")
        raise HTTPException(status_code=502, detail="OpenF1 unavailable")


@app.get("/meetings/{meeting_key}/sessions")
def sessions(meeting_key: int):
    try:
        return {"meeting_key": meeting_key, "sessions": fetch_sessions(meeting_key)}
    except requests.RequestException as e:
        logger.error(f"Session listing failed | meeting_key={meeting_key} | error={e}")
        raise HTTPException(status_code=502, detail="OpenF1 unavailable")


@app.post("/replay/load")
async def load(
    session_key: int = Query(...),
    source=Depends(get_source),
    config: ReplayConfig = Depends(get_config),
):
    hub.replace(None)
    try:
        controller = await load_session(source, session_key, config)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    hub.replace(controller)
    return {
        "state": controller.state(),
        "drivers": controller.drivers,
        "track_layout": [s.to_dict() for s in controller.track_layout],
    }


@app.post("/replay/unload")
async def unload():
    hub.replace(None)
    return {"ok": True}


@app.get("/replay/state")
async def state(controller: ReplayController = Depends(get_controller)):
    return controller.state()


@app.post("/replay/play")
async def play(controller: ReplayController = Depends(get_controller)):
    started = controller.play()
    return {"playing": controller.is_playing, "started": started}


@app.post("/replay/pause")
async def pause(controller: ReplayController = Depends(get_controller)):
    controller.pause()
    return {"playing": controller.is_playing}


@app.post("/replay/speed")
async def speed(
    multiplier: int = Query(...),
    controller: ReplayController = Depends(get_controller),
):
    if multiplier not in ALLOWED_SPEEDS:
        raise HTTPException(
            status_code=400,
            detail=f"multiplier must be one of {list(ALLOWED_SPEEDS)}",
        )
    controller.set_speed(multiplier)
    return {"speed": multiplier}


@app.post("/replay/seek")
async def seek(
    time_ms: Optional[int] = Query(None),
    fraction: Optional[float] = Query(None),
    controller: ReplayController = Depends(get_controller),
):
    if (time_ms is None) == (fraction is None):
        raise HTTPException(status_code=400, detail="Pass exactly one of time_ms or fraction")

    if time_ms is not None:
        snapshot = controller.seek(time_ms)
    else:
        snapshot = controller.seek_fraction(fraction)
    return {"state": controller.state(), "snapshot": snapshot.to_dict()}


@app.post("/replay/focus")
async def focus(
    driver: Optional[int] = Query(None),
    controller: ReplayController = Depends(get_controller),
):
    snapshot = controller.select_focus_subject(driver)
    return {"focus": controller.focus, "car_data": snapshot.car_data.to_dict() if snapshot.car_data else None}


@app.get("/replay/snapshot")
async def snapshot(controller: ReplayController = Depends(get_controller)):
    return {"state": controller.state(), "snapshot": controller.snapshot.to_dict()}


@app.get("/replay/leaderboard")
async def leaderboard(controller: ReplayController = Depends(get_controller)):
    return {
        "time": controller.current_time,
        "current_lap": controller.current_lap,
        "total_laps": controller.total_laps,
        "leaderboard": controller.leaderboard(),
    }
