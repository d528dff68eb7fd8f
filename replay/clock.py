"""Session clock: virtual time, play state and speed."""
import logging
from typing import Optional

from replay.config import ALLOWED_SPEEDS, ReplayConfig
from replay.models import PlayState

logger = logging.getLogger(__name__)


class SessionClock:
    def __init__(self, session_start: int, session_end: int, config: Optional[ReplayConfig] = None):
        if session_end < session_start:
            raise ValueError("session_end must not be before session_start")
        self.config = config or ReplayConfig()
        self.session_start = session_start
        self.session_end = session_end
        self.current_time = session_start
        # Unrounded virtual time; current_time is its integer view.
        self._time = float(session_start)
        self.state = PlayState.STOPPED
        self.speed = 1
        self._last_tick: Optional[float] = None

    @property
    def is_playing(self) -> bool:
        return self.state is PlayState.PLAYING

    @property
    def progress(self) -> float:
        span = self.session_end - self.session_start
        if span <= 0:
            return 1.0
        return (self.current_time - self.session_start) / span

    def play(self, now: Optional[float] = None) -> bool:
        """Start advancing. `now` (wall ms) seeds the first tick's baseline."""
        if self.current_time >= self.session_end:
            return False
        if not self.is_playing:
            self.state = PlayState.PLAYING
            self._last_tick = now
        return True

    def pause(self) -> None:
        self.state = PlayState.STOPPED
        self._last_tick = None

    def set_speed(self, multiplier: float) -> None:
        if multiplier not in ALLOWED_SPEEDS:
            raise ValueError(f"speed must be one of {ALLOWED_SPEEDS}, got {multiplier}")
        self.speed = multiplier

    def seek(self, target: float) -> int:
        self.current_time = int(min(max(target, self.session_start), self.session_end))
        self._time = float(self.current_time)
        return self.current_time

    def advance(self, now: float) -> bool:
        """Move virtual time for a frame at wall time `now` (ms).

        Returns True when virtual time changed.
        """
        if not self.is_playing:
            return False
        if self._last_tick is None:
            self._last_tick = now
            return False

        elapsed = now - self._last_tick
        if elapsed < self.config.min_tick_ms:
            return False
        self._last_tick = now

        self._time += elapsed * self.speed
        if self._time >= self.session_end:
            self._time = float(self.session_end)
            self.current_time = self.session_end
            self.pause()
            logger.info(f"Replay reached session end | time={self.session_end}")
        else:
            self.current_time = int(round(self._time))
        return True
