"""Replay tunables.

All times are milliseconds of session time unless stated otherwise.
Values can be overridden with REPLAY_* environment variables, e.g.
REPLAY_RETENTION_MS=300000.
"""
import os
from dataclasses import dataclass, fields
from typing import Tuple

ALLOWED_SPEEDS: Tuple[int, ...] = (1, 2, 5, 10, 20, 50)


@dataclass(frozen=True)
class ReplayConfig:
    # Wall-clock ms; faster frames are coalesced.
    min_tick_ms: float = 32.0
    fps: int = 60

    base_threshold_ms: int = 20_000
    threshold_per_speed_ms: int = 5_000
    base_chunk_ms: int = 30_000
    chunk_per_speed_ms: int = 10_000

    initial_chunk_ms: int = 30_000
    focus_chunk_ms: int = 10_000
    retention_ms: int = 600_000

    def threshold(self, speed: float) -> float:
        """Lookahead below which a new chunk is requested."""
        return max(self.base_threshold_ms, self.threshold_per_speed_ms * speed)

    def chunk(self, speed: float) -> float:
        return max(self.base_chunk_ms, self.chunk_per_speed_ms * speed)

    @classmethod
    def from_env(cls) -> "ReplayConfig":
        overrides = {}
        for f in fields(cls):
            raw = os.environ.get(f"REPLAY_{f.name.upper()}")
            if raw is None:
                continue
            overrides[f.name] = float(raw) if f.type in (float, "float") else int(raw)
        return cls(**overrides)
