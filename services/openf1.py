"""OpenF1 API helpers.

Functions fetch data from https://api.openf1.org and convert rows into
Samples for the replay buffers.

Notes:
- OpenF1 provides timestamps as ISO date strings. They are converted to
  UTC and then to integer milliseconds since epoch, so every stream shares
  one timeline.
- Errors from the API never propagate into the replay: they are logged and
  the range is treated as "no data".
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import requests

from replay.models import Sample, StreamKind

logger = logging.getLogger(__name__)

OPENF1_BASE = os.environ.get("OPENF1_BASE", "https://api.openf1.org/v1")
TIMEOUT = float(os.environ.get("OPENF1_TIMEOUT", "30"))

# Identity fields that are lifted out of the payload.
_META_FIELDS = ("session_key", "meeting_key", "driver_number")


def _parse_iso(dt_str: str) -> datetime:
    """Parse an ISO timestamp string and return a timezone-aware UTC datetime."""
    s = dt_str.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_ms(dt_str: str) -> int:
    """ISO string -> milliseconds since epoch."""
    return int(round(_parse_iso(dt_str).timestamp() * 1000))


def to_iso(ms: int) -> str:
    """Milliseconds since epoch -> ISO string OpenF1 accepts in date filters."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def to_sample(kind: StreamKind, row: Dict[str, Any]) -> Optional[Sample]:
    """Convert one OpenF1 row, or return None when it is missing required fields."""
    spec = kind.spec
    stamp = row.get(spec.time_field)
    if not stamp:
        return None
    subject = row.get("driver_number")
    if spec.per_subject and subject is None:
        return None
    if any(row.get(f) is None for f in spec.required):
        return None
    try:
        timestamp = to_ms(stamp)
    except (TypeError, ValueError):
        return None
    payload = {k: v for k, v in row.items() if k not in _META_FIELDS}
    return Sample(timestamp, int(subject) if subject is not None else None, payload)


def to_samples(kind: StreamKind, rows: List[Dict[str, Any]]) -> List[Sample]:
    samples = []
    for row in rows:
        s = to_sample(kind, row)
        if s is not None:
            samples.append(s)
    dropped = len(rows) - len(samples)
    if dropped:
        logger.debug(f"Dropped malformed rows | kind={kind.endpoint} | dropped={dropped}")
    samples.sort(key=lambda s: s.timestamp)
    return samples


def normalize_driver(r: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Driver row -> {"driver_number", "code", "name", "team", "colour"}."""
    driver_id = r.get("driver_number")
    if driver_id is None:
        return None

    # Build full name and normalize casing
    first = r.get("first_name")
    last = r.get("last_name")
    if first and last:
        name = f"{first.title()} {last.title()}"
    else:
        raw_name = r.get("full_name") or r.get("broadcast_name")
        name = raw_name.title() if raw_name else None

    code = r.get("name_acronym") or (last[:3].upper() if last else None)
    return {
        "driver_number": int(driver_id),
        "code": code,
        "name": name,
        "team": r.get("team_name"),
        "colour": r.get("team_colour"),
    }


class OpenF1Source:
    """Async data source for the replay prefetcher."""

    def __init__(self, base_url: str = OPENF1_BASE, timeout: float = TIMEOUT):
        self.base_url = base_url
        self.timeout = timeout

    async def _get(self, endpoint: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.get(url, params=params)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"OpenF1 request failed | endpoint={endpoint} | params={params} | error={e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"OpenF1 unexpected response | endpoint={endpoint} | params={params}")
            return []
        return data

    async def fetch_range(
        self,
        session_key: int,
        kind: StreamKind,
        start: int,
        end: int,
        subject: Optional[int] = None,
    ) -> List[Sample]:
        """All samples of `kind` with start <= timestamp < end, sorted."""
        field = kind.spec.time_field
        params: Dict[str, Any] = {
            "session_key": session_key,
            f"{field}>=": to_iso(start),
            f"{field}<": to_iso(end),
        }
        if subject is not None:
            params["driver_number"] = subject
        rows = await self._get(kind.endpoint, params)
        return [s for s in to_samples(kind, rows) if start <= s.timestamp < end]

    async def get_session(self, session_key: int) -> Optional[Dict[str, Any]]:
        data = await self._get("sessions", {"session_key": session_key})
        if not data or not data[0].get("date_start") or not data[0].get("date_end"):
            return None
        return data[0]

    async def get_drivers(self, session_key: int) -> List[Dict[str, Any]]:
        rows = await self._get("drivers", {"session_key": session_key})
        drivers = []
        for r in rows:
            d = normalize_driver(r)
            if d is not None:
                drivers.append(d)
        return drivers

    async def get_laps(self, session_key: int, driver_number: Optional[int] = None) -> List[Sample]:
        params: Dict[str, Any] = {"session_key": session_key}
        if driver_number is not None:
            params["driver_number"] = driver_number
        return to_samples(StreamKind.LAP, await self._get("laps", params))


def _fetch_catalog(endpoint: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
    url = f"{OPENF1_BASE}/{endpoint}"
    resp = requests.get(url, params=params, timeout=TIMEOUT)
    resp.raise_for_status()
    return resp.json()


def fetch_meetings(year: int) -> List[Dict[str, Any]]:
    """List the meetings (race weekends) of one season."""
    return _fetch_catalog("meetings", {"year": year})


def fetch_sessions(meeting_key: int) -> List[Dict[str, Any]]:
    """List the sessions of one meeting (practice, qualifying, race...)."""
    return _fetch_catalog("sessions", {"meeting_key": meeting_key})
