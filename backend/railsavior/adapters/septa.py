"""SEPTA Regional Rail arrivals adapter."""

import re
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import as_utc, minutes_label, minutes_until
from railsavior.errors import UpstreamParseError
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

SEPTA_ARRIVALS_URL = "https://www3.septa.org/api/Arrivals/index.php"
SOURCE = "SEPTA"
SEPTA_TZ = ZoneInfo("America/New_York")

_LATE_RE = re.compile(r"^(\d+)\s*min", re.IGNORECASE)

ROUTES = [
    {"id": "BSL", "name": "Broad Street Line", "type": "Subway", "color": "#F47920"},
    {"id": "MFL", "name": "Market-Frankford Line", "type": "Subway/Elevated", "color": "#0F4D98"},
    {"id": "NHSL", "name": "Norristown High Speed Line", "type": "Light Rail", "color": "#9E1A6A"},
    {"id": "RRD", "name": "Regional Rail", "type": "Commuter Rail", "color": "#68217A"},
]

STATIONS = [
    {"id": "15th-Market", "name": "15th Street", "line": "MFL", "zone": "Center City"},
    {"id": "30th-Market", "name": "30th Street", "line": "MFL", "zone": "University City"},
    {"id": "69th-Market", "name": "69th Street Terminal", "line": "MFL", "zone": "Upper Darby"},
    {"id": "Frankford", "name": "Frankford Terminal", "line": "MFL", "zone": "Northeast"},
    {"id": "City-Hall", "name": "City Hall", "line": "BSL", "zone": "Center City"},
    {"id": "Walnut-Locust", "name": "Walnut-Locust", "line": "BSL", "zone": "Center City"},
    {"id": "North-Philadelphia", "name": "North Philadelphia", "line": "BSL", "zone": "North"},
    {"id": "Fern-Rock", "name": "Fern Rock Transportation Center", "line": "BSL", "zone": "North"},
    {"id": "30th Street Station", "name": "30th Street Station", "line": "RRD", "zone": "Center City"},
    {"id": "Jefferson Station", "name": "Jefferson Station", "line": "RRD", "zone": "Center City"},
    {"id": "Temple U", "name": "Temple University", "line": "RRD", "zone": "North"},
    {"id": "Airport Terminal E-F", "name": "Philadelphia International Airport", "line": "RRD", "zone": "Southwest"},
]


def late_minutes(status: Optional[str]) -> int:
    """Minutes late from a SEPTA status string ("On Time", "5 min", "5 mins")."""
    match = _LATE_RE.match((status or "").strip())
    return int(match.group(1)) if match else 0


def _local_time(value: Optional[str]) -> Optional[datetime]:
    # "2024-05-01 17:42:00.000", Philadelphia local time
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=SEPTA_TZ)


def flatten(payload: Any) -> list[dict]:
    """Flatten ``{title: [{Northbound: [...]}, {Southbound: [...]}]}`` into trains."""
    if not isinstance(payload, dict):
        raise UpstreamParseError("Invalid SEPTA API response format: expected an object", SOURCE)

    trains = []
    for groups in payload.values():
        if not isinstance(groups, list):
            continue
        for group in groups:
            if not isinstance(group, dict):
                continue
            for direction, entries in group.items():
                for train in entries or []:
                    trains.append({**train, "direction": direction})
    return trains


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    now = as_utc(now)
    line_filter = query.line.lower() if query.line and query.line != "all" else None

    arrivals = []
    for train in flatten(payload):
        line = train.get("line") or "Regional Rail"
        if line_filter and line_filter not in line.lower():
            continue

        late = late_minutes(train.get("status"))
        event = _local_time(train.get("depart_time")) or _local_time(train.get("sched_time"))
        minutes = minutes_until(as_utc(event), now) if event else None

        arrivals.append(StandardArrival(
            line=line,
            destination=train.get("destination") or "Unknown",
            arrival_time=minutes_label(minutes, event),
            direction=train.get("direction") or "Unknown",
            status=ArrivalStatus.DELAYED if late > 0 else ArrivalStatus.ON_TIME,
            delay=f"{late} min" if late > 0 else "0",
            station=query.station,
            train_id=train.get("train_id"),
            minutes=minutes,
            event_time=event.isoformat() if event else None,
        ))
    return arrivals


class SEPTAAdapter(AgencyAdapter):
    agency_id = "septa"
    name = "SEPTA"
    city = "philadelphia"
    source = SOURCE
    requires_key = False
    metadata_actions = ("lines", "stations")

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        station = self._require_station(query)
        resp = await self._get(
            client,
            SEPTA_ARRIVALS_URL,
            params={"station": station},
            headers={"Accept": "application/json", "User-Agent": "RailSavior"},
        )
        return self._json(resp)

    async def metadata(self, query: ArrivalQuery, client: httpx.AsyncClient) -> dict:
        if query.action == "lines":
            return {"lines": ROUTES}
        if query.action == "stations":
            stations = [s for s in STATIONS if not query.line or s["line"] == query.line.upper()]
            return {"stations": stations}
        return await super().metadata(query, client)
