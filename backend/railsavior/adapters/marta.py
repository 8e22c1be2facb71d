"""MARTA rail real-time arrivals adapter."""

import re
from datetime import datetime
from typing import Any, Optional

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import as_utc, delay_status, minutes_label, parse_iso
from railsavior.errors import UpstreamParseError
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

MARTA_TRAIN_URL = (
    "https://developerservices.itsmarta.com:18096/itsmarta/railrealtimearrivals/developerservices/traindata"
)
SOURCE = "MARTA"

DIRECTION_NAMES = {"N": "Northbound", "S": "Southbound", "E": "Eastbound", "W": "Westbound"}

_MINUTES_RE = re.compile(r"(\d+)")
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_DELAY_RE = re.compile(r"^T(\d+)S$")


def _squash(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def map_waiting(train: dict, now: Optional[datetime] = None) -> tuple[str, ArrivalStatus, Any]:
    """(label, status, minutes) from WAITING_TIME.

    Falls back to WAITING_SECONDS, then to the NEXT_ARR timestamp.
    """
    waiting = (train.get("WAITING_TIME") or "").strip()
    if waiting in ("Boarding", "Arrived"):
        return waiting, ArrivalStatus(waiting), 0
    if waiting.lower() == "arriving":
        return "Arriving", ArrivalStatus.ON_TIME, 0

    if "min" in waiting:
        match = _MINUTES_RE.search(waiting)
        if match:
            minutes = int(match.group(1))
            return f"{minutes} min", ArrivalStatus.ON_TIME, minutes

    seconds = train.get("WAITING_SECONDS")
    if seconds not in (None, ""):
        minutes = max(0, round(int(seconds) / 60))
        return minutes_label(minutes), ArrivalStatus.ON_TIME, minutes

    next_arr = parse_iso(train.get("NEXT_ARR"))
    if next_arr is not None and now is not None:
        minutes = max(0, round((as_utc(next_arr) - as_utc(now)).total_seconds() / 60))
        return minutes_label(minutes), ArrivalStatus.ON_TIME, minutes

    return waiting or "Unknown", ArrivalStatus.ON_TIME, None


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    if not isinstance(payload, list):
        raise UpstreamParseError("Invalid MARTA API response format: expected a list", SOURCE)

    line_filter = query.line.lower().replace(" line", "") if query.line and query.line != "all" else None
    station_filter = _squash(query.station) if query.station and query.station != "all" else None

    arrivals = []
    for train in payload:
        line = train.get("LINE") or "Unknown"
        station = train.get("STATION") or "Unknown"
        if line_filter and line_filter not in line.lower():
            continue
        if station_filter and station_filter not in _squash(station):
            continue

        label, status, minutes = map_waiting(train, now)
        delay = "0"
        delay_match = _DELAY_RE.match(train.get("DELAY") or "")
        if delay_match:
            late_status, delay = delay_status(int(delay_match.group(1)))
            if status == ArrivalStatus.ON_TIME:
                status = late_status
        direction = train.get("DIRECTION") or ""
        arrivals.append(StandardArrival(
            line=line,
            destination=train.get("DESTINATION") or "Unknown",
            arrival_time=label,
            direction=DIRECTION_NAMES.get(direction, direction or "Unknown"),
            status=status,
            delay=delay,
            station=station,
            train_id=train.get("TRAIN_ID") or train.get("VEHICLE_ID"),
            minutes=minutes,
            event_time=train.get("EVENT_TIME"),
        ))
    return arrivals


class MARTAAdapter(AgencyAdapter):
    agency_id = "marta"
    name = "MARTA"
    city = "atlanta"
    source = SOURCE

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        key = self.api_key()
        resp = await self._get(
            client,
            MARTA_TRAIN_URL,
            params={"apiKey": key},
            headers={"Accept": "application/json"},
            secret=key,
        )
        return self._json(resp)
