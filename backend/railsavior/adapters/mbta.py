"""MBTA v3 API predictions adapter."""

from datetime import datetime
from typing import Any, Optional

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import as_utc, parse_iso
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

MBTA_PREDICTIONS_URL = "https://api-v3.mbta.com/predictions"
SOURCE = "MBTA_API_V3"

ROUTE_ALIASES = {
    "red": "Red",
    "blue": "Blue",
    "orange": "Orange",
    "green": "Green-B,Green-C,Green-D,Green-E",
    "silver": "SL1,SL2,SL3,SL4,SL5",
}
DEFAULT_ROUTES = "Red,Blue,Orange,Green-B,Green-C,Green-D,Green-E"

DIRECTION_NAMES = {0: "Inbound", 1: "Outbound"}

# MBTA's own countdown thresholds, in seconds
ARRIVING_SEC = 30
APPROACHING_SEC = 60
ONE_MINUTE_SEC = 90


def countdown(seconds: float) -> tuple[str, int]:
    """Rider-facing label and whole minutes for ``seconds`` until arrival."""
    if seconds <= ARRIVING_SEC:
        return "Arriving", 0
    if seconds <= APPROACHING_SEC:
        return "Approaching", 1
    if seconds <= ONE_MINUTE_SEC:
        return "1 min", 1
    minutes = round(seconds / 60)
    return f"{minutes} min", minutes


def route_filter(line: Optional[str]) -> str:
    if not line or line == "all":
        return DEFAULT_ROUTES
    return ROUTE_ALIASES.get(line.lower(), line)


def _included(payload: dict) -> dict[tuple[str, str], dict]:
    return {(item["type"], item["id"]): item for item in payload.get("included") or []}


def _related_id(prediction: dict, name: str) -> Optional[str]:
    data = ((prediction.get("relationships") or {}).get(name) or {}).get("data")
    return data.get("id") if data else None


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    included = _included(payload)
    now = as_utc(now)

    arrivals = []
    for prediction in payload["data"]:
        attrs = prediction["attributes"]
        event_time = attrs.get("arrival_time") or attrs.get("departure_time")
        event = parse_iso(event_time)
        if event is None:
            # No time means the vehicle is skipping or the trip is cancelled
            continue

        route_id = _related_id(prediction, "route")
        route = (included.get(("route", route_id)) or {}).get("attributes") or {}
        stop = (included.get(("stop", _related_id(prediction, "stop"))) or {}).get("attributes") or {}

        label, minutes = countdown((as_utc(event) - now).total_seconds())
        direction_id = attrs.get("direction_id")
        destinations = route.get("direction_destinations") or []
        destination = destinations[direction_id] if direction_id is not None and direction_id < len(destinations) else "Unknown"

        arrivals.append(StandardArrival(
            line=route.get("short_name") or route.get("long_name") or route_id or "Unknown",
            destination=destination,
            arrival_time=label,
            direction=DIRECTION_NAMES.get(direction_id, "Unknown"),
            status=ArrivalStatus.DELAYED if attrs.get("status") == "Delayed" else ArrivalStatus.ON_TIME,
            station=stop.get("name") or "Unknown Station",
            train_id=_related_id(prediction, "vehicle"),
            minutes=minutes,
            event_time=event_time,
        ))
    return arrivals


class MBTAAdapter(AgencyAdapter):
    agency_id = "mbta"
    name = "MBTA"
    city = "boston"
    source = SOURCE

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        key = self.api_key()
        params = {
            "filter[route]": route_filter(query.line),
            "include": "stop,route",
            "sort": "arrival_time",
        }
        if query.station and query.station != "all":
            params["filter[stop]"] = query.station
        resp = await self._get(client, MBTA_PREDICTIONS_URL, params=params, headers={"x-api-key": key})
        return self._json(resp)
