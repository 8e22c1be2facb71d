"""LA Metro Rail adapter over the Swiftly real-time predictions API."""

from datetime import datetime, timezone
from typing import Any

import httpx

from railsavior import config
from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import delay_status, minutes_label, minutes_until
from railsavior.errors import BadRequestError, UpstreamParseError
from railsavior.models import ArrivalQuery, StandardArrival

SWIFTLY_BASE = "https://api.goswift.ly/real-time"
SOURCE = "LA Metro"
DEFAULT_RADIUS_M = 200
MAX_PREDICTIONS = 10


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    if not payload.get("success", True):
        raise UpstreamParseError(f"Swiftly reported failure: {payload.get('msg') or 'unknown error'}", SOURCE)

    line_filter = query.line.lower() if query.line and query.line != "all" else None
    arrivals = []
    for stop in payload["data"].get("predictionsData") or []:
        line = stop.get("routeShortName") or stop.get("routeName") or stop.get("routeId") or "Unknown"
        if line_filter and line_filter not in (line.lower(), str(stop.get("routeId", "")).lower()):
            continue

        for destination in stop.get("destinations") or []:
            for pred in destination.get("predictions") or []:
                event = datetime.fromtimestamp(int(pred["time"]), tz=timezone.utc)
                minutes = minutes_until(event, now)
                scheduled = pred.get("scheduledTime")
                delay_seconds = int(pred["time"]) - int(scheduled) if scheduled else pred.get("delay")
                status, delay = delay_status(delay_seconds)

                arrivals.append(StandardArrival(
                    line=line,
                    destination=destination.get("headsign") or "Unknown Destination",
                    arrival_time=minutes_label(minutes, event),
                    direction=f"Direction {destination['directionId']}" if destination.get("directionId") is not None else "Unknown",
                    status=status,
                    delay=delay,
                    station=stop.get("stopName"),
                    train_id=pred.get("vehicleId"),
                    minutes=minutes,
                    event_time=event.isoformat(),
                ))
    return arrivals


class LAMetroAdapter(AgencyAdapter):
    agency_id = "lametro"
    name = "LA Metro"
    city = "los_angeles"
    source = SOURCE
    max_results = MAX_PREDICTIONS

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        key = self.api_key()
        base = f"{SWIFTLY_BASE}/{config.get_swiftly_agency_key()}"
        headers = {"Authorization": key, "Accept": "application/json"}

        if query.station:
            url = f"{base}/predictions"
            params = {"stop": query.station.strip()}
        elif query.latitude is not None and query.longitude is not None:
            url = f"{base}/predictions-near-location"
            params = {
                "lat": query.latitude,
                "lon": query.longitude,
                "meters": query.radius or DEFAULT_RADIUS_M,
            }
        else:
            raise BadRequestError("LA Metro arrivals require a station or a latitude/longitude", SOURCE)

        resp = await self._get(client, url, params=params, headers=headers)
        return self._json(resp)
