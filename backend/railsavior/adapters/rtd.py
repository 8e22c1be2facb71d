"""Denver RTD rail adapter over the GTFS-Realtime TripUpdate feed."""

from datetime import datetime, timezone
from typing import Any

import httpx

from railsavior import config
from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import delay_status, minutes_label
from railsavior.gtfs_rt import parse_feed, stop_predictions
from railsavior.models import ArrivalQuery, StandardArrival

SOURCE = "RTD"

DIRECTION_NAMES = {0: "Outbound", 1: "Inbound"}


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    feed = parse_feed(payload, SOURCE)
    station = query.station.strip()
    route_ids = [query.line] if query.line and query.line != "all" else None

    arrivals = []
    for pred in stop_predictions(feed, {station}, now.timestamp(), route_ids=route_ids):
        event = datetime.fromtimestamp(pred.event_ts, tz=timezone.utc)
        status, delay = delay_status(pred.delay_seconds)
        arrivals.append(StandardArrival(
            line=pred.route_id or "Unknown",
            destination=f"To stop {pred.final_stop_id}" if pred.final_stop_id else "Unknown",
            arrival_time=minutes_label(pred.minutes_away, event),
            direction=DIRECTION_NAMES.get(pred.direction_id, "Unknown"),
            status=status,
            delay=delay,
            station=station,
            train_id=pred.vehicle_label,
            minutes=pred.minutes_away,
            event_time=event.isoformat(),
        ))
    return arrivals


class RTDAdapter(AgencyAdapter):
    agency_id = "rtd"
    name = "RTD"
    city = "denver"
    source = SOURCE
    requires_key = False

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        self._require_station(query)
        key = self.api_key()
        headers = {"Authorization": f"Bearer {key}"} if key else None
        resp = await self._get(client, config.get_rtd_trip_updates_url(), headers=headers)
        return resp.content
