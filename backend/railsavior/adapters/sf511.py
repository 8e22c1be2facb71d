"""San Francisco Bay Area (BART / Muni) adapter over 511.org SIRI StopMonitoring."""

from datetime import datetime
from typing import Any

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import as_utc, delay_status, minutes_label, minutes_until, parse_iso
from railsavior.models import ArrivalQuery, StandardArrival

STOP_MONITORING_URL = "https://api.511.org/transit/StopMonitoring"
SOURCE = "511.org"
DEFAULT_STATION = "POWL"
MAX_ARRIVALS = 10

STATION_NAMES = {
    "POWL": "Powell St",
    "MONT": "Montgomery St",
    "EMBR": "Embarcadero",
    "CIVC": "Civic Center/UN Plaza",
    "16TH": "16th St Mission",
    "24TH": "24th St Mission",
    "GLEN": "Glen Park",
    "BALB": "Balboa Park",
    "DALY": "Daly City",
}


def operator_for(station: str) -> str:
    """BART stations use 4-character codes; anything else is a Muni stop."""
    return "BA" if len(station) == 4 else "SF"


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _text(value: Any) -> Any:
    # SIRI JSON sometimes wraps names as [{"value": ...}] or {"value": ...}
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("value")
    return value


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    station = (query.station or DEFAULT_STATION).upper()
    delivery = payload["ServiceDelivery"]

    arrivals = []
    for monitoring in _as_list(delivery.get("StopMonitoringDelivery")):
        for visit in _as_list(monitoring.get("MonitoredStopVisit")):
            journey = visit.get("MonitoredVehicleJourney") or {}
            call = journey.get("MonitoredCall") or {}

            aimed = parse_iso(call.get("AimedArrivalTime") or call.get("AimedDepartureTime"))
            expected = parse_iso(call.get("ExpectedArrivalTime") or call.get("ExpectedDepartureTime")) or aimed
            if expected is None:
                continue

            minutes = minutes_until(as_utc(expected), as_utc(now))
            delay_seconds = (expected - aimed).total_seconds() if aimed else None
            status, delay = delay_status(delay_seconds)

            arrivals.append(StandardArrival(
                line=_text(journey.get("LineRef")) or "Unknown",
                destination=_text(journey.get("DestinationName")) or "Unknown Destination",
                arrival_time=minutes_label(minutes, expected),
                direction=_text(journey.get("DirectionRef")) or "Unknown",
                status=status,
                delay=delay,
                station=_text(call.get("StopPointName")) or STATION_NAMES.get(station, station),
                train_id=_text(journey.get("VehicleRef")),
                minutes=minutes,
                event_time=expected.isoformat(),
            ))
    return arrivals


class SF511Adapter(AgencyAdapter):
    agency_id = "sf511"
    name = "511.org"
    city = "san_francisco"
    source = SOURCE
    max_results = MAX_ARRIVALS

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        key = self.api_key()
        station = (query.station or DEFAULT_STATION).strip().upper()
        params = {
            "api_key": key,
            "agency": operator_for(station),
            "stopCode": station,
            "format": "json",
        }
        if query.line and query.line != "all":
            params["LineRef"] = query.line
        resp = await self._get(
            client,
            STOP_MONITORING_URL,
            params=params,
            headers={"Accept": "application/json"},
            secret=key,
        )
        return self._json(resp)
