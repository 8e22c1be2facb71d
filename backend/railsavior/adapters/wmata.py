"""Washington Metropolitan Area Transit Authority (Metrorail) adapter."""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.errors import AdapterError
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

logger = logging.getLogger("railsavior.adapters.wmata")

WMATA_BASE = "https://api.wmata.com/Rail.svc/json"
SOURCE = "WMATA"

# Union Station, Metro Center, Federal Triangle, Gallery Place, L'Enfant Plaza, Dupont Circle
MAJOR_STATIONS = ["A01", "C01", "D01", "E01", "F01", "G01"]
AGGREGATE_LIMIT = 50

LINE_NAMES = {
    "RD": "Red",
    "BL": "Blue",
    "OR": "Orange",
    "SV": "Silver",
    "GR": "Green",
    "YL": "Yellow",
}

# Min values with a fixed label and status
MIN_LABELS = {
    "ARR": ("Arriving", ArrivalStatus.ON_TIME),
    "BRD": ("Boarding", ArrivalStatus.BOARDING),
}


def map_min(value: str) -> tuple[str, ArrivalStatus, Any]:
    """Map a jStationTimes ``Min`` value to (label, status, minutes)."""
    value = (value or "").strip()
    if value in MIN_LABELS:
        label, status = MIN_LABELS[value]
        return label, status, 0
    if value.isdigit():
        return f"{int(value)} min", ArrivalStatus.ON_TIME, int(value)
    # "---" or blank: train in the system without a prediction yet
    return "Unknown", ArrivalStatus.ON_TIME, None


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    trains = payload.get("Trains") or []
    line_filter = query.line.lower() if query.line else None

    arrivals = []
    for train in trains:
        line_code = train.get("Line") or ""
        if line_filter and line_filter not in (line_code.lower(), LINE_NAMES.get(line_code, "").lower()):
            continue

        label, status, minutes = map_min(train.get("Min", ""))
        arrivals.append(StandardArrival(
            line=line_code or "Unknown",
            destination=train.get("DestinationName") or train.get("Destination") or "Unknown",
            arrival_time=label,
            direction="Platform 1" if train.get("Group") == "1" else "Platform 2",
            status=status,
            station=train.get("LocationName") or "Unknown Station",
            train_id=f"{train['Car']} cars" if train.get("Car") else None,
            minutes=minutes,
        ))
    return arrivals


class WMATAAdapter(AgencyAdapter):
    agency_id = "wmata"
    name = "WMATA"
    city = "washington_dc"
    source = SOURCE
    metadata_actions = ("lines", "stations")

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        key = self.api_key()
        headers = {"api_key": key}

        if query.station:
            resp = await self._get(client, f"{WMATA_BASE}/jStationTimes", params={"StationCode": query.station}, headers=headers)
            return self._json(resp)

        # No station: aggregate the major transfer stations
        trains: list[dict] = []
        for station in MAJOR_STATIONS:
            try:
                resp = await self._get(client, f"{WMATA_BASE}/jStationTimes", params={"StationCode": station}, headers=headers)
                trains.extend(self._json(resp).get("Trains") or [])
            except AdapterError as e:
                logger.warning(f"Failed to fetch arrivals for major station {station}: {e.message}")
        if not trains:
            raise AdapterError("No WMATA arrivals could be fetched for any major station", SOURCE)
        return {"Trains": trains}

    async def arrivals(
        self,
        query: ArrivalQuery,
        client: httpx.AsyncClient,
        now: Optional[datetime] = None,
    ) -> list[StandardArrival]:
        records = await super().arrivals(query, client, now)
        if not query.station:
            return records[:AGGREGATE_LIMIT]
        return records

    async def metadata(self, query: ArrivalQuery, client: httpx.AsyncClient) -> dict:
        key = self.api_key()
        headers = {"api_key": key}

        if query.action == "lines":
            resp = await self._get(client, f"{WMATA_BASE}/jLines", headers=headers)
            lines = self._json(resp).get("Lines") or []
            return {
                "lines": [
                    {
                        "code": line.get("LineCode"),
                        "name": line.get("DisplayName"),
                        "startStation": line.get("StartStationCode"),
                        "endStation": line.get("EndStationCode"),
                        "destinations": [
                            d for d in (line.get("InternalDestination1"), line.get("InternalDestination2")) if d
                        ],
                    }
                    for line in lines
                ]
            }

        if query.action == "stations":
            params = {"LineCode": query.line.upper()} if query.line else None
            resp = await self._get(client, f"{WMATA_BASE}/jStations", params=params, headers=headers)
            stations = self._json(resp).get("Stations") or []
            return {
                "stations": [
                    {
                        "code": s.get("Code"),
                        "name": s.get("Name"),
                        "lines": [s.get(f"LineCode{i}") for i in range(1, 5) if s.get(f"LineCode{i}")],
                        "lat": s.get("Lat"),
                        "lon": s.get("Lon"),
                        "address": s.get("Address"),
                    }
                    for s in stations
                ]
            }

        return await super().metadata(query, client)
