"""New York City Transit subway adapter over the MTA GTFS-Realtime feeds."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import delay_status, minutes_label
from railsavior.errors import AdapterError, BadRequestError
from railsavior.gtfs_rt import parse_feed, stop_predictions
from railsavior.models import ArrivalQuery, StandardArrival

logger = logging.getLogger("railsavior.adapters.mta")

SOURCE = "MTA"
FEED_BASE = "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2F"

FEEDS = {
    "ace": f"{FEED_BASE}gtfs-ace",
    "bdfm": f"{FEED_BASE}gtfs-bdfm",
    "g": f"{FEED_BASE}gtfs-g",
    "jz": f"{FEED_BASE}gtfs-jz",
    "nqrw": f"{FEED_BASE}gtfs-nqrw",
    "l": f"{FEED_BASE}gtfs-l",
    "main": f"{FEED_BASE}gtfs",
    "si": f"{FEED_BASE}gtfs-si",
}

# Route -> feed group
ROUTE_FEEDS = {
    **{r: "main" for r in ("1", "2", "3", "4", "5", "6", "6X", "7", "7X", "GS")},
    **{r: "ace" for r in ("A", "C", "E", "H", "FS")},
    **{r: "bdfm" for r in ("B", "D", "F", "FX", "M")},
    "G": "g",
    "J": "jz",
    "Z": "jz",
    **{r: "nqrw" for r in ("N", "Q", "R", "W")},
    "L": "l",
    "SI": "si",
    "SIR": "si",
}

LINE_COLORS = {
    "1": "#EE352E", "2": "#EE352E", "3": "#EE352E",
    "4": "#00933C", "5": "#00933C", "6": "#00933C",
    "7": "#B933AD",
    "A": "#0039A6", "C": "#0039A6", "E": "#0039A6",
    "B": "#FF6319", "D": "#FF6319", "F": "#FF6319", "M": "#FF6319",
    "G": "#6CBE45",
    "J": "#996633", "Z": "#996633",
    "L": "#A7A9AC",
    "N": "#FCCC0A", "Q": "#FCCC0A", "R": "#FCCC0A", "W": "#FCCC0A",
}

# Parent stop id -> name, for the stations riders most often ask about and the
# common terminals used as destinations.
STATION_NAMES = {
    "127": "Times Sq-42 St",
    "631": "Grand Central-42 St",
    "635": "14 St-Union Sq",
    "R17": "34 St-Herald Sq",
    "A24": "59 St-Columbus Circle",
    "D24": "Atlantic Av-Barclays Ctr",
    "120": "96 St",
    "A27": "42 St-Port Authority Bus Terminal",
    "101": "Van Cortlandt Park-242 St",
    "142": "South Ferry",
    "201": "Wakefield-241 St",
    "247": "Flatbush Av-Brooklyn College",
    "401": "Woodlawn",
    "250": "Crown Hts-Utica Av",
    "501": "Eastchester-Dyre Av",
    "601": "Pelham Bay Park",
    "640": "Brooklyn Bridge-City Hall",
    "701": "Flushing-Main St",
    "726": "34 St-Hudson Yards",
    "A02": "Inwood-207 St",
    "A55": "Euclid Av",
    "H11": "Far Rockaway-Mott Av",
    "R01": "Astoria-Ditmars Blvd",
    "D43": "Coney Island-Stillwell Av",
    "G08": "Forest Hills-71 Av",
    "R27": "Whitehall St-South Ferry",
    "L01": "8 Av",
    "L29": "Canarsie-Rockaway Pkwy",
    "G22": "Court Sq",
    "F27": "Church Av",
}

DEFAULT_STATION = "127"
PLATFORM_DIRECTIONS = {"N": "Uptown", "S": "Downtown"}


def feeds_for_line(line: Optional[str]) -> list[str]:
    """Feed groups to read; every feed when no line is given."""
    if not line or line == "all":
        return list(FEEDS)
    group = ROUTE_FEEDS.get(line.upper())
    if group is None:
        raise BadRequestError(f"Unknown MTA line '{line}'", SOURCE)
    return [group]


def _parent_stop(stop_id: Optional[str]) -> Optional[str]:
    if stop_id and stop_id[-1] in PLATFORM_DIRECTIONS:
        return stop_id[:-1]
    return stop_id


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    """``payload`` is a list of raw protobuf bodies, one per feed read."""
    station = (query.station or DEFAULT_STATION).upper()
    stop_ids = {station, f"{station}N", f"{station}S"}
    route_ids = [query.line] if query.line and query.line != "all" else None
    now_ts = now.timestamp()

    arrivals = []
    for content in payload:
        feed = parse_feed(content, SOURCE)
        for pred in stop_predictions(feed, stop_ids, now_ts, route_ids=route_ids):
            final_stop = _parent_stop(pred.final_stop_id)
            event = datetime.fromtimestamp(pred.event_ts, tz=timezone.utc)
            status, delay = delay_status(pred.delay_seconds)
            arrivals.append(StandardArrival(
                line=pred.route_id,
                destination=STATION_NAMES.get(final_stop) or f"{pred.route_id} Train",
                arrival_time=minutes_label(pred.minutes_away, event),
                direction=PLATFORM_DIRECTIONS.get(pred.stop_id[-1], "Unknown"),
                status=status,
                delay=delay,
                station=STATION_NAMES.get(station, f"Station {station}"),
                train_id=pred.vehicle_label or pred.trip_id or None,
                minutes=pred.minutes_away,
                event_time=event.isoformat(),
            ))
    return arrivals


class MTAAdapter(AgencyAdapter):
    agency_id = "mta"
    name = "MTA"
    city = "new_york"
    source = SOURCE
    requires_key = False
    metadata_actions = ("lines", "stations")

    normalize = staticmethod(normalize)

    async def _read_feed(self, client: httpx.AsyncClient, group: str, headers: dict) -> bytes:
        resp = await self._get(client, FEEDS[group], headers=headers)
        return resp.content

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        groups = feeds_for_line(query.line)
        key = self.api_key()
        headers = {"x-api-key": key} if key else {}

        if len(groups) == 1:
            return [await self._read_feed(client, groups[0], headers)]

        results = await asyncio.gather(
            *(self._read_feed(client, group, headers) for group in groups),
            return_exceptions=True,
        )
        bodies = []
        for group, result in zip(groups, results):
            if isinstance(result, AdapterError):
                logger.warning(f"MTA feed {group} unavailable: {result.message}")
            elif isinstance(result, BaseException):
                raise result
            else:
                bodies.append(result)
        if not bodies:
            raise AdapterError("No MTA feed could be fetched", SOURCE)
        return bodies

    async def metadata(self, query: ArrivalQuery, client: httpx.AsyncClient) -> dict:
        if query.action == "lines":
            return {
                "lines": [
                    {"code": code, "name": code, "color": color, "feed": ROUTE_FEEDS[code]}
                    for code, color in LINE_COLORS.items()
                ]
            }
        if query.action == "stations":
            return {"stations": [{"code": code, "name": name} for code, name in STATION_NAMES.items()]}
        return await super().metadata(query, client)
