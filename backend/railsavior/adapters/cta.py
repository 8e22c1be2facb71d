"""Chicago Transit Authority 'L' Train Tracker adapter."""

from datetime import datetime
from typing import Any

import httpx

from railsavior.adapters.base import AgencyAdapter
from railsavior.arrivals import minutes_label, minutes_until
from railsavior.errors import AdapterError, BadRequestError
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

CTA_ARRIVALS_URL = "http://lapi.transitchicago.com/api/1.0/ttarrivals.aspx"
SOURCE = "CTA"

# Train Tracker route codes -> rider-facing line names
ROUTE_NAMES = {
    "Red": "Red",
    "Blue": "Blue",
    "Brn": "Brown",
    "G": "Green",
    "Org": "Orange",
    "P": "Purple",
    "Pexp": "Purple",
    "Pink": "Pink",
    "Y": "Yellow",
}

LINE_COLORS = {
    "Red": "#C60C30",
    "Blue": "#00A1DE",
    "Brown": "#62361B",
    "Green": "#009B3A",
    "Orange": "#F9461C",
    "Purple": "#522398",
    "Pink": "#E27EA6",
    "Yellow": "#F9E300",
}

_LINE_CODES = {name.lower(): code for code, name in ROUTE_NAMES.items() if code != "Pexp"}


def _station_params(station: str) -> dict:
    # 4xxxx ids are parent stations (mapid); 3xxxx are platform stops (stpid)
    if len(station) == 5 and station.startswith("4"):
        return {"mapid": station}
    return {"stpid": station}


def normalize(payload: Any, query: ArrivalQuery, now: datetime) -> list[StandardArrival]:
    ctatt = payload["ctatt"]
    err_code = str(ctatt.get("errCd") or "0")
    if err_code != "0":
        raise AdapterError(f"CTA API Error: {ctatt.get('errNm') or err_code}", SOURCE)

    arrivals = []
    for eta in ctatt.get("eta") or []:
        arr_t = datetime.fromisoformat(eta["arrT"])
        # minutes are counted from when the prediction was made
        reference = datetime.fromisoformat(eta.get("prdt") or ctatt["tmst"])
        minutes = minutes_until(arr_t, reference)

        if eta.get("isApp") == "1" or minutes <= 1:
            label = "Due"
        else:
            label = minutes_label(minutes, arr_t)

        delayed = eta.get("isDly") == "1"
        arrivals.append(StandardArrival(
            line=ROUTE_NAMES.get(eta.get("rt", ""), eta.get("rt") or "Unknown"),
            destination=eta.get("destNm") or "Unknown",
            arrival_time=label,
            direction=eta.get("stpDe") or f"Run direction {eta.get('trDr', '?')}",
            status=ArrivalStatus.DELAYED if delayed else ArrivalStatus.ON_TIME,
            delay="Unknown" if delayed else "0",
            station=eta.get("staNm"),
            train_id=eta.get("rn"),
            minutes=minutes,
            event_time=eta["arrT"],
        ))
    return arrivals


class CTAAdapter(AgencyAdapter):
    agency_id = "cta"
    name = "CTA"
    city = "chicago"
    source = SOURCE
    metadata_actions = ("lines",)

    normalize = staticmethod(normalize)

    async def fetch(self, query: ArrivalQuery, client: httpx.AsyncClient) -> Any:
        station = self._require_station(query)
        key = self.api_key()
        params = {"key": key, "outputType": "JSON", **_station_params(station)}
        if query.line:
            code = _LINE_CODES.get(query.line.lower())
            if not code:
                raise BadRequestError(f"Unknown CTA line '{query.line}'", SOURCE)
            params["rt"] = code
        resp = await self._get(client, CTA_ARRIVALS_URL, params=params, secret=key)
        return self._json(resp)

    async def metadata(self, query: ArrivalQuery, client: httpx.AsyncClient) -> dict:
        if query.action != "lines":
            return await super().metadata(query, client)
        return {
            "lines": [
                {"code": code, "name": name, "color": LINE_COLORS[name]}
                for code, name in ROUTE_NAMES.items()
                if code != "Pexp"
            ]
        }
