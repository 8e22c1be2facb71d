"""Supported cities, their agencies and rough metro bounding boxes."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class City:
    id: str
    name: str
    agency: str
    transit_line: str  # label stored on incident reports
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


CITIES = {
    "chicago": City("chicago", "Chicago", "cta", "Chicago CTA", 41.6, 42.1, -87.9, -87.5),
    "new_york": City("new_york", "New York", "mta", "NYC MTA", 40.4, 40.9, -74.3, -73.7),
    "washington_dc": City("washington_dc", "Washington DC", "wmata", "DC Metro", 38.8, 39.0, -77.2, -76.9),
    "philadelphia": City("philadelphia", "Philadelphia", "septa", "SEPTA", 39.8, 40.1, -75.3, -74.9),
    "atlanta": City("atlanta", "Atlanta", "marta", "MARTA", 33.6, 33.9, -84.6, -84.2),
    "boston": City("boston", "Boston", "mbta", "MBTA", 42.2, 42.5, -71.2, -70.9),
    "denver": City("denver", "Denver", "rtd", "RTD", 39.5, 40.0, -105.2, -104.6),
    "los_angeles": City("los_angeles", "Los Angeles", "lametro", "LA Metro", 33.7, 34.35, -118.7, -117.9),
    "san_francisco": City("san_francisco", "San Francisco", "sf511", "BART/Muni", 37.6, 37.95, -122.55, -122.2),
}

DEFAULT_CITY = "chicago"

# Aliases the front end has used for city ids
_CITY_ALIASES = {
    "nyc": "new_york",
    "newyork": "new_york",
    "dc": "washington_dc",
    "washington": "washington_dc",
    "philly": "philadelphia",
    "la": "los_angeles",
    "sf": "san_francisco",
    "bay_area": "san_francisco",
}


def resolve_city(city_id: str) -> Optional[City]:
    key = city_id.strip().lower().replace("-", "_").replace(" ", "_")
    key = _CITY_ALIASES.get(key, key)
    return CITIES.get(key)


def city_for_location(lat: float, lng: float) -> City:
    """City whose bounding box contains the point; Chicago when none does."""
    for city in CITIES.values():
        if city.contains(lat, lng):
            return city
    return CITIES[DEFAULT_CITY]
