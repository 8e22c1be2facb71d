"""Environment-driven settings for the RailSavior service.

Values are read lazily so that tests (and the FastAPI lifespan) see the
environment as it is at call time, not at import time.
"""

import os
from typing import Optional

from railsavior.fetching import RequestPolicy

DEFAULT_DATABASE_URL = "sqlite:///./railsavior.db"

# Upstream key names per agency; the first one that is set wins.
AGENCY_KEY_ENV = {
    "cta": ("CTA_API_KEY",),
    "wmata": ("WMATA_API_KEY", "WMATA_KEY", "WMATA_API_TOKEN"),
    "marta": ("MARTA_API_KEY",),
    "mbta": ("MBTA_API_KEY",),
    "mta": ("MTA_API_KEY",),
    "rtd": ("RTD_API_KEY",),
    "septa": (),
    "lametro": ("SWIFTLY_API_KEY",),
    "sf511": ("SF_511_API_TOKEN", "SF511_API_TOKEN"),
}

PLACEHOLDER_VALUES = {"", "your-api-key-here", "changeme"}


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def get_agency_key(agency_id: str) -> Optional[str]:
    """Return the configured API key for an agency, or None."""
    for name in AGENCY_KEY_ENV.get(agency_id, ()):
        value = _env(name)
        if value not in PLACEHOLDER_VALUES:
            return value
    return None


def get_database_url() -> str:
    return _env("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_cors_origins() -> list[str]:
    raw = _env("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000,capacitor://localhost")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_upstream_policy() -> RequestPolicy:
    """Request policy applied to every agency upstream call."""
    return RequestPolicy(
        timeout=float(_env("UPSTREAM_TIMEOUT", "10")),
        retries=int(_env("UPSTREAM_RETRIES", "1")),
        backoff=float(_env("UPSTREAM_BACKOFF", "0.5")),
    )


def get_rtd_trip_updates_url() -> str:
    return _env("RTD_TRIP_UPDATES_URL", "https://www.rtd-denver.com/files/gtfs-rt/TripUpdate.pb")


def get_swiftly_agency_key() -> str:
    return _env("SWIFTLY_AGENCY_KEY", "lametro-rail")


def get_auth_user_header() -> str:
    return _env("AUTH_USER_HEADER", "X-User-Id")


def get_auth_role_header() -> str:
    return _env("AUTH_ROLE_HEADER", "X-User-Role")
