"""Shared arrival helpers: rider-facing labels and the result-shape validator."""

import logging
import math
from datetime import datetime, timezone
from typing import Iterable, Optional

from railsavior.errors import UpstreamParseError
from railsavior.models import ArrivalStatus, StandardArrival

logger = logging.getLogger("railsavior.arrivals")

# Above this many minutes the label switches to a wall-clock time.
CLOCK_LABEL_MINUTES = 60


def minutes_label(minutes: Optional[int], event_time: Optional[datetime] = None) -> str:
    """Generic label used by adapters without their own vocabulary."""
    if minutes is None:
        return "Unknown"
    if minutes <= 1:
        return "Due"
    if minutes >= CLOCK_LABEL_MINUTES and event_time is not None:
        return f"{event_time.hour % 12 or 12}:{event_time.minute:02d}"
    return f"{minutes} min"


def minutes_until(event: datetime, now: datetime) -> int:
    """Whole minutes until ``event``, rounded up and clamped at zero."""
    seconds = (event - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def delay_status(delay_seconds: Optional[float], threshold: int = 60) -> tuple[ArrivalStatus, str]:
    """Status and delay label for a delay in seconds."""
    if delay_seconds is None or delay_seconds <= threshold:
        return ArrivalStatus.ON_TIME, "0"
    return ArrivalStatus.DELAYED, f"{round(delay_seconds / 60)} min"


def _sort_key(arrival: StandardArrival) -> tuple:
    return (
        arrival.minutes is None,
        arrival.minutes if arrival.minutes is not None else 0,
        arrival.event_time or "",
    )


def finalize_arrivals(
    arrivals: Iterable[StandardArrival], source: str, limit: Optional[int] = None
) -> list[StandardArrival]:
    """Validate every record's shape and sort by ascending arrival time."""
    checked: list[StandardArrival] = []
    for arrival in arrivals:
        if not isinstance(arrival, StandardArrival):
            raise UpstreamParseError(f"Adapter produced a non-arrival record: {type(arrival).__name__}", source)
        if not arrival.line or not arrival.arrival_time:
            logger.debug(f"{source}: dropping arrival without line or time label: {arrival}")
            continue
        if arrival.minutes is not None and arrival.minutes < 0:
            arrival = arrival.model_copy(update={"minutes": 0})
        checked.append(arrival)

    checked.sort(key=_sort_key)
    if limit is not None:
        checked = checked[:limit]
    return checked
