"""GTFS-Realtime TripUpdate parsing shared by the protobuf-based agencies."""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from google.transit import gtfs_realtime_pb2

from railsavior.errors import UpstreamParseError

logger = logging.getLogger("railsavior.gtfs_rt")

# Predictions further in the past than this are stale and dropped
STALE_PREDICTION_SEC = 60


@dataclass
class StopPrediction:
    """One stop-time update matching a requested stop."""
    route_id: str
    trip_id: str
    stop_id: str
    direction_id: Optional[int]
    event_ts: int  # unix seconds
    minutes_away: int
    delay_seconds: Optional[int]
    final_stop_id: Optional[str]
    vehicle_label: Optional[str]


def parse_feed(content: bytes, source: str) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(content)
    except Exception as e:
        preview = content[:200].decode("utf-8", errors="ignore").strip()
        if preview.startswith("<!") or preview.startswith("<html"):
            raise UpstreamParseError("Received HTML instead of protobuf; the feed returned an error page", source)
        raise UpstreamParseError(f"Failed to parse GTFS-RT feed: {e}", source)
    return feed


def stop_predictions(
    feed: gtfs_realtime_pb2.FeedMessage,
    stop_ids: set[str],
    now_ts: float,
    route_ids: Optional[Iterable[str]] = None,
) -> list[StopPrediction]:
    """Collect predictions for ``stop_ids`` from every TripUpdate in the feed."""
    route_filter = {r.upper() for r in route_ids} if route_ids else None
    predictions: list[StopPrediction] = []

    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue

        trip_update = entity.trip_update
        route_id = trip_update.trip.route_id
        if route_filter and route_id.upper() not in route_filter:
            continue

        direction_id = trip_update.trip.direction_id if trip_update.trip.HasField("direction_id") else None
        updates = trip_update.stop_time_update
        final_stop_id = updates[-1].stop_id if len(updates) else None
        vehicle_label = None
        if trip_update.HasField("vehicle"):
            vehicle_label = trip_update.vehicle.label or trip_update.vehicle.id or None

        for stu in updates:
            if stu.stop_id not in stop_ids:
                continue

            if stu.HasField("arrival") and stu.arrival.time:
                event = stu.arrival
            elif stu.HasField("departure") and stu.departure.time:
                event = stu.departure
            else:
                continue

            seconds_away = event.time - now_ts
            if seconds_away < -STALE_PREDICTION_SEC:
                continue

            minutes_away = 0 if seconds_away <= 0 else math.ceil(seconds_away / 60)
            delay = event.delay if event.HasField("delay") else None

            predictions.append(StopPrediction(
                route_id=route_id,
                trip_id=trip_update.trip.trip_id,
                stop_id=stu.stop_id,
                direction_id=direction_id,
                event_ts=int(event.time),
                minutes_away=minutes_away,
                delay_seconds=delay,
                final_stop_id=final_stop_id,
                vehicle_label=vehicle_label,
            ))

    logger.debug(f"Matched {len(predictions)} predictions for stops {sorted(stop_ids)}")
    return predictions
