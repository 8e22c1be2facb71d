import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from google.transit import gtfs_realtime_pb2

from conftest import load_fixture
from railsavior.adapters import ADAPTERS, get_adapter
from railsavior.adapters import cta, lametro, marta, mbta, mta, rtd, septa, sf511, wmata
from railsavior.arrivals import finalize_arrivals, minutes_label
from railsavior.errors import AdapterError, BadRequestError, UnknownAgencyError, UpstreamParseError
from railsavior.models import ArrivalQuery, ArrivalStatus, StandardArrival

NOW = datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc)


def _feed(*trips, timestamp=None):
    """Serialized FeedMessage from (route, trip, [(stop, ts, delay)], direction) tuples."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.timestamp = int(timestamp or NOW.timestamp())
    for i, (route_id, trip_id, stops, direction) in enumerate(trips):
        entity = feed.entity.add()
        entity.id = str(i)
        trip_update = entity.trip_update
        trip_update.trip.trip_id = trip_id
        trip_update.trip.route_id = route_id
        if direction is not None:
            trip_update.trip.direction_id = direction
        for stop_id, ts, delay in stops:
            stu = trip_update.stop_time_update.add()
            stu.stop_id = stop_id
            stu.arrival.time = int(ts)
            if delay is not None:
                stu.arrival.delay = delay
    return feed.SerializeToString()


def test_registry_has_every_agency():
    assert set(ADAPTERS) == {"cta", "wmata", "marta", "mbta", "mta", "rtd", "septa", "lametro", "sf511"}
    assert get_adapter(" CTA ") is ADAPTERS["cta"]
    with pytest.raises(UnknownAgencyError):
        get_adapter("bart")


def test_minutes_label():
    assert minutes_label(None) == "Unknown"
    assert minutes_label(0) == "Due"
    assert minutes_label(1) == "Due"
    assert minutes_label(7) == "7 min"
    assert minutes_label(75, datetime(2024, 5, 1, 13, 15)) == "1:15"


def test_finalize_sorts_and_puts_unknown_last():
    records = [
        StandardArrival(line="A", destination="X", arrival_time="Unknown", direction="N"),
        StandardArrival(line="A", destination="X", arrival_time="9 min", direction="N", minutes=9),
        StandardArrival(line="A", destination="X", arrival_time="Due", direction="N", minutes=1),
    ]
    result = finalize_arrivals(records, "test")
    assert [r.minutes for r in result] == [1, 9, None]


def test_finalize_rejects_foreign_records():
    with pytest.raises(UpstreamParseError):
        finalize_arrivals([{"line": "Red"}], "test")


# --- CTA ---


def test_cta_howard_lines():
    query = ArrivalQuery(station="40900")
    arrivals = finalize_arrivals(cta.normalize(load_fixture("cta_howard.json"), query, NOW), cta.SOURCE)

    assert {a.line for a in arrivals} <= {"Red", "Purple", "Yellow"}
    assert [a.minutes for a in arrivals] == sorted(a.minutes for a in arrivals)
    assert arrivals[0].line == "Purple"
    assert arrivals[0].arrival_time == "Due"
    assert arrivals[1].arrival_time == "4 min"

    yellow = next(a for a in arrivals if a.line == "Yellow")
    assert yellow.status == ArrivalStatus.DELAYED
    assert yellow.train_id == "590"


def test_cta_error_code_is_an_error():
    payload = {"ctatt": {"tmst": "2024-05-01T12:00:00", "errCd": "101", "errNm": "Invalid API key", "eta": None}}
    with pytest.raises(AdapterError, match="Invalid API key"):
        cta.normalize(payload, ArrivalQuery(station="40900"), NOW)


# --- WMATA ---


def test_wmata_min_values():
    assert wmata.map_min("ARR") == ("Arriving", ArrivalStatus.ON_TIME, 0)
    assert wmata.map_min("BRD") == ("Boarding", ArrivalStatus.BOARDING, 0)
    assert wmata.map_min("7") == ("7 min", ArrivalStatus.ON_TIME, 7)
    assert wmata.map_min("---") == ("Unknown", ArrivalStatus.ON_TIME, None)


def test_wmata_normalize_sorted():
    payload = load_fixture("wmata_metro_center.json")
    arrivals = finalize_arrivals(wmata.normalize(payload, ArrivalQuery(station="A01"), NOW), wmata.SOURCE)

    assert [a.arrival_time for a in arrivals] == ["Boarding", "Arriving", "7 min", "Unknown"]
    assert arrivals[0].direction == "Platform 2"
    assert arrivals[0].station == "Metro Center"
    assert arrivals[0].train_id == "6 cars"


def test_wmata_line_filter_accepts_code_or_name():
    payload = load_fixture("wmata_metro_center.json")
    assert len(wmata.normalize(payload, ArrivalQuery(station="A01", line="red"), NOW)) == 4
    assert wmata.normalize(payload, ArrivalQuery(station="A01", line="BL"), NOW) == []


# --- MARTA ---


def test_marta_waiting_labels():
    assert marta.map_waiting({"WAITING_TIME": "Boarding"}) == ("Boarding", ArrivalStatus.BOARDING, 0)
    assert marta.map_waiting({"WAITING_TIME": "Arriving"}) == ("Arriving", ArrivalStatus.ON_TIME, 0)
    assert marta.map_waiting({"WAITING_TIME": "12 min"}) == ("12 min", ArrivalStatus.ON_TIME, 12)
    assert marta.map_waiting({"WAITING_TIME": "", "WAITING_SECONDS": "300"}) == ("5 min", ArrivalStatus.ON_TIME, 5)

    next_arr = (NOW + timedelta(minutes=4)).isoformat()
    assert marta.map_waiting({"NEXT_ARR": next_arr}, NOW) == ("4 min", ArrivalStatus.ON_TIME, 4)


def test_marta_normalize_filters_and_delay():
    payload = [
        {"LINE": "RED", "STATION": "FIVE POINTS STATION", "DESTINATION": "Airport", "DIRECTION": "S",
         "WAITING_TIME": "3 min", "DELAY": "T180S", "TRAIN_ID": "401"},
        {"LINE": "GOLD", "STATION": "FIVE POINTS STATION", "DESTINATION": "Doraville", "DIRECTION": "N",
         "WAITING_TIME": "6 min", "DELAY": "T0S"},
        {"LINE": "RED", "STATION": "LINDBERGH CENTER STATION", "DESTINATION": "North Springs", "DIRECTION": "N",
         "WAITING_TIME": "1 min"},
    ]
    arrivals = marta.normalize(payload, ArrivalQuery(station="five-points", line="Red Line"), NOW)

    assert len(arrivals) == 1
    assert arrivals[0].direction == "Southbound"
    assert arrivals[0].status == ArrivalStatus.DELAYED
    assert arrivals[0].delay == "3 min"


def test_marta_rejects_non_list_payload():
    with pytest.raises(UpstreamParseError):
        marta.normalize({"error": "bad key"}, ArrivalQuery(), NOW)


# --- MBTA ---


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (10, ("Arriving", 0)),
        (30, ("Arriving", 0)),
        (31, ("Approaching", 1)),
        (60, ("Approaching", 1)),
        (61, ("1 min", 1)),
        (90, ("1 min", 1)),
        (400, ("7 min", 7)),
    ],
)
def test_mbta_countdown(seconds, expected):
    assert mbta.countdown(seconds) == expected


def test_mbta_route_filter():
    assert mbta.route_filter(None) == mbta.DEFAULT_ROUTES
    assert mbta.route_filter("green") == "Green-B,Green-C,Green-D,Green-E"
    assert mbta.route_filter("Mattapan") == "Mattapan"


def test_mbta_normalize_uses_included_route_and_stop():
    payload = {
        "data": [
            {
                "type": "prediction",
                "id": "p1",
                "attributes": {
                    "arrival_time": (NOW + timedelta(seconds=300)).isoformat(),
                    "departure_time": None,
                    "direction_id": 1,
                    "status": None,
                },
                "relationships": {
                    "route": {"data": {"type": "route", "id": "Red"}},
                    "stop": {"data": {"type": "stop", "id": "70077"}},
                    "vehicle": {"data": {"type": "vehicle", "id": "R-5463"}},
                },
            },
            {
                "type": "prediction",
                "id": "p2",
                "attributes": {"arrival_time": None, "departure_time": None, "direction_id": 0},
                "relationships": {"route": {"data": {"type": "route", "id": "Red"}}},
            },
        ],
        "included": [
            {"type": "route", "id": "Red", "attributes": {
                "short_name": "", "long_name": "Red Line", "direction_destinations": ["Ashmont/Braintree", "Alewife"]}},
            {"type": "stop", "id": "70077", "attributes": {"name": "Downtown Crossing"}},
        ],
    }
    arrivals = mbta.normalize(payload, ArrivalQuery(line="red"), NOW)

    assert len(arrivals) == 1
    arrival = arrivals[0]
    assert arrival.line == "Red Line"
    assert arrival.destination == "Alewife"
    assert arrival.direction == "Outbound"
    assert arrival.arrival_time == "5 min"
    assert arrival.station == "Downtown Crossing"
    assert arrival.train_id == "R-5463"


# --- MTA (GTFS-RT) ---


def test_mta_feeds_for_line():
    assert mta.feeds_for_line("a") == ["ace"]
    assert mta.feeds_for_line(None) == list(mta.FEEDS)
    with pytest.raises(BadRequestError):
        mta.feeds_for_line("Y")


def test_mta_normalize_platform_directions():
    now_ts = NOW.timestamp()
    body = _feed(
        ("1", "up-1", [("127N", now_ts + 240, None), ("101N", now_ts + 1800, None)], None),
        ("1", "down-1", [("127S", now_ts + 600, 180), ("142S", now_ts + 1500, None)], None),
        ("1", "gone-1", [("127N", now_ts - 300, None), ("101N", now_ts + 900, None)], None),
    )
    arrivals = finalize_arrivals(mta.normalize([body], ArrivalQuery(station="127"), NOW), mta.SOURCE)

    assert [a.direction for a in arrivals] == ["Uptown", "Downtown"]
    uptown, downtown = arrivals
    assert uptown.destination == "Van Cortlandt Park-242 St"
    assert uptown.minutes == 4
    assert uptown.station == "Times Sq-42 St"
    assert downtown.destination == "South Ferry"
    assert downtown.status == ArrivalStatus.DELAYED
    assert downtown.delay == "3 min"


def test_mta_html_error_page_is_parse_error():
    with pytest.raises(UpstreamParseError, match="HTML"):
        mta.normalize([b"<!DOCTYPE html><html>Access denied</html>"], ArrivalQuery(), NOW)


# --- RTD (GTFS-RT) ---


def test_rtd_normalize():
    now_ts = NOW.timestamp()
    body = _feed(
        ("A", "a-1", [("34510", now_ts + 120, 0), ("34668", now_ts + 2400, None)], 0),
        ("W", "w-1", [("34510", now_ts + 480, None)], 1),
    )
    arrivals = rtd.normalize(body, ArrivalQuery(station="34510", line="A"), NOW)

    assert len(arrivals) == 1
    assert arrivals[0].line == "A"
    assert arrivals[0].direction == "Outbound"
    assert arrivals[0].destination == "To stop 34668"
    assert arrivals[0].arrival_time == "2 min"


def test_rtd_requires_station():
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
            await rtd.RTDAdapter().fetch(ArrivalQuery(), client)

    with pytest.raises(BadRequestError):
        asyncio.run(run())


# --- SEPTA ---


def _septa_payload():
    return {
        "30th Street Station Departures: May 1, 2024, 12:00 pm": [
            {"Northbound": [
                {"direction": "N", "path": "R5N", "train_id": "9541", "origin": "Thorndale",
                 "destination": "Doylestown", "line": "Paoli/Thorndale", "status": "5 min",
                 "service_type": "LOCAL", "next_station": None,
                 "sched_time": "2024-05-01 12:05:00.000", "depart_time": "2024-05-01 12:10:00.000"},
            ]},
            {"Southbound": [
                {"direction": "S", "path": "R4S", "train_id": "418", "origin": "Warminster",
                 "destination": "Airport", "line": "Airport", "status": "On Time",
                 "service_type": "LOCAL", "next_station": None,
                 "sched_time": "2024-05-01 12:20:00.000", "depart_time": "2024-05-01 12:20:00.000"},
            ]},
        ]
    }


def test_septa_late_minutes():
    assert septa.late_minutes("On Time") == 0
    assert septa.late_minutes("5 min") == 5
    assert septa.late_minutes("12 mins") == 12
    assert septa.late_minutes(None) == 0


def test_septa_flatten_keeps_direction_group():
    trains = septa.flatten(_septa_payload())
    assert [(t["direction"], t["train_id"]) for t in trains] == [("Northbound", "9541"), ("Southbound", "418")]
    with pytest.raises(UpstreamParseError):
        septa.flatten([])


def test_septa_normalize_local_times():
    arrivals = septa.normalize(_septa_payload(), ArrivalQuery(station="30th Street Station"), NOW)

    late, on_time = arrivals
    assert late.minutes == 10
    assert late.status == ArrivalStatus.DELAYED
    assert late.delay == "5 min"
    assert late.direction == "Northbound"
    assert on_time.minutes == 20
    assert on_time.status == ArrivalStatus.ON_TIME


# --- LA Metro (Swiftly) ---


def test_lametro_normalize():
    ts = int(NOW.timestamp())
    payload = {
        "success": True,
        "route": "/real-time/lametro-rail/predictions",
        "data": {
            "agencyKey": "lametro-rail",
            "predictionsData": [
                {
                    "routeShortName": "B Line",
                    "routeId": "802",
                    "stopName": "Union Station",
                    "stopId": "80214",
                    "destinations": [
                        {"directionId": "0", "headsign": "North Hollywood", "predictions": [
                            {"time": ts + 420, "sec": 420, "min": 7, "scheduledTime": ts + 300, "vehicleId": "301"},
                            {"time": ts + 900, "sec": 900, "min": 15, "vehicleId": "302"},
                        ]},
                    ],
                }
            ],
        },
    }
    arrivals = lametro.normalize(payload, ArrivalQuery(station="80214"), NOW)

    assert [a.minutes for a in arrivals] == [7, 15]
    assert arrivals[0].status == ArrivalStatus.DELAYED
    assert arrivals[0].delay == "2 min"
    assert arrivals[0].direction == "Direction 0"
    assert arrivals[1].status == ArrivalStatus.ON_TIME


def test_lametro_reports_swiftly_failure():
    with pytest.raises(UpstreamParseError, match="Invalid stop"):
        lametro.normalize({"success": False, "msg": "Invalid stop"}, ArrivalQuery(), NOW)


# --- 511.org ---


def test_sf511_operator_for():
    assert sf511.operator_for("POWL") == "BA"
    assert sf511.operator_for("15731") == "SF"


def test_sf511_json_with_bom():
    adapter = sf511.SF511Adapter()
    resp = httpx.Response(200, content=b'\xef\xbb\xbf{"ServiceDelivery": {}}')
    assert adapter._json(resp) == {"ServiceDelivery": {}}


def test_sf511_normalize_delay():
    aimed = NOW + timedelta(minutes=3)
    expected = NOW + timedelta(minutes=5)
    payload = {
        "ServiceDelivery": {
            "StopMonitoringDelivery": {
                "MonitoredStopVisit": [
                    {"MonitoredVehicleJourney": {
                        "LineRef": "Yellow-N",
                        "DirectionRef": "N",
                        "DestinationName": "Antioch",
                        "VehicleRef": "1234",
                        "MonitoredCall": {
                            "StopPointName": "Powell Street",
                            "AimedArrivalTime": aimed.isoformat().replace("+00:00", "Z"),
                            "ExpectedArrivalTime": expected.isoformat().replace("+00:00", "Z"),
                        },
                    }},
                ]
            }
        }
    }
    arrivals = sf511.normalize(payload, ArrivalQuery(station="POWL"), NOW)

    assert len(arrivals) == 1
    assert arrivals[0].minutes == 5
    assert arrivals[0].status == ArrivalStatus.DELAYED
    assert arrivals[0].delay == "2 min"
    assert arrivals[0].station == "Powell Street"
