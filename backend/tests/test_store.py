import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from railsavior import db as database
from railsavior import emergency, store
from railsavior.auth import Caller
from railsavior.cities import city_for_location, resolve_city
from railsavior.models import EmergencyRequest, Location, RideCreate
from railsavior.store import next_occurrence
from railsavior.tables import SecurityLogRow

UTC = timezone.utc


@pytest.fixture
def session(tmp_path):
    database.init_engine(f"sqlite:///{tmp_path}/store.db")
    db = database.SessionLocal()
    yield db
    db.close()
    database.dispose_engine()


def test_next_occurrence_patterns():
    departure = datetime(2024, 1, 31, 8, 0, tzinfo=UTC)
    now = datetime(2024, 2, 10, 12, 0, tzinfo=UTC)

    assert next_occurrence(departure, None, now) is None
    assert next_occurrence(departure, "daily", now) == datetime(2024, 2, 11, 8, 0, tzinfo=UTC)
    assert next_occurrence(departure, "weekly", now) == datetime(2024, 2, 14, 8, 0, tzinfo=UTC)
    # clamped to the last day of the month
    assert next_occurrence(departure, "monthly", datetime(2024, 2, 1, tzinfo=UTC)) == datetime(2024, 2, 29, 8, 0, tzinfo=UTC)
    assert next_occurrence(departure, "daily", datetime(2024, 1, 1, tzinfo=UTC)) == departure


def test_city_lookup():
    assert resolve_city("NYC").id == "new_york"
    assert resolve_city("San Francisco").id == "san_francisco"
    assert resolve_city("gotham") is None
    assert city_for_location(38.8977, -77.0365).name == "Washington DC"
    assert city_for_location(0.0, 0.0).id == "chicago"


def test_store_paging_limits(session):
    with pytest.raises(store.StoreError):
        store.list_incidents(session, limit=store.MAX_PAGE_SIZE + 1)


def test_backup_writes_security_log(session):
    request = EmergencyRequest(report_id="sos-9", details="help", location=Location(latitude=33.75, longitude=-84.39))
    ack = emergency.record_backup(session, "alice", request)
    assert ack.success is True

    row = session.scalars(select(SecurityLogRow)).one()
    assert row.event_type == "emergency_backup"
    assert row.severity == "critical"
    assert row.details["report_id"] == "sos-9"
    assert row.details["location"]["latitude"] == 33.75


def test_emergency_incident_uses_detected_city(session):
    request = EmergencyRequest(report_id="sos-10", location=Location(latitude=33.75, longitude=-84.39))
    response = emergency.create_emergency_incident(session, None, request)
    assert response.city_name == "Atlanta"
    assert response.incident.transit_line == "MARTA"
    assert response.incident.location_name == "SOS incident reported MARTA"

    page = store.list_incidents(session, city="atlanta")
    assert [i.id for i in page.items] == [response.incident.id]

    with pytest.raises(store.PermissionDeniedError):
        store.resolve_incident(session, Caller("alice"), response.incident.id)


def test_concurrent_joins_respect_capacity(session):
    ride = store.create_ride(session, "olivia", RideCreate(
        university_name="Loyola University Chicago",
        transit_line="Red",
        station_name="Loyola",
        departure_time=datetime(2030, 1, 7, 8, 0, tzinfo=UTC),
        max_spots=4,
    ))
    session.close()

    riders = 16
    barrier = threading.Barrier(riders)
    outcomes = []

    def join(n):
        db = database.SessionLocal()
        try:
            barrier.wait()
            store.join_ride(db, ride.id, f"rider-{n}")
            outcomes.append("joined")
        except store.RideFullError:
            outcomes.append("full")
        finally:
            db.close()

    threads = [threading.Thread(target=join, args=(n,)) for n in range(riders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("joined") == 4
    assert outcomes.count("full") == riders - 4
    assert store.list_rides(session)[0].current_members == 4
