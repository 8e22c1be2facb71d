import pytest
from starlette.websockets import WebSocket, WebSocketDisconnect

from conftest import USER_HEADERS, as_user


def _incident(transit_line="Chicago CTA", **extra):
    return {
        "incidentType": "Harassment",
        "transitLine": transit_line,
        "locationName": "Howard",
        "description": "Rider being followed between cars",
        **extra,
    }


def _ride(max_spots=4, **extra):
    return {
        "universityName": "Loyola University Chicago",
        "transitLine": "Red",
        "stationName": "Loyola",
        "departureTime": "2030-01-07T08:00:00Z",
        "maxSpots": max_spots,
        **extra,
    }


def _general_ride(**extra):
    return {
        "departureLocation": "Union Station",
        "destinationLocation": "O'Hare Airport",
        "departureTime": "2030-01-07T06:00:00Z",
        **extra,
    }


# --- Incidents ---


def test_writes_require_identity(client):
    resp = client.post("/api/incidents", json=_incident())
    assert resp.status_code == 401


def test_reporter_is_the_caller(client):
    resp = client.post("/api/incidents", json=_incident(reporterId="mallory"), headers=USER_HEADERS)
    assert resp.status_code == 201
    body = resp.json()
    assert body["reporterId"] == "alice"
    assert body["status"] == "active"


def test_incident_pagination(client):
    for _ in range(12):
        client.post("/api/incidents", json=_incident(), headers=USER_HEADERS)
    client.post("/api/incidents", json=_incident(transit_line="MARTA"), headers=USER_HEADERS)

    first = client.get("/api/incidents", params={"city": "chicago", "page": 0, "limit": 5}).json()
    assert len(first["items"]) == 5
    assert first["totalCount"] == 12
    assert first["hasNextPage"] is True
    assert first["hasPreviousPage"] is False

    last = client.get("/api/incidents", params={"city": "chicago", "page": 2, "limit": 5}).json()
    assert len(last["items"]) == 2
    assert last["hasNextPage"] is False
    assert last["hasPreviousPage"] is True

    past_end = client.get("/api/incidents", params={"city": "chicago", "page": 3, "limit": 5}).json()
    assert past_end["items"] == []
    assert past_end["totalCount"] == 12

    everywhere = client.get("/api/incidents", params={"limit": 100}).json()
    assert everywhere["totalCount"] == 13


def test_incident_list_rejects_bad_input(client):
    assert client.get("/api/incidents", params={"city": "gotham"}).status_code == 400
    assert client.get("/api/incidents", params={"limit": 0}).status_code == 422
    assert client.get("/api/incidents", params={"page": -1}).status_code == 422


def test_only_reporter_resolves_once(client):
    incident = client.post("/api/incidents", json=_incident(), headers=USER_HEADERS).json()
    url = f"/api/incidents/{incident['id']}/resolve"

    denied = client.post(url, headers=as_user("bob"))
    assert denied.status_code == 403
    assert denied.json()["detail"]["kind"] == "permission_denied"

    resolved = client.post(url, headers=USER_HEADERS)
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"

    again = client.post(url, headers=USER_HEADERS)
    assert again.status_code == 409
    assert again.json()["detail"]["kind"] == "invalid_transition"

    assert client.post("/api/incidents/missing/resolve", headers=USER_HEADERS).status_code == 404
    assert client.get("/api/incidents").json()["totalCount"] == 0


# --- Emergency ---


def test_emergency_detects_city_without_identity(client):
    resp = client.post("/api/emergency", json={
        "reportId": "sos-1",
        "details": "Someone is threatening me",
        "location": {"latitude": 40.7527, "longitude": -73.9772},
    })
    assert resp.status_code == 201
    body = resp.json()
    assert body["cityName"] == "New York"
    assert body["transitLine"] == "NYC MTA"
    assert body["incident"]["reporterId"] == "anonymous"
    assert body["incident"]["incidentType"] == "SOS Emergency"
    assert body["incident"]["description"] == "SOS EMERGENCY: Someone is threatening me"


def test_emergency_without_location_defaults_to_chicago(client):
    resp = client.post("/api/emergency", json={"reportId": "sos-2"}, headers=USER_HEADERS)
    assert resp.status_code == 201
    assert resp.json()["cityName"] == "Chicago"
    assert resp.json()["incident"]["reporterId"] == "alice"


def test_emergency_backup(client):
    resp = client.post("/api/emergency-backup", json={"reportId": "sos-3", "details": "help"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["backupId"] == "sos-3"


# --- Group rides ---


def test_ride_capacity(client):
    ride = client.post("/api/rides", json=_ride(max_spots=4), headers=as_user("olivia")).json()
    join_url = f"/api/rides/{ride['id']}/join"

    for n in range(1, 5):
        assert client.post(join_url, headers=as_user(f"u{n}")).status_code == 200

    full = client.post(join_url, headers=as_user("u5"))
    assert full.status_code == 409
    assert full.json()["detail"]["kind"] == "ride_full"

    dup = client.post(join_url, headers=as_user("u1"))
    assert dup.status_code == 409
    assert dup.json()["detail"]["kind"] == "already_member"

    rides = client.get("/api/rides", headers=as_user("u1")).json()
    assert rides[0]["currentMembers"] == 4
    assert rides[0]["isMember"] is True

    # leaving frees the spot
    assert client.post(f"/api/rides/{ride['id']}/leave", headers=as_user("u2")).json()["status"] == "left"
    assert client.post(join_url, headers=as_user("u5")).status_code == 200


def test_recurring_ride_needs_pattern(client):
    resp = client.post("/api/rides", json=_ride(isRecurring=True), headers=USER_HEADERS)
    assert resp.status_code == 400

    resp = client.post("/api/rides", json=_ride(isRecurring=True, recurrencePattern="weekly"), headers=USER_HEADERS)
    assert resp.status_code == 201
    assert resp.json()["nextOccurrence"] is not None


def test_ride_messages_are_members_only(client):
    ride = client.post("/api/rides", json=_ride(), headers=as_user("olivia")).json()
    messages_url = f"/api/rides/{ride['id']}/messages"
    client.post(f"/api/rides/{ride['id']}/join", headers=as_user("u1"))

    assert client.get(messages_url, headers=as_user("stranger")).status_code == 403
    assert client.post(messages_url, json={"messageText": "hi"}, headers=as_user("stranger")).status_code == 403

    sent = client.post(messages_url, json={"messageText": "Meet at the north stairs"}, headers=as_user("u1"))
    assert sent.status_code == 201
    assert sent.json()["senderId"] == "u1"

    page = client.get(messages_url, headers=as_user("olivia")).json()
    assert page["totalCount"] == 1
    assert page["items"][0]["messageText"] == "Meet at the north stairs"


def test_general_rides_search_and_join(client):
    created = client.post("/api/general-rides", json=_general_ride(maxSpots=1), headers=USER_HEADERS)
    assert created.status_code == 201
    ride_id = created.json()["id"]

    assert [r["id"] for r in client.get("/api/general-rides", params={"search": "o'hare"}).json()] == [ride_id]
    assert client.get("/api/general-rides", params={"search": "midway"}).json() == []

    assert client.post(f"/api/general-rides/{ride_id}/join", headers=as_user("bob")).status_code == 200
    full = client.post(f"/api/general-rides/{ride_id}/join", headers=as_user("carol"))
    assert full.status_code == 409
    assert full.json()["detail"]["kind"] == "ride_full"


def test_general_ride_chat(client):
    ride = client.post("/api/general-rides", json=_general_ride(), headers=as_user("olivia")).json()
    messages_url = f"/api/rides/{ride['id']}/messages"

    assert client.get(messages_url, headers=as_user("bob")).status_code == 403
    client.post(f"/api/general-rides/{ride['id']}/join", headers=as_user("bob"))

    sent = client.post(messages_url, json={"messageText": "At the Canal St doors"}, headers=as_user("bob"))
    assert sent.status_code == 201
    assert sent.json()["rideId"] == ride["id"]

    page = client.get(messages_url, headers=as_user("olivia")).json()
    assert [m["messageText"] for m in page["items"]] == ["At the Canal St doors"]
    assert client.get("/api/rides/no-such-ride/messages", headers=USER_HEADERS).status_code == 404


def test_only_creator_cancels_ride(client):
    ride = client.post("/api/rides", json=_ride(), headers=as_user("olivia")).json()
    ride_url = f"/api/rides/{ride['id']}"

    denied = client.delete(ride_url, headers=as_user("bob"))
    assert denied.status_code == 403
    assert denied.json()["detail"]["kind"] == "permission_denied"

    with client.websocket_connect("/api/realtime/group_rides") as ws:
        ws.receive_json()
        cancelled = client.delete(ride_url, headers=as_user("olivia"))
        event = ws.receive_json()

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert event["eventType"] == "DELETE"
    assert event["record"]["id"] == ride["id"]

    assert client.get("/api/rides").json() == []
    assert client.delete(ride_url, headers=as_user("olivia")).status_code == 409
    assert client.post(f"{ride_url}/join", headers=as_user("bob")).status_code == 409


def test_general_ride_cancel(client):
    ride = client.post("/api/general-rides", json=_general_ride(), headers=as_user("olivia")).json()

    assert client.delete(f"/api/general-rides/{ride['id']}", headers=as_user("bob")).status_code == 403
    resp = client.delete(f"/api/general-rides/{ride['id']}", headers=as_user("olivia"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert client.get("/api/general-rides").json() == []
    assert client.delete("/api/general-rides/no-such-ride", headers=USER_HEADERS).status_code == 404


# --- Profiles ---


def test_profile_access(client):
    resp = client.put("/api/profiles/alice", json={"fullName": "Alice Rivera"}, headers=USER_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["verificationStatus"] == "unverified"

    assert client.get("/api/profiles/alice", headers=as_user("bob")).status_code == 403
    assert client.get("/api/profiles/alice", headers=as_user("root", "admin")).status_code == 200

    own_verify = client.put("/api/profiles/alice", json={"verificationStatus": "verified"}, headers=USER_HEADERS)
    assert own_verify.status_code == 403

    verified = client.put("/api/profiles/alice", json={"verificationStatus": "verified"}, headers=as_user("root", "admin"))
    assert verified.status_code == 200
    assert verified.json()["verificationStatus"] == "verified"
    assert verified.json()["fullName"] == "Alice Rivera"


# --- Realtime ---


def test_realtime_incident_feed(client):
    with client.websocket_connect("/api/realtime/incident_reports") as ws:
        assert ws.receive_json() == {"type": "subscribed", "table": "incident_reports"}

        created = client.post("/api/incidents", json=_incident(), headers=USER_HEADERS).json()
        event = ws.receive_json()

    assert event["type"] == "change"
    assert event["table"] == "incident_reports"
    assert event["eventType"] == "INSERT"
    assert event["record"]["id"] == created["id"]
    assert event["record"]["reporterId"] == "alice"


def test_realtime_rejects_unknown_table(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/realtime/security_logs") as ws:
            ws.receive_json()


def test_realtime_closes_when_delivery_fails(client, monkeypatch):
    from railsavior.main import app_state

    send_json = WebSocket.send_json

    async def failing_send_json(self, data, mode="text"):
        if data.get("type") == "change":
            raise RuntimeError("socket write failed")
        await send_json(self, data, mode)

    monkeypatch.setattr(WebSocket, "send_json", failing_send_json)

    with client.websocket_connect("/api/realtime/incident_reports") as ws:
        assert ws.receive_json()["type"] == "subscribed"
        client.post("/api/incidents", json=_incident(), headers=USER_HEADERS)
        with pytest.raises(WebSocketDisconnect) as closed:
            ws.receive_json()

    assert closed.value.code == 1011
    assert app_state["broker"].subscriber_count("incident_reports") == 0
