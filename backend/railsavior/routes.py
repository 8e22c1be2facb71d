import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from railsavior import emergency, store
from railsavior.adapters import ADAPTERS, get_adapter
from railsavior.auth import Caller, get_current_user, require_user
from railsavior.db import get_db
from railsavior.errors import BadRequestError, StoreError
from railsavior.models import (
    AgencyInfo,
    ArrivalQuery,
    ArrivalsResponse,
    BackupAck,
    EmergencyRequest,
    EmergencyResponse,
    GeneralGroupRide,
    GeneralRideCreate,
    GroupMessage,
    GroupRide,
    IncidentCreate,
    IncidentPage,
    IncidentReport,
    MessageCreate,
    MessagePage,
    Profile,
    ProfileUpdate,
    RideCreate,
    RideMember,
)
from railsavior.realtime import TABLES

logger = logging.getLogger("railsavior.routes")

router = APIRouter()


def _get_state():
    from railsavior.main import app_state
    return app_state


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _http_error(e: StoreError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"kind": e.kind, "message": str(e)})


def _publish(table: str, event_type: str, record: BaseModel) -> None:
    broker = _get_state().get("broker")
    if broker is not None:
        broker.publish(table, event_type, record.model_dump(by_alias=True, mode="json"))


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "RailSavior API",
        "configured_agencies": [a.agency_id for a in ADAPTERS.values() if a.configured],
    }


@router.get("/agencies", response_model=list[AgencyInfo])
async def list_agencies():
    return [
        AgencyInfo(
            id=a.agency_id,
            name=a.name,
            city=a.city,
            source=a.source,
            configured=a.configured,
            actions=["arrivals", *a.metadata_actions],
        )
        for a in ADAPTERS.values()
    ]


# --- Arrivals ---


async def _arrivals(agency: str, raw: dict) -> Any:
    adapter = get_adapter(agency)
    try:
        query = ArrivalQuery.model_validate(raw)
    except ValidationError as e:
        raise BadRequestError(f"Invalid arrivals request: {e.errors()[0]['msg']}", adapter.source)

    client = _get_state()["http_client"]
    if query.action == "arrivals":
        data = await adapter.arrivals(query, client)
        logger.info(f"{adapter.source}: {len(data)} arrivals for station={query.station} line={query.line}")
        return ArrivalsResponse(agency=adapter.agency_id, source=adapter.source, timestamp=_now(), data=data)

    if query.action in adapter.metadata_actions:
        catalogue = await adapter.metadata(query, client)
        return {"success": True, **catalogue, "source": adapter.source, "timestamp": _now()}

    raise BadRequestError(f"{adapter.name} does not support action '{query.action}'", adapter.source)


@router.post("/arrivals/{agency}")
async def post_arrivals(agency: str, request: Request):
    """Canonical arrivals endpoint. Body is an ArrivalQuery; an empty body means defaults."""
    body = await request.body()
    try:
        raw = json.loads(body) if body.strip() else {}
    except ValueError:
        raise BadRequestError("Request body is not valid JSON")
    if not isinstance(raw, dict):
        raise BadRequestError("Request body must be a JSON object")
    return await _arrivals(agency, raw)


@router.get("/arrivals/{agency}")
async def get_arrivals(agency: str, request: Request):
    return await _arrivals(agency, dict(request.query_params))


# --- Incident reports ---


@router.get("/incidents", response_model=IncidentPage)
def list_incidents(
    city: Optional[str] = Query(None),
    page: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=store.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    try:
        return store.list_incidents(db, city=city, page=page, limit=limit)
    except StoreError as e:
        raise _http_error(e)


@router.post("/incidents", response_model=IncidentReport, status_code=201)
def create_incident(
    data: IncidentCreate,
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    incident = store.create_incident(db, caller.user_id, data)
    _publish("incident_reports", "INSERT", incident)
    return incident


@router.post("/incidents/{incident_id}/resolve", response_model=IncidentReport)
def resolve_incident(
    incident_id: str,
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        incident = store.resolve_incident(db, caller, incident_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("incident_reports", "UPDATE", incident)
    return incident


# --- Emergency ---


@router.post("/emergency", response_model=EmergencyResponse, status_code=201)
def report_emergency(
    request: EmergencyRequest,
    caller: Optional[Caller] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """SOS write. Accepted without an identity so a signed-out rider can still raise an alarm."""
    response = emergency.create_emergency_incident(db, caller.user_id if caller else None, request)
    _publish("incident_reports", "INSERT", response.incident)
    return response


@router.post("/emergency-backup", response_model=BackupAck)
def emergency_backup(
    request: EmergencyRequest,
    caller: Optional[Caller] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return emergency.record_backup(db, caller.user_id if caller else None, request)
    except SQLAlchemyError as e:
        logger.error(f"Emergency backup for {request.report_id} could not be stored: {e}")
        ack = BackupAck(
            success=False,
            message="Emergency report received but processing failed",
            backup_id=request.report_id,
            timestamp=_now(),
        )
        return JSONResponse(status_code=500, content=ack.model_dump(by_alias=True))


# --- University group rides ---


@router.get("/rides", response_model=list[GroupRide])
def list_rides(
    university: Optional[str] = Query(None),
    transit_line: Optional[str] = Query(None, alias="transitLine"),
    caller: Optional[Caller] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return store.list_rides(db, caller.user_id if caller else None, university=university, transit_line=transit_line)


@router.post("/rides", response_model=GroupRide, status_code=201)
def create_ride(data: RideCreate, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        ride = store.create_ride(db, caller.user_id, data)
    except StoreError as e:
        raise _http_error(e)
    _publish("group_rides", "INSERT", ride)
    return ride


@router.post("/rides/{ride_id}/join", response_model=RideMember)
def join_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        member = store.join_ride(db, ride_id, caller.user_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("group_ride_members", "INSERT", member)
    return member


@router.post("/rides/{ride_id}/leave", response_model=RideMember)
def leave_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        member = store.leave_ride(db, ride_id, caller.user_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("group_ride_members", "UPDATE", member)
    return member


@router.delete("/rides/{ride_id}", response_model=GroupRide)
def cancel_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    """Creator-only. The ride is kept with status ``cancelled`` and drops out of listings."""
    try:
        ride = store.cancel_ride(db, caller, ride_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("group_rides", "DELETE", ride)
    return ride


@router.get("/rides/{ride_id}/messages", response_model=MessagePage)
def list_messages(
    ride_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=store.MAX_PAGE_SIZE),
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        return store.list_messages(db, ride_id, caller.user_id, page=page, limit=limit)
    except StoreError as e:
        raise _http_error(e)


@router.post("/rides/{ride_id}/messages", response_model=GroupMessage, status_code=201)
def send_message(
    ride_id: str,
    data: MessageCreate,
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        message = store.send_message(db, ride_id, caller.user_id, data)
    except StoreError as e:
        raise _http_error(e)
    _publish("group_messages", "INSERT", message)
    return message


# --- General group rides ---


@router.get("/general-rides", response_model=list[GeneralGroupRide])
def list_general_rides(
    search: Optional[str] = Query(None),
    caller: Optional[Caller] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return store.list_general_rides(db, caller.user_id if caller else None, search=search)


@router.post("/general-rides", response_model=GeneralGroupRide, status_code=201)
def create_general_ride(data: GeneralRideCreate, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    ride = store.create_general_ride(db, caller.user_id, data)
    _publish("general_group_rides", "INSERT", ride)
    return ride


@router.post("/general-rides/{ride_id}/join", response_model=RideMember)
def join_general_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        member = store.join_general_ride(db, ride_id, caller.user_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("general_ride_members", "INSERT", member)
    return member


@router.post("/general-rides/{ride_id}/leave", response_model=RideMember)
def leave_general_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        member = store.leave_general_ride(db, ride_id, caller.user_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("general_ride_members", "UPDATE", member)
    return member


@router.delete("/general-rides/{ride_id}", response_model=GeneralGroupRide)
def cancel_general_ride(ride_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        ride = store.cancel_general_ride(db, caller, ride_id)
    except StoreError as e:
        raise _http_error(e)
    _publish("general_group_rides", "DELETE", ride)
    return ride


# --- Profiles ---


@router.get("/profiles/{user_id}", response_model=Profile)
def get_profile(user_id: str, caller: Caller = Depends(require_user), db: Session = Depends(get_db)):
    try:
        return store.get_profile(db, caller, user_id)
    except StoreError as e:
        raise _http_error(e)


@router.put("/profiles/{user_id}", response_model=Profile)
def update_profile(
    user_id: str,
    data: ProfileUpdate,
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        return store.upsert_profile(db, caller, user_id, data)
    except StoreError as e:
        raise _http_error(e)


# --- Realtime ---


@router.websocket("/realtime/{table}")
async def realtime_changes(websocket: WebSocket, table: str):
    """Change feed for one table.

    Sends ``{"type": "subscribed"}`` once the subscription is live, then one
    ``{"type": "change", ...}`` message per committed INSERT/UPDATE/DELETE.
    """
    broker = _get_state().get("broker")
    if broker is None:
        await websocket.close(code=1011, reason="Realtime service unavailable")
        return
    if table not in TABLES:
        await websocket.close(code=1008, reason=f"Unknown table '{table}'")
        return

    await websocket.accept()
    queue = broker.subscribe(table)
    await websocket.send_json({"type": "subscribed", "table": table})

    async def forward():
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    async def drain():
        # Client messages are only keepalives; this also notices disconnects
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Realtime subscriber on {table} disconnected")

    forwarder = asyncio.create_task(forward())
    receiver = asyncio.create_task(drain())
    try:
        done, _ = await asyncio.wait({forwarder, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        forwarder.cancel()
        receiver.cancel()
        await asyncio.gather(forwarder, receiver, return_exceptions=True)
        broker.unsubscribe(table, queue)

    if forwarder in done and forwarder.exception() is not None:
        logger.warning(f"Realtime delivery on {table} failed: {forwarder.exception()}")
        try:
            await websocket.close(code=1011, reason="Realtime delivery failed")
        except (RuntimeError, WebSocketDisconnect):
            logger.debug(f"Realtime socket on {table} was already closed")
