"""SOS incident writes and the emergency backup log."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from railsavior import store
from railsavior.cities import CITIES, DEFAULT_CITY, City, city_for_location
from railsavior.models import BackupAck, EmergencyRequest, EmergencyResponse, IncidentCreate

logger = logging.getLogger("railsavior.emergency")

ANONYMOUS_REPORTER = "anonymous"
SOS_INCIDENT_TYPE = "SOS Emergency"


def detect_city(request: EmergencyRequest) -> City:
    """City from the report's GPS fix; the default city when there is none."""
    if request.location is None:
        return CITIES[DEFAULT_CITY]
    return city_for_location(request.location.latitude, request.location.longitude)


def create_emergency_incident(db: Session, reporter_id: Optional[str], request: EmergencyRequest) -> EmergencyResponse:
    city = detect_city(request)
    location = request.location
    data = IncidentCreate(
        incident_type=SOS_INCIDENT_TYPE,
        transit_line=city.transit_line,
        location_name=f"SOS incident reported {city.transit_line}",
        description=f"SOS EMERGENCY: {request.details}",
        latitude=location.latitude if location else None,
        longitude=location.longitude if location else None,
        accuracy=location.accuracy if location else None,
    )
    incident = store.create_incident(db, reporter_id or ANONYMOUS_REPORTER, data)
    logger.critical(
        f"SOS {request.report_id} filed as incident {incident.id} in {city.name} ({city.transit_line})"
    )
    return EmergencyResponse(incident=incident, city_name=city.name, transit_line=city.transit_line)


def record_backup(db: Session, reporter_id: Optional[str], request: EmergencyRequest) -> BackupAck:
    """Write the report to the security log as a second, independent record."""
    location = request.location
    coords = f"{location.latitude}, {location.longitude}" if location else "unknown coordinates"
    logger.critical(f"Emergency backup: {request.type} {request.report_id} at {coords}: {request.details}")

    store.log_security_event(
        db,
        "emergency_backup",
        {
            "report_id": request.report_id,
            "type": request.type,
            "details": request.details,
            "location": location.model_dump() if location else None,
            "reported_at": request.timestamp,
            "backup_method": "api",
        },
        severity="critical",
        user_id=reporter_id,
    )
    return BackupAck(
        success=True,
        message="Emergency report logged via backup system",
        backup_id=request.report_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
