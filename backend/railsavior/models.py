from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Arrivals ---


class ArrivalStatus(str, Enum):
    ON_TIME = "On Time"
    DELAYED = "Delayed"
    BOARDING = "Boarding"
    ARRIVED = "Arrived"


class StandardArrival(CamelModel):
    line: str
    destination: str
    arrival_time: str  # rider-facing label: "Arriving", "Boarding", "7 min", ...
    direction: str
    status: ArrivalStatus = ArrivalStatus.ON_TIME
    delay: str = "0"
    station: Optional[str] = None
    train_id: Optional[str] = None
    minutes: Optional[int] = None  # sort key; None sorts last
    event_time: Optional[str] = None


class ArrivalQuery(CamelModel):
    """Canonical request body accepted by every agency endpoint."""

    station: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("station", "stopId", "stationId", "stop_id", "station_id"),
    )
    line: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("line", "routeId", "lineId", "route", "route_id"),
    )
    direction: Optional[str] = None
    action: str = "arrivals"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius: Optional[int] = None  # meters


class ArrivalsResponse(CamelModel):
    success: bool = True
    agency: str
    source: str
    timestamp: str
    data: list[StandardArrival] = Field(default_factory=list)
    note: Optional[str] = None


class ErrorDetail(CamelModel):
    kind: str
    message: str


class ErrorEnvelope(CamelModel):
    success: bool = False
    error: ErrorDetail
    agency: Optional[str] = None
    source: Optional[str] = None
    timestamp: str


class AgencyInfo(CamelModel):
    id: str
    name: str
    city: str
    source: str
    configured: bool
    actions: list[str]


# --- Incident reports ---


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class IncidentCreate(CamelModel):
    incident_type: str = Field(min_length=1, max_length=100)
    transit_line: str = Field(min_length=1, max_length=100)
    location_name: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    image_url: Optional[str] = None


class IncidentReport(CamelModel):
    id: str
    reporter_id: str
    incident_type: str
    transit_line: str
    location_name: str
    description: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    image_url: Optional[str] = None
    status: IncidentStatus
    created_at: datetime
    updated_at: datetime


class IncidentPage(CamelModel):
    items: list[IncidentReport]
    total_count: int
    page: int
    limit: int
    has_next_page: bool
    has_previous_page: bool


# --- Emergency ---


class Location(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = None


class EmergencyRequest(CamelModel):
    report_id: str
    type: str = "sos"  # "sos" or "incident"
    details: str = Field(default="Emergency assistance needed", max_length=1900)
    location: Optional[Location] = None
    timestamp: Optional[str] = None


class EmergencyResponse(CamelModel):
    incident: IncidentReport
    city_name: str
    transit_line: str


class BackupAck(CamelModel):
    success: bool
    message: str
    backup_id: str
    timestamp: str


# --- Group rides ---


class RideCreate(CamelModel):
    university_name: str = Field(min_length=1, max_length=200)
    transit_line: str = Field(min_length=1, max_length=100)
    station_name: str = Field(min_length=1, max_length=200)
    departure_time: datetime
    max_spots: int = Field(default=4, ge=1, le=20)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = Field(default=None, pattern="^(daily|weekly|monthly)$")


class GroupRide(CamelModel):
    id: str
    creator_id: str
    university_name: str
    transit_line: str
    station_name: str
    departure_time: datetime
    max_spots: int
    description: Optional[str] = None
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = None
    next_occurrence: Optional[datetime] = None
    status: str
    created_at: datetime
    current_members: int = 0
    is_member: bool = False


class GeneralRideCreate(CamelModel):
    departure_location: str = Field(min_length=1, max_length=200)
    destination_location: str = Field(min_length=1, max_length=200)
    departure_time: datetime
    max_spots: int = Field(default=4, ge=1, le=20)
    description: Optional[str] = Field(default=None, max_length=1000)


class GeneralGroupRide(CamelModel):
    id: str
    creator_id: str
    departure_location: str
    destination_location: str
    departure_time: datetime
    max_spots: int
    description: Optional[str] = None
    status: str
    created_at: datetime
    current_members: int = 0
    is_member: bool = False


class RideMember(CamelModel):
    id: str
    ride_id: str
    user_id: str
    status: str
    joined_at: datetime


# --- Messages ---


class MessageCreate(CamelModel):
    message_text: str = Field(min_length=1, max_length=2000)
    message_type: str = "text"


class GroupMessage(CamelModel):
    id: str
    ride_id: str
    sender_id: str
    message_text: str
    message_type: str
    is_read: bool = False
    created_at: datetime


class MessagePage(CamelModel):
    items: list[GroupMessage]
    total_count: int
    page: int
    limit: int
    has_next_page: bool
    has_previous_page: bool


# --- Profiles ---


class ProfileUpdate(CamelModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    university_name: Optional[str] = Field(default=None, max_length=200)
    student_status: Optional[bool] = None
    verification_status: Optional[str] = None  # admin only


class Profile(CamelModel):
    user_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    university_name: Optional[str] = None
    student_status: Optional[bool] = None
    verification_status: str = "unverified"
    created_at: datetime
    updated_at: datetime


# --- Realtime ---


class ChangeEvent(CamelModel):
    table: str
    event_type: str  # INSERT / UPDATE / DELETE
    record: dict[str, Any]
    commit_timestamp: str
