"""SQLAlchemy ORM tables for incidents, rides, messages, profiles and security logs."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from railsavior.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentReportRow(Base):
    __tablename__ = "incident_reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    reporter_id = Column(String(64), nullable=False, index=True)
    incident_type = Column(String(100), nullable=False)
    transit_line = Column(String(100), nullable=False, index=True)
    location_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    accuracy = Column(Float)
    image_url = Column(String(500))
    status = Column(String(20), nullable=False, default="active", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class GroupRideRow(Base):
    """University group ride."""
    __tablename__ = "group_rides"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(64), nullable=False, index=True)
    university_name = Column(String(200), nullable=False, index=True)
    transit_line = Column(String(100), nullable=False)
    station_name = Column(String(200), nullable=False)
    departure_time = Column(DateTime(timezone=True), nullable=False, index=True)
    max_spots = Column(Integer, nullable=False, default=4)
    description = Column(Text)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_pattern = Column(String(20))  # daily / weekly / monthly
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GroupRideMemberRow(Base):
    __tablename__ = "group_ride_members"
    __table_args__ = (UniqueConstraint("ride_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    ride_id = Column(String(36), ForeignKey("group_rides.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="joined")  # joined / left
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GeneralGroupRideRow(Base):
    __tablename__ = "general_group_rides"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(64), nullable=False, index=True)
    departure_location = Column(String(200), nullable=False)
    destination_location = Column(String(200), nullable=False)
    departure_time = Column(DateTime(timezone=True), nullable=False, index=True)
    max_spots = Column(Integer, nullable=False, default=4)
    description = Column(Text)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GeneralRideMemberRow(Base):
    __tablename__ = "general_ride_members"
    __table_args__ = (UniqueConstraint("ride_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    ride_id = Column(String(36), ForeignKey("general_group_rides.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="joined")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GroupMessageRow(Base):
    __tablename__ = "group_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    # university or general ride id
    ride_id = Column(String(36), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False)
    message_text = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class ProfileRow(Base):
    __tablename__ = "profiles"

    user_id = Column(String(64), primary_key=True)
    full_name = Column(String(200))
    email = Column(String(320))
    university_name = Column(String(200))
    student_status = Column(Boolean)
    verification_status = Column(String(20), nullable=False, default="unverified")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class SecurityLogRow(Base):
    __tablename__ = "security_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default="info")
    user_id = Column(String(64))
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
