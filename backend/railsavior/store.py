"""Persistence rules for incident reports, group rides, messages, profiles and security logs.

Every function takes a SQLAlchemy session and returns API models. Business
rules (ownership, capacity, valid transitions) are enforced here rather than
in the routes, and violations raise the store errors from ``railsavior.errors``.
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from railsavior.arrivals import as_utc
from railsavior.auth import Caller
from railsavior.cities import resolve_city
from railsavior.errors import (
    AlreadyMemberError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RideFullError,
    StoreError,
)
from railsavior.models import (
    GeneralGroupRide,
    GeneralRideCreate,
    GroupMessage,
    GroupRide,
    IncidentCreate,
    IncidentPage,
    IncidentReport,
    IncidentStatus,
    MessageCreate,
    MessagePage,
    Profile,
    ProfileUpdate,
    RideCreate,
    RideMember,
)
from railsavior.tables import (
    GeneralGroupRideRow,
    GeneralRideMemberRow,
    GroupMessageRow,
    GroupRideMemberRow,
    GroupRideRow,
    IncidentReportRow,
    ProfileRow,
    SecurityLogRow,
)

logger = logging.getLogger("railsavior.store")

MAX_PAGE_SIZE = 100
RIDE_LIST_LIMIT = 50
VERIFICATION_STATUSES = {"unverified", "pending", "verified", "rejected"}


def _as_dict(row) -> dict[str, Any]:
    values = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        values[column.key] = value
    return values


def _check_paging(page: int, limit: int) -> None:
    if page < 0:
        raise StoreError("page must be >= 0")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise StoreError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def _paginate(db: Session, model, filters: list, order_by, page: int, limit: int) -> tuple[list, int]:
    """Rows for one page plus the total count, read in the same transaction.

    The total rides along each row as a window count, so count and page are
    consistent with each other. An empty page falls back to a count query.
    """
    _check_paging(page, limit)
    stmt = (
        select(model, func.count().over().label("total_count"))
        .where(*filters)
        .order_by(order_by)
        .offset(page * limit)
        .limit(limit)
    )
    rows = db.execute(stmt).all()
    if rows:
        return [row[0] for row in rows], rows[0].total_count
    total = db.scalar(select(func.count()).select_from(model).where(*filters)) or 0
    return [], total


# --- Incident reports ---


def _transit_line_for_city(city: str) -> str:
    resolved = resolve_city(city)
    if resolved is None:
        raise StoreError(f"Unknown city '{city}'")
    return resolved.transit_line


def list_incidents(
    db: Session,
    city: Optional[str] = None,
    page: int = 0,
    limit: int = 10,
    status: IncidentStatus = IncidentStatus.ACTIVE,
) -> IncidentPage:
    filters = [IncidentReportRow.status == status.value]
    if city:
        filters.append(IncidentReportRow.transit_line == _transit_line_for_city(city))

    rows, total = _paginate(db, IncidentReportRow, filters, IncidentReportRow.created_at.desc(), page, limit)
    return IncidentPage(
        items=[IncidentReport.model_validate(_as_dict(row)) for row in rows],
        total_count=total,
        page=page,
        limit=limit,
        has_next_page=(page + 1) * limit < total,
        has_previous_page=page > 0,
    )


def create_incident(db: Session, reporter_id: str, data: IncidentCreate) -> IncidentReport:
    """Insert a report; the reporter is always the authenticated caller."""
    row = IncidentReportRow(reporter_id=reporter_id, status=IncidentStatus.ACTIVE.value, **data.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(f"Incident {row.id} reported on {row.transit_line} by {reporter_id}")
    return IncidentReport.model_validate(_as_dict(row))


def resolve_incident(db: Session, caller: Caller, incident_id: str) -> IncidentReport:
    row = db.get(IncidentReportRow, incident_id, with_for_update=True)
    if row is None:
        raise NotFoundError(f"Incident {incident_id} not found")
    if row.reporter_id != caller.user_id:
        raise PermissionDeniedError("Only the reporter can resolve this incident")
    if row.status != IncidentStatus.ACTIVE.value:
        raise InvalidTransitionError(f"Incident {incident_id} is already {row.status}")

    row.status = IncidentStatus.RESOLVED.value
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    logger.info(f"Incident {incident_id} resolved by {caller.user_id}")
    return IncidentReport.model_validate(_as_dict(row))


# --- Group rides ---


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(departure: datetime, pattern: Optional[str], now: datetime) -> Optional[datetime]:
    """First departure of a recurring ride that is still ahead of ``now``."""
    if not pattern:
        return None
    departure, now = as_utc(departure), as_utc(now)
    if pattern == "daily":
        step = timedelta(days=1)
    elif pattern == "weekly":
        step = timedelta(weeks=1)
    elif pattern == "monthly":
        occurrence, months = departure, 0
        while occurrence <= now:
            months += 1
            occurrence = _add_months(departure, months)
        return occurrence
    else:
        return None

    if departure > now:
        return departure
    periods = (now - departure) // step + 1
    return departure + step * periods


def _member_counts(db: Session, member_model, ride_ids: list[str]) -> dict[str, int]:
    if not ride_ids:
        return {}
    stmt = (
        select(member_model.ride_id, func.count())
        .where(member_model.ride_id.in_(ride_ids), member_model.status == "joined")
        .group_by(member_model.ride_id)
    )
    return dict(db.execute(stmt).all())


def _memberships(db: Session, member_model, ride_ids: list[str], user_id: Optional[str]) -> set[str]:
    if not ride_ids or not user_id:
        return set()
    stmt = select(member_model.ride_id).where(
        member_model.ride_id.in_(ride_ids),
        member_model.user_id == user_id,
        member_model.status == "joined",
    )
    return set(db.scalars(stmt).all())


def _group_ride(row: GroupRideRow, members: int, is_member: bool, now: datetime) -> GroupRide:
    values = _as_dict(row)
    if row.is_recurring:
        values["next_occurrence"] = next_occurrence(values["departure_time"], row.recurrence_pattern, now)
    return GroupRide.model_validate({**values, "current_members": members, "is_member": is_member})


def list_rides(
    db: Session,
    caller_id: Optional[str] = None,
    university: Optional[str] = None,
    transit_line: Optional[str] = None,
) -> list[GroupRide]:
    stmt = select(GroupRideRow).where(GroupRideRow.status == "active")
    if university:
        stmt = stmt.where(GroupRideRow.university_name.ilike(f"%{university}%"))
    if transit_line:
        stmt = stmt.where(GroupRideRow.transit_line == transit_line)
    rows = db.scalars(stmt.order_by(GroupRideRow.departure_time.asc()).limit(RIDE_LIST_LIMIT)).all()

    ids = [row.id for row in rows]
    counts = _member_counts(db, GroupRideMemberRow, ids)
    mine = _memberships(db, GroupRideMemberRow, ids, caller_id)
    now = datetime.now(timezone.utc)
    return [_group_ride(row, counts.get(row.id, 0), row.id in mine, now) for row in rows]


def create_ride(db: Session, creator_id: str, data: RideCreate) -> GroupRide:
    if data.is_recurring and not data.recurrence_pattern:
        raise StoreError("Recurring rides need a recurrence pattern")
    values = data.model_dump()
    if not data.is_recurring:
        values["recurrence_pattern"] = None
    row = GroupRideRow(creator_id=creator_id, status="active", **values)
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(f"Group ride {row.id} created by {creator_id} ({row.university_name}, {row.station_name})")
    return _group_ride(row, 0, False, datetime.now(timezone.utc))


def _join(db: Session, ride_model, member_model, ride_id: str, user_id: str) -> RideMember:
    # Row lock on server databases; SQLite sessions already hold the write lock (db.init_engine)
    ride = db.get(ride_model, ride_id, with_for_update=True)
    if ride is None:
        raise NotFoundError(f"Ride {ride_id} not found")
    if ride.status != "active":
        raise InvalidTransitionError(f"Ride {ride_id} is {ride.status}")

    member = db.scalars(
        select(member_model).where(member_model.ride_id == ride_id, member_model.user_id == user_id)
    ).first()
    if member is not None and member.status == "joined":
        raise AlreadyMemberError("You have already joined this ride")

    joined = db.scalar(
        select(func.count()).select_from(member_model).where(
            member_model.ride_id == ride_id, member_model.status == "joined"
        )
    ) or 0
    if joined >= ride.max_spots:
        raise RideFullError(f"Ride is full ({joined}/{ride.max_spots} spots taken)")

    if member is None:
        member = member_model(ride_id=ride_id, user_id=user_id, status="joined")
        db.add(member)
    else:
        member.status = "joined"
        member.joined_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(member)
    logger.info(f"{user_id} joined ride {ride_id} ({joined + 1}/{ride.max_spots})")
    return RideMember.model_validate(_as_dict(member))


def _leave(db: Session, member_model, ride_id: str, user_id: str) -> RideMember:
    member = db.scalars(
        select(member_model).where(
            member_model.ride_id == ride_id,
            member_model.user_id == user_id,
            member_model.status == "joined",
        )
    ).first()
    if member is None:
        raise NotFoundError("You are not a member of this ride")
    member.status = "left"
    db.commit()
    db.refresh(member)
    logger.info(f"{user_id} left ride {ride_id}")
    return RideMember.model_validate(_as_dict(member))


def _cancel(db: Session, ride_model, ride_id: str, caller: Caller):
    ride = db.get(ride_model, ride_id, with_for_update=True)
    if ride is None:
        raise NotFoundError(f"Ride {ride_id} not found")
    if ride.creator_id != caller.user_id:
        raise PermissionDeniedError("Only the ride creator can cancel this ride")
    if ride.status != "active":
        raise InvalidTransitionError(f"Ride {ride_id} is already {ride.status}")

    ride.status = "cancelled"
    db.commit()
    db.refresh(ride)
    logger.info(f"Ride {ride_id} cancelled by {caller.user_id}")
    return ride


def join_ride(db: Session, ride_id: str, user_id: str) -> RideMember:
    return _join(db, GroupRideRow, GroupRideMemberRow, ride_id, user_id)


def leave_ride(db: Session, ride_id: str, user_id: str) -> RideMember:
    return _leave(db, GroupRideMemberRow, ride_id, user_id)


def cancel_ride(db: Session, caller: Caller, ride_id: str) -> GroupRide:
    row = _cancel(db, GroupRideRow, ride_id, caller)
    members = _member_counts(db, GroupRideMemberRow, [ride_id]).get(ride_id, 0)
    return _group_ride(row, members, False, datetime.now(timezone.utc))


# --- General group rides ---


def list_general_rides(db: Session, caller_id: Optional[str] = None, search: Optional[str] = None) -> list[GeneralGroupRide]:
    stmt = select(GeneralGroupRideRow).where(GeneralGroupRideRow.status == "active")
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            GeneralGroupRideRow.departure_location.ilike(pattern),
            GeneralGroupRideRow.destination_location.ilike(pattern),
        ))
    rows = db.scalars(stmt.order_by(GeneralGroupRideRow.departure_time.asc()).limit(RIDE_LIST_LIMIT)).all()

    ids = [row.id for row in rows]
    counts = _member_counts(db, GeneralRideMemberRow, ids)
    mine = _memberships(db, GeneralRideMemberRow, ids, caller_id)
    return [
        GeneralGroupRide.model_validate({**_as_dict(row), "current_members": counts.get(row.id, 0), "is_member": row.id in mine})
        for row in rows
    ]


def create_general_ride(db: Session, creator_id: str, data: GeneralRideCreate) -> GeneralGroupRide:
    row = GeneralGroupRideRow(creator_id=creator_id, status="active", **data.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(f"General ride {row.id} created by {creator_id}")
    return GeneralGroupRide.model_validate({**_as_dict(row), "current_members": 0, "is_member": False})


def join_general_ride(db: Session, ride_id: str, user_id: str) -> RideMember:
    return _join(db, GeneralGroupRideRow, GeneralRideMemberRow, ride_id, user_id)


def leave_general_ride(db: Session, ride_id: str, user_id: str) -> RideMember:
    return _leave(db, GeneralRideMemberRow, ride_id, user_id)


def cancel_general_ride(db: Session, caller: Caller, ride_id: str) -> GeneralGroupRide:
    row = _cancel(db, GeneralGroupRideRow, ride_id, caller)
    members = _member_counts(db, GeneralRideMemberRow, [ride_id]).get(ride_id, 0)
    return GeneralGroupRide.model_validate({**_as_dict(row), "current_members": members, "is_member": False})


# --- Ride messages ---


def _require_participant(db: Session, ride_id: str, user_id: str) -> None:
    """Messages belong to either a university ride or a general ride."""
    ride, member_model = db.get(GroupRideRow, ride_id), GroupRideMemberRow
    if ride is None:
        ride, member_model = db.get(GeneralGroupRideRow, ride_id), GeneralRideMemberRow
    if ride is None:
        raise NotFoundError(f"Ride {ride_id} not found")
    if ride.creator_id == user_id:
        return
    member = db.scalars(
        select(member_model.id).where(
            member_model.ride_id == ride_id,
            member_model.user_id == user_id,
            member_model.status == "joined",
        )
    ).first()
    if member is None:
        raise PermissionDeniedError("Only ride members can read or send messages")


def list_messages(db: Session, ride_id: str, user_id: str, page: int = 0, limit: int = 50) -> MessagePage:
    _require_participant(db, ride_id, user_id)
    rows, total = _paginate(
        db,
        GroupMessageRow,
        [GroupMessageRow.ride_id == ride_id],
        GroupMessageRow.created_at.asc(),
        page,
        limit,
    )
    return MessagePage(
        items=[GroupMessage.model_validate(_as_dict(row)) for row in rows],
        total_count=total,
        page=page,
        limit=limit,
        has_next_page=(page + 1) * limit < total,
        has_previous_page=page > 0,
    )


def send_message(db: Session, ride_id: str, sender_id: str, data: MessageCreate) -> GroupMessage:
    _require_participant(db, ride_id, sender_id)
    row = GroupMessageRow(ride_id=ride_id, sender_id=sender_id, **data.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return GroupMessage.model_validate(_as_dict(row))


# --- Profiles ---


def _check_profile_access(caller: Caller, user_id: str) -> None:
    if caller.user_id != user_id and not caller.is_admin:
        raise PermissionDeniedError("You can only access your own profile")


def get_profile(db: Session, caller: Caller, user_id: str) -> Profile:
    _check_profile_access(caller, user_id)
    row = db.get(ProfileRow, user_id)
    if row is None:
        raise NotFoundError(f"Profile {user_id} not found")
    return Profile.model_validate(_as_dict(row))


def upsert_profile(db: Session, caller: Caller, user_id: str, data: ProfileUpdate) -> Profile:
    _check_profile_access(caller, user_id)
    changes = data.model_dump(exclude_unset=True)
    if "verification_status" in changes:
        if not caller.is_admin:
            raise PermissionDeniedError("Only admins can change verification status")
        if changes["verification_status"] not in VERIFICATION_STATUSES:
            raise StoreError(f"Invalid verification status '{changes['verification_status']}'")

    row = db.get(ProfileRow, user_id)
    if row is None:
        row = ProfileRow(user_id=user_id)
        db.add(row)
    for key, value in changes.items():
        setattr(row, key, value)
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    return Profile.model_validate(_as_dict(row))


# --- Security log ---


def log_security_event(
    db: Session,
    event_type: str,
    details: dict,
    severity: str = "info",
    user_id: Optional[str] = None,
) -> str:
    row = SecurityLogRow(event_type=event_type, severity=severity, user_id=user_id, details=details)
    db.add(row)
    db.commit()
    return row.id
