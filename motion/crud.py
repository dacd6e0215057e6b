"""CRUD helpers for users and events."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import EVENT_STATUSES, USER_TYPES, VISIBILITY_LEVELS, Event, User
from .utils import is_valid_coordinate, to_naive_utc, utcnow

EVENT_UPDATABLE_FIELDS = {
    "title",
    "description",
    "start_time",
    "end_time",
    "capacity",
    "status",
    "visibility",
    "hide_location",
    "price",
    "tags",
    "images",
    "address",
    "longitude",
    "latitude",
}


def _now() -> datetime:
    return utcnow()


def create_user(
    session: Session,
    *,
    name: str,
    email: str,
    user_type: str = "individual",
    bio: str | None = None,
    avatar_url: str | None = None,
) -> User:
    """Create a user and issue its API token."""
    normalized_type = (user_type or "individual").strip().lower()
    if normalized_type not in USER_TYPES:
        raise ValidationError("Invalid user type")
    normalized_email = (email or "").strip().lower()
    if not normalized_email or "@" not in normalized_email:
        raise ValidationError("A valid email is required")
    if session.scalars(select(User).where(User.email == normalized_email)).first():
        raise ConflictError("Email already registered", code="EmailTaken")
    user = User(
        name=name.strip(),
        email=normalized_email,
        user_type=normalized_type,
        bio=bio,
        avatar_url=avatar_url,
        api_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.flush()
    return user


def get_user(session: Session, user_id: str) -> User | None:
    return session.get(User, user_id)


def require_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", code="UserNotFound")
    return user


def get_user_by_token(session: Session, token: str | None) -> User | None:
    if not token:
        return None
    return session.scalars(select(User).where(User.api_token == token)).first()


def creator_summaries(session: Session, user_ids: Iterable[str]) -> dict[str, dict]:
    """Public profile fields for the given users, keyed by id.

    Columns are selected explicitly so tokens and emails never leave the store.
    """
    ids = set(user_ids)
    if not ids:
        return {}
    stmt = select(User.id, User.name, User.avatar_url, User.user_type).where(
        User.id.in_(ids)
    )
    return {
        row.id: {
            "id": row.id,
            "name": row.name,
            "avatar_url": row.avatar_url,
            "user_type": row.user_type,
        }
        for row in session.execute(stmt)
    }


def _validate_event_fields(data: dict[str, Any]) -> None:
    start = data.get("start_time")
    end = data.get("end_time")
    if start is None:
        raise ValidationError("start_time is required")
    if end is not None and end <= start:
        raise ValidationError("End date must be after start date")
    if not is_valid_coordinate(data.get("longitude"), data.get("latitude")):
        raise ValidationError("Coordinates must be a valid [longitude, latitude] pair")
    capacity = data.get("capacity")
    if capacity is not None and capacity < 1:
        raise ValidationError("capacity must be at least 1")
    if data.get("status") not in EVENT_STATUSES:
        raise ValidationError("Invalid event status")
    if data.get("visibility") not in VISIBILITY_LEVELS:
        raise ValidationError("Invalid event visibility")
    price = data.get("price")
    if price is not None and price < 0:
        raise ValidationError("price cannot be negative")


def _clean_strings(values: Iterable[str] | None) -> list[str]:
    return [value.strip() for value in (values or []) if value and value.strip()]


def create_event(
    session: Session,
    *,
    creator: User,
    title: str,
    description: str,
    start_time: datetime,
    address: str,
    longitude: float,
    latitude: float,
    end_time: datetime | None = None,
    capacity: int | None = None,
    status: str = "published",
    visibility: str = "public",
    hide_location: bool = False,
    price: float | None = None,
    tags: Iterable[str] | None = None,
    images: Iterable[str] | None = None,
) -> Event:
    """Create and persist a new event."""
    data = {
        "start_time": to_naive_utc(start_time),
        "end_time": to_naive_utc(end_time),
        "longitude": longitude,
        "latitude": latitude,
        "capacity": capacity,
        "status": status,
        "visibility": visibility,
        "price": price,
    }
    _validate_event_fields(data)
    event = Event(
        created_by=creator.id,
        title=title.strip(),
        description=description or "",
        address=address.strip(),
        hide_location=bool(hide_location),
        tags=sorted(set(_clean_strings(tags))),
        images=_clean_strings(images),
        participant_count=0,
        **data,
    )
    session.add(event)
    session.flush()
    return event


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def require_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found", code="EventNotFound")
    return event


def list_events(
    session: Session,
    *,
    created_by: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> Sequence[Event]:
    stmt = select(Event).order_by(Event.start_time.asc(), Event.id.asc())
    if created_by:
        stmt = stmt.where(Event.created_by == created_by)
    if status:
        stmt = stmt.where(Event.status == status)
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def _require_owner(event: Event, user_id: str) -> None:
    if event.created_by != user_id:
        raise ForbiddenError("Only the creator may modify this event")


def narrows_visibility(old: str, new: str) -> bool:
    """True when some viewer who could see the event under `old` cannot under `new`."""
    if old == new or new == "public":
        return False
    return {old, new} != {"mutuals", "friends"}


def update_event(
    session: Session, event_id: str, user_id: str, updates: dict[str, Any]
) -> tuple[Event, bool]:
    """Apply owner edits. Returns the event and whether visibility narrowed."""
    event = require_event(session, event_id)
    _require_owner(event, user_id)

    changes = {k: v for k, v in updates.items() if k in EVENT_UPDATABLE_FIELDS}
    for key in ("start_time", "end_time"):
        if key in changes:
            changes[key] = to_naive_utc(changes[key])
    merged = {
        "start_time": changes.get("start_time", event.start_time),
        "end_time": changes.get("end_time", event.end_time),
        "longitude": changes.get("longitude", event.longitude),
        "latitude": changes.get("latitude", event.latitude),
        "capacity": changes.get("capacity", event.capacity),
        "status": changes.get("status", event.status),
        "visibility": changes.get("visibility", event.visibility),
        "price": changes.get("price", event.price),
    }
    _validate_event_fields(merged)
    if "capacity" in changes and changes["capacity"] is not None:
        if changes["capacity"] < event.participant_count:
            raise ConflictError(
                "capacity cannot be below the seats already taken",
                code="CapacityBelowParticipants",
            )

    narrowed = narrows_visibility(event.visibility, merged["visibility"])
    if "tags" in changes:
        changes["tags"] = sorted(set(_clean_strings(changes["tags"])))
    if "images" in changes:
        changes["images"] = _clean_strings(changes["images"])
    for key, value in changes.items():
        setattr(event, key, value)
    event.last_modified = _now()
    session.add(event)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(
            "Event changed concurrently; retry the update", code="EventConflict"
        ) from exc
    return event, narrowed


def delete_event(session: Session, event_id: str, user_id: str) -> None:
    """Delete an event and, through the cascade, all of its RSVPs."""
    event = require_event(session, event_id)
    _require_owner(event, user_id)
    session.delete(event)
    session.flush()
