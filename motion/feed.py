"""Discovery feed assembly.

The feed is a fixed sequence of stages, each narrowing the candidate list
produced by the one before it:

1. proximity: bounding-box prefetch in SQL, exact haversine distance in
   Python, sorted nearest first
2. status/time: published events that have not ended more than the grace
   window ago
3. social lookup: the requester's connections and followed organizations
4. visibility: drop what none of the requester's relations allow
5. projection: attach creator summaries and shape the public payload

Ordering established by the proximity stage is preserved throughout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .crud import creator_summaries
from .errors import ValidationError
from .models import Event, User
from .social import accepted_connection_ids, followed_organization_ids
from .utils import bounding_box, haversine_miles, is_valid_coordinate, to_naive_utc, utcnow
from .visibility import can_view, relations_for

logger = logging.getLogger("uvicorn.error")


@dataclass
class Candidate:
    event: Event
    distance_miles: float
    relations: frozenset[str] = frozenset({"none"})


@dataclass
class SocialContext:
    connection_ids: set[str] = field(default_factory=set)
    followed_ids: set[str] = field(default_factory=set)


def event_location(event: Event, *, viewer_id: str | None) -> dict[str, Any]:
    """Location block for an event; hidden locations are only shown to the owner."""
    if event.hide_location and event.created_by != viewer_id:
        return {"address": None, "coordinates": None}
    return {"address": event.address, "coordinates": event.coordinates}


def event_payload(
    event: Event,
    *,
    viewer_id: str | None,
    creator: dict[str, Any] | None = None,
    distance_miles: float | None = None,
) -> dict[str, Any]:
    payload = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time.isoformat(),
        "end_time": event.end_time.isoformat() if event.end_time else None,
        "capacity": event.capacity,
        "participant_count": event.participant_count,
        "seats_available": event.seats_available,
        "status": event.status,
        "visibility": event.visibility,
        "hide_location": bool(event.hide_location),
        "location": event_location(event, viewer_id=viewer_id),
        "price": event.price,
        "tags": list(event.tags or []),
        "images": list(event.images or []),
        "created_by": event.created_by,
        "created_at": event.created_at.isoformat(),
        "last_modified": event.last_modified.isoformat(),
    }
    if creator is not None:
        payload["creator"] = creator
    if distance_miles is not None:
        payload["distance_miles"] = round(distance_miles, 3)
    return payload


def proximity_stage(
    session: Session, longitude: float, latitude: float, radius_miles: float
) -> list[Candidate]:
    min_lon, max_lon, min_lat, max_lat = bounding_box(longitude, latitude, radius_miles)
    stmt = select(Event).where(Event.latitude.between(min_lat, max_lat))
    if min_lon is not None and max_lon is not None:
        stmt = stmt.where(Event.longitude.between(min_lon, max_lon))

    candidates = []
    for event in session.scalars(stmt):
        distance = haversine_miles(longitude, latitude, event.longitude, event.latitude)
        if distance <= radius_miles:
            candidates.append(Candidate(event=event, distance_miles=distance))
    candidates.sort(key=lambda c: (c.distance_miles, c.event.id))
    return candidates


def status_stage(candidates: Sequence[Candidate], *, now: datetime) -> list[Candidate]:
    cutoff = now - settings.feed_grace
    return [
        c
        for c in candidates
        if c.event.status == "published" and c.event.time_anchor >= cutoff
    ]


def social_stage(session: Session, user_id: str | None) -> SocialContext:
    """Load the requester's social graph, falling back to a public-only view."""
    if not user_id:
        return SocialContext()
    try:
        if session.get(User, user_id) is None:
            logger.warning(
                "Feed requested for unknown user %s; showing public events only",
                user_id,
            )
            return SocialContext()
        return SocialContext(
            connection_ids=accepted_connection_ids(session, user_id),
            followed_ids=followed_organization_ids(session, user_id),
        )
    except SQLAlchemyError:
        session.rollback()
        logger.warning(
            "Social lookup failed for user %s; showing public events only",
            user_id,
            exc_info=True,
        )
        return SocialContext()


def visibility_stage(
    candidates: Sequence[Candidate], user_id: str | None, social: SocialContext
) -> list[Candidate]:
    visible = []
    for candidate in candidates:
        candidate.relations = relations_for(
            candidate.event.created_by,
            user_id,
            social.connection_ids,
            social.followed_ids,
        )
        if can_view(candidate.event.visibility, candidate.relations):
            visible.append(candidate)
    return visible


def projection_stage(
    session: Session, candidates: Sequence[Candidate], user_id: str | None
) -> list[dict[str, Any]]:
    creators = creator_summaries(session, {c.event.created_by for c in candidates})
    return [
        event_payload(
            c.event,
            viewer_id=user_id,
            creator=creators.get(c.event.created_by),
            distance_miles=c.distance_miles,
        )
        for c in candidates
    ]


def _validate_query(longitude: float, latitude: float, radius_miles: float) -> None:
    if not is_valid_coordinate(longitude, latitude):
        raise ValidationError("Invalid coordinates", code="InvalidCoordinates")
    if radius_miles is None or not radius_miles > 0:
        raise ValidationError("Radius must be greater than zero", code="InvalidRadius")
    if radius_miles > settings.feed_max_radius_miles:
        raise ValidationError(
            f"Radius cannot exceed {settings.feed_max_radius_miles:g} miles",
            code="InvalidRadius",
        )


def get_discovery_feed(
    session: Session,
    user_id: str | None,
    longitude: float,
    latitude: float,
    radius_miles: float,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Events near a point that ``user_id`` may see, nearest first."""
    _validate_query(longitude, latitude, radius_miles)
    now = to_naive_utc(now) or utcnow()
    limit = settings.feed_max_results if limit is None else max(limit, 0)

    candidates = proximity_stage(session, longitude, latitude, radius_miles)
    candidates = status_stage(candidates, now=now)
    social = social_stage(session, user_id)
    candidates = visibility_stage(candidates, user_id, social)[:limit]
    logger.debug(
        "Feed for %s at (%s, %s) r=%s: %d event(s)",
        user_id,
        longitude,
        latitude,
        radius_miles,
        len(candidates),
    )
    return projection_stage(session, candidates, user_id)
