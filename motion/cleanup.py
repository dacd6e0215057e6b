"""Revoke RSVPs that their holders can no longer see.

When a follow or connection is severed, or an event's visibility narrows,
some RSVPs end up on events their holders are no longer allowed to view.
These helpers find such RSVPs and delete them, releasing their seats
exactly once. They flush but never commit; the job runners at the bottom
own their sessions.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import get_session
from .models import Event, Rsvp
from .rsvps import remove_rsvp_row
from .social import accepted_connection_ids, followed_organization_ids
from .visibility import can_view, relations_for

logger = logging.getLogger("uvicorn.error")


def revoke_rsvp(session: Session, rsvp_id: str) -> bool:
    """Delete an RSVP regardless of owner. Returns False if it was already gone."""
    removed = remove_rsvp_row(session, rsvp_id)
    if removed is None:
        return False
    event_id, seats = removed
    logger.info(
        "Revoked RSVP %s on event %s (released %d seat(s))", rsvp_id, event_id, seats
    )
    return True


def _relations(session: Session, creator_id: str, holder_id: str) -> frozenset[str]:
    return relations_for(
        creator_id,
        holder_id,
        accepted_connection_ids(session, holder_id),
        followed_organization_ids(session, holder_id),
    )


def revoke_unseen_rsvps(session: Session, owner_id: str, holder_id: str) -> int:
    """Revoke ``holder_id``'s RSVPs on ``owner_id``'s events they can no longer see."""
    rows = session.execute(
        select(Rsvp.id, Event.visibility)
        .join(Event, Rsvp.event_id == Event.id)
        .where(
            Event.created_by == owner_id,
            Rsvp.user_id == holder_id,
            Event.visibility != "public",
        )
    ).all()
    if not rows:
        return 0
    relations = _relations(session, owner_id, holder_id)
    revoked = 0
    for rsvp_id, visibility in rows:
        if not can_view(visibility, relations) and revoke_rsvp(session, rsvp_id):
            revoked += 1
    if revoked:
        logger.info(
            "Relation cleanup %s -> %s revoked %d RSVP(s)", owner_id, holder_id, revoked
        )
    return revoked


def revoke_for_event(session: Session, event_id: str) -> int:
    """Re-check every RSVP on an event against its current visibility."""
    event = session.get(Event, event_id)
    if event is None or event.visibility == "public":
        return 0
    rows = session.execute(
        select(Rsvp.id, Rsvp.user_id).where(Rsvp.event_id == event_id)
    ).all()
    revoked = 0
    for rsvp_id, holder_id in rows:
        relations = _relations(session, event.created_by, holder_id)
        if not can_view(event.visibility, relations) and revoke_rsvp(session, rsvp_id):
            revoked += 1
    if revoked:
        logger.info("Event cleanup for %s revoked %d RSVP(s)", event_id, revoked)
    return revoked


def reconcile_all(session: Session) -> dict:
    """Sweep every RSVP on a non-public event and revoke the unseen ones."""
    stats = {"events_checked": 0, "rsvps_revoked": 0}
    event_ids = session.scalars(
        select(Event.id)
        .where(Event.visibility != "public")
        .where(Event.id.in_(select(Rsvp.event_id)))
        .order_by(Event.id)
    ).all()
    for event_id in event_ids:
        stats["events_checked"] += 1
        stats["rsvps_revoked"] += revoke_for_event(session, event_id)
    return stats


def run_relation_cleanup(owner_id: str, holder_id: str) -> int:
    with get_session() as session:
        return revoke_unseen_rsvps(session, owner_id, holder_id)


def run_event_cleanup(event_id: str) -> int:
    with get_session() as session:
        return revoke_for_event(session, event_id)


def run_reconcile_sweep() -> dict:
    logger.info("RSVP reconciliation sweep started")
    with get_session() as session:
        stats = reconcile_all(session)
    logger.info(
        "RSVP reconciliation sweep finished: %d event(s) checked, %d RSVP(s) revoked",
        stats["events_checked"],
        stats["rsvps_revoked"],
    )
    return stats
