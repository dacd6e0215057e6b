"""RSVP capacity controller.

Every capacity-consuming transition goes through :func:`reserve_seats`, a
single conditional ``UPDATE`` that only matches while the event still has
room. Seats are never computed in Python and written back, so concurrent
RSVPs for the last seats cannot overbook an event. When the conditional
update matches nothing the RSVP is queued on the waitlist instead of being
rejected.

Reservations are committed before the RSVP row is written. If writing the
row fails, the reservation is handed back with a compensating decrement; a
failure of that decrement is logged at CRITICAL for manual reconciliation.
"""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .crud import require_event
from .errors import (
    ConflictError,
    ForbiddenError,
    HostCannotRsvpError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .models import RSVP_STATUSES, Event, Rsvp
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def seats_for(status: str, plus_ones: int | None) -> int:
    if status != "going":
        return 0
    return 1 + (plus_ones or 0)


def _normalize_status(status: str | None) -> str:
    normalized = (status or "going").strip().lower()
    if normalized not in RSVP_STATUSES:
        raise ValidationError(f"Invalid RSVP status {status!r}")
    return normalized


def _normalize_plus_ones(raw: int | None) -> int:
    value = raw or 0
    if value < 0:
        raise ValidationError("plus_ones cannot be negative")
    if value > settings.max_plus_ones:
        raise ValidationError(f"plus_ones cannot exceed {settings.max_plus_ones}")
    return value


def reserve_seats(session: Session, event_id: str, seats: int) -> bool:
    """Atomically add ``seats`` to the event if capacity allows it.

    Returns False, leaving the event untouched, when the seats do not fit.
    The caller owns the transaction.
    """
    if seats <= 0:
        return True
    stmt = (
        update(Event)
        .where(
            Event.id == event_id,
            or_(
                Event.capacity.is_(None),
                Event.participant_count + seats <= Event.capacity,
            ),
        )
        .values(participant_count=Event.participant_count + seats)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def release_seats(session: Session, event_id: str, seats: int) -> None:
    """Unconditionally hand seats back, never going below zero."""
    if seats <= 0:
        return
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .values(
            participant_count=case(
                (Event.participant_count >= seats, Event.participant_count - seats),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )
    session.execute(stmt)


def _expire_count(session: Session, event_id: str) -> None:
    event = session.get(Event, event_id)
    if event is not None:
        session.expire(event, ["participant_count"])


def _commit_reservation(session: Session, event_id: str, seats: int) -> bool:
    try:
        reserved = reserve_seats(session, event_id, seats)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientStoreError("Could not reserve seats; try again") from exc
    _expire_count(session, event_id)
    return reserved


def _compensate(session: Session, event_id: str, seats: int, *, user_id: str) -> None:
    """Undo a committed reservation after the RSVP write failed."""
    if seats <= 0:
        return
    try:
        release_seats(session, event_id, seats)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.critical(
            "Capacity leak on event %s: failed to release %d seat(s) reserved for "
            "user %s; participant_count needs manual reconciliation",
            event_id,
            seats,
            user_id,
        )
        raise TransientStoreError("RSVP failed and seats could not be released") from exc
    _expire_count(session, event_id)
    logger.info(
        "Released %d seat(s) on event %s after a failed RSVP write for user %s",
        seats,
        event_id,
        user_id,
    )


def get_rsvp(session: Session, rsvp_id: str) -> Rsvp | None:
    return session.get(Rsvp, rsvp_id)


def require_rsvp(session: Session, rsvp_id: str) -> Rsvp:
    rsvp = session.get(Rsvp, rsvp_id)
    if not rsvp:
        raise NotFoundError("RSVP not found", code="RsvpNotFound")
    return rsvp


def list_rsvps(
    session: Session,
    *,
    event_id: str | None = None,
    user_id: str | None = None,
    status: str | None = None,
) -> Sequence[Rsvp]:
    stmt = select(Rsvp).order_by(Rsvp.created_at.asc(), Rsvp.id.asc())
    if event_id:
        stmt = stmt.where(Rsvp.event_id == event_id)
    if user_id:
        stmt = stmt.where(Rsvp.user_id == user_id)
    if status:
        stmt = stmt.where(Rsvp.status == status)
    return session.scalars(stmt).all()


def create_rsvp(
    session: Session,
    *,
    event_id: str,
    user_id: str,
    status: str | None = "going",
    plus_ones: int | None = 0,
    notes: str | None = None,
) -> tuple[Rsvp, bool]:
    """Create an RSVP, waitlisting it when the event is full.

    Returns ``(rsvp, waitlisted)``.
    """
    event = require_event(session, event_id)
    if event.created_by == user_id:
        raise HostCannotRsvpError()
    normalized_status = _normalize_status(status)
    normalized_plus_ones = _normalize_plus_ones(plus_ones)

    seats = seats_for(normalized_status, normalized_plus_ones)
    reserved = 0
    waitlisted = False
    if seats:
        if _commit_reservation(session, event.id, seats):
            reserved = seats
        else:
            normalized_status = "waitlist"
            waitlisted = True
            logger.info(
                "Event %s is full; waitlisting user %s (requested %d seat(s))",
                event.id,
                user_id,
                seats,
            )

    rsvp = Rsvp(
        event_id=event.id,
        user_id=user_id,
        status=normalized_status,
        plus_ones=normalized_plus_ones,
        notes=notes,
    )
    session.add(rsvp)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        _compensate(session, event.id, reserved, user_id=user_id)
        raise ConflictError(
            "You already have an RSVP for this event", code="RsvpExists"
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        _compensate(session, event.id, reserved, user_id=user_id)
        raise TransientStoreError("Could not save the RSVP; try again") from exc
    return rsvp, waitlisted


def update_rsvp(
    session: Session,
    rsvp_id: str,
    requesting_user_id: str,
    *,
    status: str | None = None,
    plus_ones: int | None = None,
    notes: str | None = None,
) -> tuple[Rsvp, bool]:
    """Change an RSVP's status, party size or notes, adjusting held seats."""
    rsvp = require_rsvp(session, rsvp_id)
    if rsvp.user_id != requesting_user_id:
        raise ForbiddenError("Not authorized to modify this RSVP")

    old_status = rsvp.status
    old_plus_ones = rsvp.plus_ones
    new_status = _normalize_status(status) if status is not None else old_status
    new_plus_ones = (
        _normalize_plus_ones(plus_ones) if plus_ones is not None else old_plus_ones
    )
    old_seats = seats_for(old_status, old_plus_ones)
    diff = seats_for(new_status, new_plus_ones) - old_seats

    reserved = 0
    to_release = 0
    waitlisted = False
    if diff > 0:
        if _commit_reservation(session, rsvp.event_id, diff):
            reserved = diff
        else:
            new_status = "waitlist"
            waitlisted = True
            to_release = old_seats
            logger.info(
                "Event %s cannot fit %d more seat(s); moving RSVP %s to the waitlist",
                rsvp.event_id,
                diff,
                rsvp.id,
            )
    elif diff < 0:
        to_release = -diff

    values = {
        "status": new_status,
        "plus_ones": new_plus_ones,
        "last_modified": utcnow(),
    }
    if notes is not None:
        values["notes"] = notes
    try:
        # Guarded on the values the seat math was based on.
        result = session.execute(
            update(Rsvp)
            .where(
                Rsvp.id == rsvp.id,
                Rsvp.status == old_status,
                Rsvp.plus_ones == old_plus_ones,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            release_seats(session, rsvp.event_id, to_release)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        _compensate(session, rsvp.event_id, reserved, user_id=requesting_user_id)
        raise TransientStoreError("Could not update the RSVP; try again") from exc

    if not changed:
        _compensate(session, rsvp.event_id, reserved, user_id=requesting_user_id)
        session.expire(rsvp)
        raise ConflictError(
            "RSVP changed while updating; reload and retry", code="RsvpConflict"
        )
    session.refresh(rsvp)
    _expire_count(session, rsvp.event_id)
    return rsvp, waitlisted


def remove_rsvp_row(session: Session, rsvp_id: str) -> tuple[str, int] | None:
    """Delete an RSVP row and release its seats in the caller's transaction.

    Returns ``(event_id, seats_released)``, or None when the row was already
    gone. Because the seats come from the deleted row itself, repeating the
    call can never release capacity twice.
    """
    removed = session.execute(
        delete(Rsvp)
        .where(Rsvp.id == rsvp_id)
        .returning(Rsvp.event_id, Rsvp.status, Rsvp.plus_ones)
    ).first()
    if removed is None:
        return None
    seats = seats_for(removed.status, removed.plus_ones)
    release_seats(session, removed.event_id, seats)
    return removed.event_id, seats


def delete_rsvp(session: Session, rsvp_id: str, requesting_user_id: str) -> None:
    """Cancel an RSVP owned by ``requesting_user_id``."""
    rsvp = require_rsvp(session, rsvp_id)
    if rsvp.user_id != requesting_user_id:
        raise ForbiddenError("Not authorized to delete this RSVP")
    try:
        removed = remove_rsvp_row(session, rsvp_id)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientStoreError("Could not delete the RSVP; try again") from exc
    if removed is None:
        raise NotFoundError("RSVP not found", code="RsvpNotFound")
    _expire_count(session, removed[0])
