"""Follow and connection management for the social graph."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from .crud import require_user
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Connection, Follow, User
from .utils import utcnow

# (owner_id, holder_id): RSVPs held by `holder_id` on events created by
# `owner_id` need their visibility re-checked.
CleanupPair = tuple[str, str]


def accepted_connection_ids(session: Session, user_id: str) -> set[str]:
    stmt = select(Connection.requester_id, Connection.recipient_id).where(
        Connection.status == "accepted",
        or_(Connection.requester_id == user_id, Connection.recipient_id == user_id),
    )
    ids: set[str] = set()
    for requester_id, recipient_id in session.execute(stmt):
        ids.add(recipient_id if requester_id == user_id else requester_id)
    return ids


def followed_organization_ids(session: Session, user_id: str) -> set[str]:
    stmt = select(Follow.organization_id).where(Follow.follower_id == user_id)
    return set(session.scalars(stmt).all())


def follower_ids(session: Session, organization_id: str) -> set[str]:
    stmt = select(Follow.follower_id).where(Follow.organization_id == organization_id)
    return set(session.scalars(stmt).all())


def relation_counts(session: Session, user_id: str) -> dict[str, int]:
    return {
        "connections": len(accepted_connection_ids(session, user_id)),
        "following": len(followed_organization_ids(session, user_id)),
        "followers": len(follower_ids(session, user_id)),
    }


def list_connections(session: Session, user_id: str) -> Sequence[User]:
    ids = accepted_connection_ids(session, user_id)
    if not ids:
        return []
    stmt = select(User).where(User.id.in_(ids)).order_by(User.name.asc())
    return session.scalars(stmt).all()


def pending_requests(session: Session, user_id: str) -> Sequence[Connection]:
    """Connection requests waiting on ``user_id``, oldest first."""
    stmt = (
        select(Connection)
        .where(Connection.recipient_id == user_id, Connection.status == "pending")
        .order_by(Connection.created_at.asc())
    )
    return session.scalars(stmt).all()


def follow_organization(session: Session, user_id: str, organization_id: str) -> Follow:
    if user_id == organization_id:
        raise ValidationError("Cannot follow yourself")
    require_user(session, user_id)
    organization = require_user(session, organization_id)
    if not organization.is_organization:
        raise ValidationError("Target is not an organization", code="NotAnOrganization")
    existing = session.scalars(
        select(Follow).where(
            Follow.follower_id == user_id, Follow.organization_id == organization_id
        )
    ).first()
    if existing:
        return existing
    follow = Follow(follower_id=user_id, organization_id=organization_id)
    session.add(follow)
    session.flush()
    return follow


def _delete_follow(session: Session, follower_id: str, organization_id: str) -> bool:
    result = session.execute(
        delete(Follow).where(
            Follow.follower_id == follower_id,
            Follow.organization_id == organization_id,
        )
    )
    return bool(result.rowcount)


def unfollow_organization(
    session: Session, user_id: str, organization_id: str
) -> list[CleanupPair]:
    if not _delete_follow(session, user_id, organization_id):
        raise NotFoundError("Not following this organization", code="FollowNotFound")
    return [(organization_id, user_id)]


def remove_follower(
    session: Session, organization_id: str, follower_id: str
) -> list[CleanupPair]:
    """An organization drops one of its followers."""
    if not _delete_follow(session, follower_id, organization_id):
        raise NotFoundError("That user does not follow you", code="FollowNotFound")
    return [(organization_id, follower_id)]


def _pair_filter(user_a: str, user_b: str):
    return or_(
        and_(Connection.requester_id == user_a, Connection.recipient_id == user_b),
        and_(Connection.requester_id == user_b, Connection.recipient_id == user_a),
    )


def _find_request(
    session: Session, requester_id: str, recipient_id: str
) -> Connection | None:
    return session.scalars(
        select(Connection).where(
            Connection.requester_id == requester_id,
            Connection.recipient_id == recipient_id,
        )
    ).first()


def request_connection(
    session: Session, requester_id: str, recipient_id: str
) -> Connection:
    """Send a connection request, or accept the reverse one if it is pending."""
    if requester_id == recipient_id:
        raise ValidationError("Cannot connect with yourself")
    require_user(session, requester_id)
    require_user(session, recipient_id)

    if recipient_id in accepted_connection_ids(session, requester_id):
        raise ConflictError("Already connected", code="AlreadyConnected")

    reverse = _find_request(session, recipient_id, requester_id)
    if reverse and reverse.status == "pending":
        return accept_connection(session, recipient_id, requester_id)

    existing = _find_request(session, requester_id, recipient_id)
    if existing:
        if existing.status == "pending":
            raise ConflictError(
                "Connection request already pending", code="RequestPending"
            )
        # A previously rejected request may be sent again.
        existing.status = "pending"
        existing.last_modified = utcnow()
        session.add(existing)
        session.flush()
        return existing

    connection = Connection(
        requester_id=requester_id, recipient_id=recipient_id, status="pending"
    )
    session.add(connection)
    session.flush()
    return connection


def accept_connection(
    session: Session, requester_id: str, recipient_id: str
) -> Connection:
    """``recipient_id`` accepts the pending request sent by ``requester_id``."""
    request = _find_request(session, requester_id, recipient_id)
    if not request or request.status != "pending":
        raise NotFoundError(
            "No pending connection request found", code="ConnectionRequestNotFound"
        )
    request.status = "accepted"
    request.last_modified = utcnow()
    session.add(request)
    session.flush()
    return request


def decline_connection(
    session: Session, requester_id: str, recipient_id: str
) -> list[CleanupPair]:
    """``recipient_id`` rejects a request, pending or previously accepted."""
    request = _find_request(session, requester_id, recipient_id)
    if not request or request.status == "rejected":
        raise NotFoundError(
            "No connection request found", code="ConnectionRequestNotFound"
        )
    was_accepted = request.status == "accepted"
    request.status = "rejected"
    request.last_modified = utcnow()
    session.add(request)
    session.flush()
    if not was_accepted:
        return []
    return [(requester_id, recipient_id), (recipient_id, requester_id)]


def remove_connection(
    session: Session, user_id: str, other_id: str
) -> list[CleanupPair]:
    """Sever an accepted connection from either side."""
    result = session.execute(
        delete(Connection).where(
            _pair_filter(user_id, other_id), Connection.status == "accepted"
        )
    )
    if not result.rowcount:
        raise NotFoundError("Not connected with this user", code="ConnectionNotFound")
    return [(user_id, other_id), (other_id, user_id)]
