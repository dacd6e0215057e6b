"""FastAPI application for Motion."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .config import settings
from .crud import (
    create_event,
    create_user,
    creator_summaries,
    delete_event,
    get_user_by_token,
    list_events,
    require_event,
    require_user,
    update_event,
)
from .database import SessionLocal
from .errors import (
    AuthenticationError,
    ForbiddenError,
    MotionError,
    NotFoundError,
)
from .feed import event_payload, get_discovery_feed
from .models import Connection, Event, Rsvp, User
from .rsvps import (
    create_rsvp,
    delete_rsvp,
    list_rsvps,
    require_rsvp,
    seats_for,
    update_rsvp,
)
from .scheduler import (
    schedule_cleanups,
    schedule_event_cleanup,
    start_scheduler,
    stop_scheduler,
)
from .social import (
    accept_connection,
    accepted_connection_ids,
    decline_connection,
    follow_organization,
    followed_organization_ids,
    list_connections,
    pending_requests,
    relation_counts,
    remove_connection,
    remove_follower,
    request_connection,
    unfollow_organization,
)
from .storage import init_db
from .visibility import can_view, relations_for

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("motion")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Motion", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(MotionError)
async def motion_error_handler(request: Request, exc: MotionError):
    if exc.status_code >= 500:
        logger.error(
            "%s while handling %s %s: %s",
            exc.code,
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    lower = raw.lower()
    if "database is locked" in lower:
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        message = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        message = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"error": "DatabaseError", "message": message}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "error": "RequestValidationError",
            "message": "Some of the fields were invalid.",
            "detail": exc.errors(),
        },
        status_code=422,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse(
        {"error": "InternalServerError", "message": "Internal server error"},
        status_code=500,
    )


class UserCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str
    user_type: str = "individual"
    bio: str | None = None
    avatar_url: str | None = None


class LocationPayload(BaseModel):
    address: str = Field(..., min_length=1, max_length=255)
    coordinates: list[float] = Field(
        ..., min_length=2, max_length=2, description="[longitude, latitude]"
    )


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    start_time: datetime
    end_time: datetime | None = Field(
        None, description="Optional datetime after start_time"
    )
    location: LocationPayload
    capacity: int | None = Field(None, ge=1, description="Seats available, unlimited when omitted")
    status: str = "published"
    visibility: str = "public"
    hide_location: bool = False
    price: float | None = Field(None, ge=0)
    tags: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)


class EventUpdatePayload(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    location: LocationPayload | None = None
    capacity: int | None = Field(None, ge=1)
    status: str | None = None
    visibility: str | None = None
    hide_location: bool | None = None
    price: float | None = Field(None, ge=0)
    tags: list[str] | None = None
    images: list[str] | None = None


class RsvpCreatePayload(BaseModel):
    event_id: str
    status: str = "going"
    plus_ones: int = 0
    notes: str | None = None


class RsvpUpdatePayload(BaseModel):
    status: str | None = None
    plus_ones: int | None = None
    notes: str | None = None


class ConnectionRequestPayload(BaseModel):
    recipient_id: str


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def _optional_user_from_header(request: Request, db: Session) -> User | None:
    token = _get_bearer_token(request)
    if token is None:
        return None
    user = get_user_by_token(db, token)
    if user is None:
        raise AuthenticationError("Invalid API token")
    return user


def _require_user_from_header(request: Request, db: Session) -> User:
    user = _optional_user_from_header(request, db)
    if user is None:
        raise AuthenticationError("Missing bearer token")
    return user


def _serialize_user(user: User, *, include_email: bool = False):
    payload = {
        "id": user.id,
        "name": user.name,
        "user_type": user.user_type,
        "bio": user.bio,
        "avatar_url": user.avatar_url,
        "created_at": user.created_at.isoformat(),
    }
    if include_email:
        payload["email"] = user.email
    return payload


def _serialize_rsvp(rsvp: Rsvp):
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "user_id": rsvp.user_id,
        "status": rsvp.status,
        "plus_ones": rsvp.plus_ones,
        "seats": rsvp.seats,
        "notes": rsvp.notes,
        "created_at": rsvp.created_at.isoformat(),
        "last_modified": rsvp.last_modified.isoformat(),
    }


def _serialize_connection(connection: Connection):
    return {
        "id": connection.id,
        "requester_id": connection.requester_id,
        "recipient_id": connection.recipient_id,
        "status": connection.status,
        "created_at": connection.created_at.isoformat(),
        "last_modified": connection.last_modified.isoformat(),
    }


class _Viewer:
    """The acting user's social graph, loaded once per request."""

    def __init__(self, db: Session, user: User | None):
        self.id = user.id if user else None
        self.connection_ids = accepted_connection_ids(db, user.id) if user else set()
        self.followed_ids = followed_organization_ids(db, user.id) if user else set()

    def can_see(self, event: Event) -> bool:
        relations = relations_for(
            event.created_by, self.id, self.connection_ids, self.followed_ids
        )
        if event.status == "draft" and "self" not in relations:
            return False
        return can_view(event.visibility, relations)


def _visible_event(db: Session, event_id: str, viewer: _Viewer) -> Event:
    event = require_event(db, event_id)
    if not viewer.can_see(event):
        # Hidden events are indistinguishable from missing ones.
        raise NotFoundError("Event not found", code="EventNotFound")
    return event


def _event_response(db: Session, event: Event, viewer_id: str | None):
    creators = creator_summaries(db, [event.created_by])
    return event_payload(
        event, viewer_id=viewer_id, creator=creators.get(event.created_by)
    )


def _event_updates(payload: EventUpdatePayload) -> dict:
    data = payload.model_dump(exclude_unset=True)
    location = data.pop("location", None)
    if location is not None:
        data["address"] = location["address"]
        data["longitude"], data["latitude"] = location["coordinates"]
    return data


@app.get("/api/v1/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/users", status_code=201)
def api_create_user(payload: UserCreatePayload, db: Session = Depends(get_db)):
    user = create_user(
        db,
        name=payload.name,
        email=payload.email,
        user_type=payload.user_type,
        bio=payload.bio,
        avatar_url=payload.avatar_url,
    )
    return {"user": _serialize_user(user, include_email=True), "api_token": user.api_token}


@app.get("/api/v1/users/me")
def api_get_me(request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    payload = _serialize_user(user, include_email=True)
    payload["counts"] = relation_counts(db, user.id)
    return {"user": payload}


@app.get("/api/v1/users/{user_id}")
def api_get_user(user_id: str, db: Session = Depends(get_db)):
    user = require_user(db, user_id)
    payload = _serialize_user(user)
    payload["counts"] = relation_counts(db, user.id)
    return {"user": payload}


@app.get("/api/v1/users/{user_id}/connections")
def api_list_connections(user_id: str, db: Session = Depends(get_db)):
    require_user(db, user_id)
    return {"connections": [_serialize_user(u) for u in list_connections(db, user_id)]}


@app.post("/api/v1/users/{org_id}/follow", status_code=201)
def api_follow(org_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    follow = follow_organization(db, user.id, org_id)
    return {
        "follow": {
            "follower_id": follow.follower_id,
            "organization_id": follow.organization_id,
            "created_at": follow.created_at.isoformat(),
        }
    }


@app.delete("/api/v1/users/{org_id}/follow", status_code=204)
def api_unfollow(org_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    pairs = unfollow_organization(db, user.id, org_id)
    db.commit()
    schedule_cleanups(pairs, session=db)
    return Response(status_code=204)


@app.delete("/api/v1/users/me/followers/{follower_id}", status_code=204)
def api_remove_follower(
    follower_id: str, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    if not user.is_organization:
        raise ForbiddenError("Only organizations have followers")
    pairs = remove_follower(db, user.id, follower_id)
    db.commit()
    schedule_cleanups(pairs, session=db)
    return Response(status_code=204)


@app.get("/api/v1/feed")
def api_feed(
    request: Request,
    longitude: float = Query(...),
    latitude: float = Query(...),
    radius: float | None = Query(None, description="Search radius in miles"),
    user_id: str | None = Query(None),
    db: Session = Depends(get_db),
):
    user = _require_user_from_header(request, db)
    if user_id and user_id != user.id:
        raise ForbiddenError("A feed can only be requested for yourself")
    radius_miles = settings.feed_default_radius_miles if radius is None else radius
    events = get_discovery_feed(db, user.id, longitude, latitude, radius_miles)
    return {"events": events, "radius_miles": radius_miles}


@app.get("/api/v1/events")
def api_list_events(
    request: Request,
    created_by: str | None = Query(None),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    user = _optional_user_from_header(request, db)
    viewer = _Viewer(db, user)
    events = [
        e for e in list_events(db, created_by=created_by, status=status) if viewer.can_see(e)
    ]
    creators = creator_summaries(db, {e.created_by for e in events})
    return {
        "events": [
            event_payload(e, viewer_id=viewer.id, creator=creators.get(e.created_by))
            for e in events
        ]
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    longitude, latitude = payload.location.coordinates
    event = create_event(
        db,
        creator=user,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        end_time=payload.end_time,
        address=payload.location.address,
        longitude=longitude,
        latitude=latitude,
        capacity=payload.capacity,
        status=payload.status,
        visibility=payload.visibility,
        hide_location=payload.hide_location,
        price=payload.price,
        tags=payload.tags,
        images=payload.images,
    )
    return {"event": _event_response(db, event, user.id)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _optional_user_from_header(request, db)
    viewer = _Viewer(db, user)
    event = _visible_event(db, event_id, viewer)
    return {"event": _event_response(db, event, viewer.id)}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    user = _require_user_from_header(request, db)
    event, narrowed = update_event(db, event_id, user.id, _event_updates(payload))
    db.commit()
    if narrowed:
        logger.info(
            "Visibility of event %s narrowed to %s; re-checking RSVPs",
            event.id,
            event.visibility,
        )
        schedule_event_cleanup(event.id, session=db)
    db.refresh(event)
    return {"event": _event_response(db, event, user.id)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    delete_event(db, event_id, user.id)
    return Response(status_code=204)


@app.get("/api/v1/rsvps")
def api_list_rsvps(
    request: Request,
    event_id: str | None = Query(None),
    user_id: str | None = Query(None),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    user = _require_user_from_header(request, db)
    rsvps = [
        r
        for r in list_rsvps(db, event_id=event_id, user_id=user_id, status=status)
        if r.user_id == user.id or r.event.created_by == user.id
    ]
    return {"rsvps": [_serialize_rsvp(r) for r in rsvps]}


@app.post("/api/v1/rsvps", status_code=201)
def api_create_rsvp(
    payload: RsvpCreatePayload, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    viewer = _Viewer(db, user)
    _visible_event(db, payload.event_id, viewer)
    rsvp, waitlisted = create_rsvp(
        db,
        event_id=payload.event_id,
        user_id=user.id,
        status=payload.status,
        plus_ones=payload.plus_ones,
        notes=payload.notes,
    )
    return {"rsvp": _serialize_rsvp(rsvp), "waitlisted": waitlisted}


@app.get("/api/v1/rsvps/{rsvp_id}")
def api_get_rsvp(rsvp_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    rsvp = require_rsvp(db, rsvp_id)
    if user.id not in (rsvp.user_id, rsvp.event.created_by):
        raise ForbiddenError("Not authorized to view this RSVP")
    return {"rsvp": _serialize_rsvp(rsvp)}


@app.patch("/api/v1/rsvps/{rsvp_id}")
def api_update_rsvp(
    rsvp_id: str,
    payload: RsvpUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    user = _require_user_from_header(request, db)
    current = require_rsvp(db, rsvp_id)
    target_status = (payload.status or current.status).strip().lower()
    target_plus_ones = (
        current.plus_ones if payload.plus_ones is None else payload.plus_ones
    )
    grows = seats_for(target_status, target_plus_ones) > current.seats
    if current.user_id == user.id and grows:
        # Extra seats are only handed out on events the holder can still see.
        _visible_event(db, current.event_id, _Viewer(db, user))
    rsvp, waitlisted = update_rsvp(
        db,
        rsvp_id,
        user.id,
        status=payload.status,
        plus_ones=payload.plus_ones,
        notes=payload.notes,
    )
    return {"rsvp": _serialize_rsvp(rsvp), "waitlisted": waitlisted}


@app.delete("/api/v1/rsvps/{rsvp_id}", status_code=204)
def api_delete_rsvp(rsvp_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    delete_rsvp(db, rsvp_id, user.id)
    return Response(status_code=204)


@app.get("/api/v1/connections/pending")
def api_pending_connections(request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    return {"requests": [_serialize_connection(c) for c in pending_requests(db, user.id)]}


@app.post("/api/v1/connections", status_code=201)
def api_request_connection(
    payload: ConnectionRequestPayload, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    connection = request_connection(db, user.id, payload.recipient_id)
    return {"connection": _serialize_connection(connection)}


@app.post("/api/v1/connections/{requester_id}/accept")
def api_accept_connection(
    requester_id: str, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    connection = accept_connection(db, requester_id, user.id)
    return {"connection": _serialize_connection(connection)}


@app.post("/api/v1/connections/{requester_id}/decline")
def api_decline_connection(
    requester_id: str, request: Request, db: Session = Depends(get_db)
):
    user = _require_user_from_header(request, db)
    pairs = decline_connection(db, requester_id, user.id)
    db.commit()
    schedule_cleanups(pairs, session=db)
    return {"status": "rejected"}


@app.delete("/api/v1/connections/{user_id}", status_code=204)
def api_remove_connection(user_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user_from_header(request, db)
    pairs = remove_connection(db, user.id, user_id)
    db.commit()
    schedule_cleanups(pairs, session=db)
    return Response(status_code=204)
