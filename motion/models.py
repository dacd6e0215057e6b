"""SQLAlchemy models for Motion."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

USER_TYPES = ("individual", "organization")
EVENT_STATUSES = ("published", "past", "draft")
VISIBILITY_LEVELS = ("public", "mutuals", "followers", "friends", "private")
RSVP_STATUSES = ("going", "interested", "waitlist")
CONNECTION_STATUSES = ("pending", "accepted", "rejected")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    user_type = Column(String(16), nullable=False, default="individual")
    bio = Column(Text, nullable=True)
    avatar_url = Column(String(500), nullable=True)
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    events = relationship(
        "Event",
        back_populates="creator",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_organization(self) -> bool:
        return self.user_type == "organization"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("participant_count >= 0", name="ck_events_participants_nonneg"),
        CheckConstraint(
            "capacity IS NULL OR participant_count <= capacity",
            name="ck_events_participants_within_capacity",
        ),
        CheckConstraint(
            "longitude >= -180 AND longitude <= 180", name="ck_events_longitude_range"
        ),
        CheckConstraint(
            "latitude >= -90 AND latitude <= 90", name="ck_events_latitude_range"
        ),
        Index("ix_events_lat_lon", "latitude", "longitude"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    created_by = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    capacity = Column(Integer, nullable=True)
    participant_count = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="published")
    visibility = Column(String(16), nullable=False, default="public")
    address = Column(String(255), nullable=False)
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    hide_location = Column(Boolean, nullable=False, default=False)
    price = Column(Float, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    images = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    creator = relationship("User", back_populates="events")
    rsvps = relationship(
        "Rsvp",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def coordinates(self) -> list[float]:
        """GeoJSON order: [longitude, latitude]."""
        return [self.longitude, self.latitude]

    @property
    def time_anchor(self) -> datetime:
        return self.end_time or self.start_time

    @property
    def seats_available(self) -> int | None:
        if self.capacity is None:
            return None
        return max(self.capacity - (self.participant_count or 0), 0)


class Rsvp(Base):
    __tablename__ = "rsvps"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_rsvps_event_user"),
        CheckConstraint("plus_ones >= 0", name="ck_rsvps_plus_ones_nonneg"),
        Index("ix_rsvps_user_id", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(16), nullable=False, default="going")
    plus_ones = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")

    @property
    def seats(self) -> int:
        """Seats this RSVP holds against the event's capacity."""
        if self.status != "going":
            return 0
        return 1 + (self.plus_ones or 0)


class Follow(Base):
    __tablename__ = "follows"
    __table_args__ = (
        UniqueConstraint(
            "follower_id", "organization_id", name="uq_follows_follower_organization"
        ),
        Index("ix_follows_organization_id", "organization_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    follower_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    organization_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, default=_now, nullable=False)


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint(
            "requester_id", "recipient_id", name="uq_connections_requester_recipient"
        ),
        Index("ix_connections_requester_status", "requester_id", "status"),
        Index("ix_connections_recipient_status", "recipient_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    requester_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)
