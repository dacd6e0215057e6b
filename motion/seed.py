"""Development helpers for populating fake users, events and RSVPs."""

from __future__ import annotations

import math
import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_event, create_user
from .database import get_session
from .models import Event, User
from .rsvps import create_rsvp
from .social import (
    accept_connection,
    accepted_connection_ids,
    follow_organization,
    followed_organization_ids,
    request_connection,
)
from .storage import init_db
from .utils import MILES_PER_DEGREE_LATITUDE, utcnow
from .visibility import can_view, relations_for

_organization_suffixes = [
    "Collective",
    "Society",
    "Club",
    "Makers",
    "Arts Council",
    "Running Crew",
]
_event_types = [
    "Mixer",
    "Hangout",
    "Workshop",
    "Pickup Game",
    "Gallery Walk",
    "Meet & Greet",
    "Dinner",
    "Open Mic",
]
_tags = ["music", "outdoors", "food", "tech", "art", "fitness", "social", "family"]
_visibilities = ["public"] * 6 + ["followers", "mutuals", "friends", "private"]
_rsvp_statuses = ["going", "going", "going", "interested"]


def seed_fake_data(
    *,
    user_count: int = 20,
    organization_count: int = 4,
    event_count: int = 30,
    max_rsvps_per_event: int = 5,
    center_longitude: float = -81.2001,
    center_latitude: float = 28.6024,
    radius_miles: float = 8.0,
) -> dict[str, int]:
    """Populate the SQLite database with a synthetic neighbourhood."""
    if user_count < 1:
        raise ValueError("user_count must be >= 1")
    if organization_count < 0:
        raise ValueError("organization_count must be >= 0")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if radius_miles <= 0:
        raise ValueError("radius_miles must be > 0")

    init_db()
    fake = Faker()
    stats = {
        "users": 0,
        "organizations": 0,
        "follows": 0,
        "connections": 0,
        "events": 0,
        "rsvps": 0,
        "waitlisted": 0,
    }

    with get_session() as session:
        people = [_create_person(session, fake) for _ in range(user_count)]
        organizations = [
            _create_organization(session, fake) for _ in range(organization_count)
        ]
        stats["users"] = len(people)
        stats["organizations"] = len(organizations)

        for person in people:
            for organization in organizations:
                if random.random() < 0.4:
                    follow_organization(session, person.id, organization.id)
                    stats["follows"] += 1
        stats["connections"] = _connect_people(session, people)
        session.commit()

        hosts = people + organizations
        for _ in range(event_count):
            event = _create_event(
                session,
                fake,
                creator=random.choice(hosts),
                center=(center_longitude, center_latitude),
                radius_miles=radius_miles,
            )
            session.commit()
            stats["events"] += 1
            created, waitlisted = _create_rsvps(
                session, fake, event, people, max_rsvps_per_event
            )
            stats["rsvps"] += created
            stats["waitlisted"] += waitlisted

    return stats


def _create_person(session: Session, fake: Faker) -> User:
    return create_user(
        session,
        name=fake.name(),
        email=fake.unique.email(),
        bio=fake.sentence() if random.random() < 0.5 else None,
    )


def _create_organization(session: Session, fake: Faker) -> User:
    return create_user(
        session,
        name=f"{fake.city()} {random.choice(_organization_suffixes)}",
        email=fake.unique.company_email(),
        user_type="organization",
        bio=fake.catch_phrase(),
    )


def _connect_people(session: Session, people: list[User]) -> int:
    connected = 0
    for index, person in enumerate(people):
        for other in people[index + 1 :]:
            if random.random() < 0.15:
                request_connection(session, person.id, other.id)
                accept_connection(session, person.id, other.id)
                connected += 1
    return connected


def _random_point(
    center: tuple[float, float], radius_miles: float
) -> tuple[float, float]:
    """Uniformly scatter a point inside a circle around ``center``."""
    longitude, latitude = center
    distance = radius_miles * math.sqrt(random.random())
    bearing = random.uniform(0, 2 * math.pi)
    d_lat = distance * math.cos(bearing) / MILES_PER_DEGREE_LATITUDE
    d_lon = (
        distance
        * math.sin(bearing)
        / (MILES_PER_DEGREE_LATITUDE * math.cos(math.radians(latitude)))
    )
    return round(longitude + d_lon, 6), round(latitude + d_lat, 6)


def _random_start_time() -> datetime:
    now = utcnow()
    day_offset = random.randint(-2, 21)
    minute_offset = random.randint(0, 23 * 60)
    return now + timedelta(days=day_offset, minutes=minute_offset)


def _maybe_end_time(start_time: datetime) -> datetime | None:
    if random.random() < 0.3:
        return None
    duration_hours = random.randint(1, 6)
    return start_time + timedelta(hours=duration_hours)


def _create_event(
    session: Session,
    fake: Faker,
    *,
    creator: User,
    center: tuple[float, float],
    radius_miles: float,
) -> Event:
    start_time = _random_start_time()
    longitude, latitude = _random_point(center, radius_miles)
    return create_event(
        session,
        creator=creator,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        start_time=start_time,
        end_time=_maybe_end_time(start_time),
        address=fake.street_address(),
        longitude=longitude,
        latitude=latitude,
        capacity=random.choice([None, None, 5, 10, 25]),
        visibility=random.choice(_visibilities),
        hide_location=random.random() < 0.1,
        price=random.choice([None, None, 0.0, 10.0, 25.0]),
        tags=random.sample(_tags, k=random.randint(0, 3)),
    )


def _can_see(session: Session, event: Event, user_id: str) -> bool:
    relations = relations_for(
        event.created_by,
        user_id,
        accepted_connection_ids(session, user_id),
        followed_organization_ids(session, user_id),
    )
    return can_view(event.visibility, relations)


def _create_rsvps(
    session: Session,
    fake: Faker,
    event: Event,
    people: list[User],
    max_rsvps: int,
) -> tuple[int, int]:
    if max_rsvps <= 0:
        return 0, 0
    guests = [
        p
        for p in people
        if p.id != event.created_by and _can_see(session, event, p.id)
    ]
    total = min(random.randint(0, max_rsvps), len(guests))
    waitlisted_count = 0
    for guest in random.sample(guests, k=total):
        _, waitlisted = create_rsvp(
            session,
            event_id=event.id,
            user_id=guest.id,
            status=random.choice(_rsvp_statuses),
            plus_ones=random.choice([0, 0, 0, 1, 2]),
            notes=fake.sentence() if random.random() < 0.3 else None,
        )
        waitlisted_count += int(waitlisted)
    return total, waitlisted_count
