from __future__ import annotations

from sqlalchemy import func, select

from motion.models import Event, Rsvp, User
from motion.rsvps import seats_for
from motion.seed import seed_fake_data
from motion.utils import haversine_miles


def test_seed_fake_data_populates_consistent_neighbourhood(session):
    stats = seed_fake_data(
        user_count=6,
        organization_count=2,
        event_count=8,
        max_rsvps_per_event=4,
        radius_miles=3.0,
    )

    assert stats["users"] == 6
    assert stats["organizations"] == 2
    assert session.scalar(select(func.count()).select_from(User)) == 8
    assert session.scalar(select(func.count()).select_from(Event)) == 8
    assert session.scalar(select(func.count()).select_from(Rsvp)) == stats["rsvps"]

    for event in session.scalars(select(Event)).all():
        assert haversine_miles(-81.2001, 28.6024, event.longitude, event.latitude) <= 3.01
        held = sum(seats_for(r.status, r.plus_ones) for r in event.rsvps)
        assert event.participant_count == held
        if event.capacity is not None:
            assert event.participant_count <= event.capacity
        assert all(r.user_id != event.created_by for r in event.rsvps)
