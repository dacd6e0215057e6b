from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import Update, create_engine, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from motion import database, rsvps
from motion.crud import create_event, create_user, delete_event
from motion.errors import (
    ConflictError,
    ForbiddenError,
    HostCannotRsvpError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from motion.models import Base, Event, Rsvp
from motion.rsvps import (
    create_rsvp,
    delete_rsvp,
    list_rsvps,
    release_seats,
    reserve_seats,
    seats_for,
    update_rsvp,
)
from motion.utils import utcnow


def _count(session, event_id: str) -> int:
    return session.scalar(select(Event.participant_count).where(Event.id == event_id))


def test_seats_for_only_counts_going():
    assert seats_for("going", 0) == 1
    assert seats_for("going", 3) == 4
    assert seats_for("interested", 3) == 0
    assert seats_for("waitlist", 2) == 0


def test_reserve_seats_respects_capacity(session, make_user, make_event):
    host = make_user("Host")
    event = make_event(host, capacity=3)

    assert reserve_seats(session, event.id, 2) is True
    assert reserve_seats(session, event.id, 2) is False
    assert reserve_seats(session, event.id, 1) is True
    session.commit()
    assert _count(session, event.id) == 3


def test_release_seats_never_goes_negative(session, make_user, make_event):
    host = make_user("Host")
    event = make_event(host, capacity=5)
    reserve_seats(session, event.id, 1)
    release_seats(session, event.id, 4)
    session.commit()
    assert _count(session, event.id) == 0


def test_create_rsvp_going_takes_seats(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=10)

    rsvp, waitlisted = create_rsvp(
        session, event_id=event.id, user_id=guest.id, plus_ones=2
    )

    assert waitlisted is False
    assert rsvp.status == "going"
    assert _count(session, event.id) == 3


def test_unlimited_event_never_waitlists(session, make_user, make_event):
    host = make_user("Host")
    event = make_event(host)
    for index in range(5):
        guest = make_user(f"Guest {index}")
        _, waitlisted = create_rsvp(
            session, event_id=event.id, user_id=guest.id, plus_ones=3
        )
        assert waitlisted is False
    assert _count(session, event.id) == 20


def test_full_event_waitlists_instead_of_failing(session, make_user, make_event):
    host = make_user("Host")
    first = make_user("First")
    second = make_user("Second")
    event = make_event(host, capacity=1)

    _, first_waitlisted = create_rsvp(session, event_id=event.id, user_id=first.id)
    rsvp, second_waitlisted = create_rsvp(session, event_id=event.id, user_id=second.id)

    assert first_waitlisted is False
    assert second_waitlisted is True
    assert rsvp.status == "waitlist"
    assert _count(session, event.id) == 1


def test_party_larger_than_remaining_seats_is_waitlisted(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=2)

    rsvp, waitlisted = create_rsvp(
        session, event_id=event.id, user_id=guest.id, plus_ones=2
    )

    assert waitlisted is True
    assert rsvp.status == "waitlist"
    assert rsvp.plus_ones == 2
    assert _count(session, event.id) == 0


def test_interested_does_not_consume_capacity(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=1)

    rsvp, waitlisted = create_rsvp(
        session, event_id=event.id, user_id=guest.id, status="interested"
    )

    assert waitlisted is False
    assert rsvp.status == "interested"
    assert _count(session, event.id) == 0


def test_host_cannot_rsvp_to_own_event(session, make_user, make_event):
    host = make_user("Host")
    event = make_event(host, capacity=5)

    with pytest.raises(HostCannotRsvpError) as excinfo:
        create_rsvp(session, event_id=event.id, user_id=host.id)

    assert excinfo.value.message == "Hosts cannot RSVP to their own events"
    assert _count(session, event.id) == 0
    assert list_rsvps(session, event_id=event.id) == []


def test_create_rsvp_for_missing_event(session, make_user):
    guest = make_user("Guest")
    with pytest.raises(NotFoundError) as excinfo:
        create_rsvp(session, event_id="missing", user_id=guest.id)
    assert excinfo.value.code == "EventNotFound"


@pytest.mark.parametrize(
    "kwargs",
    [{"status": "maybe"}, {"plus_ones": -1}, {"plus_ones": 11}],
)
def test_create_rsvp_rejects_invalid_input(session, make_user, make_event, kwargs):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=50)

    with pytest.raises(ValidationError):
        create_rsvp(session, event_id=event.id, user_id=guest.id, **kwargs)
    assert _count(session, event.id) == 0


def test_duplicate_rsvp_hands_back_reserved_seats(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=10)
    create_rsvp(session, event_id=event.id, user_id=guest.id)

    with pytest.raises(ConflictError):
        create_rsvp(session, event_id=event.id, user_id=guest.id, plus_ones=3)

    assert _count(session, event.id) == 1
    assert len(list_rsvps(session, event_id=event.id)) == 1


def test_failed_compensation_is_logged_as_critical(
    session, make_user, make_event, monkeypatch, caplog
):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=10)
    create_rsvp(session, event_id=event.id, user_id=guest.id)

    def broken_release(*_args, **_kwargs):
        raise OperationalError("UPDATE events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(rsvps, "release_seats", broken_release)
    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        with pytest.raises(TransientStoreError):
            create_rsvp(session, event_id=event.id, user_id=guest.id)

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert critical
    assert event.id in critical[0].getMessage()
    assert guest.id in critical[0].getMessage()


def test_stale_reads_cannot_overbook(session, make_user, make_event):
    host = make_user("Host")
    alice = make_user("Alice")
    bob = make_user("Bob")
    event = make_event(host, capacity=1)

    factory = sessionmaker(bind=database.engine, expire_on_commit=False)
    with factory() as first, factory() as second:
        # Both sessions see an empty event before either writes.
        assert first.get(Event, event.id).participant_count == 0
        assert second.get(Event, event.id).participant_count == 0

        _, alice_waitlisted = create_rsvp(first, event_id=event.id, user_id=alice.id)
        _, bob_waitlisted = create_rsvp(second, event_id=event.id, user_id=bob.id)

    assert (alice_waitlisted, bob_waitlisted) == (False, True)
    assert _count(session, event.id) == 1


def test_update_going_to_interested_releases_seats(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id, plus_ones=1)

    updated, waitlisted = update_rsvp(session, rsvp.id, guest.id, status="interested")

    assert waitlisted is False
    assert updated.status == "interested"
    assert _count(session, event.id) == 0


def test_update_growing_party_reserves_difference(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)

    updated, waitlisted = update_rsvp(session, rsvp.id, guest.id, plus_ones=3)

    assert waitlisted is False
    assert updated.plus_ones == 3
    assert _count(session, event.id) == 4


def test_update_that_no_longer_fits_moves_to_waitlist(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    other = make_user("Other")
    event = make_event(host, capacity=3)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)
    create_rsvp(session, event_id=event.id, user_id=other.id, plus_ones=1)

    updated, waitlisted = update_rsvp(session, rsvp.id, guest.id, plus_ones=2)

    assert waitlisted is True
    assert updated.status == "waitlist"
    # The seat held before the update is handed back.
    assert _count(session, event.id) == 2


def test_interested_to_going_when_full(session, make_user, make_event):
    host = make_user("Host")
    alice = make_user("Alice")
    bob = make_user("Bob")
    event = make_event(host, capacity=1)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=bob.id, status="interested")
    create_rsvp(session, event_id=event.id, user_id=alice.id)

    updated, waitlisted = update_rsvp(session, rsvp.id, bob.id, status="going")

    assert waitlisted is True
    assert updated.status == "waitlist"
    assert _count(session, event.id) == 1


def test_update_notes_only_keeps_seats(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id, plus_ones=1)

    updated, _ = update_rsvp(session, rsvp.id, guest.id, notes="Bringing snacks")

    assert updated.notes == "Bringing snacks"
    assert updated.status == "going"
    assert _count(session, event.id) == 2


def test_update_checks_existence_then_ownership(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    stranger = make_user("Stranger")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)

    with pytest.raises(NotFoundError):
        update_rsvp(session, "missing", stranger.id, status="interested")
    with pytest.raises(ForbiddenError):
        update_rsvp(session, rsvp.id, stranger.id, status="interested")
    assert _count(session, event.id) == 1


def test_delete_releases_seats_exactly_once(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    other = make_user("Other")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id, plus_ones=1)
    create_rsvp(session, event_id=event.id, user_id=other.id)

    delete_rsvp(session, rsvp.id, guest.id)
    assert _count(session, event.id) == 1

    with pytest.raises(NotFoundError):
        delete_rsvp(session, rsvp.id, guest.id)
    assert _count(session, event.id) == 1


def test_delete_by_non_owner_is_forbidden(session, make_user, make_event):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)

    with pytest.raises(ForbiddenError):
        delete_rsvp(session, rsvp.id, host.id)
    assert session.get(Rsvp, rsvp.id) is not None
    assert _count(session, event.id) == 1


def test_deleting_waitlisted_rsvp_releases_nothing(session, make_user, make_event):
    host = make_user("Host")
    alice = make_user("Alice")
    bob = make_user("Bob")
    event = make_event(host, capacity=1)
    create_rsvp(session, event_id=event.id, user_id=alice.id)
    waiting, _ = create_rsvp(session, event_id=event.id, user_id=bob.id)

    delete_rsvp(session, waiting.id, bob.id)

    assert _count(session, event.id) == 1


def test_list_rsvps_filters(session, make_user, make_event):
    host = make_user("Host")
    alice = make_user("Alice")
    bob = make_user("Bob")
    event = make_event(host, capacity=1)
    create_rsvp(session, event_id=event.id, user_id=alice.id)
    create_rsvp(session, event_id=event.id, user_id=bob.id)

    assert [r.user_id for r in list_rsvps(session, status="waitlist")] == [bob.id]
    assert [r.user_id for r in list_rsvps(session, user_id=alice.id)] == [alice.id]
    assert len(list_rsvps(session, event_id=event.id)) == 2


def test_deleting_event_cascades_to_rsvps(session, make_user, make_event):
    host = make_user("Host")
    alice = make_user("Alice")
    bob = make_user("Bob")
    event = make_event(host, capacity=1)
    create_rsvp(session, event_id=event.id, user_id=alice.id)
    create_rsvp(session, event_id=event.id, user_id=bob.id)

    delete_event(session, event.id, host.id)
    session.commit()

    assert list_rsvps(session, event_id=event.id) == []
    assert session.scalar(select(func.count()).select_from(Rsvp)) == 0


def test_concurrent_requests_for_last_seats(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    database.enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    capacity, guests = 3, 10

    with factory() as setup:
        host = create_user(setup, name="Host", email="host@example.com")
        event = create_event(
            setup,
            creator=host,
            title="Last seats",
            description="",
            start_time=utcnow() + timedelta(hours=2),
            address="1 Main St",
            longitude=-81.2001,
            latitude=28.6024,
            capacity=capacity,
        )
        guest_ids = [
            create_user(setup, name=f"Guest {i}", email=f"guest{i}@example.com").id
            for i in range(guests)
        ]
        setup.commit()
        event_id = event.id

    barrier = threading.Barrier(guests)

    def attempt(user_id: str) -> bool:
        with factory() as db:
            barrier.wait()
            _, waitlisted = create_rsvp(db, event_id=event_id, user_id=user_id)
            return waitlisted

    try:
        with ThreadPoolExecutor(max_workers=guests) as pool:
            outcomes = list(pool.map(attempt, guest_ids))

        with factory() as check:
            statuses = [r.status for r in list_rsvps(check, event_id=event_id)]
            count = check.scalar(
                select(Event.participant_count).where(Event.id == event_id)
            )
    finally:
        engine.dispose()

    assert outcomes.count(False) == capacity
    assert statuses.count("going") == capacity
    assert statuses.count("waitlist") == guests - capacity
    assert count == capacity


def _fail_rsvp_updates(monkeypatch, session):
    original = session.execute

    def execute(statement, *args, **kwargs):
        if isinstance(statement, Update) and str(statement).startswith("UPDATE rsvps"):
            raise OperationalError("UPDATE rsvps", {}, Exception("disk I/O error"))
        return original(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", execute)


def test_failed_update_hands_back_reserved_seats(
    session, make_user, make_event, monkeypatch
):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)
    _fail_rsvp_updates(monkeypatch, session)

    with pytest.raises(TransientStoreError):
        update_rsvp(session, rsvp.id, guest.id, plus_ones=2)

    monkeypatch.undo()
    assert _count(session, event.id) == 1
    assert session.scalar(select(Rsvp.plus_ones).where(Rsvp.id == rsvp.id)) == 0


def test_update_losing_a_race_undoes_its_reservation(
    session, make_user, make_event, monkeypatch
):
    host = make_user("Host")
    guest = make_user("Guest")
    event = make_event(host, capacity=5)
    rsvp, _ = create_rsvp(session, event_id=event.id, user_id=guest.id)
    original = rsvps._commit_reservation

    def reserve_then_interleave(db, event_id, seats):
        reserved = original(db, event_id, seats)
        # Another request switches the RSVP to interested and frees its seat.
        db.execute(
            update(Rsvp)
            .where(Rsvp.id == rsvp.id)
            .values(status="interested")
            .execution_options(synchronize_session=False)
        )
        release_seats(db, event_id, 1)
        db.commit()
        return reserved

    monkeypatch.setattr(rsvps, "_commit_reservation", reserve_then_interleave)

    with pytest.raises(ConflictError) as excinfo:
        update_rsvp(session, rsvp.id, guest.id, plus_ones=2)

    assert excinfo.value.code == "RsvpConflict"
    assert _count(session, event.id) == 0
    row = session.execute(
        select(Rsvp.status, Rsvp.plus_ones).where(Rsvp.id == rsvp.id)
    ).one()
    assert tuple(row) == ("interested", 0)
