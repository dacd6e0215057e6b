"""Shared pytest fixtures for Motion."""

from __future__ import annotations

import itertools
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from motion import api, database, storage
from motion.crud import create_event, create_user
from motion.models import Base
from motion.utils import utcnow

ORIGIN = (-81.2001, 28.6024)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    database.enable_sqlite_foreign_keys(engine)
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.DATABASE_URL = str(engine.url)
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


_emails = itertools.count()


@pytest.fixture()
def make_user(session):
    def _make(name: str = "Guest", *, user_type: str = "individual"):
        user = create_user(
            session,
            name=name,
            email=f"{name.lower().replace(' ', '.')}.{next(_emails)}@example.com",
            user_type=user_type,
        )
        session.commit()
        return user

    return _make


@pytest.fixture()
def make_event(session):
    def _make(
        creator,
        *,
        title: str = "Block Party",
        offset: tuple[float, float] = (0.0, 0.0),
        start_in: timedelta = timedelta(hours=2),
        end_in: timedelta | None = None,
        **kwargs,
    ):
        start = utcnow().replace(microsecond=0) + start_in
        event = create_event(
            session,
            creator=creator,
            title=title,
            description="",
            start_time=start,
            end_time=start - start_in + end_in if end_in is not None else None,
            address="1 Main St",
            longitude=ORIGIN[0] + offset[0],
            latitude=ORIGIN[1] + offset[1],
            **kwargs,
        )
        session.commit()
        return event

    return _make
