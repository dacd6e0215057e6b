"""Event lifecycle maintenance."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, update

from .config import settings
from .database import engine, get_session
from .models import Event
from .utils import to_naive_utc, utcnow

# Use uvicorn's error logger so lifecycle messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def mark_past_events(now: datetime | None = None) -> dict:
    """Move published events whose grace window has elapsed to ``past``."""
    now = to_naive_utc(now) or utcnow()
    cutoff = now - settings.feed_grace
    with get_session() as session:
        result = session.execute(
            update(Event)
            .where(
                Event.status == "published",
                func.coalesce(Event.end_time, Event.start_time) < cutoff,
            )
            .values(status="past", last_modified=now)
            .execution_options(synchronize_session=False)
        )
        marked = result.rowcount or 0
    logger.info("Lifecycle pass finished: %d event(s) marked past", marked)
    return {"events_marked_past": marked}


def vacuum_database() -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
