"""APScheduler integration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable, Iterable

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from .cleanup import (
    revoke_for_event,
    revoke_unseen_rsvps,
    run_event_cleanup,
    run_reconcile_sweep,
    run_relation_cleanup,
)
from .config import settings
from .lifecycle import mark_past_events, vacuum_database

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        mark_past_events,
        "interval",
        hours=settings.lifecycle_interval_hours,
        id="event-lifecycle",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        run_reconcile_sweep,
        "interval",
        hours=settings.cleanup_sweep_hours,
        id="rsvp-reconcile",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        vacuum_database,
        "interval",
        hours=settings.sqlite_vacuum_hours,
        id="vacuum",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None


def get_scheduler() -> BackgroundScheduler | None:
    if _scheduler and _scheduler.running:
        return _scheduler
    return None


def _defer(func: Callable, job_id: str, args: list) -> bool:
    scheduler = get_scheduler()
    if scheduler is None:
        return False
    scheduler.add_job(
        func,
        "date",
        run_date=datetime.now(UTC) + settings.cleanup_delay,
        args=args,
        id=job_id,
        replace_existing=True,
    )
    logger.debug("Deferred %s by %ss", job_id, settings.cleanup_delay_seconds)
    return True


def schedule_relation_cleanup(
    owner_id: str, holder_id: str, session: Session | None = None
) -> bool:
    """Queue a cleanup for a severed relation.

    Returns True when deferred to the scheduler. Without a running scheduler
    the cleanup runs immediately, in ``session`` when one is given.
    """
    job_id = f"relation-cleanup:{owner_id}:{holder_id}"
    if _defer(run_relation_cleanup, job_id, [owner_id, holder_id]):
        return True
    if session is None:
        run_relation_cleanup(owner_id, holder_id)
    else:
        revoke_unseen_rsvps(session, owner_id, holder_id)
        session.commit()
    return False


def schedule_cleanups(
    pairs: Iterable[tuple[str, str]], session: Session | None = None
) -> None:
    for owner_id, holder_id in pairs:
        schedule_relation_cleanup(owner_id, holder_id, session=session)


def schedule_event_cleanup(event_id: str, session: Session | None = None) -> bool:
    if _defer(run_event_cleanup, f"event-cleanup:{event_id}", [event_id]):
        return True
    if session is None:
        run_event_cleanup(event_id)
    else:
        revoke_for_event(session, event_id)
        session.commit()
    return False
