# busline/tasks/worker_jobs.py
#
# Plain functions behind the Celery tasks. Each opens its own session so it
# can also be called from a shell or a test with a different session factory.

import logging

from sqlalchemy.exc import ProgrammingError

from busline.application.outbox_publisher import OutboxPublisher
from busline.application.reservation_service import ReservationService
from busline.application.trip_lifecycle import TripLifecycleScheduler
from busline.infrastructure.db.session import get_db_session


logger = logging.getLogger(__name__)


def expire_pending_tickets(session_factory=None, now=None) -> dict:
    try:
        with get_db_session(session_factory) as db:
            expired = ReservationService(db).sweep_expired(now=now)
    except ProgrammingError:
        # Tables not created yet; try again next beat.
        logger.warning("Expiry sweep skipped: schema missing")
        return {"skipped": True, "reason": "missing_tables"}
    return {"expired": len(expired), "ticket_ids": expired}


def fire_due_trip_transitions(limit: int = 100, session_factory=None, now=None) -> dict:
    try:
        with get_db_session(session_factory) as db:
            return TripLifecycleScheduler(db).run_due(now=now, limit=limit)
    except ProgrammingError:
        logger.warning("Trip transition poll skipped: schema missing")
        return {"skipped": True, "reason": "missing_tables"}


def resync_trip_timers(session_factory=None, now=None) -> dict:
    with get_db_session(session_factory) as db:
        registered = TripLifecycleScheduler(db).resync(now=now)
    return {"registered": registered}


def publish_outbox_events(limit: int | None = None, session_factory=None, sinks=None) -> dict:
    with get_db_session(session_factory) as db:
        return OutboxPublisher(db, sinks=sinks).publish_pending(limit=limit)
