# busline/application/trip_lifecycle.py

from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from busline.application.events import TRIP_STATUS_CHANGED, emit_trip_event
from busline.domain.state_machine import TripStatus
from busline.domain.timetable import as_utc, combine, service_timezone, utc_now
from busline.infrastructure.db.models import DeferredTask, Trip
from busline.infrastructure.repositories.deferred_task_repository import DeferredTaskRepository
from busline.infrastructure.repositories.outbox_repository import OutboxRepository
from busline.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)

DEPART = "depart"
ARRIVE = "arrive"

# task type -> (required status, target status)
_GUARDED_TRANSITIONS = {
    DEPART: (TripStatus.SCHEDULED, TripStatus.IN_PROGRESS),
    ARRIVE: (TripStatus.IN_PROGRESS, TripStatus.COMPLETED),
}


def task_key(task_type: str, trip_id: str) -> str:
    return f"{task_type}:{trip_id}"


def departure_instant(trip: Trip) -> datetime:
    return combine(trip.departure_date, trip.departure_time)


def arrival_instant(trip: Trip) -> datetime:
    return combine(trip.arrival_date, trip.arrival_time)


def initial_status(departure_at: datetime, arrival_at: datetime, now: datetime) -> TripStatus:
    """Status for a newly entered trip; backfilled trips skip the timers."""
    if arrival_at <= now:
        return TripStatus.COMPLETED
    if departure_at <= now:
        return TripStatus.IN_PROGRESS
    return TripStatus.SCHEDULED


class TripLifecycleScheduler:
    """
    Keeps two durable timers per trip (depart, arrive) and fires them.
    Firing is guarded by the trip's current status; a stale timer is a no-op.
    """

    def __init__(self, db: Session):
        self.db = db
        self.trip_repository = TripRepository(db)
        self.deferred_task_repository = DeferredTaskRepository(db)
        self.outbox_repository = OutboxRepository(db)

    def register(self, trip: Trip, now: datetime | None = None) -> list[DeferredTask]:
        """
        Replace the trip's timers with ones derived from its current data.
        """

        now = as_utc(now) if now else utc_now()
        self.deregister(trip.id)

        if trip.is_deleted:
            return []

        departure_at = departure_instant(trip)
        arrival_at = arrival_instant(trip)
        tasks = []

        # Past instants are scheduled too; the next poll fires them in order.
        if trip.status == TripStatus.SCHEDULED:
            tasks.append(
                self.deferred_task_repository.schedule(
                    task_key(DEPART, trip.id), DEPART, trip.id, departure_at
                )
            )
            tasks.append(
                self.deferred_task_repository.schedule(
                    task_key(ARRIVE, trip.id), ARRIVE, trip.id, arrival_at
                )
            )
        elif trip.status == TripStatus.IN_PROGRESS:
            tasks.append(
                self.deferred_task_repository.schedule(
                    task_key(ARRIVE, trip.id), ARRIVE, trip.id, arrival_at
                )
            )

        if tasks:
            logger.info(
                "Registered %s for trip %s",
                ", ".join(f"{t.task_type}@{t.fire_at.isoformat()}" for t in tasks),
                trip.id,
            )
        overdue = [t.task_type for t in tasks if as_utc(t.fire_at) <= now]
        if overdue:
            logger.warning("Trip %s has overdue timers: %s", trip.id, ", ".join(overdue))
        return tasks

    def deregister(self, trip_id: str) -> None:
        self.deferred_task_repository.cancel(task_key(DEPART, trip_id))
        self.deferred_task_repository.cancel(task_key(ARRIVE, trip_id))

    def fire(self, task_type: str, trip_id: str) -> bool:
        """
        Apply one guarded transition. Returns False when the trip is gone
        or no longer in the required status.
        """

        required, target = _GUARDED_TRANSITIONS[task_type]
        trip = self.trip_repository.get_by_id(trip_id)
        if trip is None:
            logger.info("Skipping %s for trip %s: trip no longer exists", task_type, trip_id)
            return False

        if not self.trip_repository.try_set_status(trip_id, required, target):
            logger.info(
                "Skipping %s for trip %s: status is %s, expected %s",
                task_type,
                trip_id,
                trip.status.value,
                required.value,
            )
            return False

        self.db.refresh(trip)
        emit_trip_event(
            self.outbox_repository,
            trip,
            TRIP_STATUS_CHANGED,
            from_status=required.value,
            to_status=target.value,
            trigger=task_type,
        )
        logger.info("Trip %s moved %s -> %s", trip_id, required.value, target.value)
        return True

    def run_due(self, now: datetime | None = None, limit: int = 100) -> dict:
        """
        Fire every timer whose instant has passed. Fired and no-op timers are
        removed; failing ones keep their row and are retried next poll.
        """

        now = as_utc(now) if now else utc_now()
        summary = {"fired": 0, "skipped": 0, "failed": 0}

        for task in self.deferred_task_repository.due(now, limit=limit):
            task_id, task_type, trip_id = task.id, task.task_type, task.trip_id
            try:
                with self.db.begin_nested():
                    applied = self.fire(task_type, trip_id)
            except Exception as exc:
                logger.exception("Deferred task %s (%s) failed for trip %s", task_id, task_type, trip_id)
                self.deferred_task_repository.record_failure(task, str(exc))
                summary["failed"] += 1
                continue

            self.deferred_task_repository.complete(task)
            summary["fired" if applied else "skipped"] += 1

        self.db.flush()
        return summary

    def resync(self, now: datetime | None = None) -> int:
        """
        Rebuild timers from trip data, e.g. after the task table was lost.
        """

        now = as_utc(now) if now else utc_now()
        # A trip that started yesterday may still be on the road.
        since = now.astimezone(service_timezone()).date() - timedelta(days=2)

        registered = 0
        trips = self.trip_repository.list_live_from(
            since,
            (TripStatus.SCHEDULED, TripStatus.IN_PROGRESS),
        )
        for trip in trips:
            if self.register(trip, now=now):
                registered += 1

        logger.info("Resynced lifecycle timers for %s trips", registered)
        return registered
