# busline/tasks/jobs.py

from busline.tasks.celery_app import celery
from busline.tasks import worker_jobs


@celery.task(name="busline.tasks.jobs.expire_pending_tickets")
def expire_pending_tickets():
    return worker_jobs.expire_pending_tickets()


@celery.task(name="busline.tasks.jobs.fire_due_trip_transitions")
def fire_due_trip_transitions(limit: int = 100):
    return worker_jobs.fire_due_trip_transitions(limit=limit)


@celery.task(name="busline.tasks.jobs.resync_trip_timers")
def resync_trip_timers():
    return worker_jobs.resync_trip_timers()


@celery.task(name="busline.tasks.jobs.publish_outbox_events")
def publish_outbox_events(limit: int | None = None):
    return worker_jobs.publish_outbox_events(limit=limit)
