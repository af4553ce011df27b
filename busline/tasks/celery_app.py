# busline/tasks/celery_app.py

import os

from celery import Celery
from celery.signals import worker_ready
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery = Celery(
    "busline",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["busline.tasks.jobs"],
)

celery.conf.timezone = "UTC"


# Timers live in the database; rebuild any that are missing when a worker comes up.
@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    from busline.tasks.jobs import resync_trip_timers
    resync_trip_timers.delay()


celery.conf.beat_schedule = {
    "expire-pending-tickets": {
        "task": "busline.tasks.jobs.expire_pending_tickets",
        "schedule": float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "300")),
    },
    "fire-due-trip-transitions": {
        "task": "busline.tasks.jobs.fire_due_trip_transitions",
        "schedule": float(os.getenv("TRIP_TRANSITION_POLL_SECONDS", "30")),
    },
    "publish-outbox-events": {
        "task": "busline.tasks.jobs.publish_outbox_events",
        "schedule": float(os.getenv("OUTBOX_PUBLISH_INTERVAL_SECONDS", "60")),
    },
}
