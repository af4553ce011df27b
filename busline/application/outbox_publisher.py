# busline/application/outbox_publisher.py

from datetime import datetime
import json
import logging
import os
from typing import Protocol

from sqlalchemy.orm import Session

from busline.domain.exceptions import NotFoundError
from busline.domain.timetable import as_utc, utc_now
from busline.infrastructure.db.models import OutboxEvent
from busline.infrastructure.repositories.outbox_repository import OutboxRepository


logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def publish(self, event: OutboxEvent, payload: dict) -> None:
        ...


class LoggingSink:
    """Default sink: writes each event to the application log."""

    def publish(self, event: OutboxEvent, payload: dict) -> None:
        logger.info(
            "event %s %s:%s %s",
            event.event_type,
            event.aggregate_type,
            event.aggregate_id,
            payload,
        )


def default_batch_size() -> int:
    return int(os.getenv("OUTBOX_PUBLISH_BATCH", "100"))


class OutboxPublisher:
    """
    Delivers pending outbox rows to the sinks. Delivery is best effort:
    a failing sink leaves the row PENDING with the error recorded.
    """

    def __init__(self, db: Session, sinks: list[EventSink] | None = None):
        self.db = db
        self.outbox_repository = OutboxRepository(db)
        self.sinks = sinks if sinks is not None else [LoggingSink()]

    def publish_pending(self, limit: int | None = None, now: datetime | None = None) -> dict:
        now = as_utc(now) if now else utc_now()
        summary = {"published": 0, "failed": 0}

        for event in self.outbox_repository.list_pending(limit=limit or default_batch_size()):
            try:
                payload = json.loads(event.payload)
                for sink in self.sinks:
                    sink.publish(event, payload)
            except Exception as exc:
                logger.exception("Publishing outbox event %s failed", event.id)
                self.outbox_repository.record_failure(event, str(exc))
                summary["failed"] += 1
                continue

            self.outbox_repository.mark_published(event, now)
            summary["published"] += 1

        self.db.flush()
        return summary

    def mark_published(self, event_id: str, now: datetime | None = None) -> OutboxEvent:
        event = self.outbox_repository.get_by_id(event_id)
        if event is None:
            raise NotFoundError("Outbox event", event_id)

        if event.status != "PUBLISHED":
            self.outbox_repository.mark_published(event, as_utc(now) if now else utc_now())
            self.db.flush()
        return event
