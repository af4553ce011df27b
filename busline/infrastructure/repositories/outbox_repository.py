# busline/infrastructure/repositories/outbox_repository.py

from datetime import datetime
import json

from sqlalchemy.orm import Session
from sqlalchemy import select

from busline.infrastructure.db.models import OutboxEvent, PaymentWebhookEvent


class OutboxRepository:

    def __init__(self, db: Session):
        self.db = db

    def add_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> OutboxEvent | None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return None

        event = OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=json.dumps(payload, sort_keys=True, default=str),
            dedupe_key=dedupe_key,
            status="PENDING",
            attempts=0,
        )
        self.db.add(event)
        return event

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        stmt = select(OutboxEvent).where(OutboxEvent.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_events(self, status: str | None = None, limit: int = 100) -> list[OutboxEvent]:
        stmt = select(OutboxEvent)
        if status:
            stmt = stmt.where(OutboxEvent.status == status.upper())
        stmt = stmt.order_by(OutboxEvent.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def list_pending(self, limit: int = 100) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == "PENDING")
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, event: OutboxEvent, published_at: datetime) -> None:
        event.status = "PUBLISHED"
        event.published_at = published_at
        event.last_error = None

    def record_failure(self, event: OutboxEvent, error: str) -> None:
        event.attempts += 1
        event.last_error = error


class PaymentEventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, provider: str, payment_id: str) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.payment_id == payment_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record(
        self,
        provider: str,
        payment_id: str,
        ticket_id: str,
        payload_hash: str,
        status: str,
    ) -> PaymentWebhookEvent:
        event = PaymentWebhookEvent(
            provider=provider,
            payment_id=payment_id,
            ticket_id=ticket_id,
            payload_hash=payload_hash,
            status=status,
        )
        self.db.add(event)
        return event
