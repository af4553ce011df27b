# busline/application/payment_service.py

from datetime import datetime
import hashlib
import json
import logging

from sqlalchemy.orm import Session

from busline.application.reservation_service import ReservationService
from busline.domain.exceptions import ConflictError, ValidationError
from busline.domain.state_machine import TicketStatus
from busline.domain.timetable import as_utc, utc_now
from busline.infrastructure.db.models import Ticket
from busline.infrastructure.payments import razorpay_gateway
from busline.infrastructure.payments.razorpay_gateway import PROVIDER
from busline.infrastructure.repositories.outbox_repository import PaymentEventRepository
from busline.infrastructure.repositories.ticket_repository import TicketRepository


logger = logging.getLogger(__name__)


def hash_payload(payload: dict) -> str:
    encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class PaymentService:
    """
    Maps gateway results onto ticket confirmation / failure.
    Each gateway payment id is applied at most once.
    """

    def __init__(self, db: Session):
        self.db = db
        self.reservations = ReservationService(db)
        self.ticket_repository = TicketRepository(db)
        self.payment_event_repository = PaymentEventRepository(db)

    def create_order(self, ticket_id: str, now: datetime | None = None) -> dict:
        now = as_utc(now) if now else utc_now()
        ticket = self.reservations.get(ticket_id)
        if ticket.status != TicketStatus.PENDING:
            raise ValidationError("Only PENDING tickets can be paid")
        if now > ticket.expires_at:
            raise ValidationError("Ticket has expired")

        currency = razorpay_gateway.payment_currency()
        amount = razorpay_gateway.to_minor_units(ticket.total_price, currency)

        if not ticket.transaction_id:
            client = razorpay_gateway.razorpay_client()
            order = client.order.create(
                {
                    "amount": amount,
                    "currency": currency,
                    "receipt": ticket.id,
                    "notes": {"ticket_id": ticket.id, "trip_id": ticket.trip_id},
                }
            )
            if not self.ticket_repository.set_transaction_id(ticket.id, order.get("id")):
                raise ConflictError("Ticket left PENDING while the order was created")
            self.db.refresh(ticket)
            logger.info("Created gateway order %s for ticket %s", ticket.transaction_id, ticket.id)

        return {
            "ticket_id": ticket.id,
            "order_id": ticket.transaction_id,
            "amount": amount,
            "currency": currency,
            "key_id": razorpay_gateway.razorpay_key_id(),
            "expires_at": ticket.expires_at,
        }

    def verify(
        self,
        ticket_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
        now: datetime | None = None,
    ) -> Ticket:
        """Signed success callback from checkout."""

        ticket = self._ticket_for_order(ticket_id, order_id)
        payload_hash = hash_payload(
            {
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            }
        )
        replay = self._check_replay(ticket, payment_id, payload_hash)
        if replay is not None:
            return replay

        client = razorpay_gateway.razorpay_client()
        if not razorpay_gateway.signature_is_valid(client, order_id, payment_id, signature):
            logger.warning("Invalid payment signature for ticket %s (payment %s)", ticket.id, payment_id)
            raise ValidationError("Invalid payment signature")

        ticket = self.reservations.confirm(ticket.id, now=now, payment_id=payment_id)
        self.payment_event_repository.record(
            PROVIDER, payment_id, ticket.id, payload_hash, status="PROCESSED"
        )
        self.db.flush()
        return ticket

    def record_failure(
        self,
        ticket_id: str,
        order_id: str,
        payment_id: str,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> Ticket:
        """Gateway reported the payment as failed."""

        ticket = self._ticket_for_order(ticket_id, order_id)
        payload_hash = hash_payload(
            {
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "error_code": error_code,
            }
        )
        replay = self._check_replay(ticket, payment_id, payload_hash)
        if replay is not None:
            return replay

        reason = f"Payment failed: {error_code or 'UNKNOWN'}"
        if error_description:
            reason = f"{reason} ({error_description})"

        ticket = self.reservations.fail(ticket.id, reason=reason)
        self.payment_event_repository.record(
            PROVIDER, payment_id, ticket.id, payload_hash, status="FAILED"
        )
        self.db.flush()
        return ticket

    def _ticket_for_order(self, ticket_id: str, order_id: str) -> Ticket:
        ticket = self.reservations.get(ticket_id)
        if not ticket.transaction_id:
            raise ValidationError("Order not created for this ticket")
        if order_id != ticket.transaction_id:
            raise ConflictError("Order id does not match this ticket")
        return ticket

    def _check_replay(self, ticket: Ticket, payment_id: str, payload_hash: str) -> Ticket | None:
        existing = self.payment_event_repository.get(PROVIDER, payment_id)
        if existing is None:
            return None
        if existing.ticket_id != ticket.id:
            raise ConflictError("Payment id already linked with another ticket")
        if existing.payload_hash != payload_hash:
            raise ConflictError("Conflicting callback for an already processed payment")

        logger.info("Duplicate callback for payment %s ignored", payment_id)
        return ticket
