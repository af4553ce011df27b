# busline/application/reservation_service.py

from datetime import datetime
import logging

from sqlalchemy.orm import Session

from busline.application.events import emit_ticket_status
from busline.application.promotion_service import PromotionService
from busline.application.ticket_snapshot import build_snapshot
from busline.application.trip_lifecycle import departure_instant
from busline.application.vehicle_availability import VehicleAvailabilityChecker
from busline.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from busline.domain.pricing import calculate_final_price
from busline.domain.state_machine import (
    BOOKABLE_TRIP_STATUSES,
    SeatStatus,
    TicketStateMachine,
    TicketStatus,
)
from busline.domain.timetable import BOOKING_CUTOFF, as_utc, booking_expiry, utc_now
from busline.infrastructure.db.models import Ticket, Trip
from busline.infrastructure.repositories.outbox_repository import OutboxRepository
from busline.infrastructure.repositories.seat_repository import SeatRepository
from busline.infrastructure.repositories.ticket_repository import TicketRepository
from busline.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)


class ReservationService:
    """
    Seat hold -> ticket -> payment confirmation pipeline.

    Every seat and ticket status change goes through a compare-and-set,
    so a booking racing another booking, or a confirmation racing the
    expiry sweep, has exactly one winner.
    """

    def __init__(self, db: Session):
        self.db = db
        self.ticket_repository = TicketRepository(db)
        self.seat_repository = SeatRepository(db)
        self.trip_repository = TripRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.availability = VehicleAvailabilityChecker(db)
        self.promotions = PromotionService(db)

    # ---- reads ----

    def get(self, ticket_id: str) -> Ticket:
        ticket = self.ticket_repository.get_by_id(ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        return ticket

    def get_view(self, ticket_id: str) -> dict:
        view = self.ticket_repository.get_view(ticket_id)
        if view is None:
            raise NotFoundError("Ticket", ticket_id)
        return view

    def list_tickets(self, **filters) -> list[Ticket]:
        return self.ticket_repository.list_filtered(**filters)

    def payment_status(self, ticket_id: str) -> dict:
        ticket = self.get(ticket_id)
        payment_status = {
            TicketStatus.PENDING: "PENDING",
            TicketStatus.SUCCESS: "PAID",
            TicketStatus.FAILED: "FAILED",
            TicketStatus.TRANSFER: "PAID",
        }[ticket.status]
        return {
            "ticket_id": ticket.id,
            "status": ticket.status,
            "payment_status": payment_status,
            "transaction_id": ticket.transaction_id,
            "payment_id": ticket.payment_id,
            "paid_at": ticket.paid_at,
            "amount": ticket.total_price,
            "expires_at": ticket.expires_at,
        }

    # ---- booking ----

    def create(
        self,
        user_id: str,
        trip_id: str,
        seat_id: str,
        payment_method: str = "BANKING",
        now: datetime | None = None,
    ) -> Ticket:
        now = as_utc(now) if now else utc_now()
        if not user_id:
            raise ValidationError("user_id is required")

        trip = self._bookable_trip(trip_id, now)
        expires_at = booking_expiry(departure_instant(trip))
        if expires_at <= now:
            raise ValidationError(
                "Too soon to book: tickets close "
                f"{int(BOOKING_CUTOFF.total_seconds() // 3600)} hours before departure"
            )

        seat = self.availability.ensure_seat_available(seat_id, trip)
        promotion = self.promotions.resolve(trip.departure_date)
        total_price = calculate_final_price(trip.price, promotion.value)

        with self.db.begin_nested():
            if not self.seat_repository.try_set_status(seat.id, SeatStatus.EMPTY, SeatStatus.PENDING):
                raise ConflictError(f"Seat {seat.seat_no} was just taken")
            if not self.trip_repository.reserve_seat(trip.id):
                raise ConflictError("Trip is sold out")

            ticket = self.ticket_repository.add(
                Ticket(
                    user_id=user_id,
                    seat_id=seat.id,
                    trip_id=trip.id,
                    promotion_id=promotion.id,
                    payment_method=payment_method,
                    total_price=total_price,
                    expires_at=expires_at,
                    status=TicketStatus.PENDING,
                )
            )

        emit_ticket_status(self.outbox_repository, ticket, None, TicketStatus.PENDING.value)
        logger.info(
            "Ticket %s held seat %s on trip %s until %s",
            ticket.id,
            seat.seat_no,
            trip.id,
            expires_at.isoformat(),
        )
        return ticket

    # ---- transitions ----

    def update_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> Ticket:
        ticket = self.get(ticket_id)
        TicketStateMachine.validate_transition(ticket.status, new_status)

        if new_status == TicketStatus.SUCCESS:
            return self.confirm(ticket_id, now=now)
        if new_status == TicketStatus.FAILED:
            return self.fail(ticket_id, reason=reason)
        raise ValidationError("Use the transfer operation to transfer a ticket")

    def confirm(
        self,
        ticket_id: str,
        now: datetime | None = None,
        payment_id: str | None = None,
    ) -> Ticket:
        now = as_utc(now) if now else utc_now()
        ticket = self.get(ticket_id)
        TicketStateMachine.validate_transition(ticket.status, TicketStatus.SUCCESS)
        if now > ticket.expires_at:
            raise ValidationError("Cannot confirm: ticket has expired")

        values = {"paid_at": now}
        if payment_id:
            values["payment_id"] = payment_id
        if ticket.snapshot is None:
            values["snapshot"] = self._snapshot_for(ticket)

        with self.db.begin_nested():
            self._transition(ticket, TicketStatus.PENDING, TicketStatus.SUCCESS, **values)
            if not self.seat_repository.try_set_status(ticket.seat_id, SeatStatus.PENDING, SeatStatus.SOLD):
                raise ConflictError("Seat is no longer held for this ticket")

        self.db.refresh(ticket)
        emit_ticket_status(
            self.outbox_repository,
            ticket,
            TicketStatus.PENDING.value,
            TicketStatus.SUCCESS.value,
        )
        logger.info("Ticket %s confirmed", ticket.id)
        return ticket

    def fail(self, ticket_id: str, reason: str | None = None) -> Ticket:
        ticket = self.get(ticket_id)
        TicketStateMachine.validate_transition(ticket.status, TicketStatus.FAILED)

        with self.db.begin_nested():
            self._fail_pending(ticket)
            self.seat_repository.release_many([ticket.seat_id])

        self.db.refresh(ticket)
        emit_ticket_status(
            self.outbox_repository,
            ticket,
            TicketStatus.PENDING.value,
            TicketStatus.FAILED.value,
            reason=reason or "Manual cancellation",
        )
        logger.info("Ticket %s failed: %s", ticket.id, reason or "Manual cancellation")
        return ticket

    def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """
        Fail every PENDING ticket past its expiry and release the seats.
        A ticket confirmed in the meantime loses nothing: its CAS from
        PENDING already happened, so ours no-ops.
        """

        now = as_utc(now) if now else utc_now()
        failed = []

        for ticket in self.ticket_repository.list_expired_pending(now):
            try:
                with self.db.begin_nested():
                    self._fail_pending(ticket)
            except InvalidTransitionError:
                logger.info("Ticket %s left PENDING before the sweep reached it", ticket.id)
                continue
            except Exception:
                logger.exception("Could not expire ticket %s; retrying next sweep", ticket.id)
                continue

            failed.append(ticket)

        if failed:
            self.seat_repository.release_many([ticket.seat_id for ticket in failed])

        for ticket in failed:
            self.db.refresh(ticket)
            emit_ticket_status(
                self.outbox_repository,
                ticket,
                TicketStatus.PENDING.value,
                TicketStatus.FAILED.value,
                reason="expired",
            )

        if failed:
            logger.info("Expired %s pending tickets", len(failed))
        return [ticket.id for ticket in failed]

    def transfer(
        self,
        ticket_id: str,
        new_trip_id: str,
        new_seat_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Ticket, Ticket]:
        """
        One-time move of a confirmed ticket to another trip on the same
        route at the same price. Returns (old_ticket, new_ticket).
        """

        now = as_utc(now) if now else utc_now()
        old_ticket = self.get(ticket_id)
        if old_ticket.status != TicketStatus.SUCCESS:
            raise PreconditionFailedError("Can only transfer confirmed (SUCCESS) tickets")
        if old_ticket.transfer_ticket_id:
            raise PreconditionFailedError("This ticket has already been transferred")

        old_trip = self.trip_repository.get_by_id(old_ticket.trip_id)
        if old_trip is None:
            raise NotFoundError("Trip", old_ticket.trip_id)
        old_departure = departure_instant(old_trip)
        if now >= booking_expiry(old_departure):
            raise PreconditionFailedError(
                "Cannot transfer ticket: must be at least 3 hours before departure"
            )

        new_trip = self._bookable_trip(new_trip_id, now)
        if new_trip.route_id != old_trip.route_id:
            raise ValidationError("Transfer must be on the same route")
        if new_trip.price != old_trip.price:
            raise ValidationError("Transfer requires same price")
        if new_trip.id == old_trip.id and new_seat_id == old_ticket.seat_id:
            raise ValidationError("Ticket already holds this seat")

        new_seat = self.availability.ensure_seat_available(new_seat_id, new_trip)
        promotion = self.promotions.resolve(new_trip.departure_date)
        total_price = calculate_final_price(new_trip.price, promotion.value)

        old_seat = self.seat_repository.get_by_id(old_ticket.seat_id)
        description = _transfer_description(old_ticket, old_seat, old_trip, reason)

        with self.db.begin_nested():
            if not self.seat_repository.try_set_status(new_seat.id, SeatStatus.EMPTY, SeatStatus.SOLD):
                raise ConflictError(f"Seat {new_seat.seat_no} was just taken")
            if not self.trip_repository.reserve_seat(new_trip.id):
                raise ConflictError("Trip is sold out")

            new_ticket = self.ticket_repository.add(
                Ticket(
                    user_id=old_ticket.user_id,
                    seat_id=new_seat.id,
                    trip_id=new_trip.id,
                    promotion_id=promotion.id,
                    payment_method=old_ticket.payment_method,
                    total_price=total_price,
                    expires_at=booking_expiry(departure_instant(new_trip)),
                    status=TicketStatus.SUCCESS,
                    snapshot=build_snapshot(
                        self.db, new_seat.id, new_trip.id, promotion.id, total_price
                    ),
                    transfer_description=description,
                    paid_at=old_ticket.paid_at,
                )
            )

            values = {"transfer_ticket_id": new_ticket.id}
            if old_ticket.snapshot is None:
                values["snapshot"] = self._snapshot_for(old_ticket)
            self._transition(old_ticket, TicketStatus.SUCCESS, TicketStatus.TRANSFER, **values)

            if not self.seat_repository.try_set_status(old_ticket.seat_id, SeatStatus.SOLD, SeatStatus.EMPTY):
                raise ConflictError("Old seat is not marked as sold")
            self.trip_repository.release_seat(old_trip.id)

        self.db.refresh(old_ticket)
        emit_ticket_status(
            self.outbox_repository,
            old_ticket,
            TicketStatus.SUCCESS.value,
            TicketStatus.TRANSFER.value,
            transfer_ticket_id=new_ticket.id,
        )
        emit_ticket_status(
            self.outbox_repository,
            new_ticket,
            None,
            TicketStatus.SUCCESS.value,
            transferred_from=old_ticket.id,
        )
        logger.info("Ticket %s transferred to %s", old_ticket.id, new_ticket.id)
        return old_ticket, new_ticket

    # ---- helpers ----

    def _bookable_trip(self, trip_id: str, now: datetime) -> Trip:
        trip = self.trip_repository.get_by_id(trip_id)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        if trip.is_deleted or trip.status not in BOOKABLE_TRIP_STATUSES:
            raise ValidationError("Trip is not open for booking")
        if trip.price is None:
            raise ValidationError("Trip does not have price information")
        if departure_instant(trip) <= now:
            raise ValidationError("Cannot book ticket for a trip that has departed")
        return trip

    def _snapshot_for(self, ticket: Ticket) -> dict:
        return build_snapshot(
            self.db,
            ticket.seat_id,
            ticket.trip_id,
            ticket.promotion_id,
            ticket.total_price,
        )

    def _transition(
        self,
        ticket: Ticket,
        expected: TicketStatus,
        new_status: TicketStatus,
        **values,
    ) -> None:
        if not self.ticket_repository.try_transition(ticket.id, expected, new_status, **values):
            self.db.refresh(ticket)
            raise InvalidTransitionError(from_state=ticket.status.value, to_state=new_status.value)

    def _fail_pending(self, ticket: Ticket) -> None:
        values = {}
        if ticket.snapshot is None:
            values["snapshot"] = self._snapshot_for(ticket)
        self._transition(ticket, TicketStatus.PENDING, TicketStatus.FAILED, **values)
        self.trip_repository.release_seat(ticket.trip_id)


def _transfer_description(old_ticket: Ticket, old_seat, old_trip: Trip, reason: str | None) -> str:
    seat_no = old_seat.seat_no if old_seat else old_ticket.seat_id
    departure = f"{old_trip.departure_date.isoformat()} {old_trip.departure_time}"
    description = f"Transferred from ticket #{old_ticket.id} (Seat {seat_no}, Departure: {departure})"
    if reason:
        description += f". Reason: {reason}"
    return description
