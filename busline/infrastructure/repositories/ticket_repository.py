# busline/infrastructure/repositories/ticket_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from busline.domain.state_machine import TicketStatus
from busline.infrastructure.db.models import Route, Seat, Ticket, Trip


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, ticket_id: str) -> Ticket | None:
        stmt = select(Ticket).where(Ticket.id == ticket_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, ticket: Ticket) -> Ticket:
        self.db.add(ticket)
        self.db.flush()
        return ticket

    def try_transition(
        self,
        ticket_id: str,
        expected: TicketStatus,
        new_status: TicketStatus,
        **values,
    ) -> bool:
        """
        Conditional status change. Extra column values are written in the
        same statement, so they only land if the transition wins.
        """

        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.status == expected)
            .values(status=new_status, **values)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_transaction_id(self, ticket_id: str, transaction_id: str) -> bool:
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.status == TicketStatus.PENDING)
            .values(transaction_id=transaction_id)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_expired_pending(self, now: datetime, limit: int | None = None) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.status == TicketStatus.PENDING)
            .where(Ticket.expires_at <= now)
            .order_by(Ticket.expires_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def list_active_on_vehicles(self, trip_id: str, vehicle_ids: list[str]) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .join(Seat, Seat.id == Ticket.seat_id)
            .where(Ticket.trip_id == trip_id)
            .where(Seat.vehicle_id.in_(vehicle_ids))
            .where(Ticket.status.in_([TicketStatus.PENDING, TicketStatus.SUCCESS]))
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_filtered(
        self,
        user_id: str | None = None,
        trip_id: str | None = None,
        status: TicketStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Ticket]:
        stmt = select(Ticket)
        if user_id:
            stmt = stmt.where(Ticket.user_id == user_id)
        if trip_id:
            stmt = stmt.where(Ticket.trip_id == trip_id)
        if status:
            stmt = stmt.where(Ticket.status == status)

        stmt = stmt.order_by(Ticket.created_at.desc(), Ticket.id).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def get_view(self, ticket_id: str) -> dict | None:
        """
        Ticket joined with its seat, trip and route for display.
        The stored entity only keeps the ids.
        """

        stmt = (
            select(Ticket, Seat, Trip, Route)
            .join(Seat, Seat.id == Ticket.seat_id)
            .join(Trip, Trip.id == Ticket.trip_id)
            .join(Route, Route.id == Trip.route_id)
            .where(Ticket.id == ticket_id)
        )
        row = self.db.execute(stmt).one_or_none()
        if row is None:
            return None

        ticket, seat, trip, route = row
        return {
            "ticket": ticket,
            "seat": {
                "seat_id": seat.id,
                "seat_no": seat.seat_no,
                "vehicle_id": seat.vehicle_id,
                "status": seat.status.value,
            },
            "trip": {
                "trip_id": trip.id,
                "departure_date": trip.departure_date.isoformat(),
                "departure_time": trip.departure_time,
                "arrival_date": trip.arrival_date.isoformat(),
                "arrival_time": trip.arrival_time,
                "status": trip.status.value,
            },
            "route": {
                "route_id": route.id,
                "name": route.name,
                "from": route.origin_name,
                "to": route.destination_name,
            },
        }
