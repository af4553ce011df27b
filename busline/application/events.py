# busline/application/events.py

from uuid import uuid4

from busline.infrastructure.db.models import Ticket, Trip
from busline.infrastructure.repositories.outbox_repository import OutboxRepository


TRIP_CREATED = "TRIP_CREATED"
TRIP_UPDATED = "TRIP_UPDATED"
TRIP_STATUS_CHANGED = "TRIP_STATUS_CHANGED"
TRIP_CANCELLED = "TRIP_CANCELLED"
TRIP_RESTORED = "TRIP_RESTORED"
TICKET_STATUS_CHANGED = "TICKET_STATUS_CHANGED"


def trip_payload(trip: Trip) -> dict:
    return {
        "trip_id": trip.id,
        "route_id": trip.route_id,
        "vehicle_ids": trip.vehicle_ids,
        "departure_date": trip.departure_date.isoformat(),
        "departure_time": trip.departure_time,
        "arrival_date": trip.arrival_date.isoformat(),
        "arrival_time": trip.arrival_time,
        "status": trip.status.value,
        "booked_seats": trip.booked_seats,
        "available_seats": trip.available_seats,
        "price": None if trip.price is None else str(trip.price),
        "is_deleted": trip.is_deleted,
    }


def emit_trip_event(
    outbox: OutboxRepository,
    trip: Trip,
    event_type: str,
    **extra,
) -> None:
    # Trips can revisit a state (cancel, restore), so every emission is unique.
    outbox.add_event(
        aggregate_type="trip",
        aggregate_id=trip.id,
        event_type=event_type,
        payload={**trip_payload(trip), **extra},
        dedupe_key=f"trip:{trip.id}:{event_type.lower()}:{uuid4().hex}",
    )


def emit_ticket_status(
    outbox: OutboxRepository,
    ticket: Ticket,
    from_status: str | None,
    to_status: str,
    **extra,
) -> None:
    outbox.add_event(
        aggregate_type="ticket",
        aggregate_id=ticket.id,
        event_type=TICKET_STATUS_CHANGED,
        payload={
            "ticket_id": ticket.id,
            "trip_id": ticket.trip_id,
            "seat_id": ticket.seat_id,
            "user_id": ticket.user_id,
            "from_status": from_status,
            "to_status": to_status,
            **extra,
        },
        dedupe_key=f"ticket:{ticket.id}:status:{to_status}",
    )
