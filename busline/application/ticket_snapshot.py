# busline/application/ticket_snapshot.py

from decimal import Decimal

from sqlalchemy.orm import Session

from busline.domain.exceptions import NotFoundError, ValidationError
from busline.domain.pricing import calculate_discount, to_money
from busline.domain.timetable import utc_now
from busline.infrastructure.repositories.promotion_repository import PromotionRepository
from busline.infrastructure.repositories.registry_repository import RouteRepository
from busline.infrastructure.repositories.seat_repository import SeatRepository
from busline.infrastructure.repositories.trip_repository import TripRepository


def build_snapshot(
    db: Session,
    seat_id: str,
    trip_id: str,
    promotion_id: str,
    total_price: Decimal,
) -> dict:
    """
    Denormalized copy of everything needed to reprint a ticket.
    Money is kept as strings so the JSON column round-trips exactly.
    """

    seat = SeatRepository(db).get_by_id(seat_id)
    trip = TripRepository(db).get_by_id(trip_id)
    promotion = PromotionRepository(db).get_by_id(promotion_id)
    if seat is None or trip is None or promotion is None:
        raise NotFoundError("Snapshot source data")

    if trip.price is None:
        raise ValidationError("Trip must have a price for snapshot")

    route = RouteRepository(db).get_by_id(trip.route_id)
    if route is None:
        raise NotFoundError("Route", trip.route_id)

    original_price = to_money(trip.price)
    discount = calculate_discount(original_price, promotion.value)

    return {
        "seat": {
            "seat_id": seat.id,
            "seat_no": seat.seat_no,
            "vehicle_id": seat.vehicle_id,
        },
        "trip": {
            "trip_id": trip.id,
            "departure_date": trip.departure_date.isoformat(),
            "departure_time": trip.departure_time,
            "arrival_date": trip.arrival_date.isoformat(),
            "arrival_time": trip.arrival_time,
            "price": str(original_price),
            "vehicle_ids": trip.vehicle_ids,
        },
        "route": {
            "route_id": route.id,
            "name": route.name,
            "from": route.origin_name,
            "to": route.destination_name,
            "distance_km": str(route.distance_km),
            "estimated_duration": route.estimated_duration,
        },
        "promotion": {
            "promotion_id": promotion.id,
            "name": promotion.name,
            "value": str(promotion.value),
            "type": promotion.type.value,
            "description": promotion.description,
        },
        "pricing": {
            "original_price": str(original_price),
            "promotion_value": str(promotion.value),
            "discount_amount": str(discount),
            "final_price": str(to_money(total_price)),
        },
        "snapshot_created_at": utc_now().isoformat(),
    }
