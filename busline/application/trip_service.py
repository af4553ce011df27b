# busline/application/trip_service.py

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from busline.application.events import (
    TRIP_CANCELLED,
    TRIP_CREATED,
    TRIP_RESTORED,
    TRIP_STATUS_CHANGED,
    TRIP_UPDATED,
    emit_trip_event,
)
from busline.application.promotion_service import PromotionService
from busline.application.trip_lifecycle import (
    TripLifecycleScheduler,
    arrival_instant,
    departure_instant,
    initial_status,
)
from busline.application.vehicle_availability import VehicleAvailabilityChecker, VehicleConflict
from busline.domain.exceptions import BuslineError, ConflictError, NotFoundError, ValidationError
from busline.domain.pricing import calculate_discount, to_money
from busline.domain.state_machine import TripStateMachine, TripStatus
from busline.domain.timetable import (
    as_utc,
    booking_expiry,
    combine,
    derive_arrival,
    is_valid_hhmm,
    utc_now,
)
from busline.infrastructure.db.models import Trip
from busline.infrastructure.repositories.outbox_repository import OutboxRepository
from busline.infrastructure.repositories.registry_repository import RouteRepository
from busline.infrastructure.repositories.ticket_repository import TicketRepository
from busline.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)

MAX_BULK_DAYS = 366

CREW_FIELDS = (
    "driver_name",
    "driver_phone",
    "driver_license",
    "conductor_name",
    "conductor_phone",
    "note",
)


@dataclass
class TripResult:
    trip: Trip
    conflicts: list[VehicleConflict] = field(default_factory=list)


@dataclass
class BulkDayResult:
    departure_date: date
    trip: Trip | None = None
    conflicts: list[VehicleConflict] = field(default_factory=list)
    error: str | None = None


class TripService:
    """Application service coordinating trip scheduling."""

    def __init__(self, db: Session):
        self.db = db
        self.trip_repository = TripRepository(db)
        self.route_repository = RouteRepository(db)
        self.ticket_repository = TicketRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.availability = VehicleAvailabilityChecker(db)
        self.lifecycle = TripLifecycleScheduler(db)
        self.promotions = PromotionService(db)

    # ---- reads ----

    def get(self, trip_id: str) -> Trip:
        trip = self.trip_repository.get_by_id(trip_id)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        return trip

    def get_view(self, trip_id: str) -> dict:
        view = self.trip_repository.get_view(trip_id)
        if view is None:
            raise NotFoundError("Trip", trip_id)
        return view

    def list_trips(self, **filters) -> list[Trip]:
        return self.trip_repository.list_filtered(**filters)

    def find_available(self, route_id: str, departure_date: date) -> list[Trip]:
        return self.trip_repository.list_available(route_id, departure_date)

    # ---- writes ----

    def create(
        self,
        route_id: str,
        vehicle_ids: list[str],
        departure_date: date,
        departure_time: str,
        arrival_date: date | None = None,
        arrival_time: str | None = None,
        price: Decimal | None = None,
        is_recurring: bool = False,
        recurring_days: list[int] | None = None,
        recurring_end_date: date | None = None,
        now: datetime | None = None,
        **crew,
    ) -> TripResult:
        now = as_utc(now) if now else utc_now()
        route = self._active_route(route_id)
        if not vehicle_ids:
            raise ValidationError("At least one vehicle is required")
        if price is not None and Decimal(price) < 0:
            raise ValidationError("Price cannot be negative")

        arrival_date, arrival_time, duration = self._resolve_arrival(
            route.estimated_duration,
            departure_date,
            departure_time,
            arrival_date,
            arrival_time,
        )

        availability = self.availability.check_availability(
            vehicle_ids,
            departure_date,
            departure_time,
            duration,
        )
        if not availability.assignable:
            raise ConflictError(
                "None of the requested vehicles can be assigned",
                conflicts=[c.as_dict() for c in availability.conflicts],
            )

        departure_at = combine(departure_date, departure_time)
        arrival_at = combine(arrival_date, arrival_time)
        trip = Trip(
            route_id=route.id,
            departure_date=departure_date,
            departure_time=departure_time,
            arrival_date=arrival_date,
            arrival_time=arrival_time,
            estimated_duration=duration,
            status=initial_status(departure_at, arrival_at, now),
            booked_seats=0,
            available_seats=self.availability.seat_capacity(availability.assignable),
            price=None if price is None else to_money(price),
            is_recurring=is_recurring,
            recurring_days=_format_weekdays(recurring_days),
            recurring_end_date=recurring_end_date,
            is_active=True,
            is_deleted=False,
            **{k: v for k, v in crew.items() if k in CREW_FIELDS},
        )
        self.trip_repository.add(trip, availability.assignable)

        self.lifecycle.register(trip, now=now)
        emit_trip_event(self.outbox_repository, trip, TRIP_CREATED)

        if availability.conflicts:
            logger.warning(
                "Created trip %s with %s/%s vehicles",
                trip.id,
                len(availability.assignable),
                len(set(vehicle_ids)),
            )
        else:
            logger.info("Created trip %s (%s)", trip.id, trip.status.value)

        return TripResult(trip=trip, conflicts=availability.conflicts)

    def create_bulk(
        self,
        route_id: str,
        vehicle_ids: list[str],
        start_date: date,
        end_date: date,
        weekdays: list[int],
        departure_time: str,
        price: Decimal | None = None,
        now: datetime | None = None,
        **crew,
    ) -> list[BulkDayResult]:
        """
        One trip per matching ISO weekday in [start_date, end_date].
        A failing date is reported and skipped; the rest still go in.
        """

        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        if (end_date - start_date).days + 1 > MAX_BULK_DAYS:
            raise ValidationError(f"Bulk range cannot exceed {MAX_BULK_DAYS} days")

        days = set(weekdays or [])
        if not days or not days <= set(range(1, 8)):
            raise ValidationError("weekdays must be ISO weekday numbers 1..7")

        self._active_route(route_id)

        results = []
        current = start_date
        while current <= end_date:
            if current.isoweekday() in days:
                results.append(
                    self._create_one_of_bulk(
                        route_id,
                        vehicle_ids,
                        current,
                        departure_time,
                        price,
                        sorted(days),
                        end_date,
                        now,
                        crew,
                    )
                )
            current += timedelta(days=1)

        created = sum(1 for r in results if r.trip is not None)
        logger.info("Bulk generation on route %s: %s/%s trips created", route_id, created, len(results))
        return results

    def _create_one_of_bulk(
        self,
        route_id,
        vehicle_ids,
        day,
        departure_time,
        price,
        weekdays,
        end_date,
        now,
        crew,
    ) -> BulkDayResult:
        try:
            with self.db.begin_nested():
                result = self.create(
                    route_id=route_id,
                    vehicle_ids=vehicle_ids,
                    departure_date=day,
                    departure_time=departure_time,
                    price=price,
                    is_recurring=True,
                    recurring_days=weekdays,
                    recurring_end_date=end_date,
                    now=now,
                    **crew,
                )
        except ConflictError as exc:
            return BulkDayResult(
                departure_date=day,
                conflicts=[VehicleConflict(**c) for c in exc.conflicts],
                error=str(exc),
            )
        except BuslineError as exc:
            return BulkDayResult(departure_date=day, error=str(exc))

        return BulkDayResult(departure_date=day, trip=result.trip, conflicts=result.conflicts)

    def update(
        self,
        trip_id: str,
        changes: dict,
        now: datetime | None = None,
    ) -> TripResult:
        now = as_utc(now) if now else utc_now()
        trip = self.get(trip_id)
        if trip.is_deleted:
            raise ValidationError("Trip has been deleted")
        if TripStateMachine.is_terminal(trip.status):
            raise ValidationError(f"Trip is {trip.status.value} and can no longer be edited")

        if "price" in changes and changes["price"] is not None:
            if Decimal(changes["price"]) < 0:
                raise ValidationError("Price cannot be negative")
            trip.price = to_money(changes["price"])

        for name in CREW_FIELDS:
            if name in changes:
                setattr(trip, name, changes[name])

        schedule_keys = {"departure_date", "departure_time", "arrival_date", "arrival_time", "vehicle_ids"}
        conflicts = []
        if schedule_keys & changes.keys():
            conflicts = self._reschedule(trip, changes)
            self.lifecycle.register(trip, now=now)

        self.db.flush()
        emit_trip_event(self.outbox_repository, trip, TRIP_UPDATED)
        logger.info("Updated trip %s", trip.id)
        return TripResult(trip=trip, conflicts=conflicts)

    def _reschedule(self, trip: Trip, changes: dict) -> list[VehicleConflict]:
        route = self.route_repository.get_by_id(trip.route_id)
        departure_date = changes.get("departure_date") or trip.departure_date
        departure_time = changes.get("departure_time") or trip.departure_time

        times_changed = any(
            k in changes for k in ("departure_date", "departure_time", "arrival_date", "arrival_time")
        )
        if times_changed:
            duration = trip.estimated_duration or (route.estimated_duration if route else None)
            arrival_date = changes.get("arrival_date")
            arrival_time = changes.get("arrival_time")
            if arrival_date and not arrival_time:
                arrival_time = trip.arrival_time
            elif arrival_time and not arrival_date:
                # Keep the stored arrival day, moved with the departure day.
                arrival_date = trip.arrival_date + (departure_date - trip.departure_date)
            arrival_date, arrival_time, duration = self._resolve_arrival(
                duration,
                departure_date,
                departure_time,
                arrival_date,
                arrival_time,
            )
        else:
            arrival_date, arrival_time = trip.arrival_date, trip.arrival_time
            duration = trip.estimated_duration

        vehicle_ids = changes.get("vehicle_ids") or trip.vehicle_ids
        availability = self.availability.check_availability(
            vehicle_ids,
            departure_date,
            departure_time,
            duration,
            exclude_trip_id=trip.id,
        )
        if not availability.assignable:
            raise ConflictError(
                "None of the requested vehicles can be assigned",
                conflicts=[c.as_dict() for c in availability.conflicts],
            )

        removed = set(trip.vehicle_ids) - set(availability.assignable)
        if removed:
            held = [
                ticket.id
                for ticket in self.ticket_repository.list_active_on_vehicles(trip.id, list(removed))
            ]
            if held:
                raise ConflictError(
                    "Cannot remove a vehicle that has sold or held seats",
                    conflicts=[{"ticket_id": ticket_id} for ticket_id in held],
                )

        capacity = self.availability.seat_capacity(availability.assignable)
        if capacity < trip.booked_seats:
            raise ValidationError(
                f"New capacity {capacity} is below the {trip.booked_seats} seats already booked"
            )

        trip.departure_date = departure_date
        trip.departure_time = departure_time
        trip.arrival_date = arrival_date
        trip.arrival_time = arrival_time
        trip.estimated_duration = duration
        if list(availability.assignable) != trip.vehicle_ids:
            self.trip_repository.replace_vehicles(trip, availability.assignable)
        trip.available_seats = capacity - trip.booked_seats
        return availability.conflicts

    def change_status(
        self,
        trip_id: str,
        new_status: TripStatus,
        now: datetime | None = None,
    ) -> Trip:
        """Operator-driven status change, validated by the trip state machine."""

        trip = self.get(trip_id)
        if trip.is_deleted:
            raise ValidationError("Trip has been deleted")

        current = trip.status
        TripStateMachine.validate_transition(current, new_status)
        if not self.trip_repository.try_set_status(trip.id, current, new_status):
            raise ConflictError("Trip status changed concurrently, reload and retry")

        self.db.refresh(trip)
        if new_status == TripStatus.CANCELLED:
            self.lifecycle.deregister(trip.id)
            emit_trip_event(self.outbox_repository, trip, TRIP_CANCELLED)
        else:
            self.lifecycle.register(trip, now=now)

        emit_trip_event(
            self.outbox_repository,
            trip,
            TRIP_STATUS_CHANGED,
            from_status=current.value,
            to_status=new_status.value,
            trigger="operator",
        )
        logger.info("Trip %s moved %s -> %s by operator", trip.id, current.value, new_status.value)
        return trip

    def remove(self, trip_id: str) -> Trip:
        trip = self.get(trip_id)
        if trip.is_deleted:
            raise ValidationError("Trip has already been deleted")

        trip.is_deleted = True
        trip.is_active = False
        trip.status = TripStatus.CANCELLED
        self.lifecycle.deregister(trip.id)
        self.db.flush()

        emit_trip_event(self.outbox_repository, trip, TRIP_CANCELLED, deleted=True)
        logger.info("Soft-deleted trip %s", trip.id)
        return trip

    def restore(self, trip_id: str, now: datetime | None = None) -> Trip:
        now = as_utc(now) if now else utc_now()
        trip = self.get(trip_id)
        if not trip.is_deleted:
            raise ValidationError("Trip is not deleted")

        availability = self.availability.check_availability(
            trip.vehicle_ids,
            trip.departure_date,
            trip.departure_time,
            trip.estimated_duration or _minutes_between(departure_instant(trip), arrival_instant(trip)),
            exclude_trip_id=trip.id,
        )
        if availability.conflicts:
            raise ConflictError(
                "Trip vehicles have been reassigned since deletion",
                conflicts=[c.as_dict() for c in availability.conflicts],
            )

        trip.is_deleted = False
        trip.is_active = True
        trip.status = initial_status(departure_instant(trip), arrival_instant(trip), now)
        self.db.flush()

        self.lifecycle.register(trip, now=now)
        emit_trip_event(self.outbox_repository, trip, TRIP_RESTORED)
        logger.info("Restored trip %s as %s", trip.id, trip.status.value)
        return trip

    def update_seat_count(self, trip_id: str) -> Trip:
        """Recompute available seats from the assigned vehicles' capacity."""

        trip = self.get(trip_id)
        capacity = self.availability.seat_capacity(trip.vehicle_ids)
        if trip.booked_seats > capacity:
            raise ValidationError(
                f"Booked seats ({trip.booked_seats}) exceed vehicle capacity ({capacity})"
            )

        trip.available_seats = capacity - trip.booked_seats
        self.db.flush()
        return trip

    def price_preview(self, trip_id: str) -> dict:
        trip = self.get(trip_id)
        if trip.price is None:
            raise ValidationError("Trip has no price set")

        promotion = self.promotions.resolve(trip.departure_date)
        discount = calculate_discount(trip.price, promotion.value)
        return {
            "trip_id": trip.id,
            "original_price": to_money(trip.price),
            "promotion_id": promotion.id,
            "promotion_name": promotion.name,
            "promotion_type": promotion.type.value,
            "promotion_value": promotion.value,
            "discount_amount": discount,
            "final_price": to_money(trip.price) - discount,
            "expires_at": booking_expiry(departure_instant(trip)),
        }

    # ---- helpers ----

    def _active_route(self, route_id: str):
        route = self.route_repository.get_by_id(route_id)
        if route is None:
            raise NotFoundError("Route", route_id)
        if not route.is_active:
            raise ValidationError("Route is inactive")
        return route

    def _resolve_arrival(
        self,
        duration: int | None,
        departure_date: date,
        departure_time: str,
        arrival_date: date | None,
        arrival_time: str | None,
    ) -> tuple[date, str, int]:
        if not is_valid_hhmm(departure_time):
            raise ValidationError("departure_time must be HH:MM")

        if arrival_time:
            if not is_valid_hhmm(arrival_time):
                raise ValidationError("arrival_time must be HH:MM")
            arrival_date = arrival_date or departure_date
            minutes = _minutes_between(
                combine(departure_date, departure_time),
                combine(arrival_date, arrival_time),
            )
            if minutes <= 0:
                raise ValidationError("Arrival must be after departure")
            return arrival_date, arrival_time, minutes

        if not duration:
            raise ValidationError("Route has no estimated duration; arrival_time is required")

        arrival_date, arrival_time = derive_arrival(departure_date, departure_time, duration)
        return arrival_date, arrival_time, duration


def _minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def _format_weekdays(days: list[int] | None) -> str | None:
    if not days:
        return None
    return ",".join(str(d) for d in sorted(set(days)))
