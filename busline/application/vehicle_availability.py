# busline/application/vehicle_availability.py

from dataclasses import dataclass, field
from datetime import date
import logging

from sqlalchemy.orm import Session

from busline.domain.exceptions import ConflictError, NotFoundError, ValidationError
from busline.domain.state_machine import SeatStatus, VehicleStatus
from busline.domain.timetable import (
    MINUTES_PER_DAY,
    intervals_overlap,
    minutes_to_time,
    time_to_minutes,
)
from busline.infrastructure.db.models import Seat, Trip
from busline.infrastructure.repositories.registry_repository import VehicleRepository
from busline.infrastructure.repositories.seat_repository import SeatRepository
from busline.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)


@dataclass
class VehicleConflict:
    vehicle_id: str
    reason: str
    plate_no: str | None = None
    trip_id: str | None = None

    def as_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "plate_no": self.plate_no,
            "trip_id": self.trip_id,
            "reason": self.reason,
        }


@dataclass
class AvailabilityResult:
    assignable: list[str] = field(default_factory=list)
    conflicts: list[VehicleConflict] = field(default_factory=list)


class VehicleAvailabilityChecker:
    """
    Decides which vehicles can take a new trip.
    Conflicts are reported, never raised; only bad input raises.
    """

    def __init__(self, db: Session):
        self.db = db
        self.vehicle_repository = VehicleRepository(db)
        self.seat_repository = SeatRepository(db)
        self.trip_repository = TripRepository(db)

    def check_availability(
        self,
        vehicle_ids: list[str],
        day: date,
        start_time: str,
        duration_minutes: int,
        exclude_trip_id: str | None = None,
    ) -> AvailabilityResult:
        try:
            new_start = time_to_minutes(start_time)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError("Trip duration must be a positive number of minutes")
        new_end = new_start + duration_minutes

        # Keep caller order, drop repeats.
        requested = list(dict.fromkeys(vehicle_ids))
        vehicles = self.vehicle_repository.get_many(requested)

        result = AvailabilityResult()
        seen: set[tuple[str, str]] = set()

        def add_conflict(conflict: VehicleConflict) -> None:
            if (conflict.vehicle_id, conflict.reason) in seen:
                return
            seen.add((conflict.vehicle_id, conflict.reason))
            result.conflicts.append(conflict)

        candidates = []
        for vehicle_id in requested:
            vehicle = vehicles.get(vehicle_id)
            if vehicle is None:
                add_conflict(VehicleConflict(vehicle_id, "does not exist"))
            elif vehicle.status == VehicleStatus.MAINTENANCE:
                add_conflict(
                    VehicleConflict(vehicle_id, "under maintenance", plate_no=vehicle.plate_no)
                )
            else:
                candidates.append(vehicle_id)

        existing_trips = self.trip_repository.find_conflict_candidates(
            candidates,
            day,
            exclude_trip_id=exclude_trip_id,
        )

        for trip in existing_trips:
            reason = self._overlap_reason(trip, day, new_start, new_end)
            if reason is None:
                continue
            for vehicle_id in trip.vehicle_ids:
                if vehicle_id in candidates:
                    add_conflict(
                        VehicleConflict(
                            vehicle_id,
                            reason,
                            plate_no=vehicles[vehicle_id].plate_no,
                            trip_id=trip.id,
                        )
                    )

        conflicting = {conflict.vehicle_id for conflict in result.conflicts}
        result.assignable = [v for v in requested if v not in conflicting]

        if result.conflicts:
            logger.warning(
                "Vehicle conflicts on %s at %s: %s",
                day,
                start_time,
                [(c.vehicle_id, c.reason) for c in result.conflicts],
            )
        return result

    def _overlap_reason(
        self,
        trip: Trip,
        day: date,
        new_start: int,
        new_end: int,
    ) -> str | None:
        existing_start = time_to_minutes(trip.departure_time)

        if trip.departure_date == day:
            if trip.arrival_time:
                # Arrival may fall on a later calendar day.
                days_after = (trip.arrival_date - trip.departure_date).days
                existing_end = time_to_minutes(trip.arrival_time) + days_after * MINUTES_PER_DAY
            else:
                existing_end = existing_start + (trip.estimated_duration or 0)

            if intervals_overlap(new_start, new_end, existing_start, existing_end):
                return (
                    f"already scheduled from {trip.departure_time} "
                    f"to {minutes_to_time(existing_end)}"
                )
            return None

        # Departed the previous day, still on the road this morning.
        existing_arrival = time_to_minutes(trip.arrival_time)
        if new_start < existing_arrival:
            return f"still on previous day's trip until {trip.arrival_time}"
        return None

    def seat_capacity(self, vehicle_ids: list[str]) -> int:
        """Seat rows per vehicle, or the vehicle's fallback count when it has none."""

        counts = self.seat_repository.count_by_vehicle(vehicle_ids)
        vehicles = self.vehicle_repository.get_many(vehicle_ids)
        total = 0
        for vehicle_id in vehicle_ids:
            if counts.get(vehicle_id):
                total += counts[vehicle_id]
            elif vehicle_id in vehicles:
                total += vehicles[vehicle_id].fallback_capacity
        return total

    def ensure_seat_available(self, seat_id: str, trip: Trip) -> Seat:
        """
        Seat must belong to one of the trip's vehicles and be EMPTY.
        Advisory only; the reservation still has to win the compare-and-set.
        """

        seat = self.seat_repository.get_by_id(seat_id)
        if seat is None:
            raise NotFoundError("Seat", seat_id)
        if seat.vehicle_id not in trip.vehicle_ids:
            raise ValidationError("Seat does not belong to a vehicle on this trip")
        if seat.status != SeatStatus.EMPTY:
            raise ConflictError(
                f"Seat {seat.seat_no} is not available",
                conflicts=[{"seat_id": seat.id, "status": seat.status.value}],
            )
        return seat
