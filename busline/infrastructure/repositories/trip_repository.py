# busline/infrastructure/repositories/trip_repository.py

from datetime import date, timedelta

from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, select, update

from busline.domain.state_machine import TripStatus
from busline.infrastructure.db.models import Route, Trip, TripVehicle, Vehicle


class TripRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, trip_id: str) -> Trip | None:
        stmt = select(Trip).where(Trip.id == trip_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, trip: Trip, vehicle_ids: list[str]) -> Trip:
        trip.vehicle_links = [
            TripVehicle(vehicle_id=vehicle_id, position=position)
            for position, vehicle_id in enumerate(vehicle_ids)
        ]
        self.db.add(trip)
        self.db.flush()
        return trip

    def replace_vehicles(self, trip: Trip, vehicle_ids: list[str]) -> None:
        trip.vehicle_links.clear()
        self.db.flush()
        trip.vehicle_links.extend(
            TripVehicle(vehicle_id=vehicle_id, position=position)
            for position, vehicle_id in enumerate(vehicle_ids)
        )
        self.db.flush()

    def find_conflict_candidates(
        self,
        vehicle_ids: list[str],
        day: date,
        exclude_trip_id: str | None = None,
    ) -> list[Trip]:
        """
        Live trips on any of the vehicles that either depart on `day`
        or departed the day before and arrive on `day`.
        """

        if not vehicle_ids:
            return []

        previous_day = day - timedelta(days=1)
        stmt = (
            select(Trip)
            .join(TripVehicle, TripVehicle.trip_id == Trip.id)
            .where(TripVehicle.vehicle_id.in_(vehicle_ids))
            .where(Trip.status.not_in([TripStatus.CANCELLED, TripStatus.COMPLETED]))
            .where(Trip.is_deleted.is_(False))
            .where(
                or_(
                    Trip.departure_date == day,
                    and_(
                        Trip.departure_date == previous_day,
                        Trip.arrival_date == day,
                    ),
                )
            )
            .distinct()
        )
        if exclude_trip_id:
            stmt = stmt.where(Trip.id != exclude_trip_id)

        return list(self.db.execute(stmt).scalars().all())

    def list_filtered(
        self,
        route_id: str | None = None,
        departure_date: date | None = None,
        status: TripStatus | None = None,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Trip]:
        stmt = select(Trip)
        if route_id:
            stmt = stmt.where(Trip.route_id == route_id)
        if departure_date:
            stmt = stmt.where(Trip.departure_date == departure_date)
        if status:
            stmt = stmt.where(Trip.status == status)
        if not include_deleted:
            stmt = stmt.where(Trip.is_deleted.is_(False))

        stmt = (
            stmt.order_by(Trip.departure_date, Trip.departure_time, Trip.id)
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_available(self, route_id: str, departure_date: date) -> list[Trip]:
        stmt = (
            select(Trip)
            .where(Trip.route_id == route_id)
            .where(Trip.departure_date == departure_date)
            .where(Trip.status == TripStatus.SCHEDULED)
            .where(Trip.is_deleted.is_(False))
            .where(Trip.is_active.is_(True))
            .where(Trip.available_seats > 0)
            .order_by(Trip.departure_time)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_live_from(self, since: date, statuses) -> list[Trip]:
        stmt = (
            select(Trip)
            .where(Trip.status.in_(list(statuses)))
            .where(Trip.is_deleted.is_(False))
            .where(Trip.departure_date >= since)
        )
        return list(self.db.execute(stmt).scalars().all())

    def try_set_status(
        self,
        trip_id: str,
        expected: TripStatus,
        new_status: TripStatus,
    ) -> bool:
        stmt = (
            update(Trip)
            .where(Trip.id == trip_id)
            .where(Trip.status == expected)
            .where(Trip.is_deleted.is_(False))
            .values(status=new_status)
        )
        return self.db.execute(stmt).rowcount == 1

    def reserve_seat(self, trip_id: str) -> bool:
        stmt = (
            update(Trip)
            .where(Trip.id == trip_id)
            .where(Trip.available_seats > 0)
            .values(
                booked_seats=Trip.booked_seats + 1,
                available_seats=Trip.available_seats - 1,
            )
        )
        return self.db.execute(stmt).rowcount == 1

    def release_seat(self, trip_id: str) -> bool:
        stmt = (
            update(Trip)
            .where(Trip.id == trip_id)
            .where(Trip.booked_seats > 0)
            .values(
                booked_seats=Trip.booked_seats - 1,
                available_seats=Trip.available_seats + 1,
            )
        )
        return self.db.execute(stmt).rowcount == 1

    def get_view(self, trip_id: str) -> dict | None:
        """Trip with its route and vehicle plates resolved."""

        trip = self.get_by_id(trip_id)
        if trip is None:
            return None

        route = self.db.execute(
            select(Route).where(Route.id == trip.route_id)
        ).scalar_one_or_none()

        vehicles = {}
        if trip.vehicle_ids:
            stmt = select(Vehicle).where(Vehicle.id.in_(trip.vehicle_ids))
            vehicles = {v.id: v for v in self.db.execute(stmt).scalars().all()}

        return {
            "trip": trip,
            "route": None if route is None else {
                "route_id": route.id,
                "name": route.name,
                "from": route.origin_name,
                "to": route.destination_name,
                "distance_km": str(route.distance_km),
                "estimated_duration": route.estimated_duration,
            },
            "vehicles": [
                {
                    "vehicle_id": vehicle_id,
                    "plate_no": vehicles[vehicle_id].plate_no if vehicle_id in vehicles else None,
                }
                for vehicle_id in trip.vehicle_ids
            ],
        }
