from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from busline.application.trip_service import TripService
from busline.domain.promotions import PromotionType
from busline.domain.timetable import service_timezone, utc_now
from busline.infrastructure.db.models import Promotion, Route, Seat, Trip, Vehicle
from busline.infrastructure.db.session import SessionLocal


def seed_promotions(db) -> None:
    promo_defs = [
        {
            "name": "Standard fare",
            "type": PromotionType.DEFAULT,
            "value": Decimal("0"),
            "description": "No discount",
        },
        {
            "name": "New Year",
            "type": PromotionType.RECURRING,
            "value": Decimal("10"),
            "recurring_month": 1,
            "recurring_day": 1,
        },
        {
            "name": "Reunification Day",
            "type": PromotionType.RECURRING,
            "value": Decimal("15"),
            "recurring_month": 4,
            "recurring_day": 30,
        },
    ]

    for item in promo_defs:
        existing = db.execute(
            select(Promotion).where(Promotion.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            existing.value = item["value"]
            existing.is_active = True
            continue
        db.add(Promotion(is_active=True, **item))


def seed_fleet(db) -> list[Vehicle]:
    vehicle_defs = [
        {"plate_no": "51B-123.45", "seats": 34},
        {"plate_no": "51B-678.90", "seats": 34},
        {"plate_no": "29B-246.80", "seats": 22},
    ]

    vehicles = []
    for item in vehicle_defs:
        vehicle = db.execute(
            select(Vehicle).where(Vehicle.plate_no == item["plate_no"])
        ).scalar_one_or_none()
        if vehicle is None:
            vehicle = Vehicle(plate_no=item["plate_no"], fallback_capacity=item["seats"])
            db.add(vehicle)
            db.flush()
            for number in range(1, item["seats"] + 1):
                row = "A" if number <= item["seats"] // 2 else "B"
                db.add(Seat(vehicle_id=vehicle.id, seat_no=f"{row}{number:02d}"))
        vehicles.append(vehicle)
    db.flush()
    return vehicles


def seed_routes(db) -> list[Route]:
    route_defs = [
        {
            "name": "Sai Gon - Da Lat",
            "origin_name": "Mien Dong Bus Station",
            "destination_name": "Da Lat Bus Station",
            "distance_km": Decimal("308.0"),
            "estimated_duration": 420,
        },
        {
            "name": "Ha Noi - Hai Phong",
            "origin_name": "Giap Bat Bus Station",
            "destination_name": "Niem Nghia Bus Station",
            "distance_km": Decimal("120.5"),
            "estimated_duration": 150,
        },
    ]

    routes = []
    for item in route_defs:
        route = db.execute(
            select(Route).where(Route.name == item["name"])
        ).scalar_one_or_none()
        if route is None:
            route = Route(is_active=True, **item)
            db.add(route)
        routes.append(route)
    db.flush()
    return routes


def seed_trips(db, routes: list[Route], vehicles: list[Vehicle]) -> int:
    service = TripService(db)
    today = utc_now().astimezone(service_timezone()).date()
    created = 0

    for offset in range(1, 4):
        day = today + timedelta(days=offset)
        for route, vehicle, departure_time in (
            (routes[0], vehicles[0], "22:30"),
            (routes[0], vehicles[1], "08:00"),
            (routes[1], vehicles[2], "06:15"),
        ):
            exists = db.execute(
                select(Trip)
                .where(Trip.route_id == route.id)
                .where(Trip.departure_date == day)
                .where(Trip.departure_time == departure_time)
            ).first()
            if exists:
                continue
            service.create(
                route_id=route.id,
                vehicle_ids=[vehicle.id],
                departure_date=day,
                departure_time=departure_time,
                price=Decimal("350000") if route is routes[0] else Decimal("150000"),
            )
            created += 1
    return created


def main() -> None:
    db = SessionLocal()
    try:
        seed_promotions(db)
        db.flush()
        vehicles = seed_fleet(db)
        routes = seed_routes(db)
        created = seed_trips(db, routes, vehicles)
        db.commit()
        print(f"Seed complete: promotions, {len(routes)} routes, {len(vehicles)} vehicles, {created} trips added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
