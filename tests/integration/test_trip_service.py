from datetime import date, timedelta
from decimal import Decimal

import pytest

from busline.application.promotion_service import PromotionService
from busline.application.reservation_service import ReservationService
from busline.application.trip_service import TripService
from busline.domain.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from busline.domain.promotions import PromotionType
from busline.domain.state_machine import TripStatus, VehicleStatus
from busline.infrastructure.db.models import Seat
from busline.infrastructure.repositories.outbox_repository import OutboxRepository


def test_create_trip_derives_arrival_and_capacity(db_session, route, make_vehicle, base_day, now):
    first = make_vehicle(seats=4)
    second = make_vehicle(seats=6)

    result = TripService(db_session).create(
        route_id=route.id,
        vehicle_ids=[first.id, second.id],
        departure_date=base_day + timedelta(days=1),
        departure_time="22:30",
        price=Decimal("350000"),
        driver_name="Nguyen Van A",
        now=now,
    )
    trip = result.trip

    assert result.conflicts == []
    assert trip.vehicle_ids == [first.id, second.id]
    assert trip.arrival_date == base_day + timedelta(days=2)
    assert trip.arrival_time == "01:30"
    assert trip.estimated_duration == 180
    assert trip.available_seats == 10
    assert trip.booked_seats == 0
    assert trip.price == Decimal("350000.00")
    assert trip.driver_name == "Nguyen Van A"


def test_create_trip_with_explicit_arrival(db_session, route, make_vehicle, base_day, now):
    vehicle = make_vehicle()
    day = base_day + timedelta(days=1)

    trip = TripService(db_session).create(
        route_id=route.id,
        vehicle_ids=[vehicle.id],
        departure_date=day,
        departure_time="08:00",
        arrival_time="12:15",
        now=now,
    ).trip

    assert trip.arrival_date == day
    assert trip.estimated_duration == 255


def test_arrival_before_departure_is_rejected(db_session, route, make_vehicle, base_day, now):
    vehicle = make_vehicle()
    with pytest.raises(ValidationError):
        TripService(db_session).create(
            route_id=route.id,
            vehicle_ids=[vehicle.id],
            departure_date=base_day + timedelta(days=1),
            departure_time="08:00",
            arrival_time="07:00",
            now=now,
        )


def test_route_without_duration_needs_arrival(db_session, make_route, make_vehicle, base_day, now):
    route = make_route(estimated_duration=None)
    vehicle = make_vehicle()
    with pytest.raises(ValidationError):
        TripService(db_session).create(
            route_id=route.id,
            vehicle_ids=[vehicle.id],
            departure_date=base_day + timedelta(days=1),
            departure_time="08:00",
            now=now,
        )


def test_partial_success_reports_conflicts(db_session, route, make_vehicle, make_trip, base_day, now):
    busy = make_vehicle()
    free = make_vehicle()
    day = base_day + timedelta(days=1)
    make_trip(day=day, departure_time="10:00", vehicles=[busy])

    result = TripService(db_session).create(
        route_id=route.id,
        vehicle_ids=[busy.id, free.id],
        departure_date=day,
        departure_time="11:00",
        price=Decimal("200000"),
        now=now,
    )

    assert result.trip.vehicle_ids == [free.id]
    assert result.trip.available_seats == 4
    assert [c.vehicle_id for c in result.conflicts] == [busy.id]


def test_all_vehicles_conflicting_raises(db_session, route, make_vehicle, make_trip, base_day, now):
    vehicle = make_vehicle()
    day = base_day + timedelta(days=1)
    make_trip(day=day, departure_time="10:00", vehicles=[vehicle])

    with pytest.raises(ConflictError) as excinfo:
        TripService(db_session).create(
            route_id=route.id,
            vehicle_ids=[vehicle.id],
            departure_date=day,
            departure_time="12:00",
            now=now,
        )

    assert excinfo.value.conflicts[0]["vehicle_id"] == vehicle.id


def test_unknown_or_inactive_route(db_session, make_route, make_vehicle, base_day, now):
    vehicle = make_vehicle()
    service = TripService(db_session)

    with pytest.raises(NotFoundError):
        service.create(
            route_id="missing",
            vehicle_ids=[vehicle.id],
            departure_date=base_day,
            departure_time="08:00",
            now=now,
        )

    with pytest.raises(ValidationError):
        service.create(
            route_id=make_route(is_active=False).id,
            vehicle_ids=[vehicle.id],
            departure_date=base_day,
            departure_time="08:00",
            now=now,
        )


def test_bulk_creation_skips_conflicting_days(db_session, route, make_vehicle, make_trip, base_day, now):
    vehicle = make_vehicle()
    # base_day is a Monday; block the Wednesday.
    make_trip(day=base_day + timedelta(days=2), departure_time="07:00", vehicles=[vehicle])

    results = TripService(db_session).create_bulk(
        route_id=route.id,
        vehicle_ids=[vehicle.id],
        start_date=base_day + timedelta(days=1),
        end_date=base_day + timedelta(days=7),
        weekdays=[1, 3, 5],
        departure_time="08:00",
        price=Decimal("200000"),
        now=now,
    )

    by_day = {r.departure_date: r for r in results}
    assert sorted(by_day) == [
        base_day + timedelta(days=2),
        base_day + timedelta(days=4),
        base_day + timedelta(days=7),
    ]
    assert by_day[base_day + timedelta(days=2)].trip is None
    assert by_day[base_day + timedelta(days=2)].conflicts[0].vehicle_id == vehicle.id
    assert by_day[base_day + timedelta(days=4)].trip.is_recurring
    assert by_day[base_day + timedelta(days=4)].trip.recurring_days == "1,3,5"
    assert by_day[base_day + timedelta(days=7)].trip is not None


def test_bulk_rejects_bad_weekdays_and_ranges(db_session, route, make_vehicle, base_day, now):
    vehicle = make_vehicle()
    service = TripService(db_session)

    with pytest.raises(ValidationError):
        service.create_bulk(route.id, [vehicle.id], base_day, base_day, [0], "08:00", now=now)

    with pytest.raises(ValidationError):
        service.create_bulk(
            route.id, [vehicle.id], base_day, base_day - timedelta(days=1), [1], "08:00", now=now
        )

    with pytest.raises(ValidationError):
        service.create_bulk(
            route.id, [vehicle.id], base_day, base_day + timedelta(days=400), [1], "08:00", now=now
        )


def test_update_moves_trip_and_checks_conflicts(db_session, make_vehicle, make_trip, base_day, now):
    vehicle = make_vehicle()
    day = base_day + timedelta(days=1)
    make_trip(day=day, departure_time="15:00", vehicles=[vehicle])
    trip = make_trip(day=day, departure_time="08:00", vehicles=[vehicle])
    service = TripService(db_session)

    with pytest.raises(ConflictError):
        service.update(trip.id, {"departure_time": "14:00"}, now=now)

    # Moving within its own slot does not conflict with itself.
    result = service.update(trip.id, {"departure_time": "09:00", "note": "later start"}, now=now)
    assert result.trip.departure_time == "09:00"
    assert result.trip.note == "later start"


def test_update_keeps_overnight_arrival_day(db_session, make_trip, base_day, now):
    day = base_day + timedelta(days=1)
    trip = make_trip(day=day, departure_time="23:00")
    assert trip.arrival_date == day + timedelta(days=1)
    service = TripService(db_session)

    service.update(trip.id, {"arrival_time": "02:30"}, now=now)

    assert trip.arrival_date == day + timedelta(days=1)
    assert trip.arrival_time == "02:30"
    assert trip.estimated_duration == 210

    # Moving the departure day carries the arrival day along.
    service.update(trip.id, {"departure_date": day + timedelta(days=2), "arrival_time": "03:00"}, now=now)

    assert trip.departure_date == day + timedelta(days=2)
    assert trip.arrival_date == day + timedelta(days=3)
    assert trip.estimated_duration == 240


def test_update_cannot_drop_vehicle_with_tickets(
    db_session, make_vehicle, make_trip, seats_of, default_promotion, now
):
    first = make_vehicle()
    second = make_vehicle()
    trip = make_trip(vehicles=[first, second])
    ReservationService(db_session).create("user-1", trip.id, seats_of(first)[0].id, now=now)

    with pytest.raises(ConflictError):
        TripService(db_session).update(trip.id, {"vehicle_ids": [second.id]}, now=now)


def test_terminal_trip_cannot_be_edited(db_session, make_trip, now):
    trip = make_trip()
    service = TripService(db_session)
    service.change_status(trip.id, TripStatus.CANCELLED)

    with pytest.raises(ValidationError):
        service.update(trip.id, {"note": "too late"}, now=now)


def test_change_status_follows_state_machine(db_session, make_trip):
    trip = make_trip()
    service = TripService(db_session)

    with pytest.raises(InvalidTransitionError):
        service.change_status(trip.id, TripStatus.COMPLETED)

    assert service.change_status(trip.id, TripStatus.DELAYED).status == TripStatus.DELAYED
    assert service.change_status(trip.id, TripStatus.CANCELLED).status == TripStatus.CANCELLED
    db_session.flush()

    event_types = [
        e.event_type for e in OutboxRepository(db_session).list_events() if e.aggregate_id == trip.id
    ]
    assert "TRIP_CANCELLED" in event_types
    assert event_types.count("TRIP_STATUS_CHANGED") == 2


def test_remove_and_restore(db_session, make_vehicle, make_trip, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    service = TripService(db_session)

    service.remove(trip.id)
    assert trip.is_deleted
    assert trip.status == TripStatus.CANCELLED
    assert service.list_trips() == []
    assert service.list_trips(include_deleted=True) == [trip]

    with pytest.raises(ValidationError):
        service.remove(trip.id)

    restored = service.restore(trip.id, now=now)
    assert not restored.is_deleted
    assert restored.status == TripStatus.SCHEDULED


def test_restore_rejects_reassigned_vehicle(db_session, make_vehicle, make_trip, now):
    vehicle = make_vehicle()
    trip = make_trip(departure_time="10:00", vehicles=[vehicle])
    service = TripService(db_session)
    service.remove(trip.id)
    make_trip(departure_time="11:00", vehicles=[vehicle])

    with pytest.raises(ConflictError):
        service.restore(trip.id, now=now)


def test_seat_count_follows_vehicle_capacity(db_session, make_trip, make_vehicle):
    vehicle = make_vehicle(seats=4)
    trip = make_trip(vehicles=[vehicle])
    db_session.add(Seat(vehicle_id=vehicle.id, seat_no="B01"))
    db_session.flush()

    trip = TripService(db_session).update_seat_count(trip.id)

    assert trip.available_seats == 5


def test_find_available_lists_only_bookable_trips(db_session, route, make_trip, base_day):
    day = base_day + timedelta(days=1)
    open_trip = make_trip(day=day, departure_time="08:00")
    cancelled = make_trip(day=day, departure_time="09:00")
    service = TripService(db_session)
    service.change_status(cancelled.id, TripStatus.CANCELLED)

    assert service.find_available(route.id, day) == [open_trip]
    assert service.find_available(route.id, day + timedelta(days=1)) == []


def test_price_preview_applies_resolved_promotion(db_session, make_trip, default_promotion, base_day):
    day = base_day + timedelta(days=1)
    PromotionService(db_session).create(
        name="Spring sale",
        promotion_type=PromotionType.SPECIAL,
        value=Decimal("15"),
        start_date=day,
        expiry_date=day + timedelta(days=3),
    )
    trip = make_trip(day=day, price=Decimal("333.33"))

    preview = TripService(db_session).price_preview(trip.id)

    assert preview["promotion_name"] == "Spring sale"
    assert preview["discount_amount"] == Decimal("50.00")
    assert preview["final_price"] == Decimal("283.33")


def test_maintenance_vehicle_is_not_assigned(db_session, route, make_vehicle, base_day, now):
    in_shop = make_vehicle(status=VehicleStatus.MAINTENANCE)

    with pytest.raises(ConflictError):
        TripService(db_session).create(
            route_id=route.id,
            vehicle_ids=[in_shop.id],
            departure_date=date(2031, 3, 12),
            departure_time="08:00",
            now=now,
        )
