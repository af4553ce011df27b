from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from busline.application.promotion_service import PromotionService
from busline.application.reservation_service import ReservationService
from busline.application.trip_lifecycle import departure_instant
from busline.application.trip_service import TripService
from busline.domain.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from busline.domain.promotions import PromotionType
from busline.domain.state_machine import SeatStatus, TicketStatus, TripStatus
from busline.domain.timetable import combine
from busline.infrastructure.db.models import Seat, Ticket, Trip
from busline.infrastructure.repositories.seat_repository import SeatRepository
from busline.tasks import worker_jobs


@pytest.fixture
def reservations(db_session, default_promotion):
    return ReservationService(db_session)


# ---------------------
# BOOKING
# ---------------------

def test_booking_holds_seat_and_counts(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]

    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    assert ticket.status == TicketStatus.PENDING
    assert ticket.total_price == Decimal("200000.00")
    assert ticket.expires_at == departure_instant(trip) - timedelta(hours=3)
    assert ticket.snapshot is None
    assert seat.status == SeatStatus.PENDING
    assert trip.booked_seats == 1
    assert trip.available_seats == 3


def test_second_booking_of_same_seat_conflicts(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    reservations.create("user-1", trip.id, seat.id, now=now)

    with pytest.raises(ConflictError):
        reservations.create("user-2", trip.id, seat.id, now=now)

    assert trip.booked_seats == 1
    assert len(reservations.list_tickets(trip_id=trip.id)) == 1


def test_booking_closes_three_hours_before_departure(
    reservations, make_trip, make_vehicle, seats_of, base_day
):
    vehicle = make_vehicle()
    day = base_day + timedelta(days=1)
    trip = make_trip(day=day, departure_time="10:00", vehicles=[vehicle])

    with pytest.raises(ValidationError, match="Too soon to book"):
        reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=combine(day, "08:00"))

    assert seats_of(vehicle)[0].status == SeatStatus.EMPTY
    assert trip.booked_seats == 0


def test_booking_rejects_unbookable_trips(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    unpriced = make_trip(vehicles=[vehicle], price=None)
    with pytest.raises(ValidationError):
        reservations.create("user-1", unpriced.id, seats_of(vehicle)[0].id, now=now)

    other = make_vehicle()
    cancelled = make_trip(vehicles=[other], departure_time="14:00")
    TripService(reservations.db).change_status(cancelled.id, TripStatus.CANCELLED)
    with pytest.raises(ValidationError):
        reservations.create("user-1", cancelled.id, seats_of(other)[0].id, now=now)

    with pytest.raises(NotFoundError):
        reservations.create("user-1", "missing", seats_of(other)[0].id, now=now)


def test_booking_uses_holiday_discount(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    day = trip.departure_date
    PromotionService(db_session).create(
        name="Local festival",
        promotion_type=PromotionType.RECURRING,
        value=Decimal("10"),
        recurring_month=day.month,
        recurring_day=day.day,
    )

    ticket = reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)

    assert ticket.total_price == Decimal("180000.00")


def test_booking_without_default_promotion_fails(db_session, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])

    with pytest.raises(ConfigurationError):
        ReservationService(db_session).create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)


# ---------------------
# CONFIRM / FAIL / EXPIRE
# ---------------------

def test_confirm_sells_seat_and_freezes_snapshot(
    db_session, reservations, make_trip, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    ticket = reservations.confirm(ticket.id, now=now, payment_id="pay_1")

    assert ticket.status == TicketStatus.SUCCESS
    assert ticket.payment_id == "pay_1"
    assert ticket.paid_at == now
    db_session.refresh(seat)
    assert seat.status == SeatStatus.SOLD
    assert ticket.snapshot["seat"]["seat_no"] == seat.seat_no
    assert ticket.snapshot["pricing"]["final_price"] == "200000.00"

    # Later edits to the trip do not reach the stored snapshot.
    TripService(db_session).update(trip.id, {"price": Decimal("999999")}, now=now)
    db_session.commit()
    db_session.refresh(ticket)
    assert ticket.snapshot["trip"]["price"] == "200000.00"


def test_confirm_after_expiry_is_rejected(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    ticket = reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)

    with pytest.raises(ValidationError):
        reservations.confirm(ticket.id, now=ticket.expires_at + timedelta(seconds=1))

    assert ticket.status == TicketStatus.PENDING


def test_fail_releases_seat(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    ticket = reservations.fail(ticket.id, reason="changed plans")

    assert ticket.status == TicketStatus.FAILED
    assert ticket.snapshot is not None
    db_session.refresh(seat)
    db_session.refresh(trip)
    assert seat.status == SeatStatus.EMPTY
    assert trip.booked_seats == 0
    assert trip.available_seats == 4

    with pytest.raises(InvalidTransitionError):
        reservations.confirm(ticket.id, now=now)


def test_update_status_dispatches(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seats = seats_of(vehicle)
    first = reservations.create("user-1", trip.id, seats[0].id, now=now)
    second = reservations.create("user-2", trip.id, seats[1].id, now=now)

    assert reservations.update_status(first.id, TicketStatus.SUCCESS, now=now).status == TicketStatus.SUCCESS
    assert reservations.update_status(second.id, TicketStatus.FAILED).status == TicketStatus.FAILED

    with pytest.raises(InvalidTransitionError):
        reservations.update_status(second.id, TicketStatus.SUCCESS, now=now)


def test_sweep_expires_only_overdue_pending_tickets(
    db_session, reservations, make_trip, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seats = seats_of(vehicle)
    stale = reservations.create("user-1", trip.id, seats[0].id, now=now)
    paid = reservations.create("user-2", trip.id, seats[1].id, now=now)
    reservations.confirm(paid.id, now=now)

    after_expiry = stale.expires_at + timedelta(minutes=1)
    expired = reservations.sweep_expired(now=after_expiry)

    assert expired == [stale.id]
    assert stale.status == TicketStatus.FAILED
    assert paid.status == TicketStatus.SUCCESS
    db_session.refresh(seats[0])
    assert seats[0].status == SeatStatus.EMPTY
    db_session.refresh(trip)
    assert trip.booked_seats == 1

    # Running again changes nothing.
    assert reservations.sweep_expired(now=after_expiry) == []
    db_session.refresh(trip)
    assert trip.booked_seats == 1


def test_expire_job_commits_through_its_own_session(
    db_session, session_factory, reservations, make_trip, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    ticket = reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)
    db_session.commit()

    result = worker_jobs.expire_pending_tickets(
        session_factory=session_factory,
        now=ticket.expires_at + timedelta(minutes=1),
    )

    assert result == {"expired": 1, "ticket_ids": [ticket.id]}
    db_session.refresh(ticket)
    assert ticket.status == TicketStatus.FAILED


# ---------------------
# CONCURRENT WRITERS
# ---------------------

def _write_behind_session(db_session, model, row_id, **values):
    """Change a row the way another worker would, leaving loaded objects stale."""
    db_session.execute(
        update(model)
        .where(model.id == row_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def test_confirm_loses_to_expiry_sweep(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    _write_behind_session(db_session, Ticket, ticket.id, status=TicketStatus.FAILED)
    _write_behind_session(db_session, Seat, seat.id, status=SeatStatus.EMPTY)
    _write_behind_session(db_session, Trip, trip.id, booked_seats=0, available_seats=4)

    with pytest.raises(InvalidTransitionError):
        reservations.confirm(ticket.id, now=now, payment_id="pay_late")

    db_session.refresh(ticket)
    db_session.refresh(seat)
    db_session.refresh(trip)
    assert ticket.status == TicketStatus.FAILED
    assert ticket.payment_id is None
    assert ticket.snapshot is None
    assert seat.status == SeatStatus.EMPTY
    assert trip.booked_seats == 0


def test_fail_loses_to_confirmation(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    _write_behind_session(db_session, Ticket, ticket.id, status=TicketStatus.SUCCESS)
    _write_behind_session(db_session, Seat, seat.id, status=SeatStatus.SOLD)

    with pytest.raises(InvalidTransitionError):
        reservations.fail(ticket.id, reason="user cancelled")

    db_session.refresh(seat)
    db_session.refresh(trip)
    assert ticket.status == TicketStatus.SUCCESS
    assert seat.status == SeatStatus.SOLD
    assert trip.booked_seats == 1
    assert trip.available_seats == 3


def test_sweep_skips_ticket_confirmed_meanwhile(
    db_session, monkeypatch, reservations, make_trip, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)

    # The sweep read the ticket as PENDING just before payment landed.
    monkeypatch.setattr(reservations.ticket_repository, "list_expired_pending", lambda now: [ticket])
    _write_behind_session(db_session, Ticket, ticket.id, status=TicketStatus.SUCCESS)
    _write_behind_session(db_session, Seat, seat.id, status=SeatStatus.SOLD)

    assert reservations.sweep_expired(now=ticket.expires_at + timedelta(minutes=1)) == []

    db_session.refresh(seat)
    db_session.refresh(trip)
    assert ticket.status == TicketStatus.SUCCESS
    assert seat.status == SeatStatus.SOLD
    assert trip.booked_seats == 1


def test_booking_loses_seat_race(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seat = seats_of(vehicle)[0]

    # Loaded seat still reads EMPTY, so only the compare-and-set can notice.
    _write_behind_session(db_session, Seat, seat.id, status=SeatStatus.PENDING)

    with pytest.raises(ConflictError, match="was just taken"):
        reservations.create("user-1", trip.id, seat.id, now=now)

    assert not SeatRepository(db_session).try_set_status(seat.id, SeatStatus.EMPTY, SeatStatus.PENDING)
    db_session.refresh(seat)
    db_session.refresh(trip)
    assert seat.status == SeatStatus.PENDING
    assert trip.booked_seats == 0
    assert trip.available_seats == 4
    assert reservations.list_tickets(trip_id=trip.id) == []


# ---------------------
# TRANSFER
# ---------------------

def _paid_ticket(reservations, trip, seat, now):
    ticket = reservations.create("user-1", trip.id, seat.id, now=now)
    return reservations.confirm(ticket.id, now=now)


def test_transfer_moves_ticket_once(db_session, reservations, make_trip, make_vehicle, seats_of, now):
    old_vehicle = make_vehicle()
    new_vehicle = make_vehicle()
    old_trip = make_trip(vehicles=[old_vehicle], departure_time="10:00")
    new_trip = make_trip(vehicles=[new_vehicle], departure_time="16:00")
    old_seat = seats_of(old_vehicle)[0]
    new_seat = seats_of(new_vehicle)[2]
    ticket = _paid_ticket(reservations, old_trip, old_seat, now)

    old_ticket, new_ticket = reservations.transfer(
        ticket.id, new_trip.id, new_seat.id, reason="meeting moved", now=now
    )

    assert old_ticket.status == TicketStatus.TRANSFER
    assert old_ticket.transfer_ticket_id == new_ticket.id
    assert new_ticket.status == TicketStatus.SUCCESS
    assert new_ticket.user_id == "user-1"
    assert new_ticket.snapshot["trip"]["trip_id"] == new_trip.id
    assert new_ticket.transfer_description == (
        f"Transferred from ticket #{old_ticket.id} "
        f"(Seat {old_seat.seat_no}, Departure: {old_trip.departure_date.isoformat()} 10:00). "
        "Reason: meeting moved"
    )

    db_session.refresh(old_seat)
    db_session.refresh(new_seat)
    db_session.refresh(old_trip)
    db_session.refresh(new_trip)
    assert old_seat.status == SeatStatus.EMPTY
    assert new_seat.status == SeatStatus.SOLD
    assert old_trip.booked_seats == 0
    assert new_trip.booked_seats == 1

    with pytest.raises(PreconditionFailedError):
        reservations.transfer(old_ticket.id, new_trip.id, seats_of(new_vehicle)[3].id, now=now)


def test_transfer_requires_confirmed_ticket(reservations, make_trip, make_vehicle, seats_of, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    pending = reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)

    with pytest.raises(PreconditionFailedError):
        reservations.transfer(pending.id, trip.id, seats_of(vehicle)[1].id, now=now)


def test_transfer_closes_three_hours_before_old_departure(
    reservations, make_trip, make_vehicle, seats_of, base_day, now
):
    vehicle = make_vehicle()
    day = base_day + timedelta(days=1)
    trip = make_trip(day=day, departure_time="10:00", vehicles=[vehicle])
    ticket = _paid_ticket(reservations, trip, seats_of(vehicle)[0], now)

    with pytest.raises(PreconditionFailedError):
        reservations.transfer(
            ticket.id, trip.id, seats_of(vehicle)[1].id, now=combine(day, "07:30")
        )


def test_transfer_requires_same_route_and_price(
    reservations, make_trip, make_route, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    ticket = _paid_ticket(reservations, trip, seats_of(vehicle)[0], now)

    pricier_vehicle = make_vehicle()
    pricier = make_trip(vehicles=[pricier_vehicle], price=Decimal("250000"))
    with pytest.raises(ValidationError, match="same price"):
        reservations.transfer(ticket.id, pricier.id, seats_of(pricier_vehicle)[0].id, now=now)

    elsewhere_vehicle = make_vehicle()
    elsewhere = make_trip(vehicles=[elsewhere_vehicle], trip_route=make_route())
    with pytest.raises(ValidationError, match="same route"):
        reservations.transfer(ticket.id, elsewhere.id, seats_of(elsewhere_vehicle)[0].id, now=now)

    assert ticket.status == TicketStatus.SUCCESS
    assert ticket.transfer_ticket_id is None


def test_transfer_to_taken_seat_leaves_old_ticket_alone(
    reservations, make_trip, make_vehicle, seats_of, now
):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    seats = seats_of(vehicle)
    ticket = _paid_ticket(reservations, trip, seats[0], now)
    reservations.create("user-2", trip.id, seats[1].id, now=now)

    with pytest.raises(ConflictError):
        reservations.transfer(ticket.id, trip.id, seats[1].id, now=now)

    assert ticket.status == TicketStatus.SUCCESS
    assert seats[0].status == SeatStatus.SOLD


def test_payment_status_and_view(reservations, make_trip, make_vehicle, seats_of, route, now):
    vehicle = make_vehicle()
    trip = make_trip(vehicles=[vehicle])
    ticket = reservations.create("user-1", trip.id, seats_of(vehicle)[0].id, now=now)

    assert reservations.payment_status(ticket.id)["payment_status"] == "PENDING"
    reservations.confirm(ticket.id, now=now)
    assert reservations.payment_status(ticket.id)["payment_status"] == "PAID"

    view = reservations.get_view(ticket.id)
    assert view["ticket"].id == ticket.id
    assert view["route"]["name"] == route.name
    assert view["seat"]["seat_no"] == "A01"
