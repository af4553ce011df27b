"""
Shared test configuration.

Every test gets a fresh in-memory SQLite schema. The API client and the
services under test share one session, so a request sees exactly what the
fixtures committed.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SERVICE_TIMEZONE"] = "Asia/Ho_Chi_Minh"

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from busline.api.routes.routes import get_db
from busline.application.trip_service import TripService
from busline.domain.promotions import PromotionType
from busline.domain.state_machine import VehicleStatus
from busline.domain.timetable import combine, service_timezone, utc_now
from busline.infrastructure.db.models import Promotion, Route, Seat, Vehicle
from busline.infrastructure.db.session import Base
from busline.infrastructure.repositories.seat_repository import SeatRepository
from busline.main import app


# Monday; trips in the tests run on the following days.
BASE_DAY = date(2031, 3, 10)


engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite needs explicit BEGIN for SAVEPOINT (begin_nested) to work.
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session):
    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def base_day():
    return BASE_DAY


@pytest.fixture
def now():
    return combine(BASE_DAY, "06:00")


@pytest.fixture
def future_day():
    """A day comfortably ahead of the real clock, for API flows."""
    return utc_now().astimezone(service_timezone()).date() + timedelta(days=5)


# ---- data factories ----

@pytest.fixture
def default_promotion(db_session):
    promotion = Promotion(
        name="Standard fare",
        type=PromotionType.DEFAULT,
        value=Decimal("0"),
        is_active=True,
    )
    db_session.add(promotion)
    db_session.commit()
    return promotion


@pytest.fixture
def route(db_session):
    route = Route(
        name="Sai Gon - Da Lat",
        origin_name="Mien Dong",
        destination_name="Da Lat",
        distance_km=Decimal("308.0"),
        estimated_duration=180,
        is_active=True,
    )
    db_session.add(route)
    db_session.commit()
    return route


@pytest.fixture
def make_route(db_session):
    counter = {"n": 0}

    def _make(estimated_duration=180, is_active=True):
        counter["n"] += 1
        route = Route(
            name=f"Route {counter['n']}",
            origin_name="A",
            destination_name="B",
            distance_km=Decimal("100.0"),
            estimated_duration=estimated_duration,
            is_active=is_active,
        )
        db_session.add(route)
        db_session.commit()
        return route

    return _make


@pytest.fixture
def make_vehicle(db_session):
    counter = {"n": 0}

    def _make(seats=4, status=VehicleStatus.AVAILABLE, fallback_capacity=0):
        counter["n"] += 1
        vehicle = Vehicle(
            plate_no=f"51B-{counter['n']:03d}.00",
            fallback_capacity=fallback_capacity,
            status=status,
        )
        db_session.add(vehicle)
        db_session.flush()
        for number in range(1, seats + 1):
            db_session.add(Seat(vehicle_id=vehicle.id, seat_no=f"A{number:02d}"))
        db_session.commit()
        return vehicle

    return _make


@pytest.fixture
def seats_of(db_session):
    def _seats(vehicle):
        return SeatRepository(db_session).list_for_vehicle(vehicle.id)

    return _seats


@pytest.fixture
def make_trip(db_session, route, make_vehicle, now):
    """Creates and commits a trip through TripService; defaults to tomorrow 10:00."""

    def _make(
        day=None,
        departure_time="10:00",
        vehicles=None,
        price=Decimal("200000"),
        trip_route=None,
        at=None,
        **kwargs,
    ):
        vehicles = vehicles or [make_vehicle()]
        result = TripService(db_session).create(
            route_id=(trip_route or route).id,
            vehicle_ids=[v.id for v in vehicles],
            departure_date=day or BASE_DAY + timedelta(days=1),
            departure_time=departure_time,
            price=price,
            now=at or now,
            **kwargs,
        )
        db_session.commit()
        return result.trip

    return _make
