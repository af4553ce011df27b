# busline/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    Enum,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from busline.infrastructure.db.session import Base
from busline.domain.state_machine import SeatStatus, TicketStatus, TripStatus, VehicleStatus
from busline.domain.promotions import PromotionType
from busline.domain.timetable import as_utc


def _uuid() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """
    Stores instants as UTC and always hands back aware datetimes,
    including on backends (SQLite) that drop the offset.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return as_utc(value)


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    origin_name: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_name: Mapped[str] = mapped_column(String(128), nullable=False)
    distance_km: Mapped[Decimal] = mapped_column(Numeric(8, 1), nullable=False, default=0)
    estimated_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "estimated_duration IS NULL OR (estimated_duration BETWEEN 1 AND 2880)",
            name="ck_route_duration_range",
        ),
    )


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    plate_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    # Used when no seat rows are registered for the vehicle.
    fallback_capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[VehicleStatus] = mapped_column(
        Enum(VehicleStatus, name="vehicle_status"),
        nullable=False,
        default=VehicleStatus.AVAILABLE,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("fallback_capacity >= 0", name="ck_vehicle_capacity_nonnegative"),
    )


class Seat(Base):
    __tablename__ = "seats"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    vehicle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("vehicles.id"),
        nullable=False,
        index=True,
    )
    seat_no: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[SeatStatus] = mapped_column(
        Enum(SeatStatus, name="seat_status"),
        nullable=False,
        default=SeatStatus.EMPTY,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("vehicle_id", "seat_no", name="uq_vehicle_seat_no"),
    )


class Trip(Base):
    """
    One dated, timed run of a route.
    Vehicles are held as ordered references in trip_vehicles.
    """

    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    route_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("routes.id"),
        nullable=False,
        index=True,
    )
    departure_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    departure_time: Mapped[str] = mapped_column(String(5), nullable=False)
    arrival_date: Mapped[date] = mapped_column(Date, nullable=False)
    arrival_time: Mapped[str] = mapped_column(String(5), nullable=False)
    estimated_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[TripStatus] = mapped_column(
        Enum(TripStatus, name="trip_status"),
        nullable=False,
        default=TripStatus.SCHEDULED,
        index=True,
    )
    booked_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    driver_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    driver_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    driver_license: Mapped[str | None] = mapped_column(String(20), nullable=True)
    conductor_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    conductor_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Comma separated ISO weekdays, 1 = Monday.
    recurring_days: Mapped[str | None] = mapped_column(String(16), nullable=True)
    recurring_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    vehicle_links: Mapped[list["TripVehicle"]] = relationship(
        order_by="TripVehicle.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("booked_seats >= 0", name="ck_trip_booked_nonnegative"),
        CheckConstraint("available_seats >= 0", name="ck_trip_available_nonnegative"),
        CheckConstraint("price IS NULL OR price >= 0", name="ck_trip_price_nonnegative"),
    )

    @property
    def vehicle_ids(self) -> list[str]:
        return [link.vehicle_id for link in self.vehicle_links]

    @property
    def capacity(self) -> int:
        return self.booked_seats + self.available_seats


class TripVehicle(Base):
    __tablename__ = "trip_vehicles"

    trip_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("trips.id"),
        primary_key=True,
    )
    vehicle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("vehicles.id"),
        primary_key=True,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Promotion(Base):
    __tablename__ = "promotions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    type: Mapped[PromotionType] = mapped_column(
        Enum(PromotionType, name="promotion_type"),
        nullable=False,
        default=PromotionType.SPECIAL,
    )
    value: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recurring_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("value >= 0 AND value <= 100", name="ck_promotion_value_range"),
        Index("ix_promotion_type_active", "type", "is_active"),
    )


class Ticket(Base):
    """
    Ticket rows are never deleted.
    The snapshot is written once, when the ticket leaves PENDING.
    """

    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seat_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("seats.id"),
        nullable=False,
        index=True,
    )
    trip_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("trips.id"),
        nullable=False,
        index=True,
    )
    promotion_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("promotions.id"),
        nullable=False,
    )
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default="BANKING")
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status"),
        nullable=False,
        default=TicketStatus.PENDING,
        index=True,
    )
    snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    transfer_ticket_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("tickets.id"),
        nullable=True,
    )
    transfer_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Gateway correlation id (order id) and the settled payment id.
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("total_price >= 0", name="ck_ticket_price_nonnegative"),
    )


class DeferredTask(Base):
    """
    Durable timer. One row per key; a fired or cancelled task is deleted.
    """

    __tablename__ = "deferred_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trip_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    fire_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("key", name="uq_deferred_task_key"),
    )


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(36), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PROCESSED")
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "payment_id", name="uq_webhook_provider_payment_id"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
