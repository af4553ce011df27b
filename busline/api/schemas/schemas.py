from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from busline.domain.promotions import PromotionType
from busline.domain.state_machine import TicketStatus, TripStatus


HHMM_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"


# ---- trips ----

class CrewFields(BaseModel):
    driver_name: str | None = Field(default=None, max_length=100)
    driver_phone: str | None = Field(default=None, max_length=20)
    driver_license: str | None = Field(default=None, max_length=20)
    conductor_name: str | None = Field(default=None, max_length=100)
    conductor_phone: str | None = Field(default=None, max_length=20)
    note: str | None = Field(default=None, max_length=500)


class TripCreate(CrewFields):
    route_id: str
    vehicle_ids: list[str] = Field(min_length=1)
    departure_date: date
    departure_time: str = Field(pattern=HHMM_PATTERN)
    arrival_date: date | None = None
    arrival_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    price: Decimal | None = Field(default=None, ge=0)
    is_recurring: bool = False
    recurring_days: list[int] | None = None
    recurring_end_date: date | None = None


class TripBulkCreate(CrewFields):
    route_id: str
    vehicle_ids: list[str] = Field(min_length=1)
    start_date: date
    end_date: date
    weekdays: list[int] = Field(min_length=1)
    departure_time: str = Field(pattern=HHMM_PATTERN)
    price: Decimal | None = Field(default=None, ge=0)


class TripUpdate(CrewFields):
    vehicle_ids: list[str] | None = None
    departure_date: date | None = None
    departure_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    arrival_date: date | None = None
    arrival_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    price: Decimal | None = Field(default=None, ge=0)


class TripStatusUpdate(BaseModel):
    status: TripStatus


class VehicleConflictResponse(BaseModel):
    vehicle_id: str
    plate_no: str | None = None
    trip_id: str | None = None
    reason: str


class TripResponse(BaseModel):
    id: str
    route_id: str
    vehicle_ids: list[str]
    departure_date: date
    departure_time: str
    arrival_date: date
    arrival_time: str
    estimated_duration: int | None
    status: TripStatus
    booked_seats: int
    available_seats: int
    price: Decimal | None
    driver_name: str | None = None
    driver_phone: str | None = None
    driver_license: str | None = None
    conductor_name: str | None = None
    conductor_phone: str | None = None
    note: str | None = None
    is_recurring: bool
    recurring_days: list[int] = []
    recurring_end_date: date | None = None
    is_active: bool
    is_deleted: bool


class TripCreateResponse(BaseModel):
    trip: TripResponse
    conflicts: list[VehicleConflictResponse] = []


class TripBulkDayResponse(BaseModel):
    departure_date: date
    trip_id: str | None = None
    status: TripStatus | None = None
    conflicts: list[VehicleConflictResponse] = []
    error: str | None = None


class TripBulkCreateResponse(BaseModel):
    created: int
    failed: int
    results: list[TripBulkDayResponse]


class TripDetailResponse(BaseModel):
    trip: TripResponse
    route: dict | None
    vehicles: list[dict]


class AvailabilityRequest(BaseModel):
    vehicle_ids: list[str] = Field(min_length=1)
    departure_date: date
    departure_time: str = Field(pattern=HHMM_PATTERN)
    duration_minutes: int = Field(gt=0, le=2880)
    exclude_trip_id: str | None = None


class AvailabilityResponse(BaseModel):
    assignable: list[str]
    conflicts: list[VehicleConflictResponse]


class PricePreviewResponse(BaseModel):
    trip_id: str
    original_price: Decimal
    promotion_id: str
    promotion_name: str
    promotion_type: PromotionType
    promotion_value: Decimal
    discount_amount: Decimal
    final_price: Decimal
    expires_at: datetime


# ---- tickets ----

class TicketCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    trip_id: str
    seat_id: str
    payment_method: str = Field(default="BANKING", max_length=16)


class TicketStatusUpdate(BaseModel):
    status: Literal["SUCCESS", "FAILED"]
    reason: str | None = None


class TicketFailRequest(BaseModel):
    reason: str | None = None


class TicketTransferRequest(BaseModel):
    new_trip_id: str
    new_seat_id: str
    reason: str | None = Field(default=None, max_length=500)


class TicketResponse(BaseModel):
    id: str
    user_id: str
    seat_id: str
    trip_id: str
    promotion_id: str
    payment_method: str
    total_price: Decimal
    expires_at: datetime
    status: TicketStatus
    snapshot: dict | None = None
    transfer_ticket_id: str | None = None
    transfer_description: str | None = None
    transaction_id: str | None = None
    payment_id: str | None = None
    paid_at: datetime | None = None


class TicketDetailResponse(BaseModel):
    ticket: TicketResponse
    seat: dict
    trip: dict
    route: dict


class TicketTransferResponse(BaseModel):
    old_ticket: TicketResponse
    new_ticket: TicketResponse
    transfer_description: str


class ExpirySweepResponse(BaseModel):
    expired: int
    ticket_ids: list[str]


class PaymentStatusResponse(BaseModel):
    ticket_id: str
    status: TicketStatus
    payment_status: str
    transaction_id: str | None = None
    payment_id: str | None = None
    paid_at: datetime | None = None
    amount: Decimal
    expires_at: datetime


# ---- payments ----

class PaymentOrderResponse(BaseModel):
    ticket_id: str
    order_id: str
    amount: int
    currency: str
    key_id: str
    expires_at: datetime


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RazorpayFailureRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    error_code: str | None = None
    error_description: str | None = None


# ---- promotions ----

class PromotionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    type: PromotionType = PromotionType.SPECIAL
    value: Decimal = Field(ge=0, le=100)
    start_date: date | None = None
    expiry_date: date | None = None
    recurring_month: int | None = Field(default=None, ge=1, le=12)
    recurring_day: int | None = Field(default=None, ge=1, le=31)
    description: str | None = Field(default=None, max_length=255)


class PromotionValueUpdate(BaseModel):
    value: Decimal = Field(ge=0, le=100)
    description: str | None = Field(default=None, max_length=255)


class PromotionResponse(BaseModel):
    id: str
    name: str
    type: PromotionType
    value: Decimal
    start_date: date | None = None
    expiry_date: date | None = None
    recurring_month: int | None = None
    recurring_day: int | None = None
    is_active: bool
    description: str | None = None


# ---- operations ----

class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    status: str
    attempts: int
    last_error: str | None = None
    created_at: str
    published_at: str | None = None


class JobRunResponse(BaseModel):
    result: dict
