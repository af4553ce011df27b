from datetime import date
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from busline.infrastructure.db.session import SessionLocal
from busline.application.outbox_publisher import OutboxPublisher
from busline.application.payment_service import PaymentService
from busline.application.promotion_service import PromotionService
from busline.application.reservation_service import ReservationService
from busline.application.trip_lifecycle import TripLifecycleScheduler
from busline.application.trip_service import CREW_FIELDS, TripService
from busline.application.vehicle_availability import VehicleAvailabilityChecker, VehicleConflict
from busline.api.schemas.schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    ExpirySweepResponse,
    JobRunResponse,
    OutboxEventResponse,
    PaymentOrderResponse,
    PaymentStatusResponse,
    PricePreviewResponse,
    PromotionCreate,
    PromotionResponse,
    PromotionValueUpdate,
    RazorpayFailureRequest,
    RazorpayVerifyRequest,
    TicketCreate,
    TicketDetailResponse,
    TicketFailRequest,
    TicketResponse,
    TicketStatusUpdate,
    TicketTransferRequest,
    TicketTransferResponse,
    TripBulkCreate,
    TripBulkCreateResponse,
    TripBulkDayResponse,
    TripCreate,
    TripCreateResponse,
    TripDetailResponse,
    TripResponse,
    TripStatusUpdate,
    TripUpdate,
    VehicleConflictResponse,
)
from busline.domain.exceptions import (
    BuslineError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from busline.domain.state_machine import TicketStatus, TripStatus
from busline.infrastructure.db.models import OutboxEvent, Promotion, Ticket, Trip
from busline.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _http_error(exc: BuslineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ConflictError, InvalidTransitionError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, PreconditionFailedError):
        code = status.HTTP_412_PRECONDITION_FAILED
    elif isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s", exc)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_400_BAD_REQUEST

    detail = str(exc)
    if isinstance(exc, ConflictError) and exc.conflicts:
        detail = {"message": str(exc), "conflicts": exc.conflicts}
    return HTTPException(status_code=code, detail=detail)


# ---- response builders ----

def _conflicts(conflicts: list[VehicleConflict]) -> list[VehicleConflictResponse]:
    return [VehicleConflictResponse(**c.as_dict()) for c in conflicts]


def _trip_response(trip: Trip) -> TripResponse:
    return TripResponse(
        id=trip.id,
        route_id=trip.route_id,
        vehicle_ids=trip.vehicle_ids,
        departure_date=trip.departure_date,
        departure_time=trip.departure_time,
        arrival_date=trip.arrival_date,
        arrival_time=trip.arrival_time,
        estimated_duration=trip.estimated_duration,
        status=trip.status,
        booked_seats=trip.booked_seats,
        available_seats=trip.available_seats,
        price=trip.price,
        is_recurring=trip.is_recurring,
        recurring_days=[int(d) for d in (trip.recurring_days or "").split(",") if d],
        recurring_end_date=trip.recurring_end_date,
        is_active=trip.is_active,
        is_deleted=trip.is_deleted,
        **{name: getattr(trip, name) for name in CREW_FIELDS},
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        user_id=ticket.user_id,
        seat_id=ticket.seat_id,
        trip_id=ticket.trip_id,
        promotion_id=ticket.promotion_id,
        payment_method=ticket.payment_method,
        total_price=ticket.total_price,
        expires_at=ticket.expires_at,
        status=ticket.status,
        snapshot=ticket.snapshot,
        transfer_ticket_id=ticket.transfer_ticket_id,
        transfer_description=ticket.transfer_description,
        transaction_id=ticket.transaction_id,
        payment_id=ticket.payment_id,
        paid_at=ticket.paid_at,
    )


def _promotion_response(promotion: Promotion) -> PromotionResponse:
    return PromotionResponse(
        id=promotion.id,
        name=promotion.name,
        type=promotion.type,
        value=promotion.value,
        start_date=promotion.start_date,
        expiry_date=promotion.expiry_date,
        recurring_month=promotion.recurring_month,
        recurring_day=promotion.recurring_day,
        is_active=promotion.is_active,
        description=promotion.description,
    )


def _outbox_response(event: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=event.id,
        aggregate_type=event.aggregate_type,
        aggregate_id=event.aggregate_id,
        event_type=event.event_type,
        payload=event.payload,
        status=event.status,
        attempts=event.attempts,
        last_error=event.last_error,
        created_at=event.created_at.isoformat(),
        published_at=event.published_at.isoformat() if event.published_at else None,
    )


@router.get("/health")
def health():
    return {"status": "ok"}


# ---- trips ----

@router.post(
    "/trips",
    response_model=TripCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_trip(request: TripCreate, db: Session = Depends(get_db)):
    try:
        result = TripService(db).create(**request.model_dump())
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return TripCreateResponse(
        trip=_trip_response(result.trip),
        conflicts=_conflicts(result.conflicts),
    )


@router.post(
    "/trips/bulk",
    response_model=TripBulkCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_trips_bulk(request: TripBulkCreate, db: Session = Depends(get_db)):
    try:
        results = TripService(db).create_bulk(**request.model_dump())
    except BuslineError as exc:
        raise _http_error(exc) from exc

    items = [
        TripBulkDayResponse(
            departure_date=r.departure_date,
            trip_id=r.trip.id if r.trip else None,
            status=r.trip.status if r.trip else None,
            conflicts=_conflicts(r.conflicts),
            error=r.error,
        )
        for r in results
    ]
    created = sum(1 for item in items if item.trip_id)
    return TripBulkCreateResponse(created=created, failed=len(items) - created, results=items)


@router.post("/trips/availability", response_model=AvailabilityResponse)
def check_vehicle_availability(request: AvailabilityRequest, db: Session = Depends(get_db)):
    try:
        result = VehicleAvailabilityChecker(db).check_availability(
            request.vehicle_ids,
            request.departure_date,
            request.departure_time,
            request.duration_minutes,
            exclude_trip_id=request.exclude_trip_id,
        )
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return AvailabilityResponse(
        assignable=result.assignable,
        conflicts=_conflicts(result.conflicts),
    )


@router.get("/trips", response_model=list[TripResponse])
def list_trips(
    route_id: str | None = None,
    departure_date: date | None = None,
    trip_status: TripStatus | None = Query(default=None, alias="status"),
    include_deleted: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    trips = TripService(db).list_trips(
        route_id=route_id,
        departure_date=departure_date,
        status=trip_status,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    return [_trip_response(trip) for trip in trips]


@router.get("/trips/available", response_model=list[TripResponse])
def list_available_trips(
    route_id: str,
    departure_date: date,
    db: Session = Depends(get_db),
):
    return [
        _trip_response(trip)
        for trip in TripService(db).find_available(route_id, departure_date)
    ]


@router.post("/trips/transitions/run", response_model=JobRunResponse)
def run_due_trip_transitions(db: Session = Depends(get_db)):
    return JobRunResponse(result=TripLifecycleScheduler(db).run_due())


@router.get("/trips/{trip_id}", response_model=TripDetailResponse)
def get_trip(trip_id: str, db: Session = Depends(get_db)):
    try:
        view = TripService(db).get_view(trip_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return TripDetailResponse(
        trip=_trip_response(view["trip"]),
        route=view["route"],
        vehicles=view["vehicles"],
    )


@router.patch("/trips/{trip_id}", response_model=TripCreateResponse)
def update_trip(trip_id: str, request: TripUpdate, db: Session = Depends(get_db)):
    try:
        result = TripService(db).update(trip_id, request.model_dump(exclude_unset=True))
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return TripCreateResponse(
        trip=_trip_response(result.trip),
        conflicts=_conflicts(result.conflicts),
    )


@router.patch("/trips/{trip_id}/status", response_model=TripResponse)
def change_trip_status(trip_id: str, request: TripStatusUpdate, db: Session = Depends(get_db)):
    try:
        trip = TripService(db).change_status(trip_id, request.status)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _trip_response(trip)


@router.patch("/trips/{trip_id}/seat-count", response_model=TripResponse)
def update_trip_seat_count(trip_id: str, db: Session = Depends(get_db)):
    try:
        trip = TripService(db).update_seat_count(trip_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _trip_response(trip)


@router.get("/trips/{trip_id}/price-preview", response_model=PricePreviewResponse)
def preview_trip_price(trip_id: str, db: Session = Depends(get_db)):
    try:
        preview = TripService(db).price_preview(trip_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return PricePreviewResponse(**preview)


@router.delete("/trips/{trip_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_trip(trip_id: str, db: Session = Depends(get_db)):
    try:
        TripService(db).remove(trip_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc


@router.post("/trips/{trip_id}/restore", response_model=TripResponse)
def restore_trip(trip_id: str, db: Session = Depends(get_db)):
    try:
        trip = TripService(db).restore(trip_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _trip_response(trip)


# ---- tickets ----

@router.post(
    "/tickets",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_ticket(request: TicketCreate, db: Session = Depends(get_db)):
    try:
        ticket = ReservationService(db).create(
            user_id=request.user_id,
            trip_id=request.trip_id,
            seat_id=request.seat_id,
            payment_method=request.payment_method,
        )
        db.flush()
    except BuslineError as exc:
        raise _http_error(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Seat was taken concurrently",
        ) from exc

    return _ticket_response(ticket)


@router.get("/tickets", response_model=list[TicketResponse])
def list_tickets(
    user_id: str | None = None,
    trip_id: str | None = None,
    ticket_status: TicketStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    tickets = ReservationService(db).list_tickets(
        user_id=user_id,
        trip_id=trip_id,
        status=ticket_status,
        limit=limit,
        offset=offset,
    )
    return [_ticket_response(ticket) for ticket in tickets]


@router.post("/tickets/expire", response_model=ExpirySweepResponse)
def expire_pending_tickets(db: Session = Depends(get_db)):
    ticket_ids = ReservationService(db).sweep_expired()
    return ExpirySweepResponse(expired=len(ticket_ids), ticket_ids=ticket_ids)


@router.get("/tickets/{ticket_id}", response_model=TicketDetailResponse)
def get_ticket(ticket_id: str, db: Session = Depends(get_db)):
    try:
        view = ReservationService(db).get_view(ticket_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return TicketDetailResponse(
        ticket=_ticket_response(view["ticket"]),
        seat=view["seat"],
        trip=view["trip"],
        route=view["route"],
    )


@router.patch("/tickets/{ticket_id}/status", response_model=TicketResponse)
def update_ticket_status(
    ticket_id: str,
    request: TicketStatusUpdate,
    db: Session = Depends(get_db),
):
    try:
        ticket = ReservationService(db).update_status(
            ticket_id,
            TicketStatus(request.status),
            reason=request.reason,
        )
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _ticket_response(ticket)


@router.post("/tickets/{ticket_id}/fail", response_model=TicketResponse)
def fail_ticket(ticket_id: str, request: TicketFailRequest, db: Session = Depends(get_db)):
    try:
        ticket = ReservationService(db).fail(ticket_id, reason=request.reason)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _ticket_response(ticket)


@router.post("/tickets/{ticket_id}/transfer", response_model=TicketTransferResponse)
def transfer_ticket(
    ticket_id: str,
    request: TicketTransferRequest,
    db: Session = Depends(get_db),
):
    try:
        old_ticket, new_ticket = ReservationService(db).transfer(
            ticket_id,
            new_trip_id=request.new_trip_id,
            new_seat_id=request.new_seat_id,
            reason=request.reason,
        )
    except BuslineError as exc:
        raise _http_error(exc) from exc

    return TicketTransferResponse(
        old_ticket=_ticket_response(old_ticket),
        new_ticket=_ticket_response(new_ticket),
        transfer_description=new_ticket.transfer_description,
    )


@router.get("/tickets/{ticket_id}/payment-status", response_model=PaymentStatusResponse)
def get_payment_status(ticket_id: str, db: Session = Depends(get_db)):
    try:
        return PaymentStatusResponse(**ReservationService(db).payment_status(ticket_id))
    except BuslineError as exc:
        raise _http_error(exc) from exc


# ---- payments ----

@router.post(
    "/tickets/{ticket_id}/payments/razorpay/order",
    response_model=PaymentOrderResponse,
)
def create_payment_order(ticket_id: str, db: Session = Depends(get_db)):
    try:
        order = PaymentService(db).create_order(ticket_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return PaymentOrderResponse(**order)


@router.post(
    "/tickets/{ticket_id}/payments/razorpay/verify",
    response_model=TicketResponse,
)
def verify_payment(
    ticket_id: str,
    request: RazorpayVerifyRequest,
    db: Session = Depends(get_db),
):
    try:
        ticket = PaymentService(db).verify(
            ticket_id,
            order_id=request.razorpay_order_id,
            payment_id=request.razorpay_payment_id,
            signature=request.razorpay_signature,
        )
        db.flush()
    except BuslineError as exc:
        raise _http_error(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Duplicate callback delivery detected for this payment.",
        ) from exc

    return _ticket_response(ticket)


@router.post(
    "/tickets/{ticket_id}/payments/razorpay/failure",
    response_model=TicketResponse,
)
def record_payment_failure(
    ticket_id: str,
    request: RazorpayFailureRequest,
    db: Session = Depends(get_db),
):
    try:
        ticket = PaymentService(db).record_failure(
            ticket_id,
            order_id=request.razorpay_order_id,
            payment_id=request.razorpay_payment_id,
            error_code=request.error_code,
            error_description=request.error_description,
        )
        db.flush()
    except BuslineError as exc:
        raise _http_error(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Duplicate callback delivery detected for this payment.",
        ) from exc

    return _ticket_response(ticket)


# ---- promotions ----

@router.post(
    "/promotions",
    response_model=PromotionResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_promotion(request: PromotionCreate, db: Session = Depends(get_db)):
    try:
        promotion = PromotionService(db).create(
            name=request.name,
            promotion_type=request.type,
            value=request.value,
            start_date=request.start_date,
            expiry_date=request.expiry_date,
            recurring_month=request.recurring_month,
            recurring_day=request.recurring_day,
            description=request.description,
        )
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


@router.get("/promotions", response_model=list[PromotionResponse])
def list_promotions(include_inactive: bool = True, db: Session = Depends(get_db)):
    promotions = PromotionService(db).list_promotions(include_inactive=include_inactive)
    return [_promotion_response(p) for p in promotions]


@router.get("/promotions/resolve", response_model=PromotionResponse)
def resolve_promotion(day: date, db: Session = Depends(get_db)):
    try:
        promotion = PromotionService(db).resolve(day)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


@router.get("/promotions/{promotion_id}", response_model=PromotionResponse)
def get_promotion(promotion_id: str, db: Session = Depends(get_db)):
    try:
        promotion = PromotionService(db).get(promotion_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


@router.patch("/promotions/{promotion_id}/value", response_model=PromotionResponse)
def update_promotion_value(
    promotion_id: str,
    request: PromotionValueUpdate,
    db: Session = Depends(get_db),
):
    try:
        promotion = PromotionService(db).update_value(
            promotion_id,
            request.value,
            description=request.description,
        )
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


@router.post("/promotions/{promotion_id}/disable", response_model=PromotionResponse)
def disable_promotion(promotion_id: str, db: Session = Depends(get_db)):
    try:
        promotion = PromotionService(db).disable(promotion_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


@router.post("/promotions/{promotion_id}/enable", response_model=PromotionResponse)
def enable_promotion(promotion_id: str, db: Session = Depends(get_db)):
    try:
        promotion = PromotionService(db).enable(promotion_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _promotion_response(promotion)


# ---- outbox ----

@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    event_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    events = OutboxRepository(db).list_events(status=event_status, limit=limit)
    return [_outbox_response(event) for event in events]


@router.post("/outbox/events/{event_id}/published", response_model=OutboxEventResponse)
def mark_outbox_event_published(event_id: str, db: Session = Depends(get_db)):
    try:
        event = OutboxPublisher(db).mark_published(event_id)
    except BuslineError as exc:
        raise _http_error(exc) from exc
    return _outbox_response(event)


@router.post("/outbox/publish", response_model=JobRunResponse)
def publish_outbox_events(db: Session = Depends(get_db)):
    return JobRunResponse(result=OutboxPublisher(db).publish_pending())
