from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date
import logging

from ..database import get_db
from ..exceptions import NotFoundError, PermissionDeniedError, ValidationError
from ..schemas.reservation import (
    ReservationCreate,
    ReservationResponse,
    PaymentResultRequest,
    PaymentOutcomeResponse,
    CashConfirmRequest,
    CancelRequest,
    OccupancyResponse,
    OccupiedSeatResponse,
)
from ..services.interval_store import get_occupancy, get_reservation
from ..services.payment_workflow import PaymentWorkflow, PaymentOutcome
from ..services.reservation_allocator import ReservationAllocator
from ..utils.dependencies import Actor, get_current_actor, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reservations", tags=["Reservations"])


def to_outcome_response(outcome: PaymentOutcome) -> PaymentOutcomeResponse:
    identity = outcome.identity
    return PaymentOutcomeResponse(
        reservation=ReservationResponse.model_validate(outcome.reservation),
        membership_id=identity.membership_id if identity else None,
        membership_id_issued=bool(identity and identity.newly_issued),
        seat_changed=outcome.seat_changed,
    )


@router.post("", status_code=201)
@router.post("/", response_model=ReservationResponse, status_code=201)
@limiter.limit(get_rate_limit("reservation_create"))
async def create_reservation(
    request: Request,
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Book a seat for a membership period"""
    user_id = payload.user_id or actor.user_id
    if user_id != actor.user_id and not actor.is_admin:
        raise PermissionDeniedError("Only admins can book for another member")

    reservation = ReservationAllocator(db).allocate(
        user_id=user_id,
        resource_type=payload.resource_type,
        time_slot=payload.time_slot,
        date_range=(payload.start_date, payload.end_date),
        duration_code=payload.duration_code,
        payment_method=payload.payment_method,
        amount=payload.amount,
        preferred_seat=payload.preferred_seat,
    )
    return ReservationResponse.model_validate(reservation)


@router.get("/occupancy")
@router.get("/occupancy/", response_model=OccupancyResponse)
@limiter.limit(get_rate_limit("occupancy"))
async def read_occupancy(
    request: Request,
    resource_type: str = Query(...),
    time_slot: str = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Seats held in a (tier, time slot) over a date range"""
    if start_date > end_date:
        raise ValidationError("start_date must be on or before end_date")

    occupied = get_occupancy(db, resource_type, time_slot, start_date, end_date)
    return OccupancyResponse(
        resource_type=resource_type,
        time_slot=time_slot,
        start_date=start_date,
        end_date=end_date,
        occupied=[OccupiedSeatResponse.model_validate(o) for o in occupied],
    )


@router.get("/{reservation_id}")
@router.get("/{reservation_id}/", response_model=ReservationResponse)
@limiter.limit(get_rate_limit("reservation_get"))
async def read_reservation(
    request: Request,
    reservation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    reservation = get_reservation(db, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    if reservation.user_id != actor.user_id and not actor.is_admin:
        raise PermissionDeniedError("You can only view your own reservations")
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/payment")
@router.post("/{reservation_id}/payment/", response_model=PaymentOutcomeResponse)
@limiter.limit(get_rate_limit("payment_callback"))
async def record_payment(
    request: Request,
    reservation_id: str,
    payload: PaymentResultRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Payment result relayed by the reservation's owner (or an admin)"""
    outcome = PaymentWorkflow(db).record_payment_result(
        reservation_id,
        success=payload.success,
        method=payload.method,
        payment_reference=payload.payment_reference,
        actor=actor,
    )
    return to_outcome_response(outcome)


@router.post("/{reservation_id}/confirm-cash")
@router.post("/{reservation_id}/confirm-cash/", response_model=PaymentOutcomeResponse)
@limiter.limit(get_rate_limit("admin"))
async def confirm_cash(
    request: Request,
    reservation_id: str,
    payload: Optional[CashConfirmRequest] = None,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin)
):
    """Admin confirms the cash for a held reservation was collected"""
    outcome = PaymentWorkflow(db).confirm_cash_collection(
        reservation_id,
        admin=admin,
        note=payload.note if payload else None,
    )
    return to_outcome_response(outcome)


@router.post("/{reservation_id}/cancel")
@router.post("/{reservation_id}/cancel/", response_model=ReservationResponse)
@limiter.limit(get_rate_limit("reservation_update"))
async def cancel_reservation(
    request: Request,
    reservation_id: str,
    payload: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    reservation = PaymentWorkflow(db).cancel(
        reservation_id,
        actor=actor,
        reason=payload.reason if payload else None,
    )
    return ReservationResponse.model_validate(reservation)
