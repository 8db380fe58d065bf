"""
Booking API Routes
Thin HTTP edge over the booking core.

This module provides endpoints for:
- Hold management (reserve, release, renew)
- Commit and appointment lifecycle
- Open slot lookup
- Instant match and instant connect

Business outcomes come back from the core as result variants and are
mapped to status codes here; the core itself never raises for them.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from careslot.exceptions import InvalidReservationError
from careslot.models.booking import BookingOutcome, ConsultationType, OpenSlot, RoutingRequest
from careslot.services.booking_core import BookingCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/booking", tags=["booking"])

# Status for outcomes that are not a success of the called operation
REJECTION_STATUS = {
    BookingOutcome.CONFLICT: status.HTTP_409_CONFLICT,
    BookingOutcome.ALREADY_COMMITTED: status.HTTP_409_CONFLICT,
    BookingOutcome.RELEASED: status.HTTP_409_CONFLICT,
    BookingOutcome.LIMIT_REACHED: status.HTTP_409_CONFLICT,
    BookingOutcome.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    BookingOutcome.EXPIRED: status.HTTP_410_GONE,
    BookingOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    BookingOutcome.NONE_AVAILABLE: status.HTTP_404_NOT_FOUND,
    BookingOutcome.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    BookingOutcome.TRANSIENT_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ============================================================================
# Request models
# ============================================================================

class ReserveRequest(BaseModel):
    specialist_id: str
    patient_id: str
    start_time: datetime
    duration_minutes: int
    consultation_type: str = ConsultationType.VIDEO.value
    client_hold_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReleaseRequest(BaseModel):
    requester_id: str


class RenewRequest(BaseModel):
    requester_id: Optional[str] = None


class CommitRequest(BaseModel):
    fee: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


# ============================================================================
# Helpers
# ============================================================================

def get_booking_core(request: Request) -> BookingCore:
    """Booking core built in the application lifespan."""
    core = getattr(request.app.state, "booking_core", None)
    if core is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Booking core not initialized"
        )
    return core


def respond(result, success: Dict[BookingOutcome, int]) -> JSONResponse:
    """Return the result with its success status, or raise with the rejection status."""
    body = jsonable_encoder(result)
    if result.outcome in success:
        return JSONResponse(status_code=success[result.outcome], content=body)
    raise HTTPException(
        status_code=REJECTION_STATUS.get(result.outcome, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=body
    )


def invalid_request(e: InvalidReservationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"error": e.reason, "message": e.message}
    )


# ============================================================================
# Hold Management Endpoints
# ============================================================================

@router.post("/holds", status_code=status.HTTP_201_CREATED)
async def reserve_hold(body: ReserveRequest, core: BookingCore = Depends(get_booking_core)):
    """
    Reserve an interval on a specialist's timeline.

    Use client_hold_id for idempotency - a retry with the same key returns
    the existing hold (200) instead of creating a second one.

    ## Errors
    - **409 Conflict**: Interval overlaps an existing hold or appointment
    - **422 Unprocessable Entity**: Invalid request (past start, unknown specialist, ...)
    - **503 Service Unavailable**: Transient storage failure, safe to retry
    """
    try:
        result = await core.hold_manager.reserve(
            specialist_id=body.specialist_id,
            patient_id=body.patient_id,
            start_time=body.start_time,
            duration_minutes=body.duration_minutes,
            consultation_type=body.consultation_type,
            client_hold_id=body.client_hold_id,
            metadata=body.metadata,
        )
    except InvalidReservationError as e:
        logger.info(f"Reserve rejected: {e.reason} ({e.message})")
        raise invalid_request(e)

    code = status.HTTP_201_CREATED if result.is_new else status.HTTP_200_OK
    return respond(result, {BookingOutcome.RESERVED: code})


@router.post("/holds/{hold_id}/release")
async def release_hold(hold_id: str, body: ReleaseRequest, core: BookingCore = Depends(get_booking_core)):
    """
    Release a hold. Idempotent: releasing a closed hold reports its state with 200.
    """
    result = await core.hold_manager.release(hold_id, body.requester_id)
    return respond(result, {
        BookingOutcome.RELEASED: status.HTTP_200_OK,
        BookingOutcome.EXPIRED: status.HTTP_200_OK,
        BookingOutcome.ALREADY_COMMITTED: status.HTTP_200_OK,
    })


@router.post("/holds/{hold_id}/renew")
async def renew_hold(
    hold_id: str,
    body: Optional[RenewRequest] = None,
    core: BookingCore = Depends(get_booking_core)
):
    """
    Extend a hold by one TTL, up to the maximum hold lifetime.

    ## Errors
    - **409 Conflict**: Lifetime cap reached, or hold already closed
    - **410 Gone**: Hold expired
    """
    requester_id = body.requester_id if body else None
    result = await core.hold_manager.renew(hold_id, requester_id)
    return respond(result, {BookingOutcome.RENEWED: status.HTTP_200_OK})


@router.post("/holds/{hold_id}/commit", status_code=status.HTTP_201_CREATED)
async def commit_hold(
    hold_id: str,
    body: Optional[CommitRequest] = None,
    core: BookingCore = Depends(get_booking_core)
):
    """
    Convert a hold into a pending appointment.

    ## Errors
    - **404 Not Found**: Hold not found
    - **409 Conflict**: Hold already committed or released
    - **410 Gone**: Hold expired; reserve again
    - **503 Service Unavailable**: Transient storage failure, safe to retry
    """
    body = body or CommitRequest()
    result = await core.finalizer.commit(hold_id, fee=body.fee, currency=body.currency, metadata=body.metadata)
    return respond(result, {BookingOutcome.COMMITTED: status.HTTP_201_CREATED})


# ============================================================================
# Appointment Lifecycle Endpoints
# ============================================================================

@router.post("/appointments/{appointment_id}/confirm")
async def confirm_appointment(appointment_id: str, core: BookingCore = Depends(get_booking_core)):
    result = await core.finalizer.confirm(appointment_id)
    return respond(result, {BookingOutcome.UPDATED: status.HTTP_200_OK})


@router.post("/appointments/{appointment_id}/complete")
async def complete_appointment(appointment_id: str, core: BookingCore = Depends(get_booking_core)):
    result = await core.finalizer.complete(appointment_id)
    return respond(result, {BookingOutcome.UPDATED: status.HTTP_200_OK})


@router.post("/appointments/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: str,
    body: Optional[CancelRequest] = None,
    core: BookingCore = Depends(get_booking_core)
):
    """Cancel an appointment; its interval becomes bookable again."""
    result = await core.finalizer.cancel(appointment_id, reason=body.reason if body else None)
    return respond(result, {BookingOutcome.UPDATED: status.HTTP_200_OK})


# ============================================================================
# Availability Endpoints
# ============================================================================

@router.get("/specialists/{specialist_id}/open-slots", response_model=List[OpenSlot])
async def open_slots(
    specialist_id: str,
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int = Query(30, gt=0),
    step_minutes: int = Query(15, gt=0),
    core: BookingCore = Depends(get_booking_core)
):
    """
    Bookable slots for a specialist inside a window.

    ## Example
    ```
    GET /api/booking/specialists/spec-1/open-slots?window_start=2026-03-02T09:00:00Z&window_end=2026-03-02T12:00:00Z&duration_minutes=30
    ```
    """
    try:
        return await core.availability.open_slots(
            specialist_id, window_start, window_end, duration_minutes, step_minutes
        )
    except InvalidReservationError as e:
        raise invalid_request(e)


# ============================================================================
# Instant Consultation Endpoints
# ============================================================================

@router.post("/instant/match")
async def instant_match(body: RoutingRequest, core: BookingCore = Depends(get_booking_core)):
    """
    Select an online specialist and hold their next open slot.

    ## Errors
    - **404 Not Found**: No specialists available right now
    - **503 Service Unavailable**: Transient failure, safe to retry
    """
    result = await core.match_engine.find_match(body)
    return respond(result, {BookingOutcome.MATCHED: status.HTTP_200_OK})


@router.post("/instant/connect", status_code=status.HTTP_201_CREATED)
async def instant_connect(body: RoutingRequest, core: BookingCore = Depends(get_booking_core)):
    """
    Match, commit and request a video session in one call.
    """
    result = await core.instant_connect.connect(body)
    return respond(result, {BookingOutcome.COMMITTED: status.HTTP_201_CREATED})
