"""
Booking endpoints
=================

POST /api/v1/bookings                   -- submit a booking (202 Accepted)
GET  /api/v1/bookings?customer_id=      -- a customer's bookings, newest first
GET  /api/v1/bookings/{booking_id}      -- state, assigned driver, reason
POST /api/v1/bookings/{booking_id}/cancel -- customer cancellation
POST /api/v1/bookings/{booking_id}/accept -- driver accepts its offer
POST /api/v1/bookings/{booking_id}/reject -- driver declines its offer
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ridematch.api.dependencies import get_engine, require_dispatcher
from ridematch.api.schemas import (
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    CancelRequest,
    OfferResponseRequest,
)
from ridematch.domain.entities import Location
from ridematch.domain.exceptions import (
    BookingNotFound,
    InvalidTransition,
    ReservationConflict,
    StoreUnavailable,
)
from ridematch.matching.engine import MatchEngine

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post(
    "",
    status_code=202,
    response_model=BookingResponse,
    summary="Submit a booking",
    responses={202: {"description": "Booking queued; matching is async."}},
    dependencies=[Depends(require_dispatcher)],
)
async def create_booking(
    body: BookingCreateRequest,
    engine: MatchEngine = Depends(get_engine),
):
    if (body.dropoff_lat is None) != (body.dropoff_lng is None):
        raise HTTPException(
            status_code=422,
            detail="dropoff_lat and dropoff_lng must be given together",
        )
    dropoff = (
        Location(body.dropoff_lat, body.dropoff_lng)
        if body.dropoff_lat is not None
        else None
    )
    booking = await engine.submit_booking(
        body.customer_id,
        Location(body.pickup_lat, body.pickup_lng),
        dropoff=dropoff,
        required_capabilities=body.required_capabilities,
        idempotency_key=body.idempotency_key,
    )
    return BookingResponse.from_booking(booking)


@router.get(
    "",
    response_model=BookingListResponse,
    summary="List a customer's bookings",
)
async def list_bookings(
    customer_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=200),
    engine: MatchEngine = Depends(get_engine),
):
    try:
        bookings = await engine.list_bookings(customer_id, limit)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Booking store unavailable")
    return BookingListResponse(
        customer_id=customer_id,
        count=len(bookings),
        bookings=[BookingResponse.from_booking(b) for b in bookings],
    )


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get booking state",
)
async def get_booking(booking_id: str, engine: MatchEngine = Depends(get_engine)):
    try:
        booking = await engine.get_booking(booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Booking store unavailable")
    return BookingResponse.from_booking(booking)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking",
    description=(
        "Cancels a booking that has not reached a terminal state. "
        "A driver holding an offer for it is released."
    ),
    dependencies=[Depends(require_dispatcher)],
)
async def cancel_booking(
    booking_id: str,
    body: CancelRequest | None = None,
    engine: MatchEngine = Depends(get_engine),
):
    reason = body.reason if body else "cancelled by customer"
    try:
        booking = await engine.cancel_booking(booking_id, reason)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return BookingResponse.from_booking(booking)


@router.post(
    "/{booking_id}/accept",
    response_model=BookingResponse,
    summary="Driver accepts an offer",
    responses={409: {"description": "No open offer, or the offer lapsed."}},
    dependencies=[Depends(require_dispatcher)],
)
async def accept_offer(
    booking_id: str,
    body: OfferResponseRequest,
    engine: MatchEngine = Depends(get_engine),
):
    try:
        booking = await engine.accept_offer(booking_id, body.driver_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except (InvalidTransition, ReservationConflict) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return BookingResponse.from_booking(booking)


@router.post(
    "/{booking_id}/reject",
    response_model=BookingResponse,
    summary="Driver rejects an offer",
    dependencies=[Depends(require_dispatcher)],
)
async def reject_offer(
    booking_id: str,
    body: OfferResponseRequest,
    engine: MatchEngine = Depends(get_engine),
):
    try:
        booking = await engine.reject_offer(booking_id, body.driver_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return BookingResponse.from_booking(booking)
