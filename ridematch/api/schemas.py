"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ridematch.domain.entities import Booking, Driver


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_lng: Optional[float] = Field(None, ge=-180, le=180)
    required_capabilities: list[str] = []
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class CancelRequest(BaseModel):
    reason: str = Field("cancelled by customer", max_length=255)


class OfferResponseRequest(BaseModel):
    driver_id: str


class DriverCreateRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=64)
    capabilities: list[str] = []
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class GoOnlineRequest(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


# ── Responses ─────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    id: str
    customer_id: str
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    state: str
    assigned_driver_id: Optional[str] = None
    reason: Optional[str] = None
    attempts: int
    offers_made: int
    requested_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            customer_id=booking.customer_id,
            pickup_lat=booking.pickup.latitude,
            pickup_lng=booking.pickup.longitude,
            dropoff_lat=booking.dropoff.latitude if booking.dropoff else None,
            dropoff_lng=booking.dropoff.longitude if booking.dropoff else None,
            state=booking.state.value,
            assigned_driver_id=booking.assigned_driver_id,
            reason=booking.reason,
            attempts=booking.attempts,
            offers_made=booking.offers_made,
            requested_at=booking.requested_at,
            expires_at=booking.expires_at,
            closed_at=booking.closed_at,
        )


class DriverResponse(BaseModel):
    id: str
    status: str
    is_active: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_updated: Optional[datetime] = None
    capabilities: list[str] = []
    current_booking_id: Optional[str] = None

    @classmethod
    def from_driver(cls, driver: Driver) -> "DriverResponse":
        return cls(
            id=driver.id,
            status=driver.status.value,
            is_active=driver.is_active,
            latitude=driver.location.latitude if driver.location else None,
            longitude=driver.location.longitude if driver.location else None,
            last_updated=driver.last_updated,
            capabilities=sorted(driver.capabilities),
            current_booking_id=driver.current_booking_id,
        )


class NearbyDriverResponse(BaseModel):
    driver_id: str
    distance_km: float


class NearbyDriversResponse(BaseModel):
    latitude: float
    longitude: float
    radius_km: float
    count: int
    drivers: list[NearbyDriverResponse]


class BookingListResponse(BaseModel):
    customer_id: str
    count: int
    bookings: list[BookingResponse]


class HealthResponse(BaseModel):
    status: str = "ok"
    workers_running: bool = False
    queued_bookings: int = 0
    open_offers: int = 0
    indexed_drivers: int = 0


class ErrorResponse(BaseModel):
    detail: str
