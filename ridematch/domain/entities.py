"""
Domain entities.

Patterns used
-------------
- ``Driver`` and ``Booking`` are plain mutable records.  They are only ever
  mutated by their owners: ``DriverRegistry`` for drivers,
  ``AssignmentStateMachine`` (driven by ``MatchEngine``) for bookings.
  Everything handed out to callers is a ``snapshot()`` copy.
- ``Reservation`` is an immutable value object for one outstanding offer.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .distance import haversine_km
from .enums import BookingState, DriverStatus


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def distance_km(self, other: Location) -> float:
        return haversine_km(
            self.latitude, self.longitude, other.latitude, other.longitude
        )


@dataclass(frozen=True)
class Reservation:
    """Exclusive hold on a driver for the duration of one offer."""

    booking_id: str
    driver_id: str
    offered_at: datetime
    deadline: datetime


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Driver:
    id: str
    location: Optional[Location] = None
    status: DriverStatus = DriverStatus.OFFLINE
    last_updated: Optional[datetime] = None
    capabilities: frozenset[str] = field(default_factory=frozenset)
    is_active: bool = True
    current_booking_id: Optional[str] = None
    reserved_until: Optional[datetime] = None
    unpersisted: bool = False

    def has_capabilities(self, required: frozenset[str]) -> bool:
        return required <= self.capabilities

    def is_stale(self, now: datetime, max_age_seconds: float) -> bool:
        if self.last_updated is None:
            return True
        return (now - self.last_updated).total_seconds() > max_age_seconds

    def snapshot(self) -> Driver:
        return copy.copy(self)


@dataclass
class Booking:
    id: str
    customer_id: str
    pickup: Location
    requested_at: datetime
    expires_at: datetime
    dropoff: Optional[Location] = None
    state: BookingState = BookingState.PENDING
    assigned_driver_id: Optional[str] = None
    attempts: int = 0
    offers_made: int = 0
    required_capabilities: frozenset[str] = field(default_factory=frozenset)
    declined_driver_ids: set[str] = field(default_factory=set)
    idempotency_key: Optional[str] = None
    reason: Optional[str] = None
    cancel_requested: bool = False
    closed_at: Optional[datetime] = None
    unpersisted: bool = False

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at

    def snapshot(self) -> Booking:
        clone = copy.copy(self)
        clone.declined_driver_ids = set(self.declined_driver_ids)
        return clone
