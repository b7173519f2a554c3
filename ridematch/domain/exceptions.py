"""Exceptions raised by the matching core."""

from __future__ import annotations


class MatchingError(Exception):
    """Base class for all matching-core errors."""


class InvalidTransition(MatchingError):
    """Raised when a booking state change violates the state machine.

    The offending operation has no side effect.
    """


class NoDriversAvailable(MatchingError):
    """Raised when a booking exhausted every candidate driver."""

    def __init__(self, booking_id: str, reason: str):
        super().__init__(f"No drivers available for booking {booking_id}: {reason}")
        self.booking_id = booking_id
        self.reason = reason


class ReservationConflict(MatchingError):
    """Raised when a driver's hold was lost before an offer could resolve."""


class StoreUnavailable(MatchingError):
    """Raised by Store adapters when the backing storage cannot be reached."""


class BookingNotFound(MatchingError):
    """Raised when a booking id is unknown to the engine and the store."""


class DriverNotFound(MatchingError):
    """Raised when a driver id is unknown to the registry."""
