"""Domain enumerations and state-transition rules."""

import enum


class DriverStatus(str, enum.Enum):
    OFFLINE = "OFFLINE"
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    ON_TRIP = "ON_TRIP"


# Driver state machine: owned by DriverRegistry
DRIVER_TRANSITIONS: dict[DriverStatus, set[DriverStatus]] = {
    DriverStatus.OFFLINE: {DriverStatus.AVAILABLE},
    DriverStatus.AVAILABLE: {DriverStatus.RESERVED, DriverStatus.OFFLINE},
    DriverStatus.RESERVED: {DriverStatus.AVAILABLE, DriverStatus.ON_TRIP},
    DriverStatus.ON_TRIP: {DriverStatus.AVAILABLE, DriverStatus.OFFLINE},
}


class BookingState(str, enum.Enum):
    PENDING = "PENDING"
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    UNMATCHED = "UNMATCHED"


# Booking state machine: maps current state -> set of valid next states.
# EXPIRED is listed with its offer-lapsed exits; a booking whose own TTL
# lapsed is closed and accepts nothing.
BOOKING_TRANSITIONS: dict[BookingState, set[BookingState]] = {
    BookingState.PENDING: {
        BookingState.OFFERED,
        BookingState.UNMATCHED,
        BookingState.EXPIRED,
        BookingState.CANCELLED,
    },
    BookingState.OFFERED: {
        BookingState.ACCEPTED,
        BookingState.REJECTED,
        BookingState.EXPIRED,
        BookingState.CANCELLED,
    },
    BookingState.ACCEPTED: {BookingState.CONFIRMED, BookingState.CANCELLED},
    BookingState.REJECTED: {
        BookingState.PENDING,
        BookingState.OFFERED,
        BookingState.UNMATCHED,
        BookingState.EXPIRED,
        BookingState.CANCELLED,
    },
    BookingState.EXPIRED: {
        BookingState.PENDING,
        BookingState.OFFERED,
        BookingState.UNMATCHED,
        BookingState.CANCELLED,
    },
    BookingState.CONFIRMED: set(),
    BookingState.CANCELLED: set(),
    BookingState.UNMATCHED: set(),
}

# States that always close a booking
TERMINAL_STATES = frozenset(
    {BookingState.CONFIRMED, BookingState.CANCELLED, BookingState.UNMATCHED}
)

# assigned_driver_id is set iff the booking is in one of these
DRIVER_BOUND_STATES = frozenset(
    {BookingState.OFFERED, BookingState.ACCEPTED, BookingState.CONFIRMED}
)

# States a recovering dispatcher puts back on the queue
OPEN_STATES = frozenset(
    {
        BookingState.PENDING,
        BookingState.OFFERED,
        BookingState.REJECTED,
        BookingState.EXPIRED,
    }
)


class ResolutionOutcome(str, enum.Enum):
    """Outcome reported to the notification sink when an offer resolves."""

    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    CANCELLED = "CANCELLED"
    UNMATCHED = "UNMATCHED"
    EXPIRED = "EXPIRED"


class MatchOutcome(str, enum.Enum):
    """What one ``run_match_cycle`` did with the booking it dequeued."""

    OFFERED = "OFFERED"
    REQUEUED = "REQUEUED"
    UNMATCHED = "UNMATCHED"
    EXPIRED = "EXPIRED"
    SKIPPED = "SKIPPED"
