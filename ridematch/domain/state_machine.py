"""
Assignment State Machine  (State Pattern)
=========================================

    PENDING -> OFFERED -> ACCEPTED -> CONFIRMED
    OFFERED -> REJECTED | EXPIRED
    REJECTED | EXPIRED -> PENDING (re-queued) | OFFERED (next candidate)
                          | UNMATCHED

CANCELLED is reachable from any open state.  CONFIRMED, CANCELLED and
UNMATCHED close the booking; EXPIRED closes it only when the booking's own
TTL lapsed (``close=True``), otherwise it records a lapsed offer.

Every transition is validated first and applied second, so a rejected
request leaves the booking untouched.  ``guard(booking_id)`` serialises all
work on one booking across worker tasks.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .entities import Booking
from .enums import (
    BOOKING_TRANSITIONS,
    DRIVER_BOUND_STATES,
    TERMINAL_STATES,
    BookingState,
)
from .exceptions import InvalidTransition
from .ports import Clock

logger = logging.getLogger(__name__)


class AssignmentStateMachine:
    def __init__(self, clock: Clock):
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    # ── Serialisation ─────────────────────────────────────────────────

    @asynccontextmanager
    async def guard(self, booking_id: str) -> AsyncIterator[None]:
        """Hold the per-booking lock for the duration of the block."""
        lock = self._locks.get(booking_id)
        if lock is None:
            lock = self._locks[booking_id] = asyncio.Lock()
        self._waiters[booking_id] = self._waiters.get(booking_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[booking_id] - 1
            if remaining:
                self._waiters[booking_id] = remaining
            else:
                # nobody else queued on this booking; drop the lock
                del self._waiters[booking_id]
                del self._locks[booking_id]

    # ── Transitions ───────────────────────────────────────────────────

    def can_transition(
        self, booking: Booking, new_state: BookingState, close: bool = False
    ) -> bool:
        if booking.is_closed:
            return False
        if (
            close
            and new_state is BookingState.EXPIRED
            and booking.state is BookingState.EXPIRED
        ):
            return True  # a lapsed offer whose booking lapsed too
        return new_state in BOOKING_TRANSITIONS.get(booking.state, set())

    def transition(
        self,
        booking: Booking,
        new_state: BookingState,
        *,
        driver_id: Optional[str] = None,
        reason: Optional[str] = None,
        close: bool = False,
    ) -> Booking:
        """Move *booking* to *new_state* if legal, else raise.

        ``driver_id`` is required when entering OFFERED.  ``close`` marks an
        EXPIRED transition as final.
        """
        if not self.can_transition(booking, new_state, close):
            raise InvalidTransition(
                f"Cannot transition booking {booking.id} "
                f"from {booking.state.value} to {new_state.value}"
                + (" (closed)" if booking.is_closed else "")
            )
        if new_state is BookingState.OFFERED and driver_id is None:
            raise InvalidTransition(
                f"Booking {booking.id} cannot be OFFERED without a driver"
            )
        if close and new_state is not BookingState.EXPIRED:
            raise InvalidTransition("Only EXPIRED can be closed explicitly")

        previous = booking.state
        booking.state = new_state
        if new_state is BookingState.OFFERED:
            booking.assigned_driver_id = driver_id
        elif new_state not in DRIVER_BOUND_STATES:
            booking.assigned_driver_id = None
        if reason is not None:
            booking.reason = reason
        if new_state in TERMINAL_STATES or close:
            booking.closed_at = self.clock.now()

        logger.debug(
            "Booking %s: %s -> %s", booking.id, previous.value, new_state.value
        )
        return booking
