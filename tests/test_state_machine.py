"""Unit tests for booking state transitions (State Pattern)."""

import asyncio

import pytest

from ridematch.domain.enums import BookingState
from ridematch.domain.exceptions import InvalidTransition
from ridematch.domain.state_machine import AssignmentStateMachine
from tests.conftest import make_booking


@pytest.fixture
def machine(clock):
    return AssignmentStateMachine(clock)


@pytest.fixture
def booking(clock):
    return make_booking(clock, "b1")


class TestBookingStateMachine:
    def test_initial_state_is_pending(self, booking):
        assert booking.state is BookingState.PENDING
        assert not booking.is_closed

    # ── Valid transitions ─────────────────────────────────────────

    def test_pending_to_offered_binds_driver(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        assert booking.state is BookingState.OFFERED
        assert booking.assigned_driver_id == "d1"

    def test_offered_to_confirmed_via_accepted(self, machine, booking, clock):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.ACCEPTED)
        machine.transition(booking, BookingState.CONFIRMED)
        assert booking.state is BookingState.CONFIRMED
        assert booking.assigned_driver_id == "d1"
        assert booking.closed_at == clock.now()

    def test_rejected_clears_driver(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.REJECTED, reason="declined")
        assert booking.assigned_driver_id is None
        assert booking.reason == "declined"
        assert not booking.is_closed

    def test_lapsed_offer_goes_straight_to_next_driver(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.EXPIRED)
        machine.transition(booking, BookingState.OFFERED, driver_id="d2")
        assert booking.assigned_driver_id == "d2"

    def test_expired_back_to_pending(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.EXPIRED)
        machine.transition(booking, BookingState.PENDING)
        assert booking.state is BookingState.PENDING

    def test_closing_expiry_is_final(self, machine, booking):
        machine.transition(booking, BookingState.EXPIRED, close=True)
        assert booking.is_closed
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.PENDING)

    def test_lapsed_offer_can_be_closed(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.EXPIRED)
        machine.transition(booking, BookingState.EXPIRED, close=True)
        assert booking.is_closed

    def test_cancel_from_every_open_state(self, machine, clock):
        for state in (
            BookingState.PENDING,
            BookingState.OFFERED,
            BookingState.REJECTED,
            BookingState.EXPIRED,
        ):
            booking = make_booking(clock, f"b-{state.value}")
            booking.state = state
            machine.transition(booking, BookingState.CANCELLED)
            assert booking.is_closed

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_confirmed_fails(self, machine, booking):
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.CONFIRMED)
        assert booking.state is BookingState.PENDING

    def test_offered_without_driver_fails(self, machine, booking):
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.OFFERED)

    def test_confirmed_to_anything_fails(self, machine, booking):
        machine.transition(booking, BookingState.OFFERED, driver_id="d1")
        machine.transition(booking, BookingState.ACCEPTED)
        machine.transition(booking, BookingState.CONFIRMED)
        for state in BookingState:
            assert not machine.can_transition(booking, state)
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.CANCELLED)

    def test_cancelled_to_anything_fails(self, machine, booking):
        machine.transition(booking, BookingState.CANCELLED)
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.PENDING)

    def test_unmatched_is_terminal(self, machine, booking):
        machine.transition(booking, BookingState.UNMATCHED, reason="no drivers")
        assert booking.is_closed
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.OFFERED, driver_id="d1")

    def test_close_only_applies_to_expired(self, machine, booking):
        with pytest.raises(InvalidTransition):
            machine.transition(booking, BookingState.UNMATCHED, close=True)


class TestGuard:
    async def test_guard_serialises_same_booking(self, machine):
        order = []

        async def work(tag):
            async with machine.guard("b1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0)
                order.append(f"{tag}-out")

        await asyncio.gather(work("a"), work("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_guard_does_not_block_other_bookings(self, machine):
        async with machine.guard("b1"):
            await asyncio.wait_for(self._enter(machine, "b2"), timeout=1)

    async def test_locks_are_dropped_when_idle(self, machine):
        async with machine.guard("b1"):
            pass
        assert machine._locks == {}

    @staticmethod
    async def _enter(machine, booking_id):
        async with machine.guard(booking_id):
            return True
