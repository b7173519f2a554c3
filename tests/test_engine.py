"""
Match engine tests.

Each scenario runs on a ``ManualClock``: offer deadlines and re-queue
backoffs only fire when the test advances time, and ``engine.settle()``
waits for the background work (timeouts, notifications) they trigger.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ridematch.domain.entities import Booking, Driver, Location
from ridematch.domain.enums import (
    BookingState,
    DriverStatus,
    MatchOutcome,
    ResolutionOutcome,
)
from ridematch.domain.exceptions import (
    BookingNotFound,
    InvalidTransition,
    ReservationConflict,
)
from ridematch.infrastructure.memory_store import InMemoryStore
from ridematch.runtime import build_runtime
from tests.conftest import make_settings, put_online


class _SlowOfferStore(InMemoryStore):
    """Holds the OFFERED write open until the test lets it finish."""

    def __init__(self):
        super().__init__()
        self.offer_write_started = asyncio.Event()
        self.finish_offer_write = asyncio.Event()

    async def save_booking(self, booking):
        if booking.state is BookingState.OFFERED:
            self.offer_write_started.set()
            await self.finish_offer_write.wait()
        await super().save_booking(booking)


async def _advance(runtime, seconds):
    await runtime.clock.advance(seconds)
    await runtime.engine.settle()


def _outcomes(notifier):
    return [c.args[1] for c in notifier.notify_resolution.await_args_list]


class TestOfferAndAccept:
    async def test_nearest_driver_gets_the_offer(self, runtime, engine, notifier):
        await put_online(runtime, "d1", 0.0, 0.0)
        booking = await engine.submit_booking("c1", Location(0.0, 0.05))
        assert booking.state is BookingState.PENDING

        result = await engine.run_match_cycle()
        assert result.outcome is MatchOutcome.OFFERED
        assert result.driver_id == "d1"
        assert result.booking.state is BookingState.OFFERED
        assert runtime.registry.get("d1").status is DriverStatus.RESERVED

        await engine.settle()
        reservation = engine.reservation_for(booking.id)
        notifier.notify_offer.assert_awaited_once_with(
            "d1", booking.id, reservation.deadline
        )
        assert reservation.deadline == runtime.clock.now() + timedelta(seconds=15)

    async def test_accept_confirms_booking_and_driver(self, runtime, engine, notifier):
        await put_online(runtime, "d1", 0.0, 0.0)
        booking = await engine.submit_booking("c1", Location(0.0, 0.05))
        await engine.run_match_cycle()

        confirmed = await engine.accept_offer(booking.id, "d1")
        assert confirmed.state is BookingState.CONFIRMED
        assert confirmed.assigned_driver_id == "d1"
        assert confirmed.is_closed
        assert runtime.registry.get("d1").status is DriverStatus.ON_TRIP
        assert engine.reservation_for(booking.id) is None

        stored = await runtime.store.load_booking(booking.id)
        assert stored.state is BookingState.CONFIRMED
        await engine.settle()
        assert _outcomes(notifier) == [ResolutionOutcome.CONFIRMED]

    async def test_prefers_closer_driver(self, runtime, engine):
        await put_online(runtime, "far", 0.0, 0.08)
        await put_online(runtime, "near", 0.0, 0.01)
        await engine.submit_booking("c1", Location(0.0, 0.0))
        result = await engine.run_match_cycle()
        assert result.driver_id == "near"

    async def test_required_capabilities_filter_candidates(self, runtime, engine):
        await put_online(runtime, "plain", 0.0, 0.01)
        await put_online(runtime, "ramp", 0.0, 0.05, capabilities=("wheelchair",))
        await engine.submit_booking(
            "c1", Location(0.0, 0.0), required_capabilities=("wheelchair",)
        )
        result = await engine.run_match_cycle()
        assert result.driver_id == "ramp"

    async def test_search_radius_doubles_up_to_cap(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.3)  # ~33 km
        await engine.submit_booking("c1", Location(0.0, 0.0))
        result = await engine.run_match_cycle()
        assert result.driver_id == "d1"

    async def test_stale_driver_is_skipped(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        await runtime.clock.advance(121)
        await engine.submit_booking("c1", Location(0.0, 0.0))
        result = await engine.run_match_cycle()
        assert result.outcome is MatchOutcome.REQUEUED
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE

    async def test_idempotency_key_returns_existing_booking(self, engine):
        first = await engine.submit_booking(
            "c1", Location(0.0, 0.0), idempotency_key="k-1"
        )
        second = await engine.submit_booking(
            "c1", Location(0.0, 0.0), idempotency_key="k-1"
        )
        assert first.id == second.id
        assert len(engine.queue) == 1


class TestRejectAndTimeout:
    async def test_timeout_moves_to_next_candidate(self, runtime, engine, notifier):
        await put_online(runtime, "d1", 0.0, 0.01)
        await put_online(runtime, "d2", 0.0, 0.02)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()

        await _advance(runtime, 15)

        current = await engine.get_booking(booking.id)
        assert current.state is BookingState.OFFERED
        assert current.assigned_driver_id == "d2"
        assert current.offers_made == 2
        assert "d1" in current.declined_driver_ids
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE
        assert runtime.registry.get("d2").status is DriverStatus.RESERVED
        assert ResolutionOutcome.OFFER_EXPIRED in _outcomes(notifier)

    async def test_reject_moves_to_next_candidate(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        await put_online(runtime, "d2", 0.0, 0.02)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()

        after = await engine.reject_offer(booking.id, "d1")
        assert after.state is BookingState.OFFERED
        assert after.assigned_driver_id == "d2"
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE

    async def test_declining_driver_is_not_offered_again(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()

        after = await engine.reject_offer(booking.id, "d1")
        assert after.state is BookingState.PENDING
        assert after.attempts == 1
        assert booking.id in engine.queue

    async def test_exhausted_retries_end_unmatched(self, runtime, engine, notifier):
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        for attempt in range(3):
            result = await engine.run_match_cycle()
            assert result.outcome is MatchOutcome.REQUEUED
            await _advance(runtime, 2 * 2**attempt)

        result = await engine.run_match_cycle()
        assert result.outcome is MatchOutcome.UNMATCHED
        final = await engine.get_booking(booking.id)
        assert final.state is BookingState.UNMATCHED
        assert final.is_closed
        assert "no available drivers" in final.reason
        await engine.settle()
        assert _outcomes(notifier) == [ResolutionOutcome.UNMATCHED]

    async def test_wrong_driver_cannot_respond(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        with pytest.raises(InvalidTransition):
            await engine.accept_offer(booking.id, "d2")
        with pytest.raises(InvalidTransition):
            await engine.reject_offer(booking.id, "d2")

    async def test_accept_after_timeout_is_refused(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        await _advance(runtime, 15)
        with pytest.raises(InvalidTransition):
            await engine.accept_offer(booking.id, "d1")
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE

    async def test_accept_with_lost_hold_reports_conflict(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        # hold swept away underneath the offer
        await runtime.registry.release("d1", booking.id)

        with pytest.raises(ReservationConflict):
            await engine.accept_offer(booking.id, "d1")
        current = await engine.get_booking(booking.id)
        assert current.state is BookingState.OFFERED
        assert current.offers_made == 2
        assert runtime.registry.get("d1").status is DriverStatus.RESERVED

    async def test_unknown_booking(self, engine):
        with pytest.raises(BookingNotFound):
            await engine.get_booking("missing")
        with pytest.raises(BookingNotFound):
            await engine.accept_offer("missing", "d1")


class TestUnmatchedWithoutRetries:
    @pytest.fixture
    def settings_overrides(self):
        return {"max_requeues": 0}

    async def test_single_offer_timeout_then_unmatched(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        await _advance(runtime, 15)

        final = await engine.get_booking(booking.id)
        assert final.state is BookingState.UNMATCHED
        assert final.assigned_driver_id is None
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE


class TestContention:
    async def test_two_bookings_one_driver(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.0)
        await engine.submit_booking("c1", Location(0.0, 0.01))
        await engine.submit_booking("c2", Location(0.0, 0.01))
        first = await runtime.queue.dequeue()
        second = await runtime.queue.dequeue()

        results = await asyncio.gather(engine.match(first), engine.match(second))

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == [MatchOutcome.OFFERED.value, MatchOutcome.REQUEUED.value]
        offered = [r for r in results if r.outcome is MatchOutcome.OFFERED]
        assert runtime.registry.get("d1").current_booking_id == offered[0].booking.id

    async def test_many_bookings_never_share_a_driver(self, runtime, engine):
        for i in range(3):
            await put_online(runtime, f"d{i}", 0.0, 0.001 * i)
        for i in range(6):
            await engine.submit_booking(f"c{i}", Location(0.0, 0.0))
        bookings = [await runtime.queue.dequeue() for _ in range(6)]

        results = await asyncio.gather(*(engine.match(b) for b in bookings))

        drivers = [r.driver_id for r in results if r.outcome is MatchOutcome.OFFERED]
        assert sorted(drivers) == ["d0", "d1", "d2"]
        assert sum(r.outcome is MatchOutcome.REQUEUED for r in results) == 3


class TestCancellation:
    async def test_cancel_while_offered_frees_driver(self, runtime, engine, notifier):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()

        cancelled = await engine.cancel_booking(booking.id)
        assert cancelled.state is BookingState.CANCELLED
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE
        assert "d1" in runtime.geo_index

        await _advance(runtime, 30)
        assert notifier.notify_offer.await_count == 1
        assert (await engine.get_booking(booking.id)).state is BookingState.CANCELLED

    async def test_cancel_pending_removes_from_queue(self, runtime, engine):
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.cancel_booking(booking.id)
        assert booking.id not in engine.queue

    async def test_cancel_during_backoff(self, runtime, engine):
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()  # no drivers: re-queued with backoff
        await engine.cancel_booking(booking.id, "changed my mind")
        await put_online(runtime, "d1", 0.0, 0.01)
        await _advance(runtime, 10)
        assert len(engine.queue) == 0
        final = await engine.get_booking(booking.id)
        assert final.state is BookingState.CANCELLED
        assert final.reason == "changed my mind"

    async def test_cancel_terminal_booking_is_rejected(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        await engine.accept_offer(booking.id, "d1")
        with pytest.raises(InvalidTransition):
            await engine.cancel_booking(booking.id)
        assert runtime.registry.get("d1").status is DriverStatus.ON_TRIP

    async def test_accept_after_cancel_is_refused(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.run_match_cycle()
        await engine.cancel_booking(booking.id)
        with pytest.raises(InvalidTransition):
            await engine.accept_offer(booking.id, "d1")

    async def test_cancel_during_offer_write_withholds_offer(self, clock, notifier):
        store = _SlowOfferStore()
        runtime = build_runtime(
            make_settings(), store=store, notifier=notifier, clock=clock
        )
        engine = runtime.engine
        await put_online(runtime, "d1", 0.0, 0.01)
        booking = await engine.submit_booking("c1", Location(0.0, 0.0))

        matching = asyncio.create_task(engine.run_match_cycle())
        await store.offer_write_started.wait()
        cancelling = asyncio.create_task(engine.cancel_booking(booking.id))
        await asyncio.sleep(0)  # flag set, cancel now waits on the guard
        store.finish_offer_write.set()
        await matching
        cancelled = await cancelling
        await engine.settle()

        assert cancelled.state is BookingState.CANCELLED
        assert notifier.notify_offer.await_count == 0
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE
        await engine.shutdown()


class TestExpiry:
    async def test_booking_expires_while_waiting_for_retry(
        self, runtime, engine, notifier
    ):
        booking = await engine.submit_booking(
            "c1", Location(0.0, 0.0), ttl_seconds=10
        )
        await engine.run_match_cycle()
        await _advance(runtime, 30)

        report = await engine.reconcile()
        assert report.purged_bookings == 1
        final = await engine.get_booking(booking.id)
        assert final.state is BookingState.EXPIRED
        assert final.is_closed
        await engine.settle()
        assert _outcomes(notifier) == [ResolutionOutcome.EXPIRED]

    async def test_offer_lapsing_past_booking_expiry_closes_booking(
        self, runtime, engine
    ):
        await put_online(runtime, "d1", 0.0, 0.01)
        await put_online(runtime, "d2", 0.0, 0.02)
        booking = await engine.submit_booking(
            "c1", Location(0.0, 0.0), ttl_seconds=10
        )
        await engine.run_match_cycle()
        await _advance(runtime, 15)

        final = await engine.get_booking(booking.id)
        assert final.state is BookingState.EXPIRED
        assert final.is_closed
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE
        assert runtime.registry.get("d2").status is DriverStatus.AVAILABLE


class TestReconcileAndRecover:
    async def test_reconcile_releases_orphaned_hold(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.0)
        await runtime.registry.try_reserve("d1", "ghost")
        await runtime.clock.advance(21)

        report = await engine.reconcile()
        assert report.released_holds == 1
        assert runtime.registry.get("d1").status is DriverStatus.AVAILABLE

    async def test_reconcile_keeps_live_offer(self, runtime, engine):
        await put_online(runtime, "d1", 0.0, 0.0)
        await engine.submit_booking("c1", Location(0.0, 0.01))
        await engine.run_match_cycle()

        report = await engine.reconcile()
        assert report.released_holds == 0
        assert runtime.registry.get("d1").status is DriverStatus.RESERVED

    async def test_recover_requeues_open_bookings(self, clock, store, notifier):
        now = clock.now()
        await store.save_driver(
            Driver(
                id="d1",
                location=Location(0.0, 0.0),
                status=DriverStatus.RESERVED,
                last_updated=now,
                current_booking_id="b1",
            )
        )
        await store.save_booking(
            Booking(
                id="b1",
                customer_id="c1",
                pickup=Location(0.0, 0.01),
                requested_at=now,
                expires_at=now + timedelta(seconds=300),
                state=BookingState.OFFERED,
                assigned_driver_id="d1",
            )
        )
        runtime = build_runtime(
            make_settings(), store=store, notifier=notifier, clock=clock
        )
        engine = runtime.engine

        assert await engine.recover() == 1
        recovered = await engine.get_booking("b1")
        assert recovered.state is BookingState.PENDING
        assert recovered.assigned_driver_id is None

        # the previous process's hold is swept before matching resumes
        report = await engine.reconcile()
        assert report.released_holds == 1
        result = await engine.run_match_cycle()
        assert result.outcome is MatchOutcome.OFFERED
        assert result.driver_id == "d1"
        await engine.shutdown()


class TestCustomerBookings:
    async def test_lists_tracked_and_stored_bookings(self, runtime, engine, store):
        now = runtime.clock.now()
        await store.save_booking(
            Booking(
                id="archived",
                customer_id="c1",
                pickup=Location(0.0, 0.0),
                requested_at=now - timedelta(days=1),
                expires_at=now - timedelta(days=1) + timedelta(seconds=300),
                state=BookingState.CONFIRMED,
                closed_at=now - timedelta(days=1),
            )
        )
        await runtime.clock.advance(1)
        live = await engine.submit_booking("c1", Location(0.0, 0.0))
        await engine.submit_booking("c2", Location(0.0, 0.0))
        await engine.run_match_cycle()  # no drivers: live is re-queued

        listed = await engine.list_bookings("c1")
        assert [b.id for b in listed] == [live.id, "archived"]
        assert listed[0].attempts == 1
        assert [b.id for b in await engine.list_bookings("c1", limit=1)] == [live.id]
