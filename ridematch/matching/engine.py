"""
Match Engine
============

Pulls one booking at a time off the ``BookingQueue`` and drives it through
the ``AssignmentStateMachine``:

1. **Search**   -- ``GeoIndex.query_radius`` around the pickup, starting at
   ``search_radius_km`` and doubling up to ``max_search_radius_km`` while no
   eligible driver is found.  Eligible = AVAILABLE, active, fresh location
   fix, required capabilities, has not declined this booking.
2. **Reserve**  -- ``DriverRegistry.try_reserve`` on the K nearest candidates,
   strictly in ascending distance, until one succeeds.
3. **Offer**    -- booking goes OFFERED, a ``Reservation`` is recorded and an
   offer deadline timer is armed on the ``Clock``.
4. **Resolve**  -- accept confirms the driver (ON_TRIP) and the booking
   (CONFIRMED); reject or timeout releases the driver and loops back to
   step 1 without the declining driver.
5. **Exhaust**  -- no candidate left: re-queue with backoff, or UNMATCHED
   once the retry cap is hit.

Concurrency safety
------------------
* Every step for a booking runs under ``state_machine.guard(booking_id)``,
  so workers, timers and API calls never interleave on one booking.
* Drivers are only claimed through the registry's compare-and-swap; losing
  a race simply moves on to the next candidate.
* Cancellation is cooperative: ``cancel_booking`` raises
  ``booking.cancel_requested`` before waiting for the guard; the search
  checks it after every suspension point and gives the driver back.
* Reserve-then-transition is not atomic.  A crash in between leaves the
  driver RESERVED with ``reserved_until`` set; ``reconcile()`` frees it.

Notifications are fire-and-forget background tasks; failures are logged and
never affect matching.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Iterable, Optional

from ridematch.domain.entities import Booking, Location, Reservation
from ridematch.domain.enums import (
    BookingState,
    MatchOutcome,
    ResolutionOutcome,
)
from ridematch.domain.exceptions import (
    BookingNotFound,
    InvalidTransition,
    NoDriversAvailable,
    ReservationConflict,
    StoreUnavailable,
)
from ridematch.domain.geo_index import GeoIndex, NearbyDriver
from ridematch.domain.ports import Clock, NotificationSink, Store, TimerHandle
from ridematch.domain.state_machine import AssignmentStateMachine
from ridematch.infrastructure.retry import with_store_retry
from ridematch.matching.booking_queue import BookingQueue
from ridematch.matching.registry import DriverRegistry

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    booking: Booking
    outcome: MatchOutcome
    driver_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ReconcileReport:
    expired_offers: int = 0
    released_holds: int = 0
    purged_bookings: int = 0
    flushed_drivers: int = 0
    flushed_bookings: int = 0
    evicted_bookings: int = 0


class MatchEngine:
    def __init__(
        self,
        *,
        registry: DriverRegistry,
        geo_index: GeoIndex,
        queue: BookingQueue,
        state_machine: AssignmentStateMachine,
        store: Store,
        notifier: NotificationSink,
        clock: Clock,
        search_radius_km: float = 10.0,
        max_search_radius_km: float = 40.0,
        candidate_limit: int = 5,
        offer_timeout_seconds: float = 15.0,
        booking_ttl_seconds: float = 300.0,
        closed_retention_seconds: float = 3600.0,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
    ):
        self.registry = registry
        self.geo_index = geo_index
        self.queue = queue
        self.state_machine = state_machine
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.search_radius_km = search_radius_km
        self.max_search_radius_km = max(max_search_radius_km, search_radius_km)
        self.candidate_limit = candidate_limit
        self.offer_timeout_seconds = offer_timeout_seconds
        self.booking_ttl_seconds = booking_ttl_seconds
        self.closed_retention_seconds = closed_retention_seconds
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_backoff_seconds = store_retry_backoff_seconds

        self._bookings: dict[str, Booking] = {}
        self._idempotency: dict[str, str] = {}
        self._reservations: dict[str, Reservation] = {}
        self._timers: dict[str, TimerHandle] = {}
        self._background: set[asyncio.Task] = set()

        queue.on_expired = self._expire_from_queue

    # ── Booking API ───────────────────────────────────────────────────

    async def submit_booking(
        self,
        customer_id: str,
        pickup: Location,
        *,
        dropoff: Optional[Location] = None,
        required_capabilities: Iterable[str] = (),
        idempotency_key: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> Booking:
        """Create a PENDING booking and queue it for matching."""
        if idempotency_key and idempotency_key in self._idempotency:
            existing = self._bookings.get(self._idempotency[idempotency_key])
            if existing is not None:
                return existing.snapshot()

        now = self.clock.now()
        ttl = self.booking_ttl_seconds if ttl_seconds is None else ttl_seconds
        booking = Booking(
            id=uuid.uuid4().hex,
            customer_id=customer_id,
            pickup=pickup,
            dropoff=dropoff,
            requested_at=now,
            expires_at=now + timedelta(seconds=ttl),
            required_capabilities=frozenset(required_capabilities),
            idempotency_key=idempotency_key,
        )
        self._bookings[booking.id] = booking
        if idempotency_key:
            self._idempotency[idempotency_key] = booking.id

        await self._persist(booking)
        await self.queue.enqueue(booking)
        logger.info("Booking %s submitted by customer %s", booking.id, customer_id)
        return booking.snapshot()

    async def get_booking(self, booking_id: str) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is not None:
            return booking.snapshot()
        stored = await with_store_retry(
            lambda: self.store.load_booking(booking_id),
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
            what=f"booking {booking_id}",
        )
        if stored is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return stored

    async def list_bookings(self, customer_id: str, limit: int = 50) -> list[Booking]:
        """A customer's bookings, newest first.

        Tracked bookings shadow their stored rows, which may lag behind.
        """
        stored = await with_store_retry(
            lambda: self.store.list_bookings_for_customer(customer_id, limit),
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
            what=f"bookings of customer {customer_id}",
        )
        merged = {b.id: b for b in stored}
        for booking in self._bookings.values():
            if booking.customer_id == customer_id:
                merged[booking.id] = booking.snapshot()
        ranked = sorted(merged.values(), key=lambda b: b.requested_at, reverse=True)
        return ranked[:limit]

    async def accept_offer(self, booking_id: str, driver_id: str) -> Booking:
        """Driver accepts.  Returns the CONFIRMED booking.

        Raises ``ReservationConflict`` if the offer lapsed or the driver's
        hold was lost first; the booking has then already moved on to the
        next candidate (or been re-queued).
        """
        booking = self._require(booking_id)
        async with self.state_machine.guard(booking_id):
            reservation = self._outstanding(booking, driver_id)
            if booking.cancel_requested:
                raise InvalidTransition(f"Booking {booking_id} is being cancelled")

            if self.clock.now() > reservation.deadline:
                # timer has not caught up yet; treat as the timeout it is
                await self._offer_failed(
                    booking,
                    reservation,
                    BookingState.EXPIRED,
                    ResolutionOutcome.OFFER_EXPIRED,
                    "driver accepted after the offer deadline",
                )
                raise ReservationConflict(
                    f"Offer of booking {booking_id} to driver {driver_id} has lapsed"
                )

            self._drop_reservation(booking_id)
            if not await self.registry.confirm(driver_id, booking_id):
                logger.error(
                    "Driver %s lost its hold on booking %s before confirming",
                    driver_id, booking_id,
                )
                self.state_machine.transition(
                    booking,
                    BookingState.REJECTED,
                    reason="driver reservation lapsed before confirmation",
                )
                await self._offer_or_requeue(booking)
                raise ReservationConflict(
                    f"Driver {driver_id} no longer holds booking {booking_id}"
                )

            self.state_machine.transition(booking, BookingState.ACCEPTED)
            self.state_machine.transition(
                booking, BookingState.CONFIRMED, reason="driver accepted"
            )
            logger.info("Booking %s confirmed with driver %s", booking_id, driver_id)
            await self._finish(booking, ResolutionOutcome.CONFIRMED)
            return booking.snapshot()

    async def reject_offer(self, booking_id: str, driver_id: str) -> Booking:
        """Driver declines; the next candidate is tried straight away."""
        booking = self._require(booking_id)
        async with self.state_machine.guard(booking_id):
            reservation = self._outstanding(booking, driver_id)
            await self._offer_failed(
                booking,
                reservation,
                BookingState.REJECTED,
                ResolutionOutcome.REJECTED,
                "driver rejected the offer",
            )
            return booking.snapshot()

    async def cancel_booking(
        self, booking_id: str, reason: str = "cancelled by customer"
    ) -> Booking:
        booking = self._require(booking_id)
        if booking.is_closed:
            raise InvalidTransition(
                f"Booking {booking_id} is already {booking.state.value}"
            )
        # visible to the worker and the offer timer before we own the guard
        booking.cancel_requested = True
        async with self.state_machine.guard(booking_id):
            if booking.is_closed:
                booking.cancel_requested = False
                raise InvalidTransition(
                    f"Booking {booking_id} is already {booking.state.value}"
                )
            reservation = self._drop_reservation(booking_id)
            self.queue.remove(booking_id)
            self.state_machine.transition(booking, BookingState.CANCELLED, reason=reason)
            if reservation is not None:
                await self.registry.release(reservation.driver_id, booking_id)
            logger.info("Booking %s cancelled", booking_id)
            await self._finish(booking, ResolutionOutcome.CANCELLED)
            return booking.snapshot()

    # ── Matching ──────────────────────────────────────────────────────

    async def run_match_cycle(self) -> MatchResult:
        """Dequeue one booking (waiting if needed) and try to place it."""
        booking = await self.queue.dequeue()
        return await self.match(booking)

    async def match(self, booking: Booking) -> MatchResult:
        async with self.state_machine.guard(booking.id):
            if booking.is_closed or booking.cancel_requested:
                return MatchResult(booking.snapshot(), MatchOutcome.SKIPPED)
            return await self._offer_or_requeue(booking)

    def candidates(self, booking: Booking, radius_km: float) -> list[NearbyDriver]:
        """Eligible drivers within *radius_km*, nearest first, at most K."""
        now = self.clock.now()
        eligible = [
            c
            for c in self.geo_index.query_radius(booking.pickup, radius_km)
            if c.driver_id not in booking.declined_driver_ids
            and self.registry.is_eligible(
                c.driver_id, booking.required_capabilities, now
            )
        ]
        return eligible[: self.candidate_limit]

    async def _offer_or_requeue(self, booking: Booking) -> MatchResult:
        """Search, reserve and offer; otherwise re-queue or give up.

        Caller holds the booking's guard.
        """
        if booking.is_past_expiry(self.clock.now()):
            return await self._close_expired(booking)
        try:
            driver_id = await self._reserve_nearest(booking)
        except NoDriversAvailable as exc:
            return await self._requeue_or_unmatch(booking, exc.reason)
        if driver_id is None:
            return MatchResult(booking.snapshot(), MatchOutcome.SKIPPED)
        await self._make_offer(booking, driver_id)
        return MatchResult(booking.snapshot(), MatchOutcome.OFFERED, driver_id)

    async def _reserve_nearest(self, booking: Booking) -> Optional[str]:
        radius = self.search_radius_km
        found = self.candidates(booking, radius)
        while not found and radius < self.max_search_radius_km:
            radius = min(radius * 2, self.max_search_radius_km)
            found = self.candidates(booking, radius)
        if not found:
            raise NoDriversAvailable(
                booking.id, f"no available drivers within {radius:g} km"
            )

        for candidate in found:
            if booking.cancel_requested:
                return None
            if await self.registry.try_reserve(candidate.driver_id, booking.id):
                if booking.cancel_requested:
                    await self.registry.release(candidate.driver_id, booking.id)
                    return None
                return candidate.driver_id
            logger.debug(
                "Driver %s taken before booking %s could reserve it",
                candidate.driver_id, booking.id,
            )
        raise NoDriversAvailable(
            booking.id,
            f"all {len(found)} drivers within {radius:g} km were taken",
        )

    async def _make_offer(self, booking: Booking, driver_id: str) -> None:
        now = self.clock.now()
        reservation = Reservation(
            booking_id=booking.id,
            driver_id=driver_id,
            offered_at=now,
            deadline=now + timedelta(seconds=self.offer_timeout_seconds),
        )
        self.state_machine.transition(
            booking, BookingState.OFFERED, driver_id=driver_id, reason=None
        )
        booking.offers_made += 1
        self._reservations[booking.id] = reservation
        self._timers[booking.id] = self.clock.call_later(
            self.offer_timeout_seconds,
            lambda: self._spawn(
                self._on_offer_deadline(booking.id, driver_id), "offer deadline"
            ),
        )
        logger.info(
            "Booking %s offered to driver %s (offer #%d)",
            booking.id, driver_id, booking.offers_made,
        )
        await self._persist(booking)
        if booking.cancel_requested:
            # cancel_booking withdraws the offer and frees the driver
            logger.info("Offer of booking %s withheld: cancel pending", booking.id)
            return
        self._spawn(
            self.notifier.notify_offer(driver_id, booking.id, reservation.deadline),
            f"offer notification for booking {booking.id}",
        )

    async def _on_offer_deadline(self, booking_id: str, driver_id: str) -> bool:
        booking = self._bookings.get(booking_id)
        if booking is None:
            return False
        async with self.state_machine.guard(booking_id):
            reservation = self._reservations.get(booking_id)
            if reservation is None or reservation.driver_id != driver_id:
                return False  # resolved while the timer was in flight
            if booking.cancel_requested:
                return False  # cancel_booking releases the driver
            await self._offer_failed(
                booking,
                reservation,
                BookingState.EXPIRED,
                ResolutionOutcome.OFFER_EXPIRED,
                "driver did not respond in time",
            )
            return True

    async def _offer_failed(
        self,
        booking: Booking,
        reservation: Reservation,
        state: BookingState,
        outcome: ResolutionOutcome,
        reason: str,
    ) -> MatchResult:
        """Reject / timeout: free the driver, then try the next one."""
        self._drop_reservation(booking.id)
        self.state_machine.transition(booking, state, reason=reason)
        booking.declined_driver_ids.add(reservation.driver_id)
        await self.registry.release(reservation.driver_id, booking.id)
        logger.info(
            "Offer of booking %s to driver %s ended: %s",
            booking.id, reservation.driver_id, reason,
        )
        self._spawn(
            self.notifier.notify_resolution(booking.id, outcome, reason),
            f"resolution notification for booking {booking.id}",
        )
        return await self._offer_or_requeue(booking)

    async def _requeue_or_unmatch(self, booking: Booking, reason: str) -> MatchResult:
        if booking.state is not BookingState.PENDING:
            self.state_machine.transition(booking, BookingState.PENDING, reason=reason)
        else:
            booking.reason = reason
        if self.queue.requeue(booking):
            await self._persist(booking)
            return MatchResult(booking.snapshot(), MatchOutcome.REQUEUED, reason=reason)

        self.state_machine.transition(booking, BookingState.UNMATCHED, reason=reason)
        logger.warning("Booking %s unmatched: %s", booking.id, reason)
        await self._finish(booking, ResolutionOutcome.UNMATCHED)
        return MatchResult(booking.snapshot(), MatchOutcome.UNMATCHED, reason=reason)

    async def _close_expired(self, booking: Booking) -> MatchResult:
        reservation = self._drop_reservation(booking.id)
        self.state_machine.transition(
            booking,
            BookingState.EXPIRED,
            reason="booking expired before a driver accepted",
            close=True,
        )
        if reservation is not None:
            await self.registry.release(reservation.driver_id, booking.id)
        logger.info("Booking %s expired", booking.id)
        await self._finish(booking, ResolutionOutcome.EXPIRED)
        return MatchResult(booking.snapshot(), MatchOutcome.EXPIRED, reason=booking.reason)

    async def _expire_from_queue(self, booking: Booking) -> None:
        async with self.state_machine.guard(booking.id):
            if not booking.is_closed and not booking.cancel_requested:
                await self._close_expired(booking)

    # ── Reconciliation & recovery ─────────────────────────────────────

    async def reconcile(self) -> ReconcileReport:
        """Sweep for missed timers, orphaned holds and unsaved state."""
        report = ReconcileReport()
        now = self.clock.now()

        overdue = [
            (booking_id, r.driver_id)
            for booking_id, r in self._reservations.items()
            if r.deadline <= now
        ]
        for booking_id, driver_id in overdue:
            if await self._on_offer_deadline(booking_id, driver_id):
                report.expired_offers += 1

        for driver_id, booking_id in self.registry.expired_holds(now):
            live = self._reservations.get(booking_id) if booking_id else None
            if live is not None and live.driver_id == driver_id:
                continue
            if await self.registry.release(driver_id, booking_id):
                logger.warning(
                    "Released orphaned hold of driver %s (booking %s)",
                    driver_id, booking_id,
                )
                report.released_holds += 1

        report.purged_bookings = await self.queue.purge_expired()
        report.flushed_drivers = await self.registry.flush_unpersisted()
        for booking in [b for b in self._bookings.values() if b.unpersisted]:
            if await self._persist(booking):
                report.flushed_bookings += 1
        report.evicted_bookings = self._evict_closed(now)
        return report

    async def recover(self) -> int:
        """Reload drivers and open bookings after a restart."""
        drivers = await with_store_retry(
            self.store.list_drivers,
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
            what="driver recovery",
        )
        self.registry.hydrate(drivers)
        bookings = await with_store_retry(
            self.store.list_open_bookings,
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
            what="booking recovery",
        )
        recovered = 0
        for booking in bookings:
            if booking.id in self._bookings:
                continue
            # any offer in flight died with the previous process
            if booking.state is BookingState.OFFERED:
                self.state_machine.transition(
                    booking, BookingState.EXPIRED, reason="dispatcher restarted"
                )
            if booking.state is not BookingState.PENDING:
                self.state_machine.transition(booking, BookingState.PENDING)
            self._bookings[booking.id] = booking
            if booking.idempotency_key:
                self._idempotency[booking.idempotency_key] = booking.id
            await self.queue.enqueue(booking)
            recovered += 1
        logger.info(
            "Recovered %d drivers and %d open bookings", len(drivers), recovered
        )
        return recovered

    # ── Housekeeping ──────────────────────────────────────────────────

    def reservation_for(self, booking_id: str) -> Optional[Reservation]:
        return self._reservations.get(booking_id)

    def stats(self) -> dict[str, int]:
        return {
            "queued_bookings": len(self.queue),
            "open_offers": len(self._reservations),
            "tracked_bookings": len(self._bookings),
            "indexed_drivers": len(self.geo_index),
        }

    async def settle(self) -> None:
        """Wait for outstanding background tasks (notifications, timeouts)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        await self.settle()

    # ── Internals ─────────────────────────────────────────────────────

    def _require(self, booking_id: str) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    def _outstanding(self, booking: Booking, driver_id: str) -> Reservation:
        reservation = self._reservations.get(booking.id)
        if booking.is_closed or reservation is None or reservation.driver_id != driver_id:
            raise InvalidTransition(
                f"Driver {driver_id} holds no open offer for booking {booking.id}"
            )
        return reservation

    def _drop_reservation(self, booking_id: str) -> Optional[Reservation]:
        timer = self._timers.pop(booking_id, None)
        if timer is not None:
            timer.cancel()
        return self._reservations.pop(booking_id, None)

    async def _finish(self, booking: Booking, outcome: ResolutionOutcome) -> None:
        await self._persist(booking)
        self._spawn(
            self.notifier.notify_resolution(booking.id, outcome, booking.reason),
            f"resolution notification for booking {booking.id}",
        )

    async def _persist(self, booking: Booking) -> bool:
        snapshot = booking.snapshot()
        try:
            await with_store_retry(
                lambda: self.store.save_booking(snapshot),
                attempts=self.store_retry_attempts,
                backoff_seconds=self.store_retry_backoff_seconds,
                what=f"booking {booking.id}",
            )
        except StoreUnavailable:
            booking.unpersisted = True
            logger.warning("Booking %s flagged unpersisted", booking.id)
            return False
        booking.unpersisted = False
        return True

    def _evict_closed(self, now) -> int:
        cutoff = now - timedelta(seconds=self.closed_retention_seconds)
        stale = [
            b
            for b in self._bookings.values()
            if b.is_closed and not b.unpersisted and b.closed_at <= cutoff
        ]
        for booking in stale:
            del self._bookings[booking.id]
            if booking.idempotency_key:
                self._idempotency.pop(booking.idempotency_key, None)
        return len(stale)

    def _spawn(self, coro: Awaitable[object], what: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._background_done(t, what))

    def _background_done(self, task: asyncio.Task, what: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background %s failed: %r", what, exc)
