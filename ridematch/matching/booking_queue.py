"""
Booking Queue
=============

Two heaps feed ``dequeue()``:

* **fresh** -- new bookings, FIFO by ``requested_at`` (insertion order breaks
  ties).
* **retry** -- bookings re-queued after a failed matching attempt, ordered by
  ``expires_at`` so the ones closest to expiry go first.

Retry entries jump ahead of fresh ones, but at most ``retry_burst`` in a row
while fresh bookings are waiting, and each booking may be re-queued at most
``max_requeues`` times.  A re-queued booking only becomes visible after an
exponential backoff (``backoff_seconds * 2 ** (attempts - 1)``) measured on
the injected ``Clock``.

Bookings past ``expires_at`` are never handed out: ``dequeue`` passes them to
``on_expired`` and moves on.  Cancelled or closed bookings are dropped.

Every booking is queued at most once; each heap entry carries a sequence
number and is ignored if it no longer matches the booking's live entry,
which makes ``remove`` O(1).
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ridematch.domain.entities import Booking
from ridematch.domain.ports import Clock, TimerHandle

logger = logging.getLogger(__name__)

ExpiredCallback = Callable[[Booking], Awaitable[None]]


class BookingQueue:
    def __init__(
        self,
        clock: Clock,
        *,
        max_requeues: int = 3,
        retry_burst: int = 3,
        backoff_seconds: float = 2.0,
        on_expired: Optional[ExpiredCallback] = None,
    ):
        self.clock = clock
        self.max_requeues = max_requeues
        self.retry_burst = retry_burst
        self.backoff_seconds = backoff_seconds
        self.on_expired = on_expired

        self._fresh: list[tuple[datetime, int, Booking]] = []
        self._retry: list[tuple[datetime, int, Booking]] = []
        self._delayed: dict[str, TimerHandle] = {}
        self._live: dict[str, int] = {}  # booking id -> live entry seq
        self._seq = itertools.count()
        self._burst = 0
        self._ready = asyncio.Event()

    # ── Producers ─────────────────────────────────────────────────────

    async def enqueue(self, booking: Booking) -> None:
        if booking.id in self._live:
            return
        seq = next(self._seq)
        self._live[booking.id] = seq
        heapq.heappush(self._fresh, (booking.requested_at, seq, booking))
        self._ready.set()

    def requeue(self, booking: Booking) -> bool:
        """Schedule another attempt.  False once the retry cap is reached."""
        if booking.attempts >= self.max_requeues:
            return False
        booking.attempts += 1
        delay = self.backoff_seconds * (2 ** (booking.attempts - 1))
        seq = next(self._seq)
        self._live[booking.id] = seq
        if delay <= 0:
            self._push_retry(booking, seq)
        else:
            self._delayed[booking.id] = self.clock.call_later(
                delay, lambda: self._push_retry(booking, seq)
            )
        logger.debug(
            "Booking %s re-queued (attempt %d, backoff %.1fs)",
            booking.id, booking.attempts, delay,
        )
        return True

    def remove(self, booking_id: str) -> bool:
        """Drop a booking wherever it is.  False if it was not queued."""
        timer = self._delayed.pop(booking_id, None)
        if timer is not None:
            timer.cancel()
        return self._live.pop(booking_id, None) is not None

    # ── Consumer ──────────────────────────────────────────────────────

    async def dequeue(self) -> Booking:
        """Next matchable booking; waits while none is ready."""
        while True:
            booking = self._pop_next()
            if booking is None:
                self._ready.clear()
                await self._ready.wait()
                continue
            if booking.is_closed or booking.cancel_requested:
                continue
            if booking.is_past_expiry(self.clock.now()):
                await self._expire(booking)
                continue
            return booking

    async def purge_expired(self) -> int:
        """Remove every ready booking past its expiry.  Returns the count."""
        now = self.clock.now()
        expired = [
            booking
            for heap in (self._fresh, self._retry)
            for _, seq, booking in heap
            if self._live.get(booking.id) == seq and booking.is_past_expiry(now)
        ]
        for booking in expired:
            self._live.pop(booking.id, None)
            await self._expire(booking)
        return len(expired)

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, booking_id: object) -> bool:
        return booking_id in self._live

    @property
    def waiting_retries(self) -> int:
        return len(self._delayed)

    # ── Internals ─────────────────────────────────────────────────────

    def _push_retry(self, booking: Booking, seq: int) -> None:
        self._delayed.pop(booking.id, None)
        if self._live.get(booking.id) != seq:
            return  # removed while waiting out its backoff
        heapq.heappush(self._retry, (booking.expires_at, seq, booking))
        self._ready.set()

    def _pop_next(self) -> Optional[Booking]:
        while True:
            self._discard_stale(self._fresh)
            self._discard_stale(self._retry)
            if not self._fresh and not self._retry:
                return None
            take_retry = bool(self._retry) and (
                not self._fresh or self._burst < self.retry_burst
            )
            if take_retry:
                _, seq, booking = heapq.heappop(self._retry)
                self._burst += 1
            else:
                _, seq, booking = heapq.heappop(self._fresh)
                self._burst = 0
            if self._live.get(booking.id) == seq:
                del self._live[booking.id]
                return booking

    def _discard_stale(self, heap: list[tuple[datetime, int, Booking]]) -> None:
        while heap and self._live.get(heap[0][2].id) != heap[0][1]:
            heapq.heappop(heap)

    async def _expire(self, booking: Booking) -> None:
        logger.info("Booking %s expired in queue", booking.id)
        if self.on_expired is not None:
            await self.on_expired(booking)
