"""
Clock adapters.

* ``SystemClock`` -- wall-clock time (UTC) and event-loop timers.
* ``ManualClock`` -- time only moves when ``advance()`` is awaited; timers
  fire in deadline order.  Used for deterministic tests and simulations.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ridematch.domain.ports import Clock, TimerHandle


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(
        self, delay_seconds: float, callback: Callable[[], None]
    ) -> TimerHandle:
        return asyncio.get_running_loop().call_later(
            max(0.0, delay_seconds), callback
        )

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class _ManualTimer:
    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when: datetime, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._timers: list[tuple[datetime, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(
        self, delay_seconds: float, callback: Callable[[], None]
    ) -> TimerHandle:
        timer = _ManualTimer(
            self._now + timedelta(seconds=max(0.0, delay_seconds)), callback
        )
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        self.call_later(seconds, _wake)
        await future

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, t in self._timers if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer due on the way."""
        target = self._now + timedelta(seconds=seconds)
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            timer.callback()
            # let tasks woken by the callback run before the next timer
            await asyncio.sleep(0)
        self._now = target
        await asyncio.sleep(0)
