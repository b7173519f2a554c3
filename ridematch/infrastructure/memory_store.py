"""In-process ``Store`` adapter.

Keeps snapshot copies so callers can never mutate stored state by accident.
Useful for local runs without PostgreSQL and for tests.
"""

from __future__ import annotations

from typing import Optional

from ridematch.domain.entities import Booking, Driver
from ridematch.domain.enums import OPEN_STATES
from ridematch.domain.ports import Store


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._drivers: dict[str, Driver] = {}
        self._bookings: dict[str, Booking] = {}

    async def load_driver(self, driver_id: str) -> Optional[Driver]:
        driver = self._drivers.get(driver_id)
        return driver.snapshot() if driver else None

    async def save_driver(self, driver: Driver) -> None:
        stored = driver.snapshot()
        stored.unpersisted = False
        self._drivers[driver.id] = stored

    async def load_booking(self, booking_id: str) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.snapshot() if booking else None

    async def save_booking(self, booking: Booking) -> None:
        stored = booking.snapshot()
        stored.unpersisted = False
        self._bookings[booking.id] = stored

    async def list_drivers(self) -> list[Driver]:
        return [d.snapshot() for d in self._drivers.values()]

    async def list_open_bookings(self) -> list[Booking]:
        return [
            b.snapshot()
            for b in self._bookings.values()
            if not b.is_closed and b.state in OPEN_STATES
        ]

    async def list_bookings_for_customer(
        self, customer_id: str, limit: int = 50
    ) -> list[Booking]:
        mine = [b for b in self._bookings.values() if b.customer_id == customer_id]
        mine.sort(key=lambda b: b.requested_at, reverse=True)
        return [b.snapshot() for b in mine[:limit]]
