"""
Collaborator interfaces the matching core depends on.

Concrete adapters live in ``ridematch.infrastructure``:

* ``Store``            -- ``SqlAlchemyStore``, ``InMemoryStore``
* ``NotificationSink`` -- ``RedisNotificationSink``, ``LoggingNotificationSink``
* ``Clock``            -- ``SystemClock``, ``ManualClock``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional, Protocol

from .entities import Booking, Driver
from .enums import ResolutionOutcome


class Store(ABC):
    """Durable backing for driver and booking state.

    Adapters raise ``StoreUnavailable`` on failure and never retry; retrying
    with backoff is the caller's job.
    """

    @abstractmethod
    async def load_driver(self, driver_id: str) -> Optional[Driver]: ...

    @abstractmethod
    async def save_driver(self, driver: Driver) -> None: ...

    @abstractmethod
    async def load_booking(self, booking_id: str) -> Optional[Booking]: ...

    @abstractmethod
    async def save_booking(self, booking: Booking) -> None: ...

    @abstractmethod
    async def list_drivers(self) -> list[Driver]: ...

    @abstractmethod
    async def list_open_bookings(self) -> list[Booking]: ...

    @abstractmethod
    async def list_bookings_for_customer(
        self, customer_id: str, limit: int = 50
    ) -> list[Booking]:
        """Newest first."""


class NotificationSink(ABC):
    """Push/SMS fan-out.  Fire-and-forget from the engine's point of view."""

    @abstractmethod
    async def notify_offer(
        self, driver_id: str, booking_id: str, deadline: datetime
    ) -> None: ...

    @abstractmethod
    async def notify_resolution(
        self,
        booking_id: str,
        outcome: ResolutionOutcome,
        reason: Optional[str] = None,
    ) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(ABC):
    """Time source and deadline scheduler."""

    @abstractmethod
    def now(self) -> datetime: ...

    @abstractmethod
    def call_later(
        self, delay_seconds: float, callback: Callable[[], None]
    ) -> TimerHandle: ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None: ...
