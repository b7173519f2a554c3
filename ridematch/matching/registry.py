"""
Driver Registry
===============

Authoritative in-memory driver state.  It is the only component allowed to
change ``Driver.status``; everyone else goes through the atomic operations
below and receives ``snapshot()`` copies, never live objects.

Compare-and-swap
----------------
Each transition checks its precondition and applies the change under one
acquisition of ``_lock``.  The lock is held for O(1) work and never across
an ``await``, so ``try_reserve`` cannot block behind another holder: it
either wins the driver or returns False immediately.

GeoIndex membership follows status: a driver is indexed while AVAILABLE and
active, and removed the moment it is reserved, goes offline or is
deactivated.

Persistence
-----------
After a transition commits in memory, the driver is written through the
``Store`` with bounded retries.  If the store stays down, the in-memory state
stands and the driver is flagged ``unpersisted`` for the reconciliation sweep
(``flush_unpersisted``).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ridematch.domain.entities import Driver, Location
from ridematch.domain.enums import DRIVER_TRANSITIONS, DriverStatus
from ridematch.domain.exceptions import (
    DriverNotFound,
    InvalidTransition,
    StoreUnavailable,
)
from ridematch.domain.geo_index import GeoIndex
from ridematch.domain.ports import Clock, Store
from ridematch.infrastructure.retry import with_store_retry

logger = logging.getLogger(__name__)


class DriverRegistry:
    def __init__(
        self,
        store: Store,
        geo_index: GeoIndex,
        clock: Clock,
        *,
        hold_seconds: float = 20.0,
        staleness_seconds: float = 120.0,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
    ):
        self.store = store
        self.geo_index = geo_index
        self.clock = clock
        self.hold_seconds = hold_seconds
        self.staleness_seconds = staleness_seconds
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_backoff_seconds = store_retry_backoff_seconds
        self._drivers: dict[str, Driver] = {}
        self._lock = threading.Lock()
        self._persist_locks: dict[str, asyncio.Lock] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def register(
        self,
        driver_id: str,
        capabilities: Iterable[str] = (),
        location: Optional[Location] = None,
    ) -> Driver:
        """Onboard a driver (OFFLINE).  Re-registering reactivates."""
        now = self.clock.now()
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                driver = self._drivers[driver_id] = Driver(id=driver_id)
            driver.capabilities = frozenset(capabilities)
            driver.is_active = True
            if location is not None:
                driver.location = location
                driver.last_updated = now
        logger.info("Driver %s registered", driver_id)
        await self._persist(driver_id)
        return self.get(driver_id)

    def hydrate(self, drivers: Iterable[Driver]) -> int:
        """Load drivers recovered from the store.  Returns how many."""
        count = 0
        now = self.clock.now()
        with self._lock:
            for stored in drivers:
                driver = stored.snapshot()
                if driver.status is DriverStatus.RESERVED and driver.reserved_until is None:
                    # no deadline recorded: let the next sweep free it
                    driver.reserved_until = now
                self._drivers[driver.id] = driver
                self._sync_index(driver)
                count += 1
        return count

    async def go_online(
        self, driver_id: str, location: Optional[Location] = None
    ) -> Driver:
        now = self.clock.now()
        with self._lock:
            driver = self._require(driver_id)
            if not driver.is_active:
                raise InvalidTransition(f"Driver {driver_id} is deactivated")
            if driver.status not in (DriverStatus.OFFLINE, DriverStatus.AVAILABLE):
                raise InvalidTransition(
                    f"Driver {driver_id} is {driver.status.value}; "
                    "finish the current booking first"
                )
            if location is not None:
                driver.location = location
                driver.last_updated = now
            driver.status = DriverStatus.AVAILABLE
            self._sync_index(driver)
        await self._persist(driver_id)
        return self.get(driver_id)

    async def go_offline(self, driver_id: str) -> Driver:
        with self._lock:
            driver = self._require(driver_id)
            self._check(driver, DriverStatus.OFFLINE)
            driver.status = DriverStatus.OFFLINE
            driver.current_booking_id = None
            self._sync_index(driver)
        await self._persist(driver_id)
        return self.get(driver_id)

    async def deactivate(self, driver_id: str) -> Driver:
        """Soft delete: the record stays, the driver is never matched again."""
        with self._lock:
            driver = self._require(driver_id)
            driver.is_active = False
            if driver.status is DriverStatus.AVAILABLE:
                driver.status = DriverStatus.OFFLINE
            self._sync_index(driver)
        logger.info("Driver %s deactivated", driver_id)
        await self._persist(driver_id)
        return self.get(driver_id)

    async def update_location(self, driver_id: str, location: Location) -> Driver:
        now = self.clock.now()
        with self._lock:
            driver = self._require(driver_id)
            driver.location = location
            driver.last_updated = now
            self._sync_index(driver)
        await self._persist(driver_id)
        return self.get(driver_id)

    # ── Reservation API (compare-and-swap) ────────────────────────────

    async def try_reserve(self, driver_id: str, booking_id: str) -> bool:
        """AVAILABLE -> RESERVED for *booking_id*, or False.  Never waits."""
        now = self.clock.now()
        with self._lock:
            driver = self._drivers.get(driver_id)
            if (
                driver is None
                or not driver.is_active
                or driver.status is not DriverStatus.AVAILABLE
                or driver.current_booking_id is not None
            ):
                return False
            driver.status = DriverStatus.RESERVED
            driver.current_booking_id = booking_id
            driver.reserved_until = now + timedelta(seconds=self.hold_seconds)
            self.geo_index.remove(driver_id)
        logger.debug("Driver %s reserved for booking %s", driver_id, booking_id)
        await self._persist(driver_id)
        return True

    async def release(self, driver_id: str, booking_id: Optional[str] = None) -> bool:
        """RESERVED -> AVAILABLE.  With *booking_id*, only for that holder."""
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or driver.status is not DriverStatus.RESERVED:
                return False
            if booking_id is not None and driver.current_booking_id != booking_id:
                return False
            driver.status = DriverStatus.AVAILABLE
            driver.current_booking_id = None
            driver.reserved_until = None
            self._sync_index(driver)
        logger.debug("Driver %s released", driver_id)
        await self._persist(driver_id)
        return True

    async def confirm(self, driver_id: str, booking_id: Optional[str] = None) -> bool:
        """RESERVED -> ON_TRIP.  With *booking_id*, only for that holder."""
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or driver.status is not DriverStatus.RESERVED:
                return False
            if booking_id is not None and driver.current_booking_id != booking_id:
                return False
            driver.status = DriverStatus.ON_TRIP
            driver.reserved_until = None
        logger.debug("Driver %s confirmed on trip", driver_id)
        await self._persist(driver_id)
        return True

    async def complete_trip(self, driver_id: str) -> Driver:
        """ON_TRIP -> AVAILABLE once the ride is over."""
        with self._lock:
            driver = self._require(driver_id)
            if driver.status is not DriverStatus.ON_TRIP:
                raise InvalidTransition(
                    f"Driver {driver_id} is {driver.status.value}, not ON_TRIP"
                )
            driver.status = DriverStatus.AVAILABLE
            driver.current_booking_id = None
            self._sync_index(driver)
        await self._persist(driver_id)
        return self.get(driver_id)

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, driver_id: str) -> Driver:
        with self._lock:
            return self._require(driver_id).snapshot()

    def is_eligible(
        self,
        driver_id: str,
        required_capabilities: frozenset[str] = frozenset(),
        now: Optional[datetime] = None,
    ) -> bool:
        """True if the driver could take an offer right now."""
        now = now or self.clock.now()
        with self._lock:
            driver = self._drivers.get(driver_id)
            return (
                driver is not None
                and driver.is_active
                and driver.status is DriverStatus.AVAILABLE
                and not driver.is_stale(now, self.staleness_seconds)
                and driver.has_capabilities(required_capabilities)
            )

    def expired_holds(self, now: datetime) -> list[tuple[str, Optional[str]]]:
        """``(driver_id, booking_id)`` for RESERVED drivers past their hold."""
        with self._lock:
            return [
                (d.id, d.current_booking_id)
                for d in self._drivers.values()
                if d.status is DriverStatus.RESERVED
                and d.reserved_until is not None
                and d.reserved_until <= now
            ]

    def count_by_status(self) -> dict[DriverStatus, int]:
        with self._lock:
            counts = {status: 0 for status in DriverStatus}
            for driver in self._drivers.values():
                counts[driver.status] += 1
            return counts

    def __contains__(self, driver_id: object) -> bool:
        return driver_id in self._drivers

    # ── Persistence ───────────────────────────────────────────────────

    async def flush_unpersisted(self) -> int:
        """Retry the store for drivers flagged ``unpersisted``."""
        with self._lock:
            pending = [d.id for d in self._drivers.values() if d.unpersisted]
        flushed = 0
        for driver_id in pending:
            if await self._persist(driver_id):
                flushed += 1
        return flushed

    async def _persist(self, driver_id: str) -> bool:
        lock = self._persist_locks.setdefault(driver_id, asyncio.Lock())
        async with lock:
            # snapshot inside the lock so the last write carries the latest state
            with self._lock:
                snapshot = self._drivers[driver_id].snapshot()
            try:
                await with_store_retry(
                    lambda: self.store.save_driver(snapshot),
                    attempts=self.store_retry_attempts,
                    backoff_seconds=self.store_retry_backoff_seconds,
                    what=f"driver {driver_id}",
                )
            except StoreUnavailable:
                with self._lock:
                    self._drivers[driver_id].unpersisted = True
                logger.warning("Driver %s flagged unpersisted", driver_id)
                return False
            with self._lock:
                self._drivers[driver_id].unpersisted = False
            return True

    # ── Internals (caller holds _lock) ────────────────────────────────

    def _require(self, driver_id: str) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found")
        return driver

    @staticmethod
    def _check(driver: Driver, new_status: DriverStatus) -> None:
        if new_status not in DRIVER_TRANSITIONS[driver.status]:
            raise InvalidTransition(
                f"Driver {driver.id} cannot go from "
                f"{driver.status.value} to {new_status.value}"
            )

    def _sync_index(self, driver: Driver) -> None:
        if (
            driver.status is DriverStatus.AVAILABLE
            and driver.is_active
            and driver.location is not None
        ):
            self.geo_index.insert_or_update(driver.id, driver.location)
        else:
            self.geo_index.remove(driver.id)
