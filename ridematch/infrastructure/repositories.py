"""
Repository Pattern -- the SQL ``Store`` adapter.

``SqlAlchemyStore`` opens one ``AsyncSession`` (unit-of-work) per call and
maps ORM rows to domain entities and back, so the matching core never sees
SQLAlchemy types.  Driver errors surface as ``StoreUnavailable``; retries are
the caller's concern.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import BookingModel, DriverModel
from ridematch.domain.entities import Booking, Driver, Location
from ridematch.domain.enums import OPEN_STATES
from ridematch.domain.exceptions import StoreUnavailable
from ridematch.domain.ports import Store


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Mapping ───────────────────────────────────────────────────────────


def driver_to_row(driver: Driver) -> DriverModel:
    return DriverModel(
        id=driver.id,
        latitude=driver.location.latitude if driver.location else None,
        longitude=driver.location.longitude if driver.location else None,
        status=driver.status,
        last_updated=driver.last_updated,
        capabilities=sorted(driver.capabilities),
        is_active=driver.is_active,
        current_booking_id=driver.current_booking_id,
        reserved_until=driver.reserved_until,
    )


def driver_from_row(row: DriverModel) -> Driver:
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = Location(row.latitude, row.longitude)
    return Driver(
        id=row.id,
        location=location,
        status=row.status,
        last_updated=_aware(row.last_updated),
        capabilities=frozenset(row.capabilities or ()),
        is_active=row.is_active,
        current_booking_id=row.current_booking_id,
        reserved_until=_aware(row.reserved_until),
    )


def booking_to_row(booking: Booking) -> BookingModel:
    return BookingModel(
        id=booking.id,
        customer_id=booking.customer_id,
        pickup_lat=booking.pickup.latitude,
        pickup_lng=booking.pickup.longitude,
        dropoff_lat=booking.dropoff.latitude if booking.dropoff else None,
        dropoff_lng=booking.dropoff.longitude if booking.dropoff else None,
        state=booking.state,
        assigned_driver_id=booking.assigned_driver_id,
        attempts=booking.attempts,
        offers_made=booking.offers_made,
        required_capabilities=sorted(booking.required_capabilities),
        declined_driver_ids=sorted(booking.declined_driver_ids),
        idempotency_key=booking.idempotency_key,
        reason=booking.reason,
        requested_at=booking.requested_at,
        expires_at=booking.expires_at,
        closed_at=booking.closed_at,
    )


def booking_from_row(row: BookingModel) -> Booking:
    dropoff = None
    if row.dropoff_lat is not None and row.dropoff_lng is not None:
        dropoff = Location(row.dropoff_lat, row.dropoff_lng)
    return Booking(
        id=row.id,
        customer_id=row.customer_id,
        pickup=Location(row.pickup_lat, row.pickup_lng),
        dropoff=dropoff,
        requested_at=_aware(row.requested_at),
        expires_at=_aware(row.expires_at),
        state=row.state,
        assigned_driver_id=row.assigned_driver_id,
        attempts=row.attempts,
        offers_made=row.offers_made,
        required_capabilities=frozenset(row.required_capabilities or ()),
        declined_driver_ids=set(row.declined_driver_ids or ()),
        idempotency_key=row.idempotency_key,
        reason=row.reason,
        closed_at=_aware(row.closed_at),
    )


# ── Store adapter ─────────────────────────────────────────────────────


class SqlAlchemyStore(Store):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_driver(self, driver_id: str) -> Optional[Driver]:
        try:
            async with self.session_factory() as session:
                row = await session.get(DriverModel, driver_id)
                return driver_from_row(row) if row else None
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"load_driver({driver_id}): {exc}") from exc

    async def save_driver(self, driver: Driver) -> None:
        try:
            async with self.session_factory() as session:
                await session.merge(driver_to_row(driver))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"save_driver({driver.id}): {exc}") from exc

    async def load_booking(self, booking_id: str) -> Optional[Booking]:
        try:
            async with self.session_factory() as session:
                row = await session.get(BookingModel, booking_id)
                return booking_from_row(row) if row else None
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"load_booking({booking_id}): {exc}") from exc

    async def save_booking(self, booking: Booking) -> None:
        try:
            async with self.session_factory() as session:
                await session.merge(booking_to_row(booking))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"save_booking({booking.id}): {exc}") from exc

    async def list_drivers(self) -> list[Driver]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(DriverModel))
                return [driver_from_row(r) for r in result.scalars().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"list_drivers: {exc}") from exc

    async def list_open_bookings(self) -> list[Booking]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BookingModel)
                    .where(BookingModel.state.in_(list(OPEN_STATES)))
                    .where(BookingModel.closed_at.is_(None))
                    .order_by(BookingModel.requested_at)
                )
                return [booking_from_row(r) for r in result.scalars().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"list_open_bookings: {exc}") from exc

    async def list_bookings_for_customer(
        self, customer_id: str, limit: int = 50
    ) -> list[Booking]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BookingModel)
                    .where(BookingModel.customer_id == customer_id)
                    .order_by(BookingModel.requested_at.desc())
                    .limit(limit)
                )
                return [booking_from_row(r) for r in result.scalars().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"list_bookings_for_customer: {exc}") from exc
