"""
Shared test fixtures.

Everything runs on a ``ManualClock`` and an ``InMemoryStore`` so tests need
no Docker / PostgreSQL / Redis and never sleep: time moves only when a test
awaits ``clock.advance()``.  The SQL store tests use a throwaway SQLite file
(via aiosqlite).
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from ridematch.config import Settings
from ridematch.domain.entities import Booking, Location
from ridematch.domain.ports import NotificationSink
from ridematch.infrastructure.clock import ManualClock
from ridematch.infrastructure.memory_store import InMemoryStore
from ridematch.runtime import Runtime, build_runtime


def make_settings(**overrides) -> Settings:
    values = dict(
        search_radius_km=10.0,
        max_search_radius_km=40.0,
        candidate_limit=5,
        driver_staleness_seconds=120,
        offer_timeout_seconds=15.0,
        reservation_grace_seconds=5.0,
        booking_ttl_seconds=300,
        max_requeues=3,
        requeue_backoff_seconds=2.0,
        retry_burst=3,
        store_retry_attempts=2,
        store_retry_backoff_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def make_booking(
    clock: ManualClock,
    booking_id: str,
    *,
    lat: float = 0.0,
    lng: float = 0.0,
    ttl_seconds: float = 300,
    requested_offset: float = 0,
) -> Booking:
    requested_at = clock.now() + timedelta(seconds=requested_offset)
    return Booking(
        id=booking_id,
        customer_id=f"cust-{booking_id}",
        pickup=Location(lat, lng),
        requested_at=requested_at,
        expires_at=requested_at + timedelta(seconds=ttl_seconds),
    )


async def put_online(
    runtime: Runtime,
    driver_id: str,
    lat: float,
    lng: float,
    capabilities=(),
) -> None:
    await runtime.registry.register(driver_id, capabilities, Location(lat, lng))
    await runtime.registry.go_online(driver_id)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=NotificationSink)


@pytest.fixture
def settings_overrides() -> dict:
    """Override in a test module to tweak the runtime's settings."""
    return {}


@pytest.fixture
def runtime(clock, store, notifier, settings_overrides) -> Runtime:
    return build_runtime(
        make_settings(**settings_overrides),
        store=store,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
async def engine(runtime):
    yield runtime.engine
    await runtime.engine.shutdown()

