"""
Seed script -- onboards sample drivers for local runs.

Run after migrations:
    python seed.py

Creates 12 drivers spread around a city centre: most online with a fresh
location fix, a few offline, some with extra capabilities.
"""

import asyncio

from sqlalchemy import text

from ridematch.config import settings
from ridematch.domain.entities import Location
from ridematch.domain.geo_index import GeoIndex
from ridematch.infrastructure.clock import SystemClock
from ridematch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_tables,
)
from ridematch.infrastructure.repositories import SqlAlchemyStore
from ridematch.matching.registry import DriverRegistry


DRIVERS = [
    # id, lat, lng, capabilities, online
    ("drv-001", 19.0780, 72.8790, (), True),
    ("drv-002", 19.0745, 72.8760, (), True),
    ("drv-003", 19.0810, 72.8820, ("wheelchair",), True),
    ("drv-004", 19.0700, 72.8700, (), True),
    ("drv-005", 19.0900, 72.8656, ("child_seat",), True),
    ("drv-006", 19.0650, 72.8900, (), True),
    ("drv-007", 19.1000, 72.8900, ("wheelchair", "child_seat"), True),
    ("drv-008", 19.0540, 72.8400, (), True),
    ("drv-009", 19.1176, 72.9060, (), True),
    ("drv-010", 19.0600, 72.8500, (), False),
    ("drv-011", 19.0200, 72.8500, ("pet_friendly",), False),
    ("drv-012", 19.0896, 72.8656, (), True),
]


async def seed():
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    session_factory = build_session_factory(engine)
    try:
        # Check if already seeded
        async with session_factory() as session:
            result = await session.execute(text("SELECT count(*) FROM drivers"))
            if result.scalar() > 0:
                print("Database already seeded. Skipping.")
                return

        registry = DriverRegistry(
            SqlAlchemyStore(session_factory),
            GeoIndex(settings.h3_resolution),
            SystemClock(),
        )
        online = 0
        for driver_id, lat, lng, capabilities, is_online in DRIVERS:
            await registry.register(driver_id, capabilities, Location(lat, lng))
            if is_online:
                await registry.go_online(driver_id)
                online += 1
        print(f"  Created {len(DRIVERS)} drivers ({online} online)")
        print("\nSeed complete!")
    finally:
        await engine.dispose()


async def main():
    print("Seeding database...")
    await seed()


if __name__ == "__main__":
    asyncio.run(main())
