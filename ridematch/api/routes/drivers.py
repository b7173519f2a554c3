"""
Driver endpoints
================

POST   /api/v1/drivers                       -- onboard a driver (OFFLINE)
GET    /api/v1/drivers/available             -- available drivers near a point
GET    /api/v1/drivers/{driver_id}           -- current driver state
PUT    /api/v1/drivers/{driver_id}/location  -- location fix
POST   /api/v1/drivers/{driver_id}/online    -- start accepting offers
POST   /api/v1/drivers/{driver_id}/offline   -- stop accepting offers
POST   /api/v1/drivers/{driver_id}/complete  -- trip finished
DELETE /api/v1/drivers/{driver_id}           -- deactivate
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ridematch.api.dependencies import get_registry, require_dispatcher
from ridematch.api.schemas import (
    DriverCreateRequest,
    DriverResponse,
    GoOnlineRequest,
    LocationUpdate,
    NearbyDriverResponse,
    NearbyDriversResponse,
)
from ridematch.domain.entities import Location
from ridematch.domain.exceptions import DriverNotFound, InvalidTransition
from ridematch.matching.registry import DriverRegistry

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post(
    "",
    status_code=201,
    response_model=DriverResponse,
    summary="Onboard a driver",
    dependencies=[Depends(require_dispatcher)],
)
async def create_driver(
    body: DriverCreateRequest,
    registry: DriverRegistry = Depends(get_registry),
):
    if (body.latitude is None) != (body.longitude is None):
        raise HTTPException(
            status_code=422, detail="latitude and longitude must be given together"
        )
    location = (
        Location(body.latitude, body.longitude) if body.latitude is not None else None
    )
    driver = await registry.register(body.driver_id, body.capabilities, location)
    return DriverResponse.from_driver(driver)


@router.get(
    "/available",
    response_model=NearbyDriversResponse,
    summary="Find available drivers near a point",
)
async def available_drivers(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius: float = Query(10.0, gt=0, le=200, description="Search radius in km"),
    registry: DriverRegistry = Depends(get_registry),
):
    now = registry.clock.now()
    nearby = [
        NearbyDriverResponse(driver_id=n.driver_id, distance_km=round(n.distance_km, 3))
        for n in registry.geo_index.query_radius(Location(latitude, longitude), radius)
        if registry.is_eligible(n.driver_id, now=now)
    ]
    return NearbyDriversResponse(
        latitude=latitude,
        longitude=longitude,
        radius_km=radius,
        count=len(nearby),
        drivers=nearby,
    )


@router.get("/{driver_id}", response_model=DriverResponse, summary="Get a driver")
async def get_driver(driver_id: str, registry: DriverRegistry = Depends(get_registry)):
    try:
        return DriverResponse.from_driver(registry.get(driver_id))
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")


@router.put(
    "/{driver_id}/location",
    response_model=DriverResponse,
    summary="Update driver location",
    dependencies=[Depends(require_dispatcher)],
)
async def update_location(
    driver_id: str,
    body: LocationUpdate,
    registry: DriverRegistry = Depends(get_registry),
):
    try:
        driver = await registry.update_location(
            driver_id, Location(body.latitude, body.longitude)
        )
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    return DriverResponse.from_driver(driver)


@router.post(
    "/{driver_id}/online",
    response_model=DriverResponse,
    summary="Go online",
    dependencies=[Depends(require_dispatcher)],
)
async def go_online(
    driver_id: str,
    body: GoOnlineRequest | None = None,
    registry: DriverRegistry = Depends(get_registry),
):
    location = None
    if body is not None and body.latitude is not None and body.longitude is not None:
        location = Location(body.latitude, body.longitude)
    try:
        driver = await registry.go_online(driver_id, location)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return DriverResponse.from_driver(driver)


@router.post(
    "/{driver_id}/offline",
    response_model=DriverResponse,
    summary="Go offline",
    dependencies=[Depends(require_dispatcher)],
)
async def go_offline(driver_id: str, registry: DriverRegistry = Depends(get_registry)):
    try:
        driver = await registry.go_offline(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return DriverResponse.from_driver(driver)


@router.post(
    "/{driver_id}/complete",
    response_model=DriverResponse,
    summary="Finish the current trip",
    dependencies=[Depends(require_dispatcher)],
)
async def complete_trip(
    driver_id: str, registry: DriverRegistry = Depends(get_registry)
):
    try:
        driver = await registry.complete_trip(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return DriverResponse.from_driver(driver)


@router.delete(
    "/{driver_id}",
    response_model=DriverResponse,
    summary="Deactivate a driver",
    dependencies=[Depends(require_dispatcher)],
)
async def deactivate_driver(
    driver_id: str, registry: DriverRegistry = Depends(get_registry)
):
    try:
        driver = await registry.deactivate(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    return DriverResponse.from_driver(driver)
