"""
Observability endpoints
=======================

GET /api/v1/health -- liveness plus queue / offer counters
"""

from fastapi import APIRouter, Depends

from ridematch.api.dependencies import get_runtime
from ridematch.api.schemas import HealthResponse
from ridematch.runtime import Runtime
from ridematch.workers import matcher

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(runtime: Runtime = Depends(get_runtime)):
    stats = runtime.engine.stats()
    return HealthResponse(
        workers_running=matcher.is_running(),
        queued_bookings=stats["queued_bookings"],
        open_offers=stats["open_offers"],
        indexed_drivers=stats["indexed_drivers"],
    )
