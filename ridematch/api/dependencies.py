"""FastAPI dependency injection helpers."""

from fastapi import HTTPException, Request

from ridematch.matching.engine import MatchEngine
from ridematch.matching.registry import DriverRegistry
from ridematch.runtime import Runtime
from ridematch.workers import matcher


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_engine(request: Request) -> MatchEngine:
    return request.app.state.runtime.engine


def get_registry(request: Request) -> DriverRegistry:
    return request.app.state.runtime.registry


def require_dispatcher(request: Request) -> None:
    """Refuse writes in a process that is not running the matching loop.

    Booking and driver state lives in the dispatcher's memory; a write taken
    by any other process would never be matched or expired.
    """
    if request.app.state.start_workers and not matcher.is_running():
        raise HTTPException(
            status_code=503,
            detail="This instance is not dispatching; retry against the leader",
        )
