"""
FastAPI application factory.

* Registers routes for bookings, drivers and health.
* Builds the matching runtime, recovers state from the database and starts /
  stops the matching workers via lifespan events.
* Workers only start while this process holds the Redis dispatcher lease.
  Without the lease (or once it is lost) the API is read-only: write routes
  answer 503 so no booking is queued where nothing will match it.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from redis.exceptions import RedisError

from ridematch.api.routes import bookings, drivers, health
from ridematch.config import settings
from ridematch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_tables,
)
from ridematch.infrastructure.locks import DispatcherLease
from ridematch.infrastructure.notifications import RedisNotificationSink
from ridematch.infrastructure.redis_client import close_redis, get_redis
from ridematch.infrastructure.repositories import SqlAlchemyStore
from ridematch.runtime import Runtime, build_runtime
from ridematch.workers import matcher as _matcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the runtime, recover state and start the workers."""
    db_engine = None
    if getattr(app.state, "runtime", None) is None:
        db_engine = build_engine(settings.database_url)
        await create_tables(db_engine)
        app.state.runtime = build_runtime(
            settings,
            store=SqlAlchemyStore(build_session_factory(db_engine)),
            notifier=RedisNotificationSink(get_redis()),
        )
    runtime: Runtime = app.state.runtime

    lease: Optional[DispatcherLease] = None
    if app.state.start_workers:
        lease = DispatcherLease(get_redis(), ttl_seconds=settings.dispatcher_lease_seconds)
        try:
            acquired = await lease.acquire()
        except RedisError:
            logger.exception("Redis unreachable; matching workers not started")
            acquired = False
        if acquired:
            await runtime.engine.recover()
            await _matcher.start_matching_loop(
                runtime.engine,
                settings.matching_workers,
                settings.reconcile_interval_seconds,
                lease,
            )
        else:
            logger.warning("Dispatcher lease held elsewhere; serving read-only API")
            lease = None

    yield

    if lease is not None:
        await _matcher.stop_matching_loop()
        await lease.release()
    await runtime.engine.shutdown()
    if db_engine is not None:
        await db_engine.dispose()
        await close_redis()


def create_app(runtime: Optional[Runtime] = None, start_workers: bool = True) -> FastAPI:
    app = FastAPI(
        title="Ridematch Dispatch API",
        description=(
            "Matches ride bookings to the nearest available driver.  Offers "
            "are sent one driver at a time with a response deadline; "
            "rejections and timeouts fall through to the next candidate."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.start_workers = start_workers

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(health.router, prefix="/api/v1")

    return app
