"""
Background Matching Workers
===========================

``matching_workers`` tasks each loop on ``engine.run_match_cycle()``; the
queue's blocking ``dequeue`` is what paces them.  One extra task runs the
reconciliation sweep every ``reconcile_interval_seconds`` and keeps the
dispatcher lease alive.

Concurrency safety
------------------
* Workers share one ``MatchEngine``; per-booking guards and the registry's
  compare-and-swap keep them from stepping on each other.
* The **Redis dispatcher lease** ensures only one process runs workers
  against a given store.  Losing it stops matching in this process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ridematch.infrastructure.locks import DispatcherLease
from ridematch.matching.engine import MatchEngine

logger = logging.getLogger(__name__)

_tasks: list[asyncio.Task] = []
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_matching_loop(
    engine: MatchEngine,
    workers: int,
    reconcile_interval_seconds: float,
    lease: Optional[DispatcherLease] = None,
) -> None:
    global _stop_event
    _stop_event = asyncio.Event()
    for n in range(workers):
        _tasks.append(asyncio.create_task(_worker(engine, n), name=f"matcher-{n}"))
    _tasks.append(
        asyncio.create_task(
            _reconciler(engine, reconcile_interval_seconds, lease),
            name="reconciler",
        )
    )
    logger.info(
        "Matching workers started (workers=%d, reconcile every %.0fs)",
        workers, reconcile_interval_seconds,
    )


async def stop_matching_loop() -> None:
    if _stop_event:
        _stop_event.set()
    for task in _tasks:
        task.cancel()
    for task in _tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _tasks.clear()
    logger.info("Matching workers stopped")


def is_running() -> bool:
    return any(not t.done() for t in _tasks)


# ── Internals ─────────────────────────────────────────────────────────


async def _worker(engine: MatchEngine, n: int) -> None:
    """Match bookings until told to stop."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            result = await engine.run_match_cycle()
            logger.debug(
                "Worker %d: booking %s %s",
                n, result.booking.id, result.outcome.value,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error in matching worker %d", n)


async def _reconciler(
    engine: MatchEngine,
    interval_seconds: float,
    lease: Optional[DispatcherLease],
) -> None:
    """Periodic sweep: reconcile, renew the lease, then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            report = await engine.reconcile()
            if report.expired_offers or report.released_holds or report.purged_bookings:
                logger.info("Reconcile: %s", report)
            if lease is not None and not await lease.extend():
                logger.error("Dispatcher lease %s lost; stopping matching", lease.key)
                _stop_event.set()
                for task in _tasks:
                    if task is not asyncio.current_task():
                        task.cancel()
                break
        except Exception:
            logger.exception("Unhandled error in reconciliation sweep")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(_stop_event.wait(), timeout=interval_seconds)
            break
        except asyncio.TimeoutError:
            pass  # next sweep
