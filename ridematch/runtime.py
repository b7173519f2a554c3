"""Wires the matching components together from ``Settings``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ridematch.config import Settings, settings as default_settings
from ridematch.domain.geo_index import GeoIndex
from ridematch.domain.ports import Clock, NotificationSink, Store
from ridematch.domain.state_machine import AssignmentStateMachine
from ridematch.infrastructure.clock import SystemClock
from ridematch.infrastructure.memory_store import InMemoryStore
from ridematch.infrastructure.notifications import LoggingNotificationSink
from ridematch.matching.booking_queue import BookingQueue
from ridematch.matching.engine import MatchEngine
from ridematch.matching.registry import DriverRegistry


@dataclass
class Runtime:
    settings: Settings
    clock: Clock
    store: Store
    notifier: NotificationSink
    geo_index: GeoIndex
    registry: DriverRegistry
    queue: BookingQueue
    state_machine: AssignmentStateMachine
    engine: MatchEngine


def build_runtime(
    config: Optional[Settings] = None,
    *,
    store: Optional[Store] = None,
    notifier: Optional[NotificationSink] = None,
    clock: Optional[Clock] = None,
) -> Runtime:
    config = config or default_settings
    clock = clock or SystemClock()
    store = store or InMemoryStore()
    notifier = notifier or LoggingNotificationSink()

    geo_index = GeoIndex(config.h3_resolution)
    registry = DriverRegistry(
        store,
        geo_index,
        clock,
        hold_seconds=config.offer_timeout_seconds + config.reservation_grace_seconds,
        staleness_seconds=config.driver_staleness_seconds,
        store_retry_attempts=config.store_retry_attempts,
        store_retry_backoff_seconds=config.store_retry_backoff_seconds,
    )
    queue = BookingQueue(
        clock,
        max_requeues=config.max_requeues,
        retry_burst=config.retry_burst,
        backoff_seconds=config.requeue_backoff_seconds,
    )
    state_machine = AssignmentStateMachine(clock)
    engine = MatchEngine(
        registry=registry,
        geo_index=geo_index,
        queue=queue,
        state_machine=state_machine,
        store=store,
        notifier=notifier,
        clock=clock,
        search_radius_km=config.search_radius_km,
        max_search_radius_km=config.max_search_radius_km,
        candidate_limit=config.candidate_limit,
        offer_timeout_seconds=config.offer_timeout_seconds,
        booking_ttl_seconds=config.booking_ttl_seconds,
        store_retry_attempts=config.store_retry_attempts,
        store_retry_backoff_seconds=config.store_retry_backoff_seconds,
    )
    return Runtime(
        settings=config,
        clock=clock,
        store=store,
        notifier=notifier,
        geo_index=geo_index,
        registry=registry,
        queue=queue,
        state_machine=state_machine,
        engine=engine,
    )
