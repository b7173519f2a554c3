"""
Notification sinks.

Offers and resolutions are pushed to drivers and customers by downstream
push/SMS services.  The dispatcher only publishes; delivery is theirs.

Channels (Redis pub/sub)
------------------------
* ``driver:{driver_id}:offers``      -- ``{"type": "offer", ...}``
* ``booking:{booking_id}:resolution`` -- ``{"type": "resolution", ...}``
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis

from ridematch.domain.enums import ResolutionOutcome
from ridematch.domain.ports import NotificationSink

logger = logging.getLogger(__name__)


class LoggingNotificationSink(NotificationSink):
    """Writes events to the log.  Default when no Redis is configured."""

    async def notify_offer(
        self, driver_id: str, booking_id: str, deadline: datetime
    ) -> None:
        logger.info(
            "Offer: booking %s -> driver %s (deadline %s)",
            booking_id, driver_id, deadline.isoformat(),
        )

    async def notify_resolution(
        self,
        booking_id: str,
        outcome: ResolutionOutcome,
        reason: Optional[str] = None,
    ) -> None:
        logger.info("Resolution: booking %s %s (%s)", booking_id, outcome.value, reason)


class RedisNotificationSink(NotificationSink):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def notify_offer(
        self, driver_id: str, booking_id: str, deadline: datetime
    ) -> None:
        payload = {
            "type": "offer",
            "booking_id": booking_id,
            "driver_id": driver_id,
            "deadline": deadline.isoformat(),
        }
        await self.redis.publish(f"driver:{driver_id}:offers", json.dumps(payload))

    async def notify_resolution(
        self,
        booking_id: str,
        outcome: ResolutionOutcome,
        reason: Optional[str] = None,
    ) -> None:
        payload = {
            "type": "resolution",
            "booking_id": booking_id,
            "outcome": outcome.value,
            "reason": reason,
        }
        await self.redis.publish(
            f"booking:{booking_id}:resolution", json.dumps(payload)
        )
