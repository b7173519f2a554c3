"""Bounded retry with exponential backoff for Store calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ridematch.domain.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_seconds: float,
    what: str,
) -> T:
    """Run *operation*, retrying ``StoreUnavailable`` up to *attempts* times.

    Waits ``backoff_seconds * 2 ** (attempt - 1)`` between tries and re-raises
    the last error once attempts run out.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except StoreUnavailable as exc:
            attempt += 1
            if attempt >= attempts:
                logger.warning(
                    "Store unavailable for %s after %d attempts: %s",
                    what, attempt, exc,
                )
                raise
            wait_time = backoff_seconds * (2 ** (attempt - 1))
            logger.debug(
                "Store error on %s, retrying in %.2fs (attempt %d/%d)",
                what, wait_time, attempt, attempts,
            )
            await asyncio.sleep(wait_time)
