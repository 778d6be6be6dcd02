"""Bounded retry for outbound notification sends."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from repairdesk.core.config import settings
from repairdesk.services.line_api import LineApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def send_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int | None = None,
    base_delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (LineApiError,),
) -> T:
    """
    Run ``operation`` with up to ``max_retries`` extra attempts.

    Attempts are sequential. Before retry ``n`` (1-based) the caller waits
    ``n * base_delay`` seconds. The last error is re-raised unchanged.
    """
    retries = settings.NOTIFY_MAX_RETRIES if max_retries is None else max_retries
    delay = settings.NOTIFY_RETRY_DELAY_SECONDS if base_delay is None else base_delay

    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "Notification send failed (attempt %s/%s), retrying: %s",
                attempt,
                retries + 1,
                exc,
            )
            if delay:
                await asyncio.sleep(attempt * delay)
