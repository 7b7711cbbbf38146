"""Deferred expiry tasks, one per open booking."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..transport.timestamps import utcnow

logger = logging.getLogger(__name__)

ExpiryHandler = Callable[[str], Awaitable[Any]]


class ExpiryScheduler:
    """Runs the bound handler once per booking at its deadline.

    A handler that raises is retried with exponential backoff, capped at
    ``max_retry_seconds``, until it succeeds or the booking is disarmed.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        *,
        retry_seconds: float = 1.0,
        max_retry_seconds: float = 30.0,
    ) -> None:
        self._clock = clock
        self._retry_seconds = retry_seconds
        self._max_retry_seconds = max_retry_seconds
        self._handler: ExpiryHandler | None = None
        self._tasks: dict[str, asyncio.Task] = {}

    def bind(self, handler: ExpiryHandler) -> None:
        self._handler = handler

    def arm(self, booking_id: str, fire_at: datetime) -> None:
        """Schedule the handler for ``fire_at``, replacing any pending timer for the booking."""
        if self._handler is None:
            raise RuntimeError("expiry handler not bound")
        self.cancel(booking_id)
        self._spawn(booking_id, fire_at, 0)

    def cancel(self, booking_id: str) -> bool:
        task = self._tasks.pop(booking_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self) -> list[str]:
        return [booking_id for booking_id, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, booking_id: str, fire_at: datetime, failures: int) -> None:
        self._tasks[booking_id] = asyncio.create_task(
            self._fire(booking_id, fire_at, failures), name=f"expire:{booking_id}"
        )

    async def _fire(self, booking_id: str, fire_at: datetime, failures: int) -> None:
        # The loop clock may wake slightly early relative to the wall clock.
        delay = (fire_at - self._clock()).total_seconds()
        while delay > 0:
            await asyncio.sleep(delay)
            delay = (fire_at - self._clock()).total_seconds()
        if self._tasks.get(booking_id) is asyncio.current_task():
            del self._tasks[booking_id]
        try:
            await self._handler(booking_id)
        except Exception:
            retry_in = min(self._retry_seconds * 2**failures, self._max_retry_seconds)
            logger.error(
                "expiry handler failed for booking %s, retrying in %.2fs",
                booking_id,
                retry_in,
                exc_info=True,
            )
            # A timer armed while the handler ran takes precedence.
            if booking_id not in self._tasks:
                self._spawn(
                    booking_id, self._clock() + timedelta(seconds=retry_in), failures + 1
                )
