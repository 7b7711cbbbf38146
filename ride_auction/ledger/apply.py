"""Ledger service persisting booking documents through conditional updates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from ..auction.errors import BookingNotFound, StorageContention
from ..auction.models import Booking
from ..storage import AuctionStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AuctionLedger:
    storage: AuctionStorage
    max_attempts: int = 8

    async def open_booking(self, booking: Booking) -> Booking:
        record = await self.storage.create_record(booking.to_record())
        return Booking.from_record(record)

    async def get_booking(self, booking_id: str) -> Booking:
        try:
            record = await self.storage.get_record(booking_id)
        except KeyError as exc:
            raise BookingNotFound(f"booking {booking_id} not found", booking_id=booking_id) from exc
        return Booking.from_record(record)

    async def list_open_bookings(self) -> list[Booking]:
        records = await self.storage.list_open_records()
        return [Booking.from_record(record) for record in records]

    async def mutate(
        self, booking_id: str, change: Callable[[Booking], T]
    ) -> tuple[Booking, T]:
        """Apply ``change`` to the latest booking and commit it with a version check.

        ``change`` edits the booking in place and may raise an ``AuctionError`` to
        abort without writing. It is re-run against a fresh read whenever another
        writer commits first, so it must not have side effects of its own.
        """
        for attempt in range(1, self.max_attempts + 1):
            booking = await self.get_booking(booking_id)
            expected_version = booking.version
            result = change(booking)
            booking.version = expected_version + 1
            record = booking.to_record()
            try:
                swapped = await self.storage.swap_record(booking_id, expected_version, record)
            except KeyError as exc:
                raise BookingNotFound(f"booking {booking_id} not found", booking_id=booking_id) from exc
            if swapped:
                return booking, result
            logger.debug(
                "version conflict on booking %s (attempt %d/%d)",
                booking_id,
                attempt,
                self.max_attempts,
            )
        raise StorageContention(
            f"booking {booking_id} changed concurrently {self.max_attempts} times",
            booking_id=booking_id,
        )
