"""In-memory storage backend for booking documents."""

from __future__ import annotations

import asyncio
from copy import deepcopy
from typing import Any

from ..auction.models import UNRESOLVED_STATES

_OPEN_VALUES = {state.value for state in UNRESOLVED_STATES}


class InMemoryStorage:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create_record(self, record: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            booking_id = record["booking_id"]
            if booking_id in self._records:
                raise ValueError(f"record {booking_id} already exists")
            self._records[booking_id] = deepcopy(record)
            return deepcopy(record)

    async def get_record(self, booking_id: str) -> dict[str, Any]:
        async with self._lock:
            try:
                return deepcopy(self._records[booking_id])
            except KeyError as exc:
                raise KeyError(f"record {booking_id} not found") from exc

    async def swap_record(
        self, booking_id: str, expected_version: int, record: dict[str, Any]
    ) -> bool:
        async with self._lock:
            current = self._records.get(booking_id)
            if current is None:
                raise KeyError(f"record {booking_id} not found")
            if current.get("version") != expected_version:
                return False
            self._records[booking_id] = deepcopy(record)
            return True

    async def list_open_records(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                deepcopy(record)
                for record in self._records.values()
                if record["bidding_state"] in _OPEN_VALUES
            ]
