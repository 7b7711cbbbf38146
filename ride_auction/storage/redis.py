"""Booking documents as JSON strings in Redis, swapped under WATCH."""

from __future__ import annotations

from typing import Any

import orjson
from redis import asyncio as aioredis
from redis.exceptions import WatchError

from ..auction.models import UNRESOLVED_STATES

_OPEN_VALUES = {state.value for state in UNRESOLVED_STATES}


class RedisStorage:
    """One string key per booking plus a set indexing the unresolved ones."""

    def __init__(self, *, url: str, prefix: str = "ride:auction") -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")

    def _record_key(self, booking_id: str) -> str:
        return f"{self._prefix}:booking:{booking_id}"

    @property
    def _open_key(self) -> str:
        return f"{self._prefix}:open"

    def _index(self, pipe, record: dict[str, Any]) -> None:
        if record["bidding_state"] in _OPEN_VALUES:
            pipe.sadd(self._open_key, record["booking_id"])
        else:
            pipe.srem(self._open_key, record["booking_id"])

    async def create_record(self, record: dict[str, Any]) -> dict[str, Any]:
        key = self._record_key(record["booking_id"])
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, orjson.dumps(record), nx=True)
            self._index(pipe, record)
            created, _ = await pipe.execute()
        if not created:
            raise ValueError(f"record {record['booking_id']} already exists")
        return record

    async def get_record(self, booking_id: str) -> dict[str, Any]:
        raw = await self._redis.get(self._record_key(booking_id))
        if raw is None:
            raise KeyError(booking_id)
        return orjson.loads(raw)

    async def swap_record(
        self, booking_id: str, expected_version: int, record: dict[str, Any]
    ) -> bool:
        key = self._record_key(booking_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise KeyError(booking_id)
                if orjson.loads(raw).get("version") != expected_version:
                    return False
                pipe.multi()
                pipe.set(key, orjson.dumps(record))
                self._index(pipe, record)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def list_open_records(self) -> list[dict[str, Any]]:
        booking_ids = await self._redis.smembers(self._open_key)
        if not booking_ids:
            return []
        keys = [self._record_key(_text(booking_id)) for booking_id in booking_ids]
        values = await self._redis.mget(keys)
        records = [orjson.loads(value) for value in values if value]
        # A failed create can leave a stale id in the set.
        return [record for record in records if record["bidding_state"] in _OPEN_VALUES]

    async def close(self) -> None:
        await self._redis.aclose()


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value
