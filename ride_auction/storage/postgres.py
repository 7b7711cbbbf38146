"""Booking documents in Postgres, one JSONB row per booking guarded by a version column."""

from __future__ import annotations

from typing import Any

import asyncpg
import orjson


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auction_bookings (
                        booking_id TEXT PRIMARY KEY,
                        version BIGINT NOT NULL,
                        bidding_state TEXT NOT NULL,
                        bidding_end_time TIMESTAMPTZ NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_auction_bookings_open
                    ON auction_bookings (bidding_end_time)
                    WHERE bidding_state IN ('open', 'closing');
                    """
                )
        return self._pool

    async def create_record(self, record: dict[str, Any]) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """INSERT INTO auction_bookings(booking_id, version, bidding_state, bidding_end_time, data)
                   VALUES($1, $2, $3, $4::text::timestamptz, $5)
                   ON CONFLICT (booking_id) DO NOTHING""",
                record["booking_id"],
                record["version"],
                record["bidding_state"],
                record["bidding_end_time"],
                self._encode(record),
            )
        if status != "INSERT 0 1":
            raise ValueError(f"record {record['booking_id']} already exists")
        return record

    async def get_record(self, booking_id: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT data FROM auction_bookings WHERE booking_id=$1""",
                booking_id,
            )
        if not row:
            raise KeyError(booking_id)
        return self._decode(row["data"])

    async def swap_record(
        self, booking_id: str, expected_version: int, record: dict[str, Any]
    ) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """UPDATE auction_bookings
                   SET data=$3, version=$4, bidding_state=$5
                   WHERE booking_id=$1 AND version=$2""",
                booking_id,
                expected_version,
                self._encode(record),
                record["version"],
                record["bidding_state"],
            )
        return status == "UPDATE 1"

    async def list_open_records(self) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            # Predicate matches idx_auction_bookings_open.
            rows = await conn.fetch(
                """SELECT data FROM auction_bookings
                   WHERE bidding_state IN ('open', 'closing')
                   ORDER BY bidding_end_time"""
            )
        return [self._decode(row["data"]) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
