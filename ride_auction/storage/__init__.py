"""Storage backend factory."""

from __future__ import annotations

from typing import Protocol

from ..config import StorageConfig
from .firestore import FirestoreStorage
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class AuctionStorage(Protocol):
    async def create_record(self, record: dict) -> dict: ...

    async def get_record(self, booking_id: str) -> dict: ...

    async def swap_record(self, booking_id: str, expected_version: int, record: dict) -> bool:
        """Replace the document only if its stored version still equals ``expected_version``."""
        ...

    async def list_open_records(self) -> list[dict]:
        """Documents whose stored state is still open or closing."""
        ...

def build_storage(config: StorageConfig) -> AuctionStorage:
    backend = config.backend
    options = dict(config.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    if backend == "firestore":
        return FirestoreStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
