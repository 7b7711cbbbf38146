"""Booking documents in Firestore, swapped inside a read-check-write transaction."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2 import service_account

from ..auction.models import UNRESOLVED_STATES


class FirestoreStorage:
    def __init__(
        self,
        *,
        project_id: str,
        collection: str = "auction_bookings",
        credentials_path: str | None = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id required for firestore backend")
        client_kwargs: dict[str, Any] = {"project": project_id}
        if credentials_path:
            client_kwargs["credentials"] = service_account.Credentials.from_service_account_file(
                credentials_path
            )
        self._client = firestore.Client(**client_kwargs)
        self._collection_name = collection

    def _collection(self):
        return self._client.collection(self._collection_name)

    async def _run(self, func: Callable, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def create_record(self, record: dict[str, Any]) -> dict[str, Any]:
        try:
            await self._run(self._collection().document(record["booking_id"]).create, record)
        except AlreadyExists as exc:
            raise ValueError(f"record {record['booking_id']} already exists") from exc
        return record

    async def get_record(self, booking_id: str) -> dict[str, Any]:
        doc = await self._run(self._collection().document(booking_id).get)
        if not doc.exists:
            raise KeyError(booking_id)
        return doc.to_dict()

    async def swap_record(
        self, booking_id: str, expected_version: int, record: dict[str, Any]
    ) -> bool:
        return await self._run(self._swap_in_transaction, booking_id, expected_version, record)

    def _swap_in_transaction(
        self, booking_id: str, expected_version: int, record: dict[str, Any]
    ) -> bool:
        ref = self._collection().document(booking_id)

        @firestore.transactional
        def apply(transaction) -> bool:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise KeyError(booking_id)
            if snapshot.get("version") != expected_version:
                return False
            transaction.set(ref, record)
            return True

        return apply(self._client.transaction())

    async def list_open_records(self) -> list[dict[str, Any]]:
        query = self._collection().where(
            filter=FieldFilter(
                "bidding_state", "in", sorted(state.value for state in UNRESOLVED_STATES)
            )
        )
        docs = await self._run(lambda: list(query.stream()))
        return [doc.to_dict() for doc in docs]
