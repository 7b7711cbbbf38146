"""Outcome announcements through a log or webhook channel."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from ..transport.canonical_json import canonical_dumps
from ..transport.signatures import sign_payload
from ..transport.timestamps import format_timestamp, utcnow
from .models import Bid

logger = logging.getLogger(__name__)


class NotificationEmitter(Protocol):
    async def notify_new_bid(self, booking_id: str, bid: Bid) -> None: ...

    async def notify_bid_accepted(self, booking_id: str, bid: Bid) -> None: ...

    async def notify_auction_expired(self, booking_id: str) -> None: ...

    async def notify_auction_cancelled(self, booking_id: str) -> None: ...


class _ChannelProtocol:
    async def publish(self, event: str, payload: dict[str, Any]) -> None:  # pragma: no cover - protocol
        raise NotImplementedError

    async def close(self) -> None:
        return None


class _LogChannel(_ChannelProtocol):
    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("[notify] event=%s booking=%s", event, payload.get("booking_id"))


class _WebhookChannel(_ChannelProtocol):
    def __init__(self, options: dict[str, Any], client: httpx.AsyncClient | None = None) -> None:
        self._url = options.get("url")
        if not self._url:
            raise ValueError("webhook backend requires url")
        self._timeout = int(options.get("timeout_ms", 2000)) / 1000
        self._signing_key = options.get("signing_key") or ""
        key_path = options.get("signing_key_path")
        if key_path and not self._signing_key:
            self._signing_key = Path(key_path).read_text()
        self._client = client or httpx.AsyncClient()

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        headers = {"content-type": "application/json", "x-event": event}
        if self._signing_key:
            headers["x-signature"] = sign_payload(payload, self._signing_key)
        response = await self._client.post(
            self._url,
            content=canonical_dumps(payload),
            headers=headers,
            timeout=self._timeout,
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class BidNotifier:
    def __init__(
        self,
        backend: str = "log",
        options: dict[str, Any] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        options = options or {}
        if backend == "webhook":
            self._channel: _ChannelProtocol = _WebhookChannel(options, client)
        elif backend == "log":
            self._channel = _LogChannel()
        else:
            raise ValueError(f"unknown notification backend {backend}")

    async def notify_new_bid(self, booking_id: str, bid: Bid) -> None:
        await self._publish("bid.new", booking_id, bid=_bid_payload(bid))

    async def notify_bid_accepted(self, booking_id: str, bid: Bid) -> None:
        await self._publish("bid.accepted", booking_id, bid=_bid_payload(bid))

    async def notify_auction_expired(self, booking_id: str) -> None:
        await self._publish("auction.expired", booking_id)

    async def notify_auction_cancelled(self, booking_id: str) -> None:
        await self._publish("auction.cancelled", booking_id)

    async def close(self) -> None:
        await self._channel.close()

    async def _publish(self, event: str, booking_id: str, **extra: Any) -> None:
        payload = {
            "event": event,
            "booking_id": booking_id,
            "emitted_at": format_timestamp(utcnow()),
            **extra,
        }
        await self._channel.publish(event, payload)


def _bid_payload(bid: Bid) -> dict[str, Any]:
    return {
        "bid_id": bid.bid_id,
        "driver_id": bid.driver_id,
        "amount": str(bid.amount),
        "eta_minutes": bid.eta_minutes,
        "expires_at": format_timestamp(bid.expires_at),
        "status": bid.status.value,
    }
