"""Booking and bid records shared across the ledger and storage layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from ..transport.timestamps import (
    format_optional,
    format_timestamp,
    parse_optional,
    parse_timestamp,
)


class BiddingState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {BiddingState.RESOLVED, BiddingState.EXPIRED, BiddingState.CANCELLED}
)
UNRESOLVED_STATES = frozenset({BiddingState.OPEN, BiddingState.CLOSING})


class BidStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class VehicleType(str, Enum):
    AUTO_RICKSHAW = "AUTO_RICKSHAW"
    BIKE = "BIKE"
    CAR_ECONOMY = "CAR_ECONOMY"
    CAR_PREMIUM = "CAR_PREMIUM"
    CAR_LUXURY = "CAR_LUXURY"
    SUV = "SUV"


@dataclass(frozen=True)
class Location:
    label: str
    lat: float | None = None
    lng: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    def to_record(self) -> dict[str, Any]:
        return {"label": self.label, "lat": self.lat, "lng": self.lng}

    @classmethod
    def from_record(cls, data: dict[str, Any] | None) -> Location | None:
        if not data:
            return None
        lat = data.get("lat")
        lng = data.get("lng")
        return cls(
            label=str(data.get("label", "")),
            lat=float(lat) if lat is not None else None,
            lng=float(lng) if lng is not None else None,
        )


@dataclass
class Bid:
    bid_id: str
    booking_id: str
    driver_id: str
    amount: Decimal
    eta_minutes: int
    submitted_at: datetime
    expires_at: datetime
    status: BidStatus = BidStatus.ACTIVE
    revision: int = 1

    def is_live(self, now: datetime) -> bool:
        """Active bids stop being eligible the instant ``expires_at`` is reached."""
        return self.status is BidStatus.ACTIVE and now < self.expires_at

    def effective_status(self, now: datetime) -> BidStatus:
        if self.status is BidStatus.ACTIVE and not self.is_live(now):
            return BidStatus.EXPIRED
        return self.status

    def to_record(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "booking_id": self.booking_id,
            "driver_id": self.driver_id,
            "amount": str(self.amount),
            "eta_minutes": self.eta_minutes,
            "submitted_at": format_timestamp(self.submitted_at),
            "expires_at": format_timestamp(self.expires_at),
            "status": self.status.value,
            "revision": self.revision,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Bid:
        return cls(
            bid_id=data["bid_id"],
            booking_id=data["booking_id"],
            driver_id=data["driver_id"],
            amount=Decimal(data["amount"]),
            eta_minutes=int(data["eta_minutes"]),
            submitted_at=parse_timestamp(data["submitted_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            status=BidStatus(data.get("status", BidStatus.ACTIVE.value)),
            revision=int(data.get("revision", 1)),
        )


def bid_order(bid: Bid) -> tuple[Decimal, datetime, str]:
    """Display and resolution order: cheapest first, then earliest."""
    return (bid.amount, bid.submitted_at, bid.bid_id)


@dataclass
class Booking:
    booking_id: str
    rider_id: str
    pickup: Location
    vehicle_type: VehicleType
    estimated_price: Decimal
    bidding_end_time: datetime
    created_at: datetime
    drop: Location | None = None
    bidding_state: BiddingState = BiddingState.OPEN
    winning_bid_id: str | None = None
    closed_at: datetime | None = None
    cancel_reason: str | None = None
    version: int = 0
    bids: list[Bid] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.bidding_state in TERMINAL_STATES

    def deadline_passed(self, now: datetime) -> bool:
        return now >= self.bidding_end_time

    def effective_state(self, now: datetime) -> BiddingState:
        """Stored state, except an open booking past its deadline reads as closing."""
        if self.bidding_state is BiddingState.OPEN and self.deadline_passed(now):
            return BiddingState.CLOSING
        return self.bidding_state

    def find_bid(self, bid_id: str) -> Bid | None:
        return next((bid for bid in self.bids if bid.bid_id == bid_id), None)

    def live_bids(self, now: datetime) -> list[Bid]:
        return sorted((bid for bid in self.bids if bid.is_live(now)), key=bid_order)

    def live_bid_for(self, driver_id: str, now: datetime) -> Bid | None:
        return next(
            (bid for bid in self.bids if bid.driver_id == driver_id and bid.is_live(now)),
            None,
        )

    @property
    def winning_bid(self) -> Bid | None:
        if self.winning_bid_id is None:
            return None
        return self.find_bid(self.winning_bid_id)

    def to_record(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "rider_id": self.rider_id,
            "pickup": self.pickup.to_record(),
            "drop": self.drop.to_record() if self.drop else None,
            "vehicle_type": self.vehicle_type.value,
            "estimated_price": str(self.estimated_price),
            "bidding_state": self.bidding_state.value,
            "bidding_end_time": format_timestamp(self.bidding_end_time),
            "created_at": format_timestamp(self.created_at),
            "winning_bid_id": self.winning_bid_id,
            "closed_at": format_optional(self.closed_at),
            "cancel_reason": self.cancel_reason,
            "version": self.version,
            "bids": [bid.to_record() for bid in self.bids],
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Booking:
        pickup = Location.from_record(data.get("pickup")) or Location(label="")
        return cls(
            booking_id=data["booking_id"],
            rider_id=data["rider_id"],
            pickup=pickup,
            drop=Location.from_record(data.get("drop")),
            vehicle_type=VehicleType(data["vehicle_type"]),
            estimated_price=Decimal(data.get("estimated_price", "0")),
            bidding_state=BiddingState(data["bidding_state"]),
            bidding_end_time=parse_timestamp(data["bidding_end_time"]),
            created_at=parse_timestamp(data["created_at"]),
            winning_bid_id=data.get("winning_bid_id"),
            closed_at=parse_optional(data.get("closed_at")),
            cancel_reason=data.get("cancel_reason"),
            version=int(data.get("version", 0)),
            bids=[Bid.from_record(item) for item in data.get("bids", [])],
        )
