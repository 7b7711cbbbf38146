"""Domain errors raised by the auction manager and ledger."""

from __future__ import annotations

from .models import BiddingState


class AuctionError(Exception):
    """Base class; carries the booking's state so clients can refresh and decide."""

    code = "auction_error"

    def __init__(
        self,
        message: str,
        *,
        booking_id: str | None = None,
        bidding_state: BiddingState | None = None,
    ) -> None:
        super().__init__(message)
        self.booking_id = booking_id
        self.bidding_state = bidding_state

    def to_detail(self) -> dict[str, str | None]:
        return {
            "error": self.code,
            "message": str(self),
            "booking_id": self.booking_id,
            "bidding_state": self.bidding_state.value if self.bidding_state else None,
        }


class InvalidBid(AuctionError):
    code = "invalid_bid"


class InvalidBooking(AuctionError):
    code = "invalid_booking"


class BookingNotFound(AuctionError):
    code = "booking_not_found"


class BidNotFound(AuctionError):
    code = "bid_not_found"


class DuplicateBid(AuctionError):
    code = "duplicate_bid"


class BidExpired(AuctionError):
    code = "bid_expired"


class AuctionClosed(AuctionError):
    code = "auction_closed"


class AuctionAlreadyResolved(AuctionError):
    code = "auction_already_resolved"


class StorageContention(AuctionError):
    """Raised when a booking keeps changing underneath a conditional update."""

    code = "storage_contention"
