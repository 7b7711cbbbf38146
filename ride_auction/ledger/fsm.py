"""Bidding lifecycle finite state machine."""

from __future__ import annotations

from enum import Enum

from ..auction.models import BiddingState


class AuctionEvent(str, Enum):
    DEADLINE_REACHED = "deadline_reached"
    BID_ACCEPTED = "bid_accepted"
    WINNER_SELECTED = "winner_selected"
    NO_ELIGIBLE_BIDS = "no_eligible_bids"
    CANCELLED = "cancelled"


class InvalidTransition(ValueError):
    """Raised when an event does not apply to the current bidding state."""


_TRANSITIONS = {
    (BiddingState.OPEN, AuctionEvent.DEADLINE_REACHED): BiddingState.CLOSING,
    (BiddingState.OPEN, AuctionEvent.BID_ACCEPTED): BiddingState.RESOLVED,
    (BiddingState.CLOSING, AuctionEvent.BID_ACCEPTED): BiddingState.RESOLVED,
    (BiddingState.CLOSING, AuctionEvent.WINNER_SELECTED): BiddingState.RESOLVED,
    (BiddingState.CLOSING, AuctionEvent.NO_ELIGIBLE_BIDS): BiddingState.EXPIRED,
    (BiddingState.OPEN, AuctionEvent.CANCELLED): BiddingState.CANCELLED,
    (BiddingState.CLOSING, AuctionEvent.CANCELLED): BiddingState.CANCELLED,
}


def transition(current: BiddingState, event: AuctionEvent) -> BiddingState:
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise InvalidTransition(f"invalid transition from {current.value} via {event.value}") from exc
