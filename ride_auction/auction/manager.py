"""Bid auction lifecycle from booking creation to resolution."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..config import AuctionConfig
from ..ledger.apply import AuctionLedger
from ..ledger.fsm import AuctionEvent, transition
from ..transport.timestamps import utcnow
from .errors import (
    AuctionAlreadyResolved,
    AuctionClosed,
    BidExpired,
    BidNotFound,
    DuplicateBid,
    InvalidBid,
    InvalidBooking,
)
from .geo import haversine_km
from .models import Bid, BiddingState, BidStatus, Booking, Location, VehicleType
from .notify import NotificationEmitter
from .scheduler import ExpiryScheduler
from .selection import select_winner

logger = logging.getLogger(__name__)

ResolutionPolicy = Callable[[Iterable[Bid]], Optional[Bid]]


@dataclass(frozen=True)
class AuctionStatus:
    booking_id: str
    bidding_state: BiddingState
    bidding_end_time: datetime
    bid_count: int
    lowest_bid_amount: Decimal | None
    winning_bid_id: str | None
    seconds_remaining: int


@dataclass(frozen=True)
class DriverOffer:
    """An open booking as seen from one driver's position."""

    booking: Booking
    distance_km: float | None
    live_bids: list[Bid]


class AuctionManager:
    def __init__(
        self,
        ledger: AuctionLedger,
        notifier: NotificationEmitter,
        settings: AuctionConfig,
        *,
        scheduler: ExpiryScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
        policy: ResolutionPolicy = select_winner,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._settings = settings
        self._scheduler = scheduler
        self._clock = clock
        self._policy = policy
        if scheduler is not None:
            scheduler.bind(self.resolve_on_expiry)

    @property
    def settings(self) -> AuctionConfig:
        return self._settings

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else self._clock()

    # Booking lifecycle -------------------------------------------------------

    async def create_booking(
        self,
        *,
        rider_id: str,
        pickup: Location,
        vehicle_type: str | VehicleType,
        estimated_price: Any = 0,
        drop: Location | None = None,
        bidding_duration_seconds: int | None = None,
        now: datetime | None = None,
    ) -> Booking:
        now = self._now(now)
        if not rider_id:
            raise InvalidBooking("rider_id is required")
        if not pickup.label:
            raise InvalidBooking("pickup location is required")
        duration = (
            self._settings.window_seconds
            if bidding_duration_seconds is None
            else bidding_duration_seconds
        )
        if not self._settings.min_window_seconds <= duration <= self._settings.max_window_seconds:
            raise InvalidBooking(
                f"bidding duration must be between {self._settings.min_window_seconds}"
                f" and {self._settings.max_window_seconds} seconds"
            )
        try:
            vehicle = VehicleType(vehicle_type)
        except ValueError as exc:
            raise InvalidBooking(f"unknown vehicle type {vehicle_type}") from exc
        price = _parse_money(estimated_price)
        if price is None or price < 0:
            raise InvalidBooking("estimated_price must be a non-negative amount")
        if not _whole_cents(price):
            raise InvalidBooking("estimated_price allows at most two decimal places")
        booking = Booking(
            booking_id=f"bkg_{uuid.uuid4().hex}",
            rider_id=rider_id,
            pickup=pickup,
            drop=drop,
            vehicle_type=vehicle,
            estimated_price=price,
            bidding_end_time=now + timedelta(seconds=duration),
            created_at=now,
        )
        booking = await self._ledger.open_booking(booking)
        logger.info(
            "booking %s opened for bidding until %s",
            booking.booking_id,
            booking.bidding_end_time.isoformat(),
        )
        if self._scheduler is not None:
            self._scheduler.arm(booking.booking_id, booking.bidding_end_time)
        return booking

    async def get_booking(self, booking_id: str) -> Booking:
        return await self._ledger.get_booking(booking_id)

    async def cancel_booking(
        self, booking_id: str, reason: str | None = None, now: datetime | None = None
    ) -> Booking:
        now = self._now(now)

        def cancel(booking: Booking) -> None:
            _ensure_unresolved(booking)
            booking.bidding_state = transition(booking.bidding_state, AuctionEvent.CANCELLED)
            _close_remaining(booking, now)
            booking.cancel_reason = reason
            booking.closed_at = now

        booking, _ = await self._ledger.mutate(booking_id, cancel)
        logger.info("booking %s cancelled", booking_id)
        self._disarm(booking_id)
        await self._announce(self._notifier.notify_auction_cancelled, booking_id)
        return booking

    # Bidding -----------------------------------------------------------------

    async def submit_bid(
        self,
        booking_id: str,
        driver_id: str,
        amount: Any,
        eta_minutes: Any,
        *,
        replace: bool = False,
        now: datetime | None = None,
    ) -> Bid:
        now = self._now(now)
        if not driver_id:
            raise InvalidBid("driver_id is required", booking_id=booking_id)
        parsed_amount = _parse_money(amount)
        if parsed_amount is None or parsed_amount <= 0:
            raise InvalidBid("bid amount must be greater than zero", booking_id=booking_id)
        if not _whole_cents(parsed_amount):
            raise InvalidBid("bid amount allows at most two decimal places", booking_id=booking_id)
        if isinstance(eta_minutes, bool) or not isinstance(eta_minutes, int) or eta_minutes <= 0:
            raise InvalidBid("eta_minutes must be a positive integer", booking_id=booking_id)
        expires_at = now + timedelta(seconds=self._settings.bid_ttl_seconds)

        def place(booking: Booking) -> Bid:
            if booking.bidding_state is not BiddingState.OPEN or booking.deadline_passed(now):
                raise AuctionClosed(
                    "booking is no longer accepting bids",
                    booking_id=booking.booking_id,
                    bidding_state=booking.effective_state(now),
                )
            _mark_lapsed(booking, now)
            existing = booking.live_bid_for(driver_id, now)
            if existing is not None:
                if not replace:
                    raise DuplicateBid(
                        f"driver {driver_id} already has active bid {existing.bid_id}",
                        booking_id=booking.booking_id,
                        bidding_state=booking.bidding_state,
                    )
                existing.amount = parsed_amount
                existing.eta_minutes = eta_minutes
                existing.submitted_at = now
                existing.expires_at = expires_at
                existing.revision += 1
                return existing
            bid = Bid(
                bid_id=f"bid_{uuid.uuid4().hex}",
                booking_id=booking.booking_id,
                driver_id=driver_id,
                amount=parsed_amount,
                eta_minutes=eta_minutes,
                submitted_at=now,
                expires_at=expires_at,
            )
            booking.bids.append(bid)
            return bid

        _, bid = await self._ledger.mutate(booking_id, place)
        logger.info(
            "bid %s (rev %d) from driver %s on booking %s: %s",
            bid.bid_id,
            bid.revision,
            driver_id,
            booking_id,
            bid.amount,
        )
        await self._announce(self._notifier.notify_new_bid, booking_id, bid)
        return bid

    async def list_bids(self, booking_id: str, now: datetime | None = None) -> list[Bid]:
        booking = await self._ledger.get_booking(booking_id)
        return booking.live_bids(self._now(now))

    async def get_auction_status(
        self, booking_id: str, now: datetime | None = None
    ) -> AuctionStatus:
        now = self._now(now)
        booking = await self._ledger.get_booking(booking_id)
        live = booking.live_bids(now)
        state = booking.effective_state(now)
        remaining = 0
        if state is BiddingState.OPEN:
            remaining = max(int((booking.bidding_end_time - now).total_seconds()), 0)
        return AuctionStatus(
            booking_id=booking.booking_id,
            bidding_state=state,
            bidding_end_time=booking.bidding_end_time,
            bid_count=len(live),
            lowest_bid_amount=live[0].amount if live else None,
            winning_bid_id=booking.winning_bid_id,
            seconds_remaining=remaining,
        )

    async def available_bookings(
        self,
        driver_id: str,
        lat: float | None = None,
        lng: float | None = None,
        now: datetime | None = None,
    ) -> list[DriverOffer]:
        """Open bookings the driver has not bid on yet, closest pickup first."""
        now = self._now(now)
        offers: list[DriverOffer] = []
        for booking in await self._ledger.list_open_bookings():
            if booking.effective_state(now) is not BiddingState.OPEN:
                continue
            if booking.live_bid_for(driver_id, now) is not None:
                continue
            distance = None
            if lat is not None and lng is not None and booking.pickup.has_coordinates:
                distance = round(
                    haversine_km(lat, lng, booking.pickup.lat, booking.pickup.lng), 1
                )
            offers.append(DriverOffer(booking, distance, booking.live_bids(now)))
        offers.sort(
            key=lambda offer: (
                offer.distance_km is None,
                offer.distance_km or 0.0,
                offer.booking.bidding_end_time,
            )
        )
        return offers

    # Resolution --------------------------------------------------------------

    async def accept_bid(
        self, booking_id: str, bid_id: str, now: datetime | None = None
    ) -> Booking:
        now = self._now(now)

        def settle(booking: Booking) -> Bid:
            _ensure_unresolved(booking)
            if now > booking.bidding_end_time:
                raise AuctionClosed(
                    "bidding window has elapsed",
                    booking_id=booking.booking_id,
                    bidding_state=booking.effective_state(now),
                )
            bid = booking.find_bid(bid_id)
            if bid is None:
                raise BidNotFound(
                    f"bid {bid_id} not found on booking {booking.booking_id}",
                    booking_id=booking.booking_id,
                    bidding_state=booking.bidding_state,
                )
            if not bid.is_live(now):
                raise BidExpired(
                    f"bid {bid_id} is {bid.effective_status(now).value}",
                    booking_id=booking.booking_id,
                    bidding_state=booking.bidding_state,
                )
            _award(booking, bid, AuctionEvent.BID_ACCEPTED, now)
            return bid

        booking, winner = await self._ledger.mutate(booking_id, settle)
        logger.info("booking %s resolved by rider: bid %s", booking_id, winner.bid_id)
        self._disarm(booking_id)
        await self._announce(self._notifier.notify_bid_accepted, booking_id, winner)
        return booking

    async def resolve_on_expiry(self, booking_id: str, now: datetime | None = None) -> Booking:
        """Close the auction at its deadline; a no-op for terminal or still-open bookings."""
        now = self._now(now)
        booking = await self._ledger.get_booking(booking_id)
        if booking.is_terminal or not booking.deadline_passed(now):
            return booking

        try:
            if booking.bidding_state is BiddingState.OPEN:
                booking, _ = await self._ledger.mutate(booking_id, _begin_closing)
            booking, winner = await self._ledger.mutate(
                booking_id, lambda current: self._close(current, now)
            )
        except AuctionAlreadyResolved:
            logger.debug("booking %s resolved before expiry handling", booking_id)
            return await self._ledger.get_booking(booking_id)

        self._disarm(booking_id)
        if winner is not None:
            logger.info("booking %s resolved on expiry: bid %s", booking_id, winner.bid_id)
            await self._announce(self._notifier.notify_bid_accepted, booking_id, winner)
        else:
            logger.info("booking %s expired without a winner", booking_id)
            await self._announce(self._notifier.notify_auction_expired, booking_id)
        return booking

    def _close(self, booking: Booking, now: datetime) -> Bid | None:
        _ensure_unresolved(booking)
        if booking.bidding_state is BiddingState.OPEN:
            booking.bidding_state = transition(booking.bidding_state, AuctionEvent.DEADLINE_REACHED)
        live = booking.live_bids(now)
        winner = self._policy(live) if live and self._settings.auto_resolve_on_expiry else None
        if winner is not None:
            _award(booking, winner, AuctionEvent.WINNER_SELECTED, now)
            return winner
        booking.bidding_state = transition(booking.bidding_state, AuctionEvent.NO_ELIGIBLE_BIDS)
        _close_remaining(booking, now)
        booking.closed_at = now
        return None

    async def recover(self) -> int:
        """Re-arm expiry timers for every unresolved booking."""
        if self._scheduler is None:
            return 0
        armed = 0
        for booking in await self._ledger.list_open_bookings():
            if booking.is_terminal:
                continue
            self._scheduler.arm(booking.booking_id, booking.bidding_end_time)
            armed += 1
        if armed:
            logger.info("re-armed %d expiry timers", armed)
        return armed

    # Helpers -----------------------------------------------------------------

    def _disarm(self, booking_id: str) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel(booking_id)

    async def _announce(self, emit: Callable[..., Awaitable[None]], booking_id: str, *args: Any) -> None:
        try:
            await emit(booking_id, *args)
        except Exception:
            logger.warning(
                "notification %s failed for booking %s",
                getattr(emit, "__name__", "emit"),
                booking_id,
                exc_info=True,
            )


def _parse_money(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _whole_cents(amount: Decimal) -> bool:
    return amount.as_tuple().exponent >= -2


def _ensure_unresolved(booking: Booking) -> None:
    if booking.is_terminal:
        raise AuctionAlreadyResolved(
            f"booking {booking.booking_id} is already {booking.bidding_state.value}",
            booking_id=booking.booking_id,
            bidding_state=booking.bidding_state,
        )


def _begin_closing(booking: Booking) -> None:
    _ensure_unresolved(booking)
    if booking.bidding_state is BiddingState.OPEN:
        booking.bidding_state = transition(booking.bidding_state, AuctionEvent.DEADLINE_REACHED)


def _mark_lapsed(booking: Booking, now: datetime) -> None:
    for bid in booking.bids:
        if bid.effective_status(now) is BidStatus.EXPIRED:
            bid.status = BidStatus.EXPIRED


def _close_remaining(booking: Booking, now: datetime) -> None:
    """Settle every still-active bid: lapsed ones expire, the rest lose."""
    for bid in booking.bids:
        if bid.status is BidStatus.ACTIVE:
            bid.status = BidStatus.REJECTED if bid.is_live(now) else BidStatus.EXPIRED


def _award(booking: Booking, winner: Bid, event: AuctionEvent, now: datetime) -> None:
    booking.bidding_state = transition(booking.bidding_state, event)
    winner.status = BidStatus.ACCEPTED
    _close_remaining(booking, now)
    booking.winning_bid_id = winner.bid_id
    booking.closed_at = now
