"""Unit tests for deferred auction expiry."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from auction_helpers import make_settings, open_booking
from ride_auction.auction.manager import AuctionManager
from ride_auction.auction.models import BiddingState
from ride_auction.auction.scheduler import ExpiryScheduler
from ride_auction.ledger.apply import AuctionLedger
from ride_auction.storage.in_memory import InMemoryStorage
from ride_auction.transport.timestamps import utcnow


def soon(seconds: float = 0.05):
    return utcnow() + timedelta(seconds=seconds)


class DroppedWriteStorage(InMemoryStorage):
    """Fails the next few swaps as if the database connection dropped."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 0

    async def swap_record(self, booking_id, expected_version, record):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("connection reset by peer")
        return await super().swap_record(booking_id, expected_version, record)


class TestExpiryScheduler:
    @pytest.mark.asyncio
    async def test_armed_timer_fires_handler(self):
        handler = AsyncMock()
        scheduler = ExpiryScheduler()
        scheduler.bind(handler)

        scheduler.arm("bkg_1", soon())
        assert scheduler.pending() == ["bkg_1"]
        await asyncio.sleep(0.2)

        handler.assert_awaited_once_with("bkg_1")
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_past_deadline_fires_immediately(self):
        handler = AsyncMock()
        scheduler = ExpiryScheduler()
        scheduler.bind(handler)

        scheduler.arm("bkg_1", utcnow() - timedelta(minutes=5))
        await asyncio.sleep(0.05)

        handler.assert_awaited_once_with("bkg_1")

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self):
        handler = AsyncMock()
        scheduler = ExpiryScheduler()
        scheduler.bind(handler)

        scheduler.arm("bkg_1", soon())
        assert scheduler.cancel("bkg_1") is True
        await asyncio.sleep(0.2)

        handler.assert_not_awaited()
        assert scheduler.cancel("bkg_1") is False

    @pytest.mark.asyncio
    async def test_rearm_replaces_pending_timer(self):
        handler = AsyncMock()
        scheduler = ExpiryScheduler()
        scheduler.bind(handler)

        scheduler.arm("bkg_1", soon(0.05))
        scheduler.arm("bkg_1", soon(0.1))
        await asyncio.sleep(0.3)

        handler.assert_awaited_once_with("bkg_1")

    @pytest.mark.asyncio
    async def test_failed_handler_is_retried(self, caplog):
        """Test that a handler error re-arms the timer instead of dropping it."""
        handler = AsyncMock(side_effect=[RuntimeError("storage offline"), None])
        scheduler = ExpiryScheduler(retry_seconds=0.02)
        scheduler.bind(handler)
        caplog.set_level(logging.ERROR, logger="ride_auction.auction.scheduler")

        scheduler.arm("bkg_1", soon(0))
        await asyncio.sleep(0.2)

        assert handler.await_count == 2
        assert "expiry handler failed for booking bkg_1" in caplog.text
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_retry_backs_off_until_cancelled(self):
        handler = AsyncMock(side_effect=RuntimeError("storage offline"))
        scheduler = ExpiryScheduler(retry_seconds=0.02, max_retry_seconds=0.04)
        scheduler.bind(handler)

        scheduler.arm("bkg_1", soon(0))
        await asyncio.sleep(0.15)

        assert handler.await_count >= 3
        assert scheduler.pending() == ["bkg_1"]
        assert scheduler.cancel("bkg_1") is True
        calls = handler.await_count
        await asyncio.sleep(0.1)
        assert handler.await_count == calls

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self):
        handler = AsyncMock()
        scheduler = ExpiryScheduler()
        scheduler.bind(handler)
        scheduler.arm("bkg_1", soon(10))
        scheduler.arm("bkg_2", soon(10))

        await scheduler.shutdown()

        assert scheduler.pending() == []
        handler.assert_not_awaited()

    def test_arm_without_handler(self):
        with pytest.raises(RuntimeError):
            ExpiryScheduler().arm("bkg_1", soon())


class TestManagerWithScheduler:
    """Expiry driven by real timers rather than explicit calls."""

    @pytest.mark.asyncio
    async def test_timer_resolves_booking_at_deadline(self, ledger, notifier):
        scheduler = ExpiryScheduler()
        manager = AuctionManager(ledger, notifier, make_settings(), scheduler=scheduler)
        # Opened almost a full window ago so the deadline is a moment away.
        booking = await open_booking(manager, now=utcnow() - timedelta(seconds=119.9))
        bid = await manager.submit_bid(booking.booking_id, "D1", 100, 5)

        await asyncio.sleep(0.4)

        resolved = await manager.get_booking(booking.booking_id)
        assert resolved.bidding_state is BiddingState.RESOLVED
        assert resolved.winning_bid_id == bid.bid_id
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_acceptance_disarms_timer(self, ledger, notifier):
        scheduler = ExpiryScheduler()
        manager = AuctionManager(ledger, notifier, make_settings(), scheduler=scheduler)
        booking = await open_booking(manager, now=utcnow())
        bid = await manager.submit_bid(booking.booking_id, "D1", 100, 5)

        await manager.accept_bid(booking.booking_id, bid.bid_id)

        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_recover_rearms_unresolved_bookings(self, ledger, notifier):
        """Test that a restarted service picks up timers for open bookings."""
        first = AuctionManager(ledger, notifier, make_settings())
        open_one = await open_booking(first, now=utcnow())
        done = await open_booking(first, now=utcnow())
        await first.cancel_booking(done.booking_id)

        scheduler = ExpiryScheduler()
        restarted = AuctionManager(ledger, notifier, make_settings(), scheduler=scheduler)
        armed = await restarted.recover()

        assert armed == 1
        assert scheduler.pending() == [open_one.booking_id]
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_expiry_survives_storage_failure(self, notifier):
        """Test that a storage error during expiry is retried until the booking resolves."""
        storage = DroppedWriteStorage()
        scheduler = ExpiryScheduler(retry_seconds=0.05)
        manager = AuctionManager(
            AuctionLedger(storage), notifier, make_settings(), scheduler=scheduler
        )
        booking = await open_booking(manager, now=utcnow() - timedelta(seconds=119.9))
        bid = await manager.submit_bid(booking.booking_id, "D1", 100, 5)
        storage.failures_left = 1

        await asyncio.sleep(0.5)

        resolved = await manager.get_booking(booking.booking_id)
        assert resolved.is_terminal
        assert resolved.winning_bid_id == bid.bid_id
        assert storage.failures_left == 0
        assert scheduler.pending() == []
        await scheduler.shutdown()
