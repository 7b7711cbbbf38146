"""Shared fixtures for auction unit tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from auction_helpers import T0, make_settings
from ride_auction.auction.manager import AuctionManager
from ride_auction.ledger.apply import AuctionLedger
from ride_auction.storage.in_memory import InMemoryStorage


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(storage):
    return AuctionLedger(storage)


@pytest.fixture
def notifier():
    """Mock notification emitter recording every announcement."""
    emitter = AsyncMock()
    emitter.notify_new_bid = AsyncMock()
    emitter.notify_bid_accepted = AsyncMock()
    emitter.notify_auction_expired = AsyncMock()
    emitter.notify_auction_cancelled = AsyncMock()
    return emitter


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def manager(ledger, notifier, settings):
    return AuctionManager(ledger, notifier, settings, clock=lambda: T0)
