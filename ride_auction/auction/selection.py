"""Winner selection used when an auction closes without a rider decision."""

from __future__ import annotations

from typing import Iterable, Optional

from .models import Bid, bid_order


def select_winner(bids: Iterable[Bid]) -> Optional[Bid]:
    return min(bids, key=bid_order, default=None)
