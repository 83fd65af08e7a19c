from __future__ import annotations

from typing import Tuple

from aggregator.dex import pricing
from aggregator.dex.base import VenueAdapter
from aggregator.dex.state import BookDepth
from aggregator.types import VenueFamily


class OrderBookAdapter(VenueAdapter):
    """Native central limit order book; market orders walk the book."""

    family = VenueFamily.ORDER_BOOK
    state_type = BookDepth

    def price(self, state: BookDepth, amount_in: int) -> Tuple[int, float]:
        return pricing.order_book(int(amount_in), state.levels, int(self.venue.fee_bps))
