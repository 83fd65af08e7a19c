from __future__ import annotations

from typing import Tuple

from aggregator.dex import pricing
from aggregator.dex.base import VenueAdapter
from aggregator.dex.state import RangeLiquidity
from aggregator.types import VenueFamily


class ConcentratedLiquidityAdapter(VenueAdapter):
    """Uniswap V3-style pools, priced inside the active tick range."""

    family = VenueFamily.AMM_V3
    state_type = RangeLiquidity

    def price(self, state: RangeLiquidity, amount_in: int) -> Tuple[int, float]:
        return pricing.concentrated(
            int(amount_in),
            int(state.liquidity),
            int(state.sqrt_price_x96),
            bool(state.zero_for_one),
            int(self.venue.fee_bps),
            int(state.range_reserve_out),
        )
