from __future__ import annotations

from typing import Tuple

from aggregator.dex import pricing
from aggregator.dex.base import VenueAdapter
from aggregator.dex.state import PairReserves
from aggregator.types import VenueFamily


class ConstantProductAdapter(VenueAdapter):
    """Uniswap V2-style pools (x * y = k over pair reserves)."""

    family = VenueFamily.AMM_V2
    state_type = PairReserves

    def price(self, state: PairReserves, amount_in: int) -> Tuple[int, float]:
        return pricing.constant_product(
            int(amount_in),
            int(state.reserve_in),
            int(state.reserve_out),
            int(self.venue.fee_bps),
        )
