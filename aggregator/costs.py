from __future__ import annotations

from typing import Optional

from aggregator import config
from aggregator.dex.pricing import BPS
from aggregator.types import CostEstimate, Route


class CostEstimator:
    """Aggregate gas, fee, impact and latency of a route.

    Gas sums every leg even when legs could settle in one batch (sequential
    worst case). Impact is the capital-weighted mean of leg impacts, i.e. the
    realized impact rather than the worst leg.
    """

    def __init__(self, *, seconds_per_hop: Optional[float] = None, gas_price_wei: Optional[int] = None):
        if seconds_per_hop is None:
            seconds_per_hop = float(getattr(config, "SECONDS_PER_HOP", 3.0))
        self.seconds_per_hop = float(seconds_per_hop)
        self.gas_price_wei = int(gas_price_wei) if gas_price_wei else None

    def estimate(self, route: Route) -> CostEstimate:
        gas = sum(int(leg.gas_estimate) for leg in route.legs)
        fees = sum(int(leg.fee_bps) * int(leg.amount_out) for leg in route.legs) // BPS
        if route.amount_in > 0:
            impact = sum(float(leg.price_impact_bps) * int(leg.amount_in) for leg in route.legs) / float(route.amount_in)
        else:
            impact = 0.0
        hops = sum(leg.hops for leg in route.legs)
        return CostEstimate(
            gas=int(gas),
            fees=int(fees),
            price_impact_bps=float(impact),
            expected_latency_s=float(hops) * self.seconds_per_hop,
            gas_cost_wei=int(gas) * self.gas_price_wei if self.gas_price_wei else None,
        )
