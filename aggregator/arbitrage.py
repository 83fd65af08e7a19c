from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from aggregator import config
from aggregator.collector import QuoteCollector
from aggregator.types import Pair
from aggregator.venues import VenueSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArbitrageOpportunity:
    buy_venue: str
    sell_venue: str
    pair: Pair
    amount_in: int
    intermediate_out: int
    final_out: int
    gas_estimate: int

    @property
    def profit(self) -> int:
        return int(self.final_out) - int(self.amount_in)

    @property
    def profit_bps(self) -> float:
        if self.amount_in <= 0:
            return 0.0
        return self.profit * 10_000.0 / float(self.amount_in)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenA": self.pair.token_in.address,
            "tokenB": self.pair.token_out.address,
            "buyVenue": self.buy_venue,
            "sellVenue": self.sell_venue,
            "amountIn": str(self.amount_in),
            "intermediateOut": str(self.intermediate_out),
            "finalOut": str(self.final_out),
            "expectedProfit": str(self.profit),
            "profitBps": round(self.profit_bps, 4),
            "gasEstimate": int(self.gas_estimate),
        }


async def find_opportunities(
    collector: QuoteCollector,
    snapshot: VenueSnapshot,
    pair: Pair,
    amount_in: int,
    *,
    min_profit_bps: Optional[float] = None,
    per_venue_timeout: Optional[float] = None,
    overall_deadline: Optional[float] = None,
) -> List[ArbitrageOpportunity]:
    """Round trips A -> B on one venue and B -> A on another.

    Only direct pools are considered. Gas is reported, not netted, since it is
    priced in the native asset rather than in A.
    """
    if min_profit_bps is None:
        min_profit_bps = float(getattr(config, "ARB_MIN_PROFIT_BPS", 5.0))

    forward = await collector.collect_quotes(
        pair,
        int(amount_in),
        snapshot,
        per_venue_timeout=per_venue_timeout,
        overall_deadline=overall_deadline,
        max_hops=1,
    )
    out: List[ArbitrageOpportunity] = []
    for buy in forward.quotes:
        back = await collector.collect_quotes(
            pair.reversed(),
            int(buy.amount_out),
            snapshot,
            per_venue_timeout=per_venue_timeout,
            overall_deadline=overall_deadline,
            max_hops=1,
            excluded=(buy.venue,),
        )
        for sell in back.quotes:
            opp = ArbitrageOpportunity(
                buy_venue=buy.venue,
                sell_venue=sell.venue,
                pair=pair,
                amount_in=int(amount_in),
                intermediate_out=int(buy.amount_out),
                final_out=int(sell.amount_out),
                gas_estimate=int(buy.gas_estimate) + int(sell.gas_estimate),
            )
            if opp.profit_bps >= float(min_profit_bps):
                out.append(opp)
    out.sort(key=lambda o: (-o.profit, o.buy_venue, o.sell_venue))
    logger.debug("arbitrage scan %s/%s: %d opportunities", pair.token_in.label(), pair.token_out.label(), len(out))
    return out
