# aggregator/optimizer.py

"""Route selection over a set of collected quotes.

Synchronous and sequential: each split allocation step depends on the one
before it.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from aggregator import config
from aggregator.dex.pricing import BPS, InsufficientLiquidity
from aggregator.errors import NoRouteError
from aggregator.types import Quote, Route, RouteLeg

logger = logging.getLogger(__name__)


def rank_key(q: Quote) -> Tuple[int, int, str]:
    # best output first, then cheaper gas, then venue name
    return (-int(q.amount_out), int(q.gas_estimate), str(q.venue))


def _check_quotes(quotes: Sequence[Quote]) -> None:
    amounts = {int(q.amount_in) for q in quotes}
    if len(amounts) > 1:
        raise ValueError(f"quotes priced for different inputs: {sorted(amounts)}")
    request_ids = {q.request_id for q in quotes if q.request_id is not None}
    if len(request_ids) > 1:
        raise ValueError("quotes from different requests cannot be combined")


def _leg(q: Quote, amount_in: int, amount_out: int, impact: float) -> RouteLeg:
    return RouteLeg(
        venue=q.venue,
        amount_in=int(amount_in),
        amount_out=int(amount_out),
        path=q.path,
        price_impact_bps=float(impact),
        gas_estimate=int(q.gas_estimate),
        fee_bps=int(q.fee_bps),
        family=q.family,
    )


def _fill(q: Quote, amount_in: int) -> Optional[Tuple[int, float]]:
    try:
        return q.fill(amount_in)
    except InsufficientLiquidity:
        return None


class RouteOptimizer:
    def __init__(self, *, granularity_bps: Optional[int] = None, min_improvement: Optional[int] = None):
        if granularity_bps is None:
            granularity_bps = int(getattr(config, "SPLIT_GRANULARITY_BPS", 100))
        if min_improvement is None:
            min_improvement = int(getattr(config, "MIN_SPLIT_IMPROVEMENT", 0))
        if granularity_bps <= 0 or granularity_bps > BPS:
            raise ValueError("granularity_bps must be in (0, 10000]")
        self.granularity_bps = int(granularity_bps)
        self.min_improvement = max(0, int(min_improvement))

    def candidates(self, quotes: Iterable[Quote], price_impact_ceiling_bps: float) -> List[Quote]:
        """Quotes within the impact ceiling, best first, one per venue.

        When nothing passes the ceiling the single best-output quote is kept
        regardless of impact; callers see its true impact on the route.
        """
        ranked: List[Quote] = []
        seen = set()
        for q in sorted(quotes, key=rank_key):
            if q.venue in seen:
                continue
            seen.add(q.venue)
            ranked.append(q)
        if not ranked:
            return []
        passing = [q for q in ranked if float(q.price_impact_bps) <= float(price_impact_ceiling_bps)]
        if not passing:
            logger.info(
                "no quote within %.1f bps impact; falling back to %s at %.1f bps",
                float(price_impact_ceiling_bps),
                ranked[0].venue,
                float(ranked[0].price_impact_bps),
            )
            return [ranked[0]]
        return passing

    def single_route(self, quote: Quote) -> Route:
        return Route.from_legs((_leg(quote, quote.amount_in, quote.amount_out, quote.price_impact_bps),))

    def split_route(self, quotes: Sequence[Quote], amount_in: int, max_splits: Optional[int] = None) -> Optional[Route]:
        """Greedy marginal allocation of `amount_in` across `quotes` (already ranked).

        Capital is handed out in units of granularity_bps of the input; each
        unit goes to the venue whose output grows most from it, recomputed
        from the venue's pricing curve after every allocation. Once
        `max_splits` venues hold capital only those venues receive more.
        Ties go to the better-ranked venue. The remainder left by integer
        division is added to the last leg.
        """
        amount_in = int(amount_in)
        if len(quotes) < 2 or amount_in <= 0:
            return None
        cap = len(quotes) if max_splits is None else max(1, int(max_splits))
        unit = max(1, amount_in * self.granularity_bps // BPS)
        steps = amount_in // unit
        remainder = amount_in - steps * unit

        alloc = [0] * len(quotes)
        outs = [0] * len(quotes)
        in_use = 0
        for _ in range(steps):
            best_i = -1
            best_gain = 0
            best_out = 0
            for i, q in enumerate(quotes):
                if alloc[i] == 0 and in_use >= cap:
                    continue
                res = _fill(q, alloc[i] + unit)
                if res is None:
                    continue
                gain = res[0] - outs[i]
                if best_i < 0 or gain > best_gain:
                    best_i, best_gain, best_out = i, gain, res[0]
            if best_i < 0:
                return None
            if alloc[best_i] == 0:
                in_use += 1
            alloc[best_i] += unit
            outs[best_i] = best_out

        used = [i for i in range(len(quotes)) if alloc[i] > 0]
        if remainder:
            alloc[used[-1]] += remainder
        if len(used) < 2:
            return None

        legs: List[RouteLeg] = []
        for i in used:
            res = _fill(quotes[i], alloc[i])
            if res is None:
                return None
            legs.append(_leg(quotes[i], alloc[i], res[0], res[1]))
        return Route.from_legs(tuple(legs))

    def optimize(self, quotes: Iterable[Quote], price_impact_ceiling_bps: float, max_splits: int = 1) -> Route:
        quotes = list(quotes)
        if not quotes:
            raise NoRouteError("no quotes to route")
        _check_quotes(quotes)

        passing = self.candidates(quotes, price_impact_ceiling_bps)
        single = self.single_route(passing[0])
        if int(max_splits) > 1 and len(passing) >= 2:
            split = self.split_route(passing, passing[0].amount_in, int(max_splits))
            if split is not None and split.total_output - single.total_output > self.min_improvement:
                return split
        return single

