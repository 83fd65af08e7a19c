import pytest

from aggregator.dex import pricing
from aggregator.errors import NoRouteError
from aggregator.optimizer import RouteOptimizer, rank_key
from aggregator.types import Quote


def _flat(venue, out, impact, path, *, amount_in=1000, gas=150_000, request_id="r"):
    return Quote(
        venue=venue,
        amount_in=amount_in,
        amount_out=out,
        price_impact_bps=impact,
        gas_estimate=gas,
        path=path,
        fee_bps=30,
        request_id=request_id,
    )


def _pool(venue, amount_in, reserve, path, *, request_id="r"):
    def curve(amt):
        return pricing.constant_product(amt, reserve, reserve, 0)

    out, impact = curve(amount_in)
    return Quote(
        venue=venue,
        amount_in=amount_in,
        amount_out=out,
        price_impact_bps=impact,
        gas_estimate=150_000,
        path=path,
        request_id=request_id,
        curve=curve,
    )


@pytest.fixture
def path(hype, usdc):
    return (hype, usdc)


def test_single_route_picks_best_output(path) -> None:
    quotes = [_flat("a", 997, 30, path), _flat("b", 995, 50, path), _flat("c", 999, 10, path)]
    route = RouteOptimizer().optimize(quotes, 100)
    assert [leg.venue for leg in route.legs] == ["c"]
    assert route.total_output == 999
    assert route.amount_in == 1000


def test_quote_above_ceiling_is_skipped(path) -> None:
    quotes = [_flat("a", 997, 30, path), _flat("b", 995, 50, path), _flat("c", 999, 500, path)]
    route = RouteOptimizer().optimize(quotes, 100)
    assert route.legs[0].venue == "a"
    assert route.total_output == 997


def test_all_above_ceiling_falls_back_with_true_impact(path) -> None:
    quotes = [_flat("a", 997, 200, path), _flat("b", 995, 300, path), _flat("c", 999, 500, path)]
    route = RouteOptimizer().optimize(quotes, 100)
    assert route.legs[0].venue == "c"
    assert route.aggregate_price_impact_bps == pytest.approx(500)


def test_two_quotes_after_partial_collection(path) -> None:
    # one venue timed out upstream; the optimizer only sees the survivors
    quotes = [_flat("a", 997, 30, path), _flat("c", 999, 10, path)]
    assert RouteOptimizer().optimize(quotes, 100).legs[0].venue == "c"


def test_ties_break_on_gas_then_name(path) -> None:
    quotes = [
        _flat("zeta", 999, 10, path, gas=100_000),
        _flat("beta", 999, 10, path, gas=200_000),
        _flat("alpha", 999, 10, path, gas=100_000),
    ]
    assert [q.venue for q in sorted(quotes, key=rank_key)] == ["alpha", "zeta", "beta"]
    assert RouteOptimizer().optimize(quotes, 100).legs[0].venue == "alpha"


def test_empty_quotes_raise_no_route() -> None:
    with pytest.raises(NoRouteError):
        RouteOptimizer().optimize([], 100)


def test_mixed_requests_are_rejected(path) -> None:
    with pytest.raises(ValueError):
        RouteOptimizer().optimize([_flat("a", 997, 30, path, request_id="r1"), _flat("b", 995, 50, path, request_id="r2")], 100)
    with pytest.raises(ValueError):
        RouteOptimizer().optimize([_flat("a", 997, 30, path), _flat("b", 1990, 50, path, amount_in=2000)], 100)


def test_split_beats_every_single_venue(path) -> None:
    amount = 200_000
    quotes = [_pool("a", amount, 1_000_000, path), _pool("b", amount, 1_000_000, path)]
    opt = RouteOptimizer()
    single = opt.optimize(quotes, 10_000, max_splits=1)
    split = opt.optimize(quotes, 10_000, max_splits=2)
    assert split.is_split
    assert split.total_output > max(q.amount_out for q in quotes)
    assert split.total_output > single.total_output
    assert sum(leg.amount_in for leg in split.legs) == amount
    assert sum(leg.amount_out for leg in split.legs) == split.total_output
    shares = sorted(leg.amount_in for leg in split.legs)
    assert shares[0] == pytest.approx(amount / 2, rel=0.05)


def test_split_respects_max_splits_and_remainder(path) -> None:
    amount = 300_007
    quotes = [
        _pool("a", amount, 1_000_000, path),
        _pool("b", amount, 900_000, path),
        _pool("c", amount, 800_000, path),
    ]
    route = RouteOptimizer().optimize(quotes, 10_000, max_splits=2)
    assert len(route.legs) == 2
    assert {leg.venue for leg in route.legs} == {"a", "b"}
    assert sum(leg.amount_in for leg in route.legs) == amount


def test_split_needs_improvement_above_threshold(path) -> None:
    amount = 200_000
    quotes = [_pool("a", amount, 1_000_000, path), _pool("b", amount, 1_000_000, path)]
    route = RouteOptimizer(min_improvement=10**9).optimize(quotes, 10_000, max_splits=2)
    assert not route.is_split


def test_deep_venue_keeps_whole_order(path) -> None:
    amount = 1_000
    quotes = [_pool("deep", amount, 10**15, path), _pool("shallow", amount, 10_000, path)]
    route = RouteOptimizer().optimize(quotes, 10_000, max_splits=2)
    assert [leg.venue for leg in route.legs] == ["deep"]


def test_optimize_is_deterministic(path) -> None:
    amount = 250_000
    quotes = [_pool("a", amount, 1_000_000, path), _pool("b", amount, 700_000, path)]
    opt = RouteOptimizer()
    first = opt.optimize(quotes, 10_000, max_splits=3)
    second = opt.optimize(list(reversed(quotes)), 10_000, max_splits=3)
    assert first == second


def test_more_input_never_less_output(path) -> None:
    opt = RouteOptimizer()
    prev = 0
    for amount in (1_000, 10_000, 100_000, 400_000):
        quotes = [_pool("a", amount, 1_000_000, path), _pool("b", amount, 600_000, path)]
        route = opt.optimize(quotes, 10_000, max_splits=2)
        assert route.total_output >= prev
        prev = route.total_output


def _ceiling_quotes(path):
    amount = 1_000_000
    # "c" beats either pool alone but has a flat, poor marginal rate
    return [
        _pool("a", amount, 1_000_000, path),
        _pool("b", amount, 1_000_000, path),
        _flat("c", 510_000, 6_000, path, amount_in=amount),
    ]


def test_raising_ceiling_never_lowers_output(path) -> None:
    opt = RouteOptimizer()
    quotes = _ceiling_quotes(path)
    prev = 0
    for ceiling in (5_500, 6_000, 6_500, 7_000, 10_000):
        route = opt.optimize(quotes, ceiling, max_splits=2)
        assert route.total_output >= prev, ceiling
        prev = route.total_output


def test_high_single_output_does_not_crowd_out_split_partner(path) -> None:
    route = RouteOptimizer().optimize(_ceiling_quotes(path), 7_000, max_splits=2)
    assert [leg.venue for leg in route.legs] == ["a", "b"]
    assert route.total_output == 666_666


def test_fallback_above_ceiling_is_the_only_exception(path) -> None:
    # nothing passes 4000 bps, so the best single quote is used at any impact
    quotes = _ceiling_quotes(path)
    fallback = RouteOptimizer().optimize(quotes, 4_000, max_splits=2)
    assert [leg.venue for leg in fallback.legs] == ["c"]
    assert fallback.aggregate_price_impact_bps == pytest.approx(6_000)


def test_granularity_is_validated() -> None:
    with pytest.raises(ValueError):
        RouteOptimizer(granularity_bps=0)
