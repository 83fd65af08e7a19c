import asyncio
import time

import pytest

from aggregator.dex import pricing
from aggregator.dex.adapters import ConcentratedLiquidityAdapter, ConstantProductAdapter, OrderBookAdapter
from aggregator.dex.base import candidate_paths
from aggregator.dex.registry import AdapterRegistry, build_adapter
from aggregator.dex.state import StaticPriceSource
from aggregator.errors import ConfigError, InvalidPair, StaleState, VenueUnavailable
from aggregator.types import Pair, Venue, VenueFamily

from conftest import venue

V2 = venue("V2", VenueFamily.AMM_V2, 30, idx=1)
V3 = venue("V3", VenueFamily.AMM_V3, 30, idx=2)
BOOK = venue("Book", VenueFamily.ORDER_BOOK, 5, idx=3, gas_estimate=50_000)


def _v2_source(hype, usdc) -> StaticPriceSource:
    src = StaticPriceSource()
    src.set_reserves("V2", hype, usdc, 500_000 * 10**18, 20_000_000 * 10**6)
    return src


def test_constant_product_quote(hype, usdc) -> None:
    adapter = ConstantProductAdapter(V2, _v2_source(hype, usdc), hubs=[])
    q = asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**20, request_id="r1"))
    expected = pricing.constant_product_out(10**20, 500_000 * 10**18, 20_000_000 * 10**6, 30)
    assert q.amount_out == expected
    assert q.venue == "V2"
    assert q.request_id == "r1"
    assert q.gas_estimate == V2.gas_estimate
    assert q.path == (hype, usdc)
    assert q.price_impact_bps > 0


def test_quote_curve_reprices_partial_fill(hype, usdc) -> None:
    adapter = ConstantProductAdapter(V2, _v2_source(hype, usdc), hubs=[])
    q = asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**20))
    half_out, _ = q.fill(5 * 10**19)
    assert half_out == pricing.constant_product_out(5 * 10**19, 500_000 * 10**18, 20_000_000 * 10**6, 30)
    assert q.fill(q.amount_in) == (q.amount_out, q.price_impact_bps)
    assert q.fill(0) == (0, 0.0)


def test_missing_pool_is_invalid_pair(hype, ueth) -> None:
    adapter = ConstantProductAdapter(V2, StaticPriceSource(), hubs=[])
    with pytest.raises(InvalidPair):
        asyncio.run(adapter.get_quote(Pair(hype, ueth), 10**18))


def test_stale_state_rejected(hype, usdc) -> None:
    src = StaticPriceSource()
    src.set_reserves("V2", hype, usdc, 10**24, 10**13, observed_at=time.time() - 120)
    adapter = ConstantProductAdapter(V2, src, hubs=[], stale_tolerance_s=30)
    with pytest.raises(StaleState):
        asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**18))


def test_static_states_without_timestamp_stay_fresh(hype, usdc) -> None:
    src = _v2_source(hype, usdc)
    state = asyncio.run(src.read_state(V2, hype, usdc))
    assert state.observed_at >= time.time() - 5
    adapter = ConstantProductAdapter(V2, src, hubs=[], clock=lambda: time.time() + 3600, stale_tolerance_s=30)
    # each read is stamped again, so the clock offset is what makes it stale
    with pytest.raises(StaleState):
        asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**18))
    fresh = ConstantProductAdapter(V2, src, hubs=[], stale_tolerance_s=30)
    assert asyncio.run(fresh.get_quote(Pair(hype, usdc), 10**18)).amount_out > 0


def test_source_failure_is_unavailable(hype, usdc) -> None:
    src = _v2_source(hype, usdc)
    src.failures["V2"] = RuntimeError("connection reset")
    adapter = ConstantProductAdapter(V2, src, hubs=[])
    with pytest.raises(VenueUnavailable):
        asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**18))


def test_trade_larger_than_range_is_unavailable(hype, usdc) -> None:
    src = StaticPriceSource()
    src.set_range("V3", hype, usdc, 10**18, pricing.Q96, reserve0=10**6, reserve1=10**6)
    adapter = ConcentratedLiquidityAdapter(V3, src, hubs=[])
    with pytest.raises(VenueUnavailable):
        asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**12))


def test_concentrated_quote_both_directions(hype, usdc) -> None:
    src = StaticPriceSource()
    src.set_range("V3", hype, usdc, 10**18, pricing.Q96)
    adapter = ConcentratedLiquidityAdapter(V3, src, hubs=[])
    fwd = asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**15))
    back = asyncio.run(adapter.get_quote(Pair(usdc, hype), 10**15))
    assert fwd.amount_out == back.amount_out == pricing.constant_product_out(10**15, 10**18, 10**18, 30)


def test_order_book_quote_from_l2_levels(hype, usdc) -> None:
    src = StaticPriceSource()
    src.set_l2_book("Book", hype, usdc, bids=[("40", "10")], asks=[("40", "10")])
    adapter = OrderBookAdapter(BOOK, src, hubs=[])
    sell = asyncio.run(adapter.get_quote(Pair(hype, usdc), 10**18))
    assert sell.amount_out == 39_980_000
    buy = asyncio.run(adapter.get_quote(Pair(usdc, hype), 40 * 10**6))
    assert buy.amount_out == 999_500_000_000_000_000
    assert sell.gas_estimate == 50_000


def test_hub_path_used_when_no_direct_pool(hype, usdc, ueth) -> None:
    src = StaticPriceSource()
    src.set_reserves("V2", ueth, usdc, 2_000 * 10**18, 5_000_000 * 10**6)
    src.set_reserves("V2", usdc, hype, 20_000_000 * 10**6, 500_000 * 10**18)
    adapter = ConstantProductAdapter(V2, src, hubs=[usdc, hype])
    q = asyncio.run(adapter.get_quote(Pair(ueth, hype), 10**18, max_hops=2))
    assert q.path == (ueth, usdc, hype)
    assert q.gas_estimate == 2 * V2.gas_estimate
    assert q.amount_out > 0
    with pytest.raises(InvalidPair):
        asyncio.run(adapter.get_quote(Pair(ueth, hype), 10**18, max_hops=1))


def test_candidate_paths_direct_first_and_skip_endpoints(hype, usdc, ueth) -> None:
    paths = candidate_paths(Pair(ueth, hype), 3, [hype, usdc])
    assert paths[0] == (ueth, hype)
    assert (ueth, usdc, hype) in paths
    assert all(len(p) <= 4 for p in paths)
    assert not any(p.count(hype) > 1 for p in paths)


def test_adapter_rejects_wrong_family(hype, usdc) -> None:
    with pytest.raises(ValueError):
        ConstantProductAdapter(V3, StaticPriceSource())


def test_registry_rejects_unknown_family() -> None:
    bogus = Venue(name="Curve", family="stableswap", fee_bps=4, address="0x" + "09" * 20)
    with pytest.raises(ConfigError):
        build_adapter(bogus, StaticPriceSource())


def test_registry_resolves_family_once_per_descriptor() -> None:
    reg = AdapterRegistry(StaticPriceSource(), hubs=[])
    first = reg.get(V2)
    assert isinstance(first, ConstantProductAdapter)
    assert reg.get(V2) is first
    toggled = reg.get(V2.with_enabled(False))
    assert toggled is not first
    built = reg.build_all([V2, V3.with_enabled(False), BOOK])
    assert sorted(built) == ["Book", "V2"]
    assert isinstance(built["Book"], OrderBookAdapter)
