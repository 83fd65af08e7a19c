import asyncio

import pytest
from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector

from aggregator.costs import CostEstimator
from aggregator.errors import ValidationError
from aggregator.planner import BOOK_SWAP_SIG, V2_SWAP_SIG, V3_SWAP_SIG, ExecutionPlanner, _encode_v3_path, apply_slippage
from aggregator.settlement import DryRunSettlement
from aggregator.types import Route, RouteLeg, VenueFamily
from aggregator.venues import VenueSnapshot

from conftest import CHAIN_ID, venue

NOW = 1_700_000_000
RECIPIENT = "0x" + "ab" * 20

V2 = venue("HyperSwap-V2", VenueFamily.AMM_V2, 30, idx=1, router="0x" + "a1" * 20)
V3 = venue("HyperDEX-V3", VenueFamily.AMM_V3, 30, idx=2, router="0x" + "a2" * 20)
BOOK = venue("HyperCore-Native", VenueFamily.ORDER_BOOK, 5, idx=3, gas_estimate=50_000)
SNAPSHOT = VenueSnapshot((V2, V3, BOOK), chain_id=CHAIN_ID)


@pytest.fixture
def split_route(hype, usdc, ueth):
    legs = (
        RouteLeg("HyperSwap-V2", 600, 2_400, (hype, usdc), 40.0, 150_000, 30, VenueFamily.AMM_V2),
        RouteLeg("HyperDEX-V3", 300, 1_190, (hype, ueth, usdc), 10.0, 360_000, 30, VenueFamily.AMM_V3),
        RouteLeg("HyperCore-Native", 100, 400, (hype, usdc), 0.0, 50_000, 5, VenueFamily.ORDER_BOOK),
    )
    return Route.from_legs(legs)


def test_route_aggregates(split_route) -> None:
    assert split_route.amount_in == 1_000
    assert split_route.total_output == 3_990
    assert split_route.aggregate_gas_estimate == 560_000
    # capital-weighted, not the worst leg
    assert split_route.aggregate_price_impact_bps == pytest.approx((600 * 40 + 300 * 10) / 1000)


def test_route_rejects_unbalanced_legs(hype, usdc) -> None:
    leg = RouteLeg("HyperSwap-V2", 600, 2_400, (hype, usdc))
    with pytest.raises(ValueError):
        Route(legs=(leg,), amount_in=1_000, total_output=2_400, aggregate_price_impact_bps=0.0, aggregate_gas_estimate=0)


def test_cost_estimate(split_route) -> None:
    est = CostEstimator(seconds_per_hop=3.0, gas_price_wei=2).estimate(split_route)
    assert est.gas == 560_000
    assert est.fees == (30 * 2_400 + 30 * 1_190 + 5 * 400) // 10_000
    assert est.price_impact_bps == pytest.approx(27.0)
    assert est.expected_latency_s == pytest.approx(4 * 3.0)
    assert est.gas_cost_wei == 1_120_000


def test_cost_estimate_is_idempotent(split_route) -> None:
    est = CostEstimator()
    assert est.estimate(split_route) == est.estimate(split_route)
    assert est.estimate(split_route).gas_cost_wei is None


def test_apply_slippage_rounds_down() -> None:
    assert apply_slippage(10_000, 50) == 9_950
    assert apply_slippage(999, 50) == 994
    assert apply_slippage(999, 0) == 999


def test_plan_minimum_output_and_default_deadline(split_route) -> None:
    planner = ExecutionPlanner(clock=lambda: NOW)
    plan = planner.plan(split_route, 50, None, RECIPIENT, snapshot=SNAPSHOT)
    assert plan.minimum_output == 3_990 * 9_950 // 10_000
    assert plan.deadline == NOW + 1200
    assert plan.recipient.lower() == RECIPIENT
    assert [i.venue for i in plan.instructions] == ["HyperSwap-V2", "HyperDEX-V3", "HyperCore-Native"]
    assert plan.instructions[0].target == V2.router
    assert plan.instructions[2].target == BOOK.address
    assert [i.min_amount_out for i in plan.instructions] == [2_388, 1_184, 398]


def test_plan_explicit_deadline(split_route) -> None:
    plan = ExecutionPlanner(clock=lambda: NOW).plan(split_route, 0, NOW + 60, RECIPIENT, snapshot=SNAPSHOT)
    assert plan.deadline == NOW + 60
    assert plan.minimum_output == split_route.total_output


@pytest.mark.parametrize(
    "slippage,deadline,recipient,field",
    [
        (-1, None, RECIPIENT, "slippageToleranceBps"),
        (10_001, None, RECIPIENT, "slippageToleranceBps"),
        (50, NOW - 1, RECIPIENT, "deadline"),
        (50, None, "0x1234", "recipient"),
        (50, None, "", "recipient"),
    ],
)
def test_plan_validation(split_route, slippage, deadline, recipient, field) -> None:
    with pytest.raises(ValidationError) as exc:
        ExecutionPlanner(clock=lambda: NOW).plan(split_route, slippage, deadline, recipient, snapshot=SNAPSHOT)
    assert exc.value.field == field


def test_plan_unknown_venue(split_route) -> None:
    snapshot = VenueSnapshot((V2, V3), chain_id=CHAIN_ID)
    with pytest.raises(ValidationError):
        ExecutionPlanner(clock=lambda: NOW).plan(split_route, 50, None, RECIPIENT, snapshot=snapshot)


def test_v2_calldata_decodes(split_route, hype, usdc) -> None:
    plan = ExecutionPlanner(clock=lambda: NOW).plan(split_route, 50, None, RECIPIENT, snapshot=SNAPSHOT)
    data = plan.instructions[0].calldata
    assert data[:4] == function_signature_to_4byte_selector(V2_SWAP_SIG)
    amount_in, min_out, path, to, deadline = decode(["uint256", "uint256", "address[]", "address", "uint256"], data[4:])
    assert (amount_in, min_out, deadline) == (600, 2_388, NOW + 1200)
    assert [a.lower() for a in path] == [hype.key, usdc.key]
    assert to.lower() == RECIPIENT


def test_v3_and_book_selectors(split_route) -> None:
    plan = ExecutionPlanner(clock=lambda: NOW).plan(split_route, 50, None, RECIPIENT, snapshot=SNAPSHOT)
    assert plan.instructions[1].calldata[:4] == function_signature_to_4byte_selector(V3_SWAP_SIG)
    assert plan.instructions[2].calldata[:4] == function_signature_to_4byte_selector(BOOK_SWAP_SIG)


def test_v3_packed_path() -> None:
    a, b, c = "0x" + "aa" * 20, "0x" + "bb" * 20, "0x" + "cc" * 20
    packed = _encode_v3_path((a, b, c), 3000)
    assert len(packed) == 20 + 3 + 20 + 3 + 20
    assert packed[20:23] == (3000).to_bytes(3, "big")
    assert packed[:20] == bytes.fromhex("aa" * 20)
    assert packed[-20:] == bytes.fromhex("cc" * 20)


def test_dry_run_settlement(split_route) -> None:
    plan = ExecutionPlanner(clock=lambda: NOW).plan(split_route, 50, None, RECIPIENT, snapshot=SNAPSHOT)
    settlement = DryRunSettlement()
    receipt = asyncio.run(settlement.submit(plan))
    again = asyncio.run(settlement.submit(plan))
    assert receipt.transaction_ref == again.transaction_ref
    assert receipt.transaction_ref.startswith("0x") and len(receipt.transaction_ref) == 66
    assert receipt.realized_amount_out == split_route.total_output
    assert receipt.realized_gas == 560_000
    assert [leg.venue for leg in receipt.executed_legs] == ["HyperSwap-V2", "HyperDEX-V3", "HyperCore-Native"]
    assert len(settlement.submitted) == 2


def test_dry_run_settlement_keeps_recent_plans_only(split_route) -> None:
    planner = ExecutionPlanner(clock=lambda: NOW)
    settlement = DryRunSettlement(keep=2)
    plans = [planner.plan(split_route, 50, NOW + 60 + i, RECIPIENT, snapshot=SNAPSHOT) for i in range(3)]
    for plan in plans:
        asyncio.run(settlement.submit(plan))
    assert list(settlement.submitted) == plans[1:]
