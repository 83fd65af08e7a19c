# aggregator/dex/pricing.py
"""Pricing formulas, one per venue family.

All functions are pure: identical inputs always give identical outputs.
Amounts are integers in the smallest units of the respective token.
Price impact is measured against the fee-adjusted pre-trade spot price, so it
reports price movement only; fees are accounted for by the cost estimator.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Sequence, Tuple

BPS = 10_000
Q96 = 2**96


class InsufficientLiquidity(ValueError):
    pass


def _fee_factor(fee_bps: int) -> int:
    return BPS - max(0, min(BPS, int(fee_bps)))


def _impact_bps(ideal_out: float, amount_out: int) -> float:
    if ideal_out <= 0:
        return 0.0
    return max(0.0, (ideal_out - float(amount_out)) / ideal_out * BPS)


def constant_product_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amt_in_with_fee = int(amount_in) * _fee_factor(fee_bps)
    numerator = amt_in_with_fee * int(reserve_out)
    denominator = int(reserve_in) * BPS + amt_in_with_fee
    return int(numerator // denominator)


def constant_product(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> Tuple[int, float]:
    """amountOut = in*(1-fee) * Rout / (Rin + in*(1-fee)); returns (out, impact_bps)."""
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity("empty reserves")
    out = constant_product_out(amount_in, reserve_in, reserve_out, fee_bps)
    if out <= 0:
        raise InsufficientLiquidity("zero output")
    ideal = float(amount_in) * _fee_factor(fee_bps) / BPS * float(reserve_out) / float(reserve_in)
    return out, _impact_bps(ideal, out)


def concentrated_virtual_reserves(liquidity: int, sqrt_price_x96: int, zero_for_one: bool) -> Tuple[int, int]:
    """Virtual (reserve_in, reserve_out) of the active range."""
    if liquidity <= 0 or sqrt_price_x96 <= 0:
        return 0, 0
    x = int(liquidity) * Q96 // int(sqrt_price_x96)
    y = int(liquidity) * int(sqrt_price_x96) // Q96
    return (x, y) if zero_for_one else (y, x)


def concentrated(
    amount_in: int,
    liquidity: int,
    sqrt_price_x96: int,
    zero_for_one: bool,
    fee_bps: int,
    range_reserve_out: int = 0,
) -> Tuple[int, float]:
    """Swap inside the active tick range.

    Within one range the pool behaves like a constant-product pool over its
    virtual reserves. `range_reserve_out` is the real balance of the output
    token available before the range is exhausted (0 = unbounded).
    """
    reserve_in, reserve_out = concentrated_virtual_reserves(liquidity, sqrt_price_x96, zero_for_one)
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity("no active liquidity")
    out, impact = constant_product(amount_in, reserve_in, reserve_out, fee_bps)
    if range_reserve_out > 0 and out > int(range_reserve_out):
        raise InsufficientLiquidity("trade crosses active range")
    return out, impact


def order_book(amount_in: int, levels: Sequence[Tuple[Decimal, int]], fee_bps: int) -> Tuple[int, float]:
    """Walk book levels best-first.

    Each level is (price, size): price in output units per input unit, size in
    input units. The taker fee is charged on the output.
    """
    if amount_in <= 0:
        raise InsufficientLiquidity("zero input")
    if not levels:
        raise InsufficientLiquidity("empty book")
    remaining = int(amount_in)
    gross = Decimal(0)
    for price, size in levels:
        if remaining <= 0:
            break
        take = min(remaining, int(size))
        if take <= 0:
            continue
        gross += Decimal(take) * Decimal(price)
        remaining -= take
    if remaining > 0:
        raise InsufficientLiquidity("insufficient depth")
    factor = Decimal(_fee_factor(fee_bps)) / Decimal(BPS)
    out = int((gross * factor).to_integral_value(rounding=ROUND_DOWN))
    if out <= 0:
        raise InsufficientLiquidity("zero output")
    best_price = Decimal(levels[0][0])
    ideal = float(Decimal(amount_in) * best_price * factor)
    return out, _impact_bps(ideal, out)
