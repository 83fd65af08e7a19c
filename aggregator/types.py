from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple

from eth_utils import is_address, to_checksum_address

# amount_in -> (amount_out, price_impact_bps), evaluated against frozen venue state
Curve = Callable[[int], Tuple[int, float]]


class VenueFamily(enum.Enum):
    AMM_V2 = "uniswap-v2"
    AMM_V3 = "uniswap-v3"
    ORDER_BOOK = "order-book"

    @classmethod
    def parse(cls, raw: Any) -> "VenueFamily":
        if isinstance(raw, cls):
            return raw
        key = str(raw or "").strip().lower()
        for fam in cls:
            if fam.value == key:
                return fam
        raise ValueError(f"unknown venue family: {raw!r}")


@dataclass(frozen=True)
class AssetRef:
    address: str
    decimals: int
    chain_id: int = 0
    symbol: Optional[str] = field(default=None, compare=False)

    @classmethod
    def of(cls, address: str, decimals: int, chain_id: int = 0, symbol: Optional[str] = None) -> "AssetRef":
        addr = str(address).strip()
        if not is_address(addr):
            raise ValueError(f"invalid asset address: {address!r}")
        dec = int(decimals)
        if dec < 0 or dec > 36:
            raise ValueError(f"invalid decimals: {decimals!r}")
        return cls(address=to_checksum_address(addr), decimals=dec, chain_id=int(chain_id), symbol=symbol)

    @property
    def key(self) -> str:
        return self.address.lower()

    def label(self) -> str:
        return self.symbol or self.address[:6] + "..." + self.address[-4:]


@dataclass(frozen=True)
class Pair:
    token_in: AssetRef
    token_out: AssetRef

    def __post_init__(self) -> None:
        if self.token_in == self.token_out:
            raise ValueError("token_in and token_out must differ")

    def reversed(self) -> "Pair":
        return Pair(self.token_out, self.token_in)


@dataclass(frozen=True)
class Venue:
    name: str
    family: VenueFamily
    fee_bps: int
    address: str
    enabled: bool = True
    router: Optional[str] = None
    quoter: Optional[str] = None
    gas_estimate: int = 150_000

    def with_enabled(self, enabled: bool) -> "Venue":
        return replace(self, enabled=bool(enabled))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "family": self.family.value,
            "feeBps": int(self.fee_bps),
            "enabled": bool(self.enabled),
            "address": self.address,
            "router": self.router or self.address,
            "gasEstimate": int(self.gas_estimate),
        }


@dataclass(frozen=True)
class Quote:
    venue: str
    amount_in: int
    amount_out: int
    price_impact_bps: float
    gas_estimate: int
    path: Tuple[AssetRef, ...]
    fee_bps: int = 0
    family: Optional[VenueFamily] = None
    request_id: Optional[str] = None
    curve: Optional[Curve] = field(default=None, compare=False, repr=False)

    def fill(self, amount_in: int) -> Tuple[int, float]:
        """Output and impact for a partial allocation of this quote's input."""
        amount_in = int(amount_in)
        if amount_in <= 0:
            return 0, 0.0
        if amount_in == self.amount_in:
            return int(self.amount_out), float(self.price_impact_bps)
        if self.curve is not None:
            out, impact = self.curve(amount_in)
            return int(out), float(impact)
        # No curve: scale linearly from the quoted point.
        out = int(self.amount_out) * amount_in // int(self.amount_in)
        impact = float(self.price_impact_bps) * amount_in / float(self.amount_in)
        return out, impact

    def execution_price(self) -> float:
        if self.amount_in <= 0 or not self.path:
            return 0.0
        dec_in = self.path[0].decimals
        dec_out = self.path[-1].decimals
        return (self.amount_out / 10**dec_out) / (self.amount_in / 10**dec_in)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "priceImpactBps": round(float(self.price_impact_bps), 4),
            "gasEstimate": int(self.gas_estimate),
            "feeBps": int(self.fee_bps),
            "executionPrice": f"{self.execution_price():.6f}",
            "path": [a.address for a in self.path],
        }


@dataclass(frozen=True)
class RouteLeg:
    venue: str
    amount_in: int
    amount_out: int
    path: Tuple[AssetRef, ...]
    price_impact_bps: float = 0.0
    gas_estimate: int = 0
    fee_bps: int = 0
    family: Optional[VenueFamily] = None

    @property
    def hops(self) -> int:
        return max(1, len(self.path) - 1)

    def to_dict(self, total_in: int) -> Dict[str, Any]:
        pct = (float(self.amount_in) / float(total_in) * 100.0) if total_in > 0 else 0.0
        return {
            "venue": self.venue,
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "percentage": round(pct, 4),
            "priceImpactBps": round(float(self.price_impact_bps), 4),
            "gasEstimate": int(self.gas_estimate),
            "feeBps": int(self.fee_bps),
            "path": [a.address for a in self.path],
        }


@dataclass(frozen=True)
class Route:
    legs: Tuple[RouteLeg, ...]
    amount_in: int
    total_output: int
    aggregate_price_impact_bps: float
    aggregate_gas_estimate: int

    def __post_init__(self) -> None:
        if not self.legs:
            raise ValueError("route needs at least one leg")
        if sum(int(leg.amount_in) for leg in self.legs) != int(self.amount_in):
            raise ValueError("leg inputs do not sum to route input")

    @classmethod
    def from_legs(cls, legs: Tuple[RouteLeg, ...]) -> "Route":
        amount_in = sum(int(leg.amount_in) for leg in legs)
        total_out = sum(int(leg.amount_out) for leg in legs)
        impact = 0.0
        if amount_in > 0:
            impact = sum(float(leg.price_impact_bps) * int(leg.amount_in) for leg in legs) / float(amount_in)
        return cls(
            legs=tuple(legs),
            amount_in=int(amount_in),
            total_output=int(total_out),
            aggregate_price_impact_bps=float(impact),
            aggregate_gas_estimate=sum(int(leg.gas_estimate) for leg in legs),
        )

    @property
    def is_split(self) -> bool:
        return len(self.legs) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalOutput": str(self.total_output),
            "amountIn": str(self.amount_in),
            "priceImpactBps": round(float(self.aggregate_price_impact_bps), 4),
            "gasEstimate": int(self.aggregate_gas_estimate),
            "legs": [leg.to_dict(self.amount_in) for leg in self.legs],
        }


@dataclass(frozen=True)
class CostEstimate:
    gas: int
    fees: int
    price_impact_bps: float
    expected_latency_s: float
    gas_cost_wei: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gas": int(self.gas),
            "fees": str(self.fees),
            "priceImpactBps": round(float(self.price_impact_bps), 4),
            "expectedLatencyS": float(self.expected_latency_s),
            "gasCostWei": str(self.gas_cost_wei) if self.gas_cost_wei is not None else None,
        }


@dataclass(frozen=True)
class SwapInstruction:
    venue: str
    family: VenueFamily
    target: str
    amount_in: int
    min_amount_out: int
    path: Tuple[str, ...]
    calldata: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "family": self.family.value,
            "target": self.target,
            "amountIn": str(self.amount_in),
            "minAmountOut": str(self.min_amount_out),
            "path": list(self.path),
            "calldata": "0x" + self.calldata.hex(),
        }


@dataclass(frozen=True)
class ExecutionPlan:
    route: Route
    minimum_output: int
    deadline: int
    recipient: str
    slippage_bps: int
    instructions: Tuple[SwapInstruction, ...]
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route": self.route.to_dict(),
            "amountOutMin": str(self.minimum_output),
            "deadline": int(self.deadline),
            "recipient": self.recipient,
            "slippageToleranceBps": int(self.slippage_bps),
            "instructions": [i.to_dict() for i in self.instructions],
        }


@dataclass(frozen=True)
class ExecutedLeg:
    venue: str
    amount_in: int
    amount_out: int
    gas_used: int


@dataclass(frozen=True)
class ExecutionReceipt:
    transaction_ref: str
    realized_amount_out: int
    realized_gas: int
    executed_legs: Tuple[ExecutedLeg, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionRef": self.transaction_ref,
            "realizedAmountOut": str(self.realized_amount_out),
            "realizedGas": int(self.realized_gas),
            "executedLegs": [
                {
                    "venue": leg.venue,
                    "amountIn": str(leg.amount_in),
                    "amountOut": str(leg.amount_out),
                    "gasUsed": int(leg.gas_used),
                }
                for leg in self.executed_legs
            ],
        }
