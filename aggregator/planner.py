from __future__ import annotations

import time
from typing import Callable, List, Optional, Tuple

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from aggregator import config
from aggregator.dex.pricing import BPS
from aggregator.errors import ValidationError
from aggregator.types import ExecutionPlan, Route, RouteLeg, SwapInstruction, Venue, VenueFamily
from aggregator.venues import VenueSnapshot

V2_SWAP_SIG = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
V3_SWAP_SIG = "exactInput((bytes,address,uint256,uint256,uint256))"
BOOK_SWAP_SIG = "marketSwap(address[],uint256,uint256,address,uint256)"


def apply_slippage(amount: int, slippage_bps: int) -> int:
    return int(amount) * (BPS - int(slippage_bps)) // BPS


def _encode_v3_path(path: Tuple[str, ...], fee_tier: int) -> bytes:
    out = bytes.fromhex(path[0][2:])
    for token in path[1:]:
        out += int(fee_tier).to_bytes(3, "big") + bytes.fromhex(token[2:])
    return out


def encode_leg(
    venue: Venue,
    leg: RouteLeg,
    *,
    min_out: int,
    recipient: str,
    deadline: int,
) -> bytes:
    path = tuple(to_checksum_address(a.address) for a in leg.path)
    to_addr = to_checksum_address(recipient)
    if venue.family is VenueFamily.AMM_V2:
        selector = function_signature_to_4byte_selector(V2_SWAP_SIG)
        body = abi_encode(
            ["uint256", "uint256", "address[]", "address", "uint256"],
            [int(leg.amount_in), int(min_out), list(path), to_addr, int(deadline)],
        )
    elif venue.family is VenueFamily.AMM_V3:
        selector = function_signature_to_4byte_selector(V3_SWAP_SIG)
        packed = _encode_v3_path(path, int(venue.fee_bps) * 100)
        body = abi_encode(
            ["(bytes,address,uint256,uint256,uint256)"],
            [(packed, to_addr, int(deadline), int(leg.amount_in), int(min_out))],
        )
    elif venue.family is VenueFamily.ORDER_BOOK:
        selector = function_signature_to_4byte_selector(BOOK_SWAP_SIG)
        body = abi_encode(
            ["address[]", "uint256", "uint256", "address", "uint256"],
            [list(path), int(leg.amount_in), int(min_out), to_addr, int(deadline)],
        )
    else:
        raise ValueError(f"unsupported venue family: {venue.family}")
    return bytes(selector) + body


class ExecutionPlanner:
    """Turns a route into an inert, fully-specified execution plan."""

    def __init__(self, *, deadline_window_s: Optional[int] = None, clock: Callable[[], float] = time.time):
        if deadline_window_s is None:
            deadline_window_s = int(getattr(config, "DEADLINE_WINDOW_S", 1200))
        self.deadline_window_s = int(deadline_window_s)
        self.clock = clock

    def plan(
        self,
        route: Route,
        slippage_tolerance_bps: int,
        deadline: Optional[int],
        recipient: str,
        *,
        snapshot: VenueSnapshot,
    ) -> ExecutionPlan:
        slippage = int(slippage_tolerance_bps)
        if slippage < 0 or slippage > BPS:
            raise ValidationError("slippage tolerance must be within [0, 10000] bps", field="slippageToleranceBps")
        if not recipient or not is_address(str(recipient)):
            raise ValidationError(f"invalid recipient {recipient!r}", field="recipient")
        now = float(self.clock())
        if deadline is None:
            deadline = int(now) + self.deadline_window_s
        elif int(deadline) <= now:
            raise ValidationError("deadline is in the past", field="deadline")
        deadline = int(deadline)
        recipient = to_checksum_address(str(recipient))

        instructions: List[SwapInstruction] = []
        for leg in route.legs:
            venue = snapshot.get(leg.venue)
            if venue is None:
                raise ValidationError(f"route references unknown venue {leg.venue!r}", field="route")
            min_out = apply_slippage(leg.amount_out, slippage)
            instructions.append(
                SwapInstruction(
                    venue=venue.name,
                    family=venue.family,
                    target=venue.router or venue.address,
                    amount_in=int(leg.amount_in),
                    min_amount_out=int(min_out),
                    path=tuple(a.address for a in leg.path),
                    calldata=encode_leg(venue, leg, min_out=min_out, recipient=recipient, deadline=deadline),
                )
            )

        return ExecutionPlan(
            route=route,
            minimum_output=apply_slippage(route.total_output, slippage),
            deadline=deadline,
            recipient=recipient,
            slippage_bps=slippage,
            instructions=tuple(instructions),
            created_at=now,
        )
