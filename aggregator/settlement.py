from __future__ import annotations

import asyncio
import logging
from collections import deque

from eth_utils import keccak

from aggregator.types import ExecutedLeg, ExecutionPlan, ExecutionReceipt

logger = logging.getLogger(__name__)


class Settlement:
    """Boundary to the external settlement collaborator.

    Implementations sign, broadcast and confirm the plan's instructions and
    report realized values. The aggregator never does this itself.
    """

    async def submit(self, plan: ExecutionPlan) -> ExecutionReceipt:
        raise NotImplementedError


class DryRunSettlement(Settlement):
    """Reports the planned amounts as realized without touching a chain."""

    def __init__(self, latency_s: float = 0.0, keep: int = 64):
        self.latency_s = float(latency_s)
        # bounded; oldest plans drop off
        self.submitted: deque = deque(maxlen=max(1, int(keep)))

    async def submit(self, plan: ExecutionPlan) -> ExecutionReceipt:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        self.submitted.append(plan)
        blob = b"".join(i.calldata for i in plan.instructions) + plan.deadline.to_bytes(32, "big")
        tx_ref = "0x" + keccak(blob).hex()
        legs = tuple(
            ExecutedLeg(
                venue=leg.venue,
                amount_in=int(leg.amount_in),
                amount_out=int(leg.amount_out),
                gas_used=int(leg.gas_estimate),
            )
            for leg in plan.route.legs
        )
        logger.info("dry-run settlement %s: %d legs, out=%d", tx_ref[:10], len(legs), plan.route.total_output)
        return ExecutionReceipt(
            transaction_ref=tx_ref,
            realized_amount_out=int(plan.route.total_output),
            realized_gas=sum(leg.gas_used for leg in legs),
            executed_legs=legs,
        )
