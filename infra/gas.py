from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GasPrice:
    base_fee_per_gas: int
    priority_fee_per_gas: int
    source: str

    @property
    def effective_wei(self) -> int:
        return int(self.base_fee_per_gas) + int(self.priority_fee_per_gas)


def _median(values: Iterable[int]) -> int:
    vals = sorted(int(v) for v in values if v is not None)
    if not vals:
        return 0
    mid = len(vals) // 2
    if len(vals) % 2:
        return vals[mid]
    return int((vals[mid - 1] + vals[mid]) / 2)


async def fetch_gas_price(
    rpc: Any,
    *,
    block_count: int = 10,
    reward_percentile: int = 50,
    timeout_s: float = 2.0,
) -> Optional[GasPrice]:
    """Current gas price from eth_feeHistory, falling back to eth_gasPrice.

    Returns None when neither call succeeds; gas cost is then left unpriced.
    """
    try:
        res = await rpc.call(
            "eth_feeHistory",
            [hex(int(block_count)), "latest", [int(reward_percentile)]],
            timeout_s=timeout_s,
        )
        base_fees = [int(x, 16) for x in (res.get("baseFeePerGas") or []) if isinstance(x, str)]
        priority = [
            int(row[0], 16)
            for row in (res.get("reward") or [])
            if isinstance(row, (list, tuple)) and row and isinstance(row[0], str)
        ]
        if base_fees:
            return GasPrice(int(base_fees[-1]), _median(priority), "fee_history")
    except Exception as e:
        logger.debug("eth_feeHistory unavailable: %s", e)

    try:
        gp = await rpc.call("eth_gasPrice", [], timeout_s=timeout_s)
        return GasPrice(int(gp, 16) if isinstance(gp, str) else int(gp), 0, "gas_price")
    except Exception as e:
        logger.warning("gas price unavailable: %s", e)
        return None
