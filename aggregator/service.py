# aggregator/service.py

"""Request validation, the quote → route → cost → plan pipeline, and the
mapping of outcomes onto client-facing statuses.

Statuses: ok (200), client_error (400), not_found (404), server_error (500).
Internal causes are logged, never echoed to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aggregator import config
from aggregator.collector import CollectionResult, QuoteCollector
from aggregator.costs import CostEstimator
from aggregator.errors import NoRouteError, ValidationError
from aggregator.optimizer import RouteOptimizer
from aggregator.planner import ExecutionPlanner
from aggregator.settlement import Settlement
from aggregator.types import AssetRef, CostEstimate, ExecutionPlan, ExecutionReceipt, Pair, Route
from aggregator.venues import VenueBook, VenueSnapshot
from infra.gas import fetch_gas_price
from infra.metrics import METRICS

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]


def _int_field(
    data: Dict[str, Any],
    name: str,
    default: Optional[int] = None,
    *,
    lo: Optional[int] = None,
    hi: Optional[int] = None,
) -> Optional[int]:
    raw = data.get(name)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool) or isinstance(raw, float):
        raise ValidationError(f"{name} must be an integer", field=name)
    try:
        val = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{name} must be an integer", field=name)
    if lo is not None and val < lo:
        raise ValidationError(f"{name} must be >= {lo}", field=name)
    if hi is not None and val > hi:
        raise ValidationError(f"{name} must be <= {hi}", field=name)
    return val


def _asset(data: Dict[str, Any], name: str, chain_id: int) -> AssetRef:
    raw = str(data.get(name) or "").strip()
    if not raw:
        raise ValidationError(f"missing required field {name}", field=name)
    address = config.token_address(raw)
    decimals = _int_field(data, f"{name}Decimals", config.token_decimals(raw), lo=0, hi=36)
    try:
        return AssetRef.of(address, decimals, chain_id, symbol=config.TOKEN_BY_ADDR.get(address.lower()))
    except ValueError:
        raise ValidationError(f"{name} is not a known symbol or a valid address", field=name)


def _venue_list(raw: Any) -> Tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [str(x) for x in raw]
    else:
        raise ValidationError("excludedVenues must be a list or a comma-separated string", field="excludedVenues")
    return tuple(x.strip() for x in items if x.strip())


@dataclass(frozen=True)
class SwapRequest:
    pair: Pair
    amount_in: int
    slippage_bps: int
    max_hops: int
    excluded_venues: Tuple[str, ...] = ()
    deadline: Optional[int] = None
    recipient: Optional[str] = None
    price_impact_ceiling_bps: int = 100
    max_splits: int = 1
    amount_out_min: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any, *, chain_id: int = 0) -> "SwapRequest":
        if not isinstance(data, dict):
            raise ValidationError("request body must be an object")
        token_in = _asset(data, "tokenIn", chain_id)
        token_out = _asset(data, "tokenOut", chain_id)
        if token_in == token_out:
            raise ValidationError("tokenIn and tokenOut must differ", field="tokenOut")
        amount_in = _int_field(data, "amountIn", lo=1)
        if amount_in is None:
            raise ValidationError("missing required field amountIn", field="amountIn")
        return cls(
            pair=Pair(token_in, token_out),
            amount_in=amount_in,
            slippage_bps=_int_field(
                data, "slippageToleranceBps", int(getattr(config, "DEFAULT_SLIPPAGE_BPS", 50)), lo=0, hi=10_000
            ),
            max_hops=_int_field(
                data,
                "maxHops",
                int(getattr(config, "MAX_HOPS", 3)),
                lo=1,
                hi=int(getattr(config, "MAX_HOPS_LIMIT", 4)),
            ),
            excluded_venues=_venue_list(data.get("excludedVenues")),
            deadline=_int_field(data, "deadline", None, lo=1),
            recipient=(str(data.get("recipient")).strip() or None) if data.get("recipient") else None,
            price_impact_ceiling_bps=_int_field(
                data,
                "priceImpactCeilingBps",
                int(getattr(config, "PRICE_IMPACT_CEILING_BPS", 100)),
                lo=0,
                hi=10_000,
            ),
            max_splits=_int_field(data, "maxSplits", int(getattr(config, "MAX_SPLITS", 3)), lo=1, hi=8),
            amount_out_min=_int_field(data, "amountOutMin", None, lo=0),
        )


@dataclass(frozen=True)
class QuoteResult:
    request: SwapRequest
    snapshot: VenueSnapshot
    collection: CollectionResult
    route: Route
    cost: CostEstimate
    gas_price_wei: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        best = self.route.to_dict()
        return {
            "status": "ok",
            "bestRoute": best,
            "allQuotes": [q.to_dict() for q in self.collection.quotes],
            "cost": self.cost.to_dict(),
            "metadata": {
                "requestId": self.collection.request_id,
                "quotesFound": len(self.collection.quotes),
                "venuesAttempted": self.collection.venues_attempted,
                "failures": dict(self.collection.failures),
                "deadlineExceeded": bool(self.collection.deadline_exceeded),
                "estimatedExecutionTime": float(self.cost.expected_latency_s),
                "fees": str(self.cost.fees),
                "averageGasPrice": str(self.gas_price_wei) if self.gas_price_wei is not None else None,
                "chainId": int(self.snapshot.chain_id),
                "configVersion": int(self.snapshot.version),
            },
        }


class SwapService:
    def __init__(
        self,
        book: VenueBook,
        collector: QuoteCollector,
        *,
        optimizer: Optional[RouteOptimizer] = None,
        planner: Optional[ExecutionPlanner] = None,
        settlement: Optional[Settlement] = None,
        rpc: Any = None,
        per_venue_timeout: Optional[float] = None,
        overall_deadline: Optional[float] = None,
    ):
        self.book = book
        self.collector = collector
        self.optimizer = optimizer or RouteOptimizer()
        self.planner = planner or ExecutionPlanner()
        self.settlement = settlement
        self.rpc = rpc
        self.per_venue_timeout = per_venue_timeout
        self.overall_deadline = overall_deadline

    def parse(self, payload: Any) -> SwapRequest:
        return SwapRequest.from_dict(payload, chain_id=self.book.snapshot().chain_id)

    async def _gas_price(self) -> Optional[int]:
        if self.rpc is None:
            return None
        gp = await fetch_gas_price(self.rpc)
        return gp.effective_wei if gp else None

    async def quote(self, request: SwapRequest) -> QuoteResult:
        snapshot = self.book.snapshot()
        gas_task = asyncio.create_task(self._gas_price())
        try:
            collection = await self.collector.collect_quotes(
                request.pair,
                request.amount_in,
                snapshot,
                per_venue_timeout=self.per_venue_timeout,
                overall_deadline=self.overall_deadline,
                max_hops=request.max_hops,
                excluded=request.excluded_venues,
                request_id=uuid.uuid4().hex,
            )
        finally:
            gas_price = await gas_task
        if collection.empty:
            METRICS.inc("requests_not_found", 1)
            raise NoRouteError("no liquidity for this pair")
        route = self.optimizer.optimize(
            collection.quotes,
            request.price_impact_ceiling_bps,
            request.max_splits,
        )
        cost = CostEstimator(gas_price_wei=gas_price).estimate(route)
        return QuoteResult(
            request=request,
            snapshot=snapshot,
            collection=collection,
            route=route,
            cost=cost,
            gas_price_wei=gas_price,
        )

    def plan(self, result: QuoteResult) -> ExecutionPlan:
        request = result.request
        if not request.recipient:
            raise ValidationError("missing required field recipient", field="recipient")
        plan = self.planner.plan(
            result.route,
            request.slippage_bps,
            request.deadline,
            request.recipient,
            snapshot=result.snapshot,
        )
        if request.amount_out_min is not None and plan.minimum_output < request.amount_out_min:
            raise NoRouteError("best route cannot guarantee the requested minimum output")
        return plan

    async def execute(self, plan: ExecutionPlan, settlement: Optional[Settlement] = None) -> ExecutionReceipt:
        target = settlement or self.settlement
        if target is None:
            raise RuntimeError("no settlement collaborator configured")
        return await target.submit(plan)

    async def _respond(self, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> Response:
        t0 = time.perf_counter()
        try:
            body = await fn()
            METRICS.inc_reason("responses_by_status", "ok", 1)
            return 200, body
        except ValidationError as e:
            METRICS.inc_reason("responses_by_status", "client_error", 1)
            return 400, {"status": "client_error", "error": str(e), "field": e.field}
        except NoRouteError as e:
            METRICS.inc_reason("responses_by_status", "not_found", 1)
            return 404, {"status": "not_found", "error": str(e)}
        except Exception:
            logger.exception("request failed")
            METRICS.inc_reason("responses_by_status", "server_error", 1)
            return 500, {"status": "server_error", "error": "internal error"}
        finally:
            METRICS.observe("request_latency_ms", (time.perf_counter() - t0) * 1000.0)

    async def handle_quote(self, payload: Any) -> Response:
        async def run() -> Dict[str, Any]:
            return (await self.quote(self.parse(payload))).to_dict()

        return await self._respond(run)

    async def handle_plan(self, payload: Any) -> Response:
        async def run() -> Dict[str, Any]:
            result = await self.quote(self.parse(payload))
            body = result.to_dict()
            body["plan"] = self.plan(result).to_dict()
            return body

        return await self._respond(run)

    async def handle_swap(self, payload: Any) -> Response:
        async def run() -> Dict[str, Any]:
            result = await self.quote(self.parse(payload))
            plan = self.plan(result)
            receipt = await self.execute(plan)
            body = result.to_dict()
            body["plan"] = plan.to_dict()
            body["execution"] = receipt.to_dict()
            return body

        return await self._respond(run)

    def venues(self) -> List[Dict[str, Any]]:
        return [v.to_dict() for v in self.book.snapshot().venues]

    def set_venue_enabled(self, name: str, enabled: bool) -> Dict[str, Any]:
        snapshot = self.book.set_enabled(name, enabled)
        logger.info("venue %s %s (config version %d)", name, "enabled" if enabled else "disabled", snapshot.version)
        venue = snapshot.get(name)
        return venue.to_dict() if venue else {}

    def tokens(self) -> List[Dict[str, Any]]:
        chain_id = self.book.snapshot().chain_id
        return [
            {
                "symbol": sym,
                "address": addr,
                "decimals": int(config.token_decimals(sym)),
                "chainId": int(chain_id),
            }
            for sym, addr in sorted(config.TOKENS.items())
        ]
