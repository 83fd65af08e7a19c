from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from aggregator import arbitrage, config
from aggregator.artifacts import append_jsonl, configure_logging
from aggregator.collector import QuoteCollector
from aggregator.dex.base import default_hubs
from aggregator.dex.registry import AdapterRegistry
from aggregator.dex.state import PriceSource, RPCPriceSource, StaticPriceSource
from aggregator.errors import AggregatorError, ConfigError
from aggregator.server import create_app
from aggregator.service import SwapService
from aggregator.settlement import DryRunSettlement
from aggregator.venues import VenueBook, load_venue_snapshot
from infra.rpc import AsyncRPC, get_provider, get_rpc_urls

logger = logging.getLogger("aggregator.cli")


def _load_fixture(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read fixture {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"fixture {path} must be a JSON object")
    return data


def _build_service(args: argparse.Namespace) -> Tuple[SwapService, PriceSource, Optional[AsyncRPC]]:
    snapshot = load_venue_snapshot(network=args.network, path=Path(args.venues) if args.venues else None)
    rpc: Optional[AsyncRPC] = None
    if args.fixture:
        source: PriceSource = StaticPriceSource.from_dict(_load_fixture(Path(args.fixture)), chain_id=snapshot.chain_id)
    else:
        rpc = AsyncRPC(get_rpc_urls()[0], default_timeout_s=float(getattr(config, "RPC_DEFAULT_TIMEOUT_S", 2.0)))
        source = RPCPriceSource(rpc)
    registry = AdapterRegistry(source, hubs=default_hubs(snapshot.chain_id))
    service = SwapService(
        VenueBook(snapshot),
        QuoteCollector(registry),
        settlement=DryRunSettlement(),
        rpc=rpc,
        per_venue_timeout=args.venue_timeout,
        overall_deadline=args.deadline_s,
    )
    logger.info(
        "loaded %d venues for %s (chain %d), source=%s",
        len(snapshot.venues),
        snapshot.network,
        snapshot.chain_id,
        "fixture" if args.fixture else "rpc",
    )
    return service, source, rpc


async def _shutdown(source: PriceSource, rpc: Optional[AsyncRPC]) -> None:
    await source.close()
    if rpc is not None:
        await rpc.close()


def _request_payload(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "tokenIn": args.token_in,
        "tokenOut": args.token_out,
        "amountIn": args.amount,
    }
    optional = {
        "slippageToleranceBps": getattr(args, "slippage_bps", None),
        "maxHops": getattr(args, "max_hops", None),
        "maxSplits": getattr(args, "max_splits", None),
        "priceImpactCeilingBps": getattr(args, "ceiling_bps", None),
        "recipient": getattr(args, "recipient", None),
        "deadline": getattr(args, "deadline", None),
        "amountOutMin": getattr(args, "amount_out_min", None),
        "excludedVenues": getattr(args, "exclude", None),
    }
    payload.update({k: v for k, v in optional.items() if v not in (None, "")})
    return payload


async def _run_quote(args: argparse.Namespace) -> int:
    service, source, rpc = _build_service(args)
    try:
        payload = _request_payload(args)
        if args.execute:
            status, body = await service.handle_swap(payload)
        elif args.plan:
            status, body = await service.handle_plan(payload)
        else:
            status, body = await service.handle_quote(payload)
    finally:
        await _shutdown(source, rpc)

    print(json.dumps(body, indent=2))
    if args.out:
        append_jsonl(Path(args.out), "quotes.jsonl", {"request": payload, "http_status": status, **body})
    if status != 200:
        logger.warning("quote failed: %s (%s)", body.get("status"), body.get("error"))
        return 1
    route = body.get("bestRoute") or {}
    legs = ", ".join(f"{leg['venue']} {leg['percentage']:.1f}%" for leg in route.get("legs") or [])
    logger.info("best route: out=%s via %s", route.get("totalOutput"), legs)
    return 0


async def _run_arbitrage(args: argparse.Namespace) -> int:
    service, source, rpc = _build_service(args)
    try:
        req = service.parse(_request_payload(args))
        opps = await arbitrage.find_opportunities(
            service.collector,
            service.book.snapshot(),
            req.pair,
            req.amount_in,
            min_profit_bps=args.min_profit_bps,
            per_venue_timeout=service.per_venue_timeout,
            overall_deadline=service.overall_deadline,
        )
    finally:
        await _shutdown(source, rpc)
    rows = [o.to_dict() for o in opps]
    print(json.dumps({"status": "ok", "opportunities": rows}, indent=2))
    if args.out:
        for row in rows:
            append_jsonl(Path(args.out), "arbitrage.jsonl", row)
    logger.info("arbitrage scan: %d opportunities", len(rows))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    service, source, rpc = _build_service(args)
    app = create_app(service)

    async def _cleanup(_app: web.Application) -> None:
        await _shutdown(source, rpc)

    app.on_cleanup.append(_cleanup)
    logger.info("serving on %s:%d", args.host, args.port)
    web.run_app(app, host=args.host, port=int(args.port), print=None)
    return 0


def _run_venues(args: argparse.Namespace) -> int:
    snapshot = load_venue_snapshot(network=args.network, path=Path(args.venues) if args.venues else None)
    out = {
        "network": snapshot.network,
        "chainId": snapshot.chain_id,
        "venues": [v.to_dict() for v in snapshot.venues],
    }
    print(json.dumps(out, indent=2))
    return 0


def _run_status(args: argparse.Namespace) -> int:
    urls = [args.rpc] if args.rpc else None
    try:
        w3 = get_provider(urls)
    except ConnectionError as e:
        logger.error("%s", e)
        return 1
    chain_id = int(w3.eth.chain_id)
    block = int(w3.eth.block_number)
    expected = int(getattr(config, "CHAIN_ID", 0))
    print(json.dumps({"chainId": chain_id, "blockNumber": block, "expectedChainId": expected}, indent=2))
    if expected and chain_id != expected:
        logger.warning("connected to chain %d, configured for %d", chain_id, expected)
        return 1
    return 0


def _add_source_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--network", type=str, default="", help="venue config name under configs/venues")
    p.add_argument("--venues", type=str, default="", help="explicit venue config path (optional)")
    p.add_argument("--fixture", type=str, default="", help="static venue state JSON instead of live RPC")
    p.add_argument("--venue-timeout", dest="venue_timeout", type=float, default=None, help="per-venue timeout (s)")
    p.add_argument("--deadline-s", dest="deadline_s", type=float, default=None, help="overall collection deadline (s)")


def _add_pair_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("token_in", help="input token symbol or address")
    p.add_argument("token_out", help="output token symbol or address")
    p.add_argument("amount", help="input amount in smallest units")
    p.add_argument("--out", type=str, default="", help="append results as JSONL to this dir")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aggregator", description="Multi-venue swap aggregator")
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    q = sub.add_parser("quote", help="best route for one swap")
    _add_pair_args(q)
    _add_source_args(q)
    q.add_argument("--slippage-bps", dest="slippage_bps", type=int, default=None)
    q.add_argument("--max-hops", dest="max_hops", type=int, default=None)
    q.add_argument("--max-splits", dest="max_splits", type=int, default=None)
    q.add_argument("--ceiling-bps", dest="ceiling_bps", type=int, default=None, help="price impact ceiling")
    q.add_argument("--exclude", type=str, default="", help="comma-separated venue names")
    q.add_argument("--recipient", type=str, default="")
    q.add_argument("--deadline", type=int, default=None, help="unix deadline for the plan")
    q.add_argument("--amount-out-min", dest="amount_out_min", type=int, default=None)
    q.add_argument("--plan", action="store_true", help="also build an execution plan (needs --recipient)")
    q.add_argument("--execute", action="store_true", help="plan and submit to the dry-run settlement")

    a = sub.add_parser("arbitrage", help="cross-venue round trips for one pair")
    _add_pair_args(a)
    _add_source_args(a)
    a.add_argument("--min-profit-bps", dest="min_profit_bps", type=float, default=None)

    s = sub.add_parser("serve", help="run the HTTP API")
    _add_source_args(s)
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8080)

    v = sub.add_parser("venues", help="print the venue configuration")
    v.add_argument("--network", type=str, default="")
    v.add_argument("--venues", type=str, default="")

    st = sub.add_parser("status", help="check the RPC endpoint")
    st.add_argument("--rpc", type=str, default="", help="RPC URL (defaults to RPC_URLS/RPC_URL)")

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    run_dir = Path(args.out) if getattr(args, "out", "") else None
    configure_logging(args.log_level, run_dir)

    try:
        if args.command == "quote":
            return asyncio.run(_run_quote(args))
        if args.command == "arbitrage":
            return asyncio.run(_run_arbitrage(args))
        if args.command == "serve":
            return _run_serve(args)
        if args.command == "venues":
            return _run_venues(args)
        if args.command == "status":
            return _run_status(args)
    except AggregatorError as e:
        logger.error("%s", e)
        return 2
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
