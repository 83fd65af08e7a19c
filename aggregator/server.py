from __future__ import annotations

import logging
from typing import Any, Dict

from aiohttp import web

from aggregator import arbitrage
from aggregator.errors import ValidationError
from aggregator.service import SwapService
from infra.metrics import METRICS

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", SwapService)


def _service(request: web.Request) -> SwapService:
    return request.app[SERVICE_KEY]


async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def get_quote(request: web.Request) -> web.Response:
    status, body = await _service(request).handle_quote(dict(request.query))
    return web.json_response(body, status=status)


async def post_plan(request: web.Request) -> web.Response:
    status, body = await _service(request).handle_plan(await _json_body(request))
    return web.json_response(body, status=status)


async def post_swap(request: web.Request) -> web.Response:
    status, body = await _service(request).handle_swap(await _json_body(request))
    return web.json_response(body, status=status)


async def get_tokens(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "tokens": _service(request).tokens()})


async def get_venues(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "venues": _service(request).venues()})


async def post_venue_enabled(request: web.Request) -> web.Response:
    name = request.match_info["name"]
    body = await _json_body(request)
    if not isinstance(body, dict) or not isinstance(body.get("enabled"), bool):
        return web.json_response({"status": "client_error", "error": "body must be {\"enabled\": bool}"}, status=400)
    try:
        venue = _service(request).set_venue_enabled(name, body["enabled"])
    except KeyError:
        return web.json_response({"status": "not_found", "error": f"unknown venue {name}"}, status=404)
    return web.json_response({"status": "ok", "venue": venue})


async def get_arbitrage(request: web.Request) -> web.Response:
    service = _service(request)
    try:
        req = service.parse(dict(request.query))
        opps = await arbitrage.find_opportunities(
            service.collector,
            service.book.snapshot(),
            req.pair,
            req.amount_in,
            per_venue_timeout=service.per_venue_timeout,
            overall_deadline=service.overall_deadline,
        )
    except ValidationError as e:
        return web.json_response({"status": "client_error", "error": str(e), "field": e.field}, status=400)
    except Exception:
        logger.exception("arbitrage scan failed")
        return web.json_response({"status": "server_error", "error": "internal error"}, status=500)
    body: Dict[str, Any] = {"status": "ok", "opportunities": [o.to_dict() for o in opps]}
    return web.json_response(body)


async def get_metrics(request: web.Request) -> web.Response:
    return web.json_response(METRICS.snapshot())


def create_app(service: SwapService) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app.router.add_get("/quote", get_quote)
    app.router.add_post("/plan", post_plan)
    app.router.add_post("/swap", post_swap)
    app.router.add_get("/tokens", get_tokens)
    app.router.add_get("/venues", get_venues)
    app.router.add_post("/venues/{name}/enabled", post_venue_enabled)
    app.router.add_get("/arbitrage", get_arbitrage)
    app.router.add_get("/metrics", get_metrics)
    return app
