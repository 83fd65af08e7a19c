# infra/rpc.py

from __future__ import annotations

import asyncio
import os
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from web3 import Web3

from aggregator import config
from infra.metrics import METRICS


class RPCError(Exception):
    """JSON-RPC call failed (transport error, HTTP error or error payload)."""

    def __init__(self, message: str, *, reason: str = "rpc_error"):
        super().__init__(message)
        self.reason = reason


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def _split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    # Accept comma or newline separated lists.
    parts: List[str] = []
    for chunk in str(raw).replace("\n", ",").split(","):
        u = _normalize_url(chunk)
        if u:
            parts.append(u)
    return parts


def get_rpc_urls() -> List[str]:
    """Return RPC URL candidates in priority order.

    Order:
      1) env RPC_URLS (comma/newline list)
      2) aggregator.config.RPC_URLS
      3) env RPC_URL
      4) aggregator.config.RPC_URL
    """

    urls: List[str] = []
    urls.extend(_split_urls(os.getenv("RPC_URLS")))
    urls.extend([_normalize_url(u) for u in (getattr(config, "RPC_URLS", []) or []) if str(u).strip()])

    single = os.getenv("RPC_URL")
    if single:
        urls.append(_normalize_url(single))

    if not urls:
        urls = [_normalize_url(config.RPC_URL)]

    # De-dupe while preserving order
    out: List[str] = []
    seen = set()
    for u in urls:
        if u in seen:
            continue
        seen.add(u)
        out.append(u)
    return out


def normalize_rpc_error(msg: Optional[str]) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "decode" in text:
        return "decode_error"
    if "revert" in text:
        return "revert"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    return "internal_error"


class AsyncRPC:
    """JSON-RPC over one persistent aiohttp session.

    Timeouts are clamped to [RPC_TIMEOUT_MIN_S, RPC_TIMEOUT_MAX_S]. Retries
    are off unless `max_retries` (or RPC_RETRY_COUNT) says otherwise; venue
    state reads go out once and a failure excludes the venue for that request.
    """

    RETRY_STATUSES = (429, 500, 502, 503, 504)

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = 2.0,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
    ):
        self.url = _normalize_url(url)
        self.host = _url_host(self.url)
        self.default_timeout_s = float(default_timeout_s)
        if max_retries is None:
            max_retries = int(getattr(config, "RPC_RETRY_COUNT", 0))
        if backoff_base_s is None:
            backoff_base_s = float(getattr(config, "RPC_BACKOFF_BASE_S", 0.35))
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        min_t = float(getattr(config, "RPC_TIMEOUT_MIN_S", 0.5))
        max_t = max(min_t, float(getattr(config, "RPC_TIMEOUT_MAX_S", 4.0)))
        return max(min_t, min(max_t, to_s))

    async def _post_once(self, payload: Dict[str, Any], timeout_s: float) -> Any:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=timeout_s)
        async with session.post(self.url, json=payload, timeout=timeout) as resp:
            if resp.status >= 400:
                raise aiohttp.ClientResponseError(
                    request_info=resp.request_info,
                    history=resp.history,
                    status=resp.status,
                    message=await resp.text(),
                    headers=resp.headers,
                )
            body = await resp.json(content_type=None)
        if not isinstance(body, dict):
            raise ValueError("decode error: response is not a JSON object")
        if body.get("error") is not None:
            raise RPCError(f"rpc_error:{body['error']}", reason="rpc_error")
        if "result" not in body:
            raise ValueError("decode error: response has no result")
        return body["result"]

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        to_s = self._clamp_timeout(timeout_s)
        last_err = ""

        for attempt in range(self.max_retries + 1):
            if attempt:
                await asyncio.sleep(self.backoff_base_s * (2 ** (attempt - 1)) + random.random() * 0.25)
            METRICS.inc("rpc_requests_total", 1)
            METRICS.inc_reason("rpc_requests_by_endpoint", self.host, 1)
            t0 = time.perf_counter()
            try:
                return await self._post_once(payload, to_s)
            except RPCError as e:
                # error payloads are final
                last_err = str(e)
                break
            except asyncio.TimeoutError:
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                last_err = f"http_{e.status}"
                if e.status not in self.RETRY_STATUSES:
                    break
            except (aiohttp.ClientError, ValueError) as e:
                last_err = f"{type(e).__name__}: {e}"
            finally:
                METRICS.observe("rpc_latency_ms", (time.perf_counter() - t0) * 1000.0)

        reason = normalize_rpc_error(last_err)
        METRICS.inc_reason("rpc_fail_by_reason", reason, 1)
        raise RPCError(f"RPC call failed: {last_err}", reason=reason)

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
    ) -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block], timeout_s=timeout_s)


# ------------------------
# Synchronous Web3 provider helper (CLI status checks)

def get_provider(rpc_urls: Optional[Sequence[str]] = None) -> Web3:
    """Return a connected Web3 provider.

    Uses multiple URLs if provided (env RPC_URLS="a,b,c" or config.RPC_URLS).
    Falls back to config.RPC_URL.
    """

    urls = list(rpc_urls) if rpc_urls else get_rpc_urls()

    last_err: Optional[str] = None
    for url in urls:
        provider = Web3(Web3.HTTPProvider(url))
        try:
            if provider.is_connected():
                return provider
        except Exception as e:
            last_err = str(e)
            continue

    raise ConnectionError(f"Cannot connect to any RPC endpoint. Last error: {last_err}")
