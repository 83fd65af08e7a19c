# aggregator/dex/state.py
"""Venue state records and the price sources that produce them.

A price source reads the current state of one venue for one directed asset
pair. It returns None when the venue has no pool/book for the pair and raises
on transport failures; the adapters translate both into venue errors.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
from eth_abi import decode, encode
from eth_utils import keccak

from aggregator import config
from aggregator.types import AssetRef, Venue, VenueFamily
from infra.rpc import AsyncRPC

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# static states registered without a timestamp are stamped at read time
_LIVE = -1.0


@dataclass(frozen=True)
class PairReserves:
    reserve_in: int
    reserve_out: int
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RangeLiquidity:
    liquidity: int
    sqrt_price_x96: int
    zero_for_one: bool
    range_reserve_out: int = 0
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BookDepth:
    # (price in output units per input unit, size in input units), best first
    levels: Tuple[Tuple[Decimal, int], ...]
    observed_at: float = field(default_factory=time.time)


VenueState = Union[PairReserves, RangeLiquidity, BookDepth]


class PriceSource:
    async def read_state(
        self,
        venue: Venue,
        token_in: AssetRef,
        token_out: AssetRef,
        *,
        timeout_s: Optional[float] = None,
    ) -> Optional[VenueState]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _key(venue: str, token_in: AssetRef, token_out: AssetRef) -> Tuple[str, str, str]:
    return (str(venue), token_in.key, token_out.key)


class StaticPriceSource(PriceSource):
    """In-memory venue state (simulation, CLI fixtures and tests).

    `delays` holds per-venue artificial latency in seconds; `failures` holds an
    exception raised for every read of that venue.
    """

    def __init__(self) -> None:
        self._states: Dict[Tuple[str, str, str], VenueState] = {}
        self.delays: Dict[str, float] = {}
        self.failures: Dict[str, Exception] = {}
        self.reads = 0

    def set_reserves(
        self,
        venue: str,
        token_a: AssetRef,
        token_b: AssetRef,
        reserve_a: int,
        reserve_b: int,
        *,
        observed_at: Optional[float] = None,
    ) -> None:
        ts = _LIVE if observed_at is None else float(observed_at)
        self._states[_key(venue, token_a, token_b)] = PairReserves(int(reserve_a), int(reserve_b), ts)
        self._states[_key(venue, token_b, token_a)] = PairReserves(int(reserve_b), int(reserve_a), ts)

    def set_range(
        self,
        venue: str,
        token0: AssetRef,
        token1: AssetRef,
        liquidity: int,
        sqrt_price_x96: int,
        *,
        reserve0: int = 0,
        reserve1: int = 0,
        observed_at: Optional[float] = None,
    ) -> None:
        ts = _LIVE if observed_at is None else float(observed_at)
        self._states[_key(venue, token0, token1)] = RangeLiquidity(
            int(liquidity), int(sqrt_price_x96), True, int(reserve1), ts
        )
        self._states[_key(venue, token1, token0)] = RangeLiquidity(
            int(liquidity), int(sqrt_price_x96), False, int(reserve0), ts
        )

    def set_book(
        self,
        venue: str,
        token_in: AssetRef,
        token_out: AssetRef,
        levels: Sequence[Tuple[Any, int]],
        *,
        observed_at: Optional[float] = None,
    ) -> None:
        ts = _LIVE if observed_at is None else float(observed_at)
        book = tuple((Decimal(str(px)), int(sz)) for px, sz in levels)
        self._states[_key(venue, token_in, token_out)] = BookDepth(book, ts)

    def set_l2_book(
        self,
        venue: str,
        base: AssetRef,
        quote: AssetRef,
        bids: Sequence[Tuple[Any, Any]],
        asks: Sequence[Tuple[Any, Any]],
        *,
        observed_at: Optional[float] = None,
    ) -> None:
        """Register a book given in human units (px quote per base, sz base), both directions."""
        ts = _LIVE if observed_at is None else float(observed_at)
        data = {
            "levels": [
                [{"px": str(px), "sz": str(sz)} for px, sz in bids],
                [{"px": str(px), "sz": str(sz)} for px, sz in asks],
            ]
        }
        for token_in, token_out, selling_base in ((base, quote, True), (quote, base, False)):
            depth = parse_l2_book(data, token_in, token_out, selling_base=selling_base)
            if depth is not None:
                self._states[_key(venue, token_in, token_out)] = BookDepth(depth.levels, ts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, chain_id: int = 0) -> "StaticPriceSource":
        """Build from a fixture document with `pools`, `ranges` and `books` lists (token symbols)."""

        def asset(sym: str) -> AssetRef:
            s = str(sym).strip()
            return AssetRef.of(config.token_address(s), config.token_decimals(s), chain_id, symbol=s.upper())

        src = cls()
        for p in data.get("pools") or []:
            src.set_reserves(p["venue"], asset(p["token_a"]), asset(p["token_b"]), int(p["reserve_a"]), int(p["reserve_b"]))
        for r in data.get("ranges") or []:
            src.set_range(
                r["venue"],
                asset(r["token0"]),
                asset(r["token1"]),
                int(r["liquidity"]),
                int(r["sqrt_price_x96"]),
                reserve0=int(r.get("reserve0") or 0),
                reserve1=int(r.get("reserve1") or 0),
            )
        for b in data.get("books") or []:
            src.set_l2_book(b["venue"], asset(b["base"]), asset(b["quote"]), b.get("bids") or [], b.get("asks") or [])
        for name, delay in (data.get("delays") or {}).items():
            src.delays[str(name)] = float(delay)
        return src

    async def read_state(
        self,
        venue: Venue,
        token_in: AssetRef,
        token_out: AssetRef,
        *,
        timeout_s: Optional[float] = None,
    ) -> Optional[VenueState]:
        self.reads += 1
        delay = float(self.delays.get(venue.name, 0.0))
        if delay > 0:
            await asyncio.sleep(delay)
        err = self.failures.get(venue.name)
        if err is not None:
            raise err
        state = self._states.get(_key(venue.name, token_in, token_out))
        if state is not None and state.observed_at == _LIVE:
            state = replace(state, observed_at=time.time())
        return state


def _selector(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


def _blob(raw: str) -> bytes:
    return bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)


class RPCPriceSource(PriceSource):
    """Reads AMM state over JSON-RPC and order-book depth over the info API.

    AMM-v2 venues: `venue.address` is the factory (getPair/getReserves).
    AMM-v3 venues: `venue.address` is the factory (getPool with fee tier
    fee_bps * 100, then slot0/liquidity on the pool).
    Order-book venues: depth of the `<base>` book quoted in USDC.
    """

    def __init__(
        self,
        rpc: AsyncRPC,
        *,
        info_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc = rpc
        self.info_url = info_url or getattr(config, "ORDER_BOOK_INFO_URL", "")
        self._session = session
        self._own_session = session is None

        self._sel_get_pair = _selector("getPair(address,address)")
        self._sel_get_pool = _selector("getPool(address,address,uint24)")
        self._sel_token0 = _selector("token0()")
        self._sel_get_reserves = _selector("getReserves()")
        self._sel_slot0 = _selector("slot0()")
        self._sel_liquidity = _selector("liquidity()")

        # pool addresses never change; reserves are always read fresh
        self._pool_cache: Dict[Tuple[str, str, str, int], Optional[str]] = {}
        self._token0_cache: Dict[str, str] = {}

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def read_state(
        self,
        venue: Venue,
        token_in: AssetRef,
        token_out: AssetRef,
        *,
        timeout_s: Optional[float] = None,
    ) -> Optional[VenueState]:
        if venue.family is VenueFamily.AMM_V2:
            return await self._read_v2(venue, token_in, token_out, timeout_s=timeout_s)
        if venue.family is VenueFamily.AMM_V3:
            return await self._read_v3(venue, token_in, token_out, timeout_s=timeout_s)
        if venue.family is VenueFamily.ORDER_BOOK:
            return await self._read_book(venue, token_in, token_out, timeout_s=timeout_s)
        raise ValueError(f"unsupported venue family: {venue.family}")

    async def _pool_address(
        self, venue: Venue, token_in: AssetRef, token_out: AssetRef, *, timeout_s: Optional[float]
    ) -> Optional[str]:
        a, b = sorted([token_in.key, token_out.key])
        fee = int(venue.fee_bps) * 100 if venue.family is VenueFamily.AMM_V3 else 0
        key = (venue.address.lower(), a, b, fee)
        if key in self._pool_cache:
            return self._pool_cache[key]

        if venue.family is VenueFamily.AMM_V3:
            params = encode(["address", "address", "uint24"], [a, b, fee])
            data = "0x" + self._sel_get_pool + params.hex()
        else:
            params = encode(["address", "address"], [a, b])
            data = "0x" + self._sel_get_pair + params.hex()
        raw = await self.rpc.eth_call(venue.address, data, timeout_s=timeout_s)
        pool = str(decode(["address"], _blob(raw))[0])
        if pool.lower() == ZERO_ADDRESS:
            self._pool_cache[key] = None
            return None
        self._pool_cache[key] = pool
        return pool

    async def _token0(self, pool: str, *, timeout_s: Optional[float]) -> str:
        if pool in self._token0_cache:
            return self._token0_cache[pool]
        raw = await self.rpc.eth_call(pool, "0x" + self._sel_token0, timeout_s=timeout_s)
        t0 = str(decode(["address"], _blob(raw))[0])
        self._token0_cache[pool] = t0
        return t0

    async def _read_v2(
        self, venue: Venue, token_in: AssetRef, token_out: AssetRef, *, timeout_s: Optional[float]
    ) -> Optional[PairReserves]:
        pair = await self._pool_address(venue, token_in, token_out, timeout_s=timeout_s)
        if not pair:
            return None
        token0 = await self._token0(pair, timeout_s=timeout_s)
        raw = await self.rpc.eth_call(pair, "0x" + self._sel_get_reserves, timeout_s=timeout_s)
        r0, r1, _ts = decode(["uint112", "uint112", "uint32"], _blob(raw))
        if token_in.key == token0.lower():
            return PairReserves(int(r0), int(r1), time.time())
        return PairReserves(int(r1), int(r0), time.time())

    async def _read_v3(
        self, venue: Venue, token_in: AssetRef, token_out: AssetRef, *, timeout_s: Optional[float]
    ) -> Optional[RangeLiquidity]:
        pool = await self._pool_address(venue, token_in, token_out, timeout_s=timeout_s)
        if not pool:
            return None
        token0 = await self._token0(pool, timeout_s=timeout_s)
        raw_slot0 = await self.rpc.eth_call(pool, "0x" + self._sel_slot0, timeout_s=timeout_s)
        blob = _blob(raw_slot0)
        if len(blob) < 64:
            raise RuntimeError(f"slot0 returned short blob: {len(blob)} bytes")
        sqrt_price_x96 = decode(["uint160", "int24"], blob[:64])[0]
        raw_liq = await self.rpc.eth_call(pool, "0x" + self._sel_liquidity, timeout_s=timeout_s)
        liquidity = decode(["uint128"], _blob(raw_liq))[0]
        return RangeLiquidity(
            liquidity=int(liquidity),
            sqrt_price_x96=int(sqrt_price_x96),
            zero_for_one=token_in.key == token0.lower(),
            observed_at=time.time(),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession()
        self._own_session = True
        return self._session

    async def _read_book(
        self, venue: Venue, token_in: AssetRef, token_out: AssetRef, *, timeout_s: Optional[float]
    ) -> Optional[BookDepth]:
        quote_sym = "USDC"
        sym_in = (token_in.symbol or config.token_symbol(token_in.address)).upper()
        sym_out = (token_out.symbol or config.token_symbol(token_out.address)).upper()
        if sym_out == quote_sym and sym_in != quote_sym:
            coin, selling_base = sym_in, True
        elif sym_in == quote_sym and sym_out != quote_sym:
            coin, selling_base = sym_out, False
        else:
            return None

        session = await self._get_session()
        to_s = float(timeout_s) if timeout_s is not None else float(getattr(config, "RPC_DEFAULT_TIMEOUT_S", 2.0))
        async with session.post(
            self.info_url,
            json={"type": "l2Book", "coin": coin},
            timeout=aiohttp.ClientTimeout(total=to_s),
        ) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"http_{resp.status}")
            data = await resp.json()
        return parse_l2_book(data, token_in, token_out, selling_base=selling_base)


def parse_l2_book(data: Any, token_in: AssetRef, token_out: AssetRef, *, selling_base: bool) -> Optional[BookDepth]:
    """Convert an l2Book payload ({"levels": [bids, asks]}) into input-denominated levels."""
    if not isinstance(data, dict):
        return None
    sides = data.get("levels") or []
    if not isinstance(sides, list) or len(sides) < 2:
        return None
    side = sides[0] if selling_base else sides[1]
    depth = int(getattr(config, "ORDER_BOOK_DEPTH_LEVELS", 20))
    scale_in = Decimal(10) ** token_in.decimals
    scale_out = Decimal(10) ** token_out.decimals
    levels: List[Tuple[Decimal, int]] = []
    for row in side[:depth]:
        try:
            px = Decimal(str(row["px"]))
            sz = Decimal(str(row["sz"]))
        except (KeyError, TypeError, ArithmeticError):
            continue
        if px <= 0 or sz <= 0:
            continue
        if selling_base:
            # bids: pay px quote per base, take up to sz base
            price = px * scale_out / scale_in
            size = int(sz * scale_in)
        else:
            # asks: receive 1/px base per quote, up to sz*px quote
            price = scale_out / (px * scale_in)
            size = int(sz * px * scale_in)
        if size > 0:
            levels.append((price, size))
    if not levels:
        return None
    return BookDepth(tuple(levels), time.time())
