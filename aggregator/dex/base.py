from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

from aggregator import config
from aggregator.dex.pricing import BPS, InsufficientLiquidity
from aggregator.dex.state import PriceSource, VenueState
from aggregator.errors import InvalidPair, StaleState, VenueError, VenueUnavailable
from aggregator.types import AssetRef, Curve, Pair, Quote, Venue, VenueFamily

Path = Tuple[AssetRef, ...]


def default_hubs(chain_id: int = 0) -> List[AssetRef]:
    hubs: List[AssetRef] = []
    for sym in getattr(config, "HUB_TOKENS", []) or []:
        addr = config.token_address(sym)
        try:
            hubs.append(AssetRef.of(addr, config.token_decimals(sym), chain_id, symbol=str(sym).upper()))
        except ValueError:
            continue
    return hubs


def candidate_paths(pair: Pair, max_hops: int, hubs: Sequence[AssetRef]) -> List[Path]:
    """Direct path first, then hub paths by increasing hop count."""
    paths: List[Path] = [(pair.token_in, pair.token_out)]
    ends = (pair.token_in.key, pair.token_out.key)
    chain_id = pair.token_in.chain_id
    usable = [replace(h, chain_id=chain_id) for h in hubs if h.key not in ends]
    for hops in range(2, max(1, int(max_hops)) + 1):
        for mids in itertools.permutations(usable, hops - 1):
            paths.append((pair.token_in, *mids, pair.token_out))
    return paths


def _combine_impact(impacts: Sequence[float]) -> float:
    keep = 1.0
    for imp in impacts:
        keep *= max(0.0, 1.0 - float(imp) / BPS)
    return (1.0 - keep) * BPS


class VenueAdapter:
    """Normalizes one venue family's pricing model into Quote objects.

    Subclasses set `family` and `state_type` and implement `price`, the
    family's pure pricing formula over a frozen state record.
    """

    family: VenueFamily
    state_type: Type

    def __init__(
        self,
        venue: Venue,
        source: PriceSource,
        *,
        hubs: Optional[Sequence[AssetRef]] = None,
        stale_tolerance_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        if venue.family is not self.family:
            raise ValueError(f"{type(self).__name__} cannot price {venue.family.value} venue {venue.name}")
        self.venue = venue
        self.source = source
        self.hubs = list(hubs) if hubs is not None else default_hubs()
        if stale_tolerance_s is None:
            stale_tolerance_s = float(getattr(config, "STALE_STATE_TOLERANCE_S", 30.0))
        self.stale_tolerance_s = float(stale_tolerance_s)
        self.clock = clock

    @property
    def name(self) -> str:
        return self.venue.name

    def price(self, state: VenueState, amount_in: int) -> Tuple[int, float]:
        raise NotImplementedError

    async def _read(
        self, token_in: AssetRef, token_out: AssetRef, *, timeout_s: Optional[float]
    ) -> VenueState:
        try:
            state = await self.source.read_state(self.venue, token_in, token_out, timeout_s=timeout_s)
        except VenueError:
            raise
        except asyncio.TimeoutError:
            raise VenueUnavailable(self.name, "timeout")
        except Exception as e:
            raise VenueUnavailable(self.name, f"{type(e).__name__}: {e}")
        if state is None:
            raise InvalidPair(self.name, f"no pool for {token_in.label()}/{token_out.label()}")
        if not isinstance(state, self.state_type):
            raise VenueUnavailable(self.name, f"unexpected state {type(state).__name__}")
        age = float(self.clock()) - float(state.observed_at)
        if age > self.stale_tolerance_s:
            raise StaleState(self.name, f"state is {age:.1f}s old")
        return state

    def path_curve(self, states: Sequence[VenueState]) -> Curve:
        frozen = tuple(states)

        def curve(amount_in: int) -> Tuple[int, float]:
            amt = int(amount_in)
            impacts: List[float] = []
            for st in frozen:
                amt, impact = self.price(st, amt)
                impacts.append(impact)
            return int(amt), _combine_impact(impacts)

        return curve

    async def get_quote(
        self,
        pair: Pair,
        amount_in: int,
        max_hops: int = 1,
        *,
        request_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> Quote:
        amount_in = int(amount_in)
        if amount_in <= 0:
            raise VenueUnavailable(self.name, "non-positive input")

        states: Dict[Tuple[str, str], VenueState] = {}
        errors: List[VenueError] = []
        best: Optional[Tuple[int, float, Path, Curve]] = None

        for path in candidate_paths(pair, max_hops, self.hubs):
            try:
                hop_states = []
                for a, b in zip(path, path[1:]):
                    key = (a.key, b.key)
                    if key not in states:
                        states[key] = await self._read(a, b, timeout_s=timeout_s)
                    hop_states.append(states[key])
                curve = self.path_curve(hop_states)
                try:
                    out, impact = curve(amount_in)
                except InsufficientLiquidity as e:
                    raise VenueUnavailable(self.name, str(e))
            except VenueError as e:
                errors.append(e)
                continue
            # strictly better output wins; earlier (shorter) paths win ties
            if best is None or out > best[0]:
                best = (out, impact, path, curve)

        if best is None:
            raise _most_severe(errors, self.name)

        out, impact, path, curve = best
        return Quote(
            venue=self.name,
            amount_in=amount_in,
            amount_out=int(out),
            price_impact_bps=float(impact),
            gas_estimate=int(self.venue.gas_estimate) * (len(path) - 1),
            path=path,
            fee_bps=int(self.venue.fee_bps),
            family=self.family,
            request_id=request_id,
            curve=curve,
        )


def _most_severe(errors: Sequence[VenueError], venue: str) -> VenueError:
    for kind in (StaleState, VenueUnavailable, InvalidPair):
        for err in errors:
            if isinstance(err, kind):
                return err
    return InvalidPair(venue, "no path")
