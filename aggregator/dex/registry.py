from __future__ import annotations

from typing import Any, Dict, Iterable, Type

from aggregator.dex.adapters import ConcentratedLiquidityAdapter, ConstantProductAdapter, OrderBookAdapter
from aggregator.dex.base import VenueAdapter
from aggregator.dex.state import PriceSource
from aggregator.errors import ConfigError
from aggregator.types import Venue, VenueFamily

ADAPTERS: Dict[VenueFamily, Type[VenueAdapter]] = {
    VenueFamily.AMM_V2: ConstantProductAdapter,
    VenueFamily.AMM_V3: ConcentratedLiquidityAdapter,
    VenueFamily.ORDER_BOOK: OrderBookAdapter,
}


def build_adapter(venue: Venue, source: PriceSource, **kwargs: Any) -> VenueAdapter:
    """Resolve the family's pricing adapter once. There is no fallback formula."""
    cls = ADAPTERS.get(venue.family) if isinstance(venue.family, VenueFamily) else None
    if cls is None:
        raise ConfigError(f"venue {venue.name!r} has unsupported family {venue.family!r}")
    return cls(venue, source, **kwargs)


class AdapterRegistry:
    """Caches one adapter per venue descriptor.

    Venue descriptors are immutable values, so a toggled or edited venue maps
    to a fresh adapter while in-flight requests keep the one they resolved.
    """

    def __init__(self, source: PriceSource, **adapter_kwargs: Any):
        self.source = source
        self.adapter_kwargs = dict(adapter_kwargs)
        self._adapters: Dict[Venue, VenueAdapter] = {}

    def get(self, venue: Venue) -> VenueAdapter:
        adapter = self._adapters.get(venue)
        if adapter is None:
            adapter = build_adapter(venue, self.source, **self.adapter_kwargs)
            self._adapters[venue] = adapter
        return adapter

    def build_all(self, venues: Iterable[Venue], *, enabled_only: bool = True) -> Dict[str, VenueAdapter]:
        out: Dict[str, VenueAdapter] = {}
        for venue in venues:
            if enabled_only and not venue.enabled:
                continue
            out[venue.name] = self.get(venue)
        return out
