from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from eth_utils import is_address, to_checksum_address

from aggregator import config
from aggregator.errors import ConfigError
from aggregator.types import Venue, VenueFamily

CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs" / "venues"


@dataclass(frozen=True)
class VenueSnapshot:
    """Immutable view of the venue configuration at one point in time."""

    venues: Tuple[Venue, ...]
    chain_id: int = 0
    network: str = "unknown"
    version: int = 0

    def __post_init__(self) -> None:
        names = [v.name for v in self.venues]
        if len(set(names)) != len(names):
            raise ConfigError("duplicate venue names in configuration")

    def get(self, name: str) -> Optional[Venue]:
        for v in self.venues:
            if v.name == name:
                return v
        return None

    def eligible(self, excluded: Iterable[str] = ()) -> List[Venue]:
        skip = {str(x).strip().lower() for x in excluded if str(x).strip()}
        return [v for v in self.venues if v.enabled and v.name.lower() not in skip]

    def with_enabled(self, name: str, enabled: bool) -> "VenueSnapshot":
        if self.get(name) is None:
            raise KeyError(name)
        venues = tuple(v.with_enabled(enabled) if v.name == name else v for v in self.venues)
        return replace(self, venues=venues, version=self.version + 1)


class VenueBook:
    """Holds the current snapshot; operator toggles swap it atomically.

    Requests call `snapshot()` once and keep that object, so a toggle is only
    visible to requests that start after it.
    """

    def __init__(self, snapshot: VenueSnapshot):
        self._lock = threading.Lock()
        self._snapshot = snapshot

    def snapshot(self) -> VenueSnapshot:
        return self._snapshot

    def set_enabled(self, name: str, enabled: bool) -> VenueSnapshot:
        with self._lock:
            new = self._snapshot.with_enabled(name, enabled)
            self._snapshot = new
        return new


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _address(raw: Any, field_name: str, venue_name: str) -> str:
    val = str(raw or "").strip()
    if not is_address(val):
        raise ConfigError(f"venue {venue_name!r}: invalid {field_name} {raw!r}")
    return to_checksum_address(val)


def parse_venue(raw: Dict[str, Any]) -> Venue:
    if not isinstance(raw, dict):
        raise ConfigError(f"venue entry must be an object, got {type(raw).__name__}")
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ConfigError("venue entry without a name")
    try:
        family = VenueFamily.parse(raw.get("family") or raw.get("type"))
    except ValueError as e:
        raise ConfigError(f"venue {name!r}: {e}")
    try:
        fee_bps = int(raw.get("fee_bps", 0))
        gas = int(raw.get("gas_estimate") or getattr(config, "DEFAULT_GAS_ESTIMATE", 150_000))
    except (TypeError, ValueError):
        raise ConfigError(f"venue {name!r}: fee_bps and gas_estimate must be integers")
    if fee_bps < 0 or fee_bps >= 10_000:
        raise ConfigError(f"venue {name!r}: fee_bps out of range")
    address = _address(raw.get("address"), "address", name)
    router = _address(raw.get("router"), "router", name) if raw.get("router") else None
    quoter = _address(raw.get("quoter"), "quoter", name) if raw.get("quoter") else None
    return Venue(
        name=name,
        family=family,
        fee_bps=fee_bps,
        address=address,
        enabled=bool(raw.get("enabled", True)),
        router=router,
        quoter=quoter,
        gas_estimate=gas,
    )


def snapshot_from_dict(data: Dict[str, Any]) -> VenueSnapshot:
    venues = tuple(parse_venue(v) for v in (data.get("venues") or []))
    try:
        chain_id = int(data.get("chain_id") or getattr(config, "CHAIN_ID", 0))
    except (TypeError, ValueError):
        raise ConfigError("chain_id must be an integer")
    return VenueSnapshot(
        venues=venues,
        chain_id=chain_id,
        network=str(data.get("name") or "unknown").strip().lower(),
    )


def load_venue_snapshot(network: Optional[str] = None, path: Optional[Path] = None) -> VenueSnapshot:
    """Load venues from configs/venues/<network>.json (or an explicit path)."""
    if path is None:
        name = str(network or os.getenv("VENUE_NETWORK") or getattr(config, "VENUE_NETWORK", "")).strip().lower()
        if not name:
            raise ConfigError("no venue network configured")
        path = CONFIG_DIR / f"{name}.json"
    data = _read_json(Path(path))
    if not isinstance(data, dict):
        raise ConfigError(f"cannot read venue config {path}")
    return snapshot_from_dict(data)
