import json
from pathlib import Path

import pytest

from aggregator import config
from aggregator.collector import QuoteCollector
from aggregator.dex.base import default_hubs
from aggregator.dex.registry import AdapterRegistry
from aggregator.dex.state import StaticPriceSource
from aggregator.service import SwapService
from aggregator.settlement import DryRunSettlement
from aggregator.types import AssetRef, Venue, VenueFamily
from aggregator.venues import VenueBook, load_venue_snapshot
from infra.metrics import METRICS

ROOT = Path(__file__).resolve().parents[1]
FIXTURE_PATH = ROOT / "configs" / "fixtures" / "hyperevm_sim.json"
CHAIN_ID = 999
HUNDRED_HYPE = str(100 * 10**18)
RECIPIENT = "0x" + "ab" * 20


class FakeRPC:
    def __init__(self, responses):
        self._responses = responses
        self.calls = []

    async def call(self, method, params, timeout_s=None):
        self.calls.append(method)
        if method not in self._responses:
            raise RuntimeError(f"missing response for {method}")
        return self._responses[method]


def asset(sym: str) -> AssetRef:
    return AssetRef.of(config.TOKENS[sym], config.TOKEN_DECIMALS[sym], CHAIN_ID, symbol=sym)


def venue(name: str, family: VenueFamily, fee_bps: int = 30, idx: int = 1, **kw) -> Venue:
    return Venue(name=name, family=family, fee_bps=fee_bps, address="0x" + f"{idx:02x}" * 20, **kw)


def make_service(sim_fixture, *, rpc=None) -> SwapService:
    snapshot = load_venue_snapshot(network="hyperevm")
    source = StaticPriceSource.from_dict(sim_fixture, chain_id=snapshot.chain_id)
    collector = QuoteCollector(AdapterRegistry(source, hubs=default_hubs(snapshot.chain_id)))
    return SwapService(VenueBook(snapshot), collector, settlement=DryRunSettlement(), rpc=rpc)


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def hype() -> AssetRef:
    return asset("HYPE")


@pytest.fixture
def usdc() -> AssetRef:
    return asset("USDC")


@pytest.fixture
def ueth() -> AssetRef:
    return asset("UETH")


@pytest.fixture
def sim_fixture() -> dict:
    return json.loads(FIXTURE_PATH.read_text(encoding="utf-8"))
