import json
import threading
from pathlib import Path

import pytest

from aggregator.errors import ConfigError
from aggregator.types import VenueFamily
from aggregator.venues import VenueBook, load_venue_snapshot, parse_venue, snapshot_from_dict


def test_load_shipped_network() -> None:
    snap = load_venue_snapshot(network="hyperevm")
    assert snap.chain_id == 999
    assert snap.network == "hyperevm"
    assert {v.name for v in snap.venues} == {"HyperCore-Native", "HyperSwap-V2", "HyperDEX-V3"}
    assert snap.get("HyperDEX-V3").family is VenueFamily.AMM_V3
    assert snap.get("HyperCore-Native").gas_estimate == 50_000


def test_network_from_env(monkeypatch) -> None:
    monkeypatch.setenv("VENUE_NETWORK", "hyperevm")
    assert load_venue_snapshot().chain_id == 999


def test_missing_or_bad_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_venue_snapshot(network="does-not-exist")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_venue_snapshot(path=bad)


def test_toggle_produces_new_snapshot() -> None:
    snap = load_venue_snapshot(network="hyperevm")
    off = snap.with_enabled("HyperSwap-V2", False)
    assert off is not snap
    assert off.version == snap.version + 1
    assert off.get("HyperSwap-V2").enabled is False
    assert snap.get("HyperSwap-V2").enabled is True
    assert [v.name for v in off.eligible()] == ["HyperCore-Native", "HyperDEX-V3"]
    with pytest.raises(KeyError):
        snap.with_enabled("Nope", False)


def test_book_swaps_atomically_under_concurrent_toggles() -> None:
    book = VenueBook(load_venue_snapshot(network="hyperevm"))
    held = book.snapshot()

    def flip(n: int) -> None:
        for i in range(n):
            book.set_enabled("HyperDEX-V3", i % 2 == 1)

    threads = [threading.Thread(target=flip, args=(50,)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert book.snapshot().version == held.version + 200
    assert held.get("HyperDEX-V3").enabled is True


def test_eligible_exclusion_is_case_insensitive() -> None:
    snap = load_venue_snapshot(network="hyperevm")
    names = [v.name for v in snap.eligible(["hyperswap-v2", " HYPERDEX-V3 "])]
    assert names == ["HyperCore-Native"]


@pytest.mark.parametrize(
    "raw",
    [
        {"name": "X", "family": "balancer", "fee_bps": 30, "address": "0x" + "11" * 20},
        {"name": "X", "family": "uniswap-v2", "fee_bps": 10_000, "address": "0x" + "11" * 20},
        {"name": "X", "family": "uniswap-v2", "fee_bps": "abc", "address": "0x" + "11" * 20},
        {"name": "X", "family": "uniswap-v2", "fee_bps": 30, "address": "0x123"},
        {"family": "uniswap-v2", "fee_bps": 30, "address": "0x" + "11" * 20},
    ],
)
def test_parse_venue_rejects_bad_entries(raw) -> None:
    with pytest.raises(ConfigError):
        parse_venue(raw)


def test_duplicate_names_rejected() -> None:
    entry = {"name": "X", "family": "uniswap-v2", "fee_bps": 30, "address": "0x" + "11" * 20}
    with pytest.raises(ConfigError):
        snapshot_from_dict({"chain_id": 1, "venues": [entry, dict(entry)]})


def test_shipped_config_is_valid_json() -> None:
    root = Path(__file__).resolve().parents[1]
    for path in (root / "configs" / "venues").glob("*.json"):
        data = json.loads(path.read_text(encoding="utf-8"))
        assert snapshot_from_dict(data).venues
