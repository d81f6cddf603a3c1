"""Tests for market config enrichment."""

from __future__ import annotations

import json
from sqlite3 import Connection
from unittest.mock import MagicMock

import httpx

from delphi_pulse.database import repository
from delphi_pulse.extractors.market_config import MarketConfigClient, enrich_markets, parse_market_config
from delphi_pulse.extractors.models import MarketConfig
from delphi_pulse.indexer.engine import IngestionEngine
from tests.conftest import FakeChainReader, new_market_log

CONFIG_DOCUMENT = {
    "title": "Which model tops the benchmark?",
    "description": "Settles on the published leaderboard.",
    "category": "ai",
    "models": [
        {"idx": 0, "name": "Alpha-7B", "family": "alpha"},
        {"modelIdx": 1, "modelName": "Beta-13B"},
    ],
}
NOW = 1_700_000_000


def _needing_metadata(conn: Connection, now: int) -> list[int]:
    markets = repository.get_markets_needing_metadata(conn, now, active_ttl=3600, settled_ttl=21 * 86400)
    return [int(market["market_id"]) for market in markets]


def _response(status_code: int, payload: object, url: str) -> httpx.Response:
    return httpx.Response(status_code, json=payload, request=httpx.Request("GET", url))


def test_parse_market_config_accepts_field_aliases() -> None:
    """Test outcome fields are read under either naming scheme."""
    config = parse_market_config(CONFIG_DOCUMENT)

    assert config.title == "Which model tops the benchmark?"
    assert config.category == "ai"
    assert [(outcome.idx, outcome.name) for outcome in config.outcomes] == [(0, "Alpha-7B"), (1, "Beta-13B")]
    assert config.outcome_name(1) == "Beta-13B"
    assert config.outcome_name(5) == "Model 5"
    assert json.loads(config.outcomes_json())[0] == {"family": "alpha", "idx": 0, "name": "Alpha-7B"}


def test_parse_market_config_skips_bad_outcomes() -> None:
    """Test entries without a usable index are dropped."""
    config = parse_market_config({"entries": [{"idx": "x"}, "junk", {"name": "Gamma"}]})

    assert [(outcome.idx, outcome.name) for outcome in config.outcomes] == [(2, "Gamma")]
    assert config.title is None


def test_candidate_urls() -> None:
    """Test IPFS URIs map onto each gateway and HTTP URIs are used as-is."""
    client = MarketConfigClient(gateways=["https://a/ipfs/", "https://b/ipfs/"], client=MagicMock())

    assert client.candidate_urls("ipfs://QmHash") == ["https://a/ipfs/QmHash", "https://b/ipfs/QmHash"]
    assert client.candidate_urls("https://example.com/c.json") == ["https://example.com/c.json"]
    assert client.candidate_urls("ar://unknown") == []


def test_fetch_falls_back_to_next_gateway() -> None:
    """Test a failing gateway is skipped."""
    http = MagicMock()
    http.get.side_effect = [
        httpx.ConnectError("unreachable"),
        _response(200, CONFIG_DOCUMENT, "https://b/ipfs/QmHash"),
    ]
    client = MarketConfigClient(gateways=["https://a/ipfs/", "https://b/ipfs/"], client=http)

    config = client.fetch("ipfs://QmHash")

    assert config is not None
    assert config.title == CONFIG_DOCUMENT["title"]
    assert http.get.call_count == 2


def test_fetch_returns_none_when_every_source_fails() -> None:
    """Test HTTP errors and non-object bodies give no config."""
    http = MagicMock()
    http.get.side_effect = [
        _response(404, {"error": "not found"}, "https://a/ipfs/QmHash"),
        _response(200, ["not", "an", "object"], "https://b/ipfs/QmHash"),
    ]
    client = MarketConfigClient(gateways=["https://a/ipfs/", "https://b/ipfs/"], client=http)

    assert client.fetch("ipfs://QmHash") is None


def test_injected_http_client_is_not_closed() -> None:
    """Test the caller keeps ownership of an injected client."""
    http = MagicMock()
    with MarketConfigClient(client=http):
        pass
    http.close.assert_not_called()


def test_enrich_markets_stores_metadata_and_skips_failures(conn: Connection) -> None:
    """Test enrichment fills metadata for fetchable configs only."""
    logs = [
        new_market_log(1, block=100, config_uri="ipfs://QmGood"),
        new_market_log(2, block=100, log_index=1, config_uri="ipfs://QmMissing"),
    ]
    IngestionEngine(conn, FakeChainReader(logs, head=110), confirmations=0, genesis_block=100).run()

    client = MagicMock(spec=MarketConfigClient)
    client.fetch.side_effect = lambda uri: parse_market_config(CONFIG_DOCUMENT) if uri == "ipfs://QmGood" else None

    assert enrich_markets(conn, client, clock=lambda: NOW) == 1

    metadata = repository.get_market_metadata(conn, 1)
    assert metadata is not None
    assert metadata["title"] == CONFIG_DOCUMENT["title"]
    assert repository.get_market_metadata(conn, 2) is None
    assert _needing_metadata(conn, NOW) == [2]
    client.close.assert_not_called()


def test_enrich_markets_refreshes_stale_metadata(conn: Connection) -> None:
    """Test metadata is refetched once older than the TTL for the market's status."""
    logs = [
        new_market_log(1, block=100, config_uri="ipfs://QmActive"),
        new_market_log(2, block=100, log_index=1, config_uri="ipfs://QmSettled"),
    ]
    IngestionEngine(conn, FakeChainReader(logs, head=110), confirmations=0, genesis_block=100).run()
    client = MagicMock(spec=MarketConfigClient)
    client.fetch.return_value = parse_market_config(CONFIG_DOCUMENT)

    assert enrich_markets(conn, client, clock=lambda: NOW) == 2
    conn.execute("UPDATE markets SET status = 'settled', winning_outcome_index = 0 WHERE market_id = 2")

    assert enrich_markets(conn, client, clock=lambda: NOW + 3599) == 0

    client.fetch.return_value = parse_market_config({**CONFIG_DOCUMENT, "title": "Renamed"})
    assert enrich_markets(conn, client, clock=lambda: NOW + 3600) == 1

    refreshed = repository.get_market_metadata(conn, 1)
    assert refreshed is not None
    assert refreshed["title"] == "Renamed"
    assert refreshed["fetched_at"] == NOW + 3600
    assert repository.get_market_metadata(conn, 2)["title"] == CONFIG_DOCUMENT["title"]

    assert _needing_metadata(conn, NOW + 21 * 86400) == [1, 2]


def test_failed_refresh_keeps_existing_metadata(conn: Connection) -> None:
    """Test a refetch that fails leaves the stored metadata in place."""
    IngestionEngine(
        conn, FakeChainReader([new_market_log(1, block=100)], head=110), confirmations=0, genesis_block=100,
    ).run()
    client = MagicMock(spec=MarketConfigClient)
    client.fetch.return_value = parse_market_config(CONFIG_DOCUMENT)
    enrich_markets(conn, client, clock=lambda: NOW)

    client.fetch.return_value = None
    assert enrich_markets(conn, client, clock=lambda: NOW + 7200) == 0

    metadata = repository.get_market_metadata(conn, 1)
    assert metadata is not None
    assert metadata["fetched_at"] == NOW
    assert _needing_metadata(conn, NOW + 7200) == [1]


def test_market_config_from_stored_metadata() -> None:
    """Test a stored metadata row rebuilds the same outcomes."""
    config = parse_market_config(CONFIG_DOCUMENT)
    row = {
        "title": config.title,
        "description": config.description,
        "category": config.category,
        "outcomes_json": config.outcomes_json(),
    }

    rebuilt = MarketConfig.from_metadata(row)

    assert rebuilt == config
    assert rebuilt.outcome_name(0) == "Alpha-7B"
    assert MarketConfig.from_metadata(None).outcome_name(3) == "Model 3"
