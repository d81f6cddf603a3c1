"""Fetch and store the metadata document behind each market's config URI."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from sqlite3 import Connection

from beartype import beartype
from httpx import Client, HTTPError

from delphi_pulse.database import repository
from delphi_pulse.database.connection import transaction
from delphi_pulse.extractors.models import MarketConfig, OutcomeInfo
from delphi_pulse.utils.config import (
    CONFIG_FETCH_TIMEOUT,
    IPFS_GATEWAYS,
    METADATA_TTL_ACTIVE,
    METADATA_TTL_SETTLED,
)
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


@beartype
def parse_market_config(data: Mapping[str, object]) -> MarketConfig:
    """
    Parse a market config document.

    Field names vary between publishers, so a few aliases are accepted.

    Args:
        data: Decoded JSON document

    Returns:
        MarketConfig; outcomes without a usable index are skipped
    """
    raw_outcomes = data.get("models") or data.get("entries") or data.get("options") or []
    outcomes: list[OutcomeInfo] = []
    if isinstance(raw_outcomes, list):
        for position, item in enumerate(raw_outcomes):
            if not isinstance(item, dict):
                continue
            raw_idx = item.get("idx", item.get("modelIdx", position))
            try:
                idx = int(raw_idx)
            except (TypeError, ValueError):
                continue
            name = item.get("name") or item.get("modelName") or f"Model {idx}"
            family = item.get("family") or item.get("familyName") or ""
            outcomes.append(OutcomeInfo(idx=idx, name=str(name), family=str(family)))

    def _text(*keys: str) -> str | None:
        for key in keys:
            value = data.get(key)
            if value:
                return str(value)
        return None

    return MarketConfig(
        title=_text("title", "name"),
        description=_text("description"),
        category=_text("category"),
        outcomes=outcomes,
    )


class MarketConfigClient:
    """HTTP client for market config documents on IPFS or plain HTTP."""

    def __init__(
        self,
        gateways: Sequence[str] | None = None,
        timeout: float = CONFIG_FETCH_TIMEOUT,
        client: Client | None = None,
    ) -> None:
        """
        Initialize the config client.

        Args:
            gateways: IPFS gateway prefixes tried in order (uses config if None)
            timeout: Per-request timeout in seconds
            client: Optional httpx client (creates new if None)
        """
        self.gateways = list(gateways) if gateways else list(IPFS_GATEWAYS)
        self.should_close_client = client is None
        self.client = client or Client(timeout=timeout, headers={"Accept": "application/json"})

    def candidate_urls(self, config_uri: str) -> list[str]:
        """URLs to try for a config URI, in order."""
        if config_uri.startswith("ipfs://"):
            content_hash = config_uri[len("ipfs://"):]
            return [f"{gateway}{content_hash}" for gateway in self.gateways]
        if config_uri.startswith(("http://", "https://")):
            return [config_uri]
        return []

    @beartype
    def fetch(self, config_uri: str) -> MarketConfig | None:
        """
        Fetch and parse a config document.

        Returns:
            MarketConfig, or None if no source returned a usable document
        """
        for url in self.candidate_urls(config_uri):
            try:
                response = self.client.get(url)
                response.raise_for_status()
                data = response.json()
            except (HTTPError, ValueError) as e:
                logger.debug(f"Config fetch from {url} failed: {e}")
                continue
            if isinstance(data, dict):
                return parse_market_config(data)
            logger.debug(f"Config at {url} is not a JSON object")

        logger.warning(f"Could not fetch market config: {config_uri}")
        return None

    def close(self) -> None:
        if self.should_close_client:
            self.client.close()

    def __enter__(self) -> MarketConfigClient:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


def enrich_markets(
    conn: Connection,
    client: MarketConfigClient | None = None,
    clock: Callable[[], float] = time.time,
    active_ttl: int = METADATA_TTL_ACTIVE,
    settled_ttl: int = METADATA_TTL_SETTLED,
) -> int:
    """
    Fill or refresh ``market_metadata`` for markets that need it.

    Runs separately from ingestion. Markets without metadata are fetched, as
    are markets whose metadata is older than the TTL for their status. A
    market whose config cannot be fetched keeps what it had and is retried
    on the next call.

    Args:
        conn: Database connection
        client: Config client (a new one is created and closed if None)
        clock: Source of the current unix time
        active_ttl: Refetch age for active markets, in seconds
        settled_ttl: Refetch age for settled markets, in seconds

    Returns:
        Number of markets enriched
    """
    should_close = client is None
    client = client or MarketConfigClient()
    now = int(clock())
    enriched = 0
    try:
        for market in repository.get_markets_needing_metadata(conn, now, active_ttl, settled_ttl):
            config = client.fetch(str(market["config_uri"]))
            if config is None:
                continue
            with transaction(conn):
                repository.upsert_market_metadata(
                    conn,
                    market_id=int(market["market_id"]),
                    title=config.title,
                    description=config.description,
                    category=config.category,
                    outcomes_json=config.outcomes_json(),
                    fetched_at=now,
                )
            if market["fetched_at"] is not None:
                logger.debug(f"Refreshed stale metadata for market {market['market_id']}")
            enriched += 1
    finally:
        if should_close:
            client.close()

    logger.info(f"Enriched {enriched} markets with config metadata")
    return enriched
