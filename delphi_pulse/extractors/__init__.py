"""Optional market metadata enrichment from config URIs."""

from __future__ import annotations

from delphi_pulse.extractors.market_config import MarketConfigClient, enrich_markets, parse_market_config
from delphi_pulse.extractors.models import MarketConfig, OutcomeInfo

__all__ = ["MarketConfig", "MarketConfigClient", "OutcomeInfo", "enrich_markets", "parse_market_config"]
