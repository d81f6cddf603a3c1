"""Data models for market config enrichment."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field


@dataclass(frozen=True)
class OutcomeInfo:
    """One tradable outcome (model) of a market."""

    idx: int
    name: str
    family: str = ""


@dataclass
class MarketConfig:
    """Display metadata published behind a market's config URI."""

    title: str | None = None
    description: str | None = None
    category: str | None = None
    outcomes: list[OutcomeInfo] = field(default_factory=list)

    @classmethod
    def from_metadata(cls, row: Mapping[str, object] | None) -> MarketConfig:
        """Rebuild a config from a stored ``market_metadata`` row (empty if None)."""
        if row is None:
            return cls()
        outcomes = [OutcomeInfo(**item) for item in json.loads(str(row["outcomes_json"] or "[]"))]
        return cls(
            title=row["title"],
            description=row["description"],
            category=row["category"],
            outcomes=outcomes,
        )

    def outcomes_json(self) -> str:
        return json.dumps([asdict(outcome) for outcome in self.outcomes], sort_keys=True)

    def outcome_name(self, idx: int) -> str:
        for outcome in self.outcomes:
            if outcome.idx == idx:
                return outcome.name
        return f"Model {idx}"
