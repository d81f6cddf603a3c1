"""Average-cost position and P&L accounting.

This module is the only place P&L is derived. Stats jobs, the leaderboard
and trader detail views all go through :func:`calculate_positions` and
:func:`summarize_trader`.

Rules, applied per (market, outcome) in chain order:

* buy ``shares`` for ``tokens``: shares and cost basis grow by those amounts;
* sell with tracked shares: ``avg = cost // shares``, ``removed = avg * sold``,
  realized P&L grows by ``tokens - removed``; shares and cost basis shrink,
  floored at zero;
* sell with no tracked shares (history gap): the whole proceeds count as
  profit and the sell is flagged as unmatched;
* settlement: a winning position still holding shares is paid 1 token per
  share; a losing one writes off its remaining cost basis.

All amounts are Python ints, so 18-decimal on-chain values never lose
precision.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from beartype import beartype

SETTLEMENT_WON = "won"
SETTLEMENT_LOST = "lost"


@dataclass(frozen=True)
class TradeLeg:
    """The fields of a stored trade that accounting needs."""

    market_id: int
    outcome_index: int
    is_buy: bool
    tokens: int
    shares: int
    block_time: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> TradeLeg:
        """Build a leg from a ``trades`` row (amounts stored as integer text)."""
        return cls(
            market_id=int(row["market_id"]),
            outcome_index=int(row["outcome_index"]),
            is_buy=bool(row["is_buy"]),
            tokens=abs(int(row["tokens_delta"])),
            shares=abs(int(row["shares_delta"])),
            block_time=int(row["block_time"]) if row.get("block_time") is not None else None,
        )


@dataclass
class Position:
    """Running state of one (market, outcome) holding."""

    market_id: int
    outcome_index: int
    shares_held: int = 0
    cost_basis: int = 0
    realized_pnl: int = 0
    trade_count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    tokens_spent: int = 0
    tokens_received: int = 0
    unmatched_sells: int = 0
    oversells: int = 0
    settlement: str | None = None
    settlement_pnl: int = 0

    @property
    def key(self) -> tuple[int, int]:
        return (self.market_id, self.outcome_index)

    @property
    def is_open(self) -> bool:
        return self.shares_held > 0 and self.settlement is None

    @property
    def open_cost_basis(self) -> int:
        """Cost basis still at risk; zero once closed or settled."""
        return self.cost_basis if self.is_open else 0

    def apply(self, leg: TradeLeg) -> None:
        self.trade_count += 1

        if leg.is_buy:
            self.buy_count += 1
            self.tokens_spent += leg.tokens
            self.shares_held += leg.shares
            self.cost_basis += leg.tokens
            return

        self.sell_count += 1
        self.tokens_received += leg.tokens

        if self.shares_held == 0:
            self.unmatched_sells += 1
            self.realized_pnl += leg.tokens
            return

        if leg.shares > self.shares_held:
            self.oversells += 1

        avg_cost = self.cost_basis // self.shares_held
        cost_removed = avg_cost * leg.shares
        self.realized_pnl += leg.tokens - cost_removed
        self.shares_held = max(self.shares_held - leg.shares, 0)
        self.cost_basis = max(self.cost_basis - cost_removed, 0)

    def settle(self, winning_outcome_index: int) -> None:
        """Book the settlement payout or write-off for shares still held."""
        if self.settlement is not None or self.shares_held == 0:
            return

        if self.outcome_index == winning_outcome_index:
            self.settlement = SETTLEMENT_WON
            self.settlement_pnl = self.shares_held
        else:
            self.settlement = SETTLEMENT_LOST
            self.settlement_pnl = -self.cost_basis
        self.realized_pnl += self.settlement_pnl

    def to_dict(self) -> dict[str, object]:
        """Serializable view; big integers become decimal strings."""
        return {
            "marketId": str(self.market_id),
            "outcomeIndex": str(self.outcome_index),
            "sharesHeld": str(self.shares_held),
            "costBasis": str(self.cost_basis),
            "realizedPnl": str(self.realized_pnl),
            "tradeCount": self.trade_count,
            "buyCount": self.buy_count,
            "sellCount": self.sell_count,
            "unmatchedSells": self.unmatched_sells,
            "oversells": self.oversells,
            "settlement": self.settlement,
            "settlementPnl": str(self.settlement_pnl),
            "isOpen": self.is_open,
        }


@beartype
def calculate_positions(
    legs: Iterable[TradeLeg],
    settled_outcomes: Mapping[int, int] | None = None,
) -> list[Position]:
    """
    Run average-cost accounting over trades already in chain order.

    Args:
        legs: Trades for one trader, oldest first
        settled_outcomes: market_id -> winning outcome index for settled markets

    Returns:
        Positions sorted by (market_id, outcome_index)
    """
    positions: dict[tuple[int, int], Position] = {}
    for leg in legs:
        key = (leg.market_id, leg.outcome_index)
        position = positions.get(key)
        if position is None:
            position = positions[key] = Position(market_id=leg.market_id, outcome_index=leg.outcome_index)
        position.apply(leg)

    for position in positions.values():
        winner = (settled_outcomes or {}).get(position.market_id)
        if winner is not None:
            position.settle(winner)

    return [positions[key] for key in sorted(positions)]


@dataclass
class TraderSummary:
    """Per-trader totals over every position."""

    address: str
    total_trades: int = 0
    buy_count: int = 0
    sell_count: int = 0
    total_volume: int = 0
    buy_volume: int = 0
    sell_volume: int = 0
    realized_pnl: int = 0
    total_cost_basis: int = 0
    open_positions: int = 0
    closed_positions: int = 0
    markets_traded: int = 0
    outcomes_traded: int = 0
    unmatched_sells: int = 0
    oversells: int = 0
    first_trade_at: int | None = None
    last_trade_at: int | None = None
    positions: list[Position] = field(default_factory=list)

    def to_stats_row(self) -> dict[str, object]:
        """Row for the ``trader_stats`` table."""
        return {
            "address": self.address,
            "total_trades": self.total_trades,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "total_volume": str(self.total_volume),
            "realized_pnl": str(self.realized_pnl),
            "total_cost_basis": str(self.total_cost_basis),
            "open_positions": self.open_positions,
            "markets_traded": self.markets_traded,
            "unmatched_sells": self.unmatched_sells,
            "first_trade_at": self.first_trade_at,
            "last_trade_at": self.last_trade_at,
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "totalTrades": self.total_trades,
            "buyCount": self.buy_count,
            "sellCount": self.sell_count,
            "totalVolume": str(self.total_volume),
            "buyVolume": str(self.buy_volume),
            "sellVolume": str(self.sell_volume),
            "realizedPnl": str(self.realized_pnl),
            "totalCostBasis": str(self.total_cost_basis),
            "openPositions": self.open_positions,
            "closedPositions": self.closed_positions,
            "marketsTraded": self.markets_traded,
            "outcomesTraded": self.outcomes_traded,
            "unmatchedSells": self.unmatched_sells,
            "oversells": self.oversells,
            "firstTradeAt": self.first_trade_at,
            "lastTradeAt": self.last_trade_at,
        }


@beartype
def summarize_trader(
    address: str,
    legs: list[TradeLeg],
    settled_outcomes: Mapping[int, int] | None = None,
) -> TraderSummary:
    """
    Compute one trader's totals and positions.

    Args:
        address: Checksummed trader address
        legs: The trader's trades in chain order
        settled_outcomes: market_id -> winning outcome index

    Returns:
        TraderSummary with ``positions`` filled in
    """
    summary = TraderSummary(address=address)
    summary.positions = calculate_positions(legs, settled_outcomes)

    for leg in legs:
        summary.total_trades += 1
        summary.total_volume += leg.tokens
        if leg.is_buy:
            summary.buy_count += 1
            summary.buy_volume += leg.tokens
        else:
            summary.sell_count += 1
            summary.sell_volume += leg.tokens

    block_times = [leg.block_time for leg in legs if leg.block_time is not None]
    if block_times:
        summary.first_trade_at = block_times[0]
        summary.last_trade_at = block_times[-1]

    for position in summary.positions:
        summary.realized_pnl += position.realized_pnl
        summary.total_cost_basis += position.open_cost_basis
        summary.unmatched_sells += position.unmatched_sells
        summary.oversells += position.oversells
        if position.is_open:
            summary.open_positions += 1
        else:
            summary.closed_positions += 1

    summary.outcomes_traded = len(summary.positions)
    summary.markets_traded = len({position.market_id for position in summary.positions})
    return summary
