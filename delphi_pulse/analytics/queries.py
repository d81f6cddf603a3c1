"""Read-side views over the trade ledger and derived caches.

Every view that reports P&L gets it from :mod:`delphi_pulse.analytics.pnl`.
The checkpoint is reported as information only; trades newer than
``last_indexed_block`` may already be visible.
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Callable
from sqlite3 import Connection

from beartype import beartype
from web3 import Web3

from delphi_pulse.analytics.pnl import TradeLeg, TraderSummary, summarize_trader
from delphi_pulse.database import repository
from delphi_pulse.database.checkpoint import CheckpointStore
from delphi_pulse.database.models import MARKET_STATUS_ACTIVE, MARKET_STATUS_SETTLED
from delphi_pulse.utils.cache import TTLCache
from delphi_pulse.extractors.models import MarketConfig
from delphi_pulse.utils.config import (
    LEADERBOARD_MAX_LIMIT,
    MARKET_RECENT_TRADES,
    STATS_CACHE_TTL,
    TRADE_HISTORY_MAX_TAKE,
)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

LEADERBOARD_SORT_FIELDS = {
    "pnl": "realized_pnl",
    "volume": "total_volume",
    "trades": "total_trades",
}


@beartype
def normalize_address(address: str) -> str:
    """
    Validate an address and return its checksummed form.

    Raises:
        ValueError: If the address is not 0x followed by 40 hex characters
    """
    if not ADDRESS_PATTERN.match(address):
        raise ValueError(f"Invalid address: {address}")
    return Web3.to_checksum_address(address)


def _load_summary(conn: Connection, address: str) -> TraderSummary:
    rows = repository.get_trades_for_trader(conn, address)
    legs = [TradeLeg.from_row(row) for row in rows]
    return summarize_trader(address, legs, repository.get_settled_outcomes(conn))


@beartype
def get_trader_summary(conn: Connection, address: str) -> dict[str, object]:
    """Live totals for one trader."""
    return _load_summary(conn, normalize_address(address)).to_dict()


@beartype
def get_trader_positions(conn: Connection, address: str) -> dict[str, object]:
    """
    Open and closed positions for one trader.

    Args:
        address: Trader address in any letter case

    Returns:
        Dict with ``summary``, ``openPositions`` and ``closedPositions``
    """
    checksummed = normalize_address(address)
    summary = _load_summary(conn, checksummed)

    markets = {market["market_id"]: market for market in repository.get_markets(conn)}
    open_positions: list[dict[str, object]] = []
    closed_positions: list[dict[str, object]] = []

    configs: dict[int, MarketConfig] = {}
    for position in summary.positions:
        market = markets.get(position.market_id, {})
        if position.market_id not in configs:
            configs[position.market_id] = MarketConfig.from_metadata(
                repository.get_market_metadata(conn, position.market_id),
            )
        config = configs[position.market_id]
        formatted = position.to_dict()
        formatted["marketStatus"] = market.get("status", MARKET_STATUS_ACTIVE)
        formatted["marketTitle"] = config.title
        formatted["outcomeName"] = config.outcome_name(position.outcome_index)
        winner = market.get("winning_outcome_index")
        formatted["isWinner"] = winner is not None and winner == position.outcome_index

        if position.is_open:
            open_positions.append(formatted)
        else:
            closed_positions.append(formatted)

    return {
        "address": checksummed,
        "summary": {
            "totalRealizedPnl": str(summary.realized_pnl),
            "totalUnrealizedCost": str(summary.total_cost_basis),
            "openPositionCount": len(open_positions),
            "closedPositionCount": len(closed_positions),
            "unmatchedSells": summary.unmatched_sells,
        },
        "openPositions": open_positions,
        "closedPositions": closed_positions,
    }


def _trade_entry(row: dict[str, object], config: MarketConfig) -> dict[str, object]:
    return {
        "id": f"{row['transaction_hash']}:{row['log_index']}",
        "transactionHash": row["transaction_hash"],
        "logIndex": row["log_index"],
        "blockNumber": row["block_number"],
        "blockTime": row["block_time"],
        "marketId": str(row["market_id"]),
        "outcomeIndex": str(row["outcome_index"]),
        "outcomeName": config.outcome_name(int(row["outcome_index"])),
        "trader": row["trader"],
        "isBuy": bool(row["is_buy"]),
        "tokensDelta": row["tokens_delta"],
        "sharesDelta": row["shares_delta"],
        "impliedProbability": row["implied_probability"],
    }


@beartype
def get_trader_trades(
    conn: Connection,
    address: str,
    take: int = 50,
    skip: int = 0,
    market_id: int | None = None,
) -> dict[str, object]:
    """
    Paged trade history for one trader, newest first.

    Args:
        address: Trader address in any letter case
        take: Page size, clamped to 1..TRADE_HISTORY_MAX_TAKE
        skip: Trades skipped from the newest end
        market_id: Restrict to one market

    Returns:
        Dict with ``trades`` and the unpaged ``total``
    """
    checksummed = normalize_address(address)
    take = min(TRADE_HISTORY_MAX_TAKE, max(1, take))
    skip = max(0, skip)

    rows = repository.get_recent_trades(conn, take, skip, market_id=market_id, trader=checksummed)
    configs: dict[int, MarketConfig] = {}
    trades = []
    for row in rows:
        row_market = int(row["market_id"])
        if row_market not in configs:
            configs[row_market] = MarketConfig.from_metadata(repository.get_market_metadata(conn, row_market))
        trades.append(_trade_entry(row, configs[row_market]))

    return {
        "address": checksummed,
        "trades": trades,
        "total": repository.get_trade_count(conn, market_id=market_id, trader=checksummed),
        "take": take,
        "skip": skip,
    }


def _market_entry(market: dict[str, object], config: MarketConfig) -> dict[str, object]:
    winner = market["winning_outcome_index"]
    return {
        "marketId": str(market["market_id"]),
        "status": market["status"],
        "configUri": market["config_uri"],
        "title": config.title,
        "category": config.category,
        "winningOutcomeIndex": winner,
        "winningOutcomeName": config.outcome_name(int(winner)) if winner is not None else None,
        "createdAtBlock": market["created_at_block"],
        "createdAtTime": market["created_at_time"],
        "settledAt": market["settled_at"],
        "totalVolume": market["total_volume"],
        "totalTrades": market["total_trades"],
    }


@beartype
def get_markets_overview(conn: Connection, status: str | None = None) -> list[dict[str, object]]:
    """All markets with their display metadata, optionally filtered by status."""
    entries: list[dict[str, object]] = []
    for market in repository.get_markets(conn):
        if status is not None and market["status"] != status:
            continue
        metadata = repository.get_market_metadata(conn, int(market["market_id"]))
        entries.append(_market_entry(market, MarketConfig.from_metadata(metadata)))
    return entries


@beartype
def get_market_detail(
    conn: Connection,
    market_id: int,
    recent_limit: int = MARKET_RECENT_TRADES,
) -> dict[str, object] | None:
    """
    One market with its outcomes and most recent trades.

    Returns:
        Dict view of the market, or None if the id is unknown
    """
    market = repository.get_market(conn, market_id)
    if market is None:
        return None

    config = MarketConfig.from_metadata(repository.get_market_metadata(conn, market_id))
    detail = _market_entry(market, config)
    detail["description"] = config.description
    detail["outcomes"] = [
        {"idx": outcome.idx, "name": outcome.name, "family": outcome.family} for outcome in config.outcomes
    ]
    detail["recentTrades"] = [
        _trade_entry(row, config)
        for row in repository.get_recent_trades(conn, max(1, recent_limit), market_id=market_id)
    ]
    return detail


@beartype
def get_leaderboard(
    conn: Connection,
    sort_by: str = "pnl",
    page: int = 1,
    limit: int = 50,
    search: str | None = None,
) -> dict[str, object]:
    """
    Rank traders from the ``trader_stats`` cache.

    Args:
        sort_by: "pnl", "volume" or "trades" (anything else sorts by pnl)
        page: 1-based page number
        limit: Rows per page, capped at LEADERBOARD_MAX_LIMIT
        search: Case-insensitive address substring; returns one page of matches
    """
    column = LEADERBOARD_SORT_FIELDS.get(sort_by, "realized_pnl")
    page = max(1, page)
    limit = min(LEADERBOARD_MAX_LIMIT, max(1, limit))

    stats = repository.get_trader_stats(conn)
    stats.sort(key=lambda row: (-int(row[column]), row["address"]))

    if search:
        needle = search.lower()
        matches = [row for row in stats if needle in str(row["address"]).lower()][:LEADERBOARD_MAX_LIMIT]
        return {
            "leaderboard": [_leaderboard_entry(row, rank) for rank, row in enumerate(matches, start=1)],
            "totalTraders": len(matches),
            "totalPages": 1,
            "currentPage": 1,
        }

    offset = (page - 1) * limit
    return {
        "leaderboard": [
            _leaderboard_entry(row, rank)
            for rank, row in enumerate(stats[offset:offset + limit], start=offset + 1)
        ],
        "totalTraders": len(stats),
        "totalPages": math.ceil(len(stats) / limit),
        "currentPage": page,
    }


def _leaderboard_entry(row: dict[str, object], rank: int) -> dict[str, object]:
    return {
        "address": row["address"],
        "realizedPnl": row["realized_pnl"],
        "totalVolume": row["total_volume"],
        "totalTrades": row["total_trades"],
        "rank": rank,
    }


@beartype
def get_indexer_status(conn: Connection) -> dict[str, object]:
    """Checkpoint row plus ledger counts."""
    checkpoint = CheckpointStore(conn).get()
    return {
        "lastIndexedBlock": checkpoint.last_indexed_block,
        "isRunning": checkpoint.is_running,
        "updatedAt": checkpoint.updated_at,
        "tradeCount": repository.get_trade_count(conn),
        "marketCount": repository.get_market_count(conn),
    }


class StatsReader:
    """Global dashboard stats, memoised for a short TTL."""

    CACHE_KEY = "global_stats"

    def __init__(
        self,
        conn: Connection,
        cache: TTLCache[dict[str, object]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.conn = conn
        self.clock = clock
        self.cache = cache if cache is not None else TTLCache(STATS_CACHE_TTL)

    def global_stats(self) -> dict[str, object]:
        return self.cache.get_or_compute(self.CACHE_KEY, self._compute)

    def _compute(self) -> dict[str, object]:
        since = int(self.clock()) - 24 * 60 * 60
        recent_rows = self.conn.execute(
            "SELECT is_buy, tokens_delta FROM trades WHERE block_time >= ?", (since,),
        ).fetchall()
        volume_24h = sum(abs(int(row["tokens_delta"])) for row in recent_rows)
        buys_24h = sum(1 for row in recent_rows if row["is_buy"])

        total_volume = sum(int(market["total_volume"]) for market in repository.get_markets(self.conn))
        unique_traders = self.conn.execute("SELECT COUNT(DISTINCT trader) FROM trades").fetchone()[0]
        latest = self.conn.execute(
            """
            SELECT transaction_hash, log_index, trader, is_buy, tokens_delta, block_time,
                   market_id, outcome_index, implied_probability
            FROM trades ORDER BY block_number DESC, log_index DESC LIMIT 10
            """,
        ).fetchall()
        checkpoint = CheckpointStore(self.conn).get()

        return {
            "totalTrades": repository.get_trade_count(self.conn),
            "totalMarkets": repository.get_market_count(self.conn),
            "activeMarkets": repository.get_market_count(self.conn, MARKET_STATUS_ACTIVE),
            "settledMarkets": repository.get_market_count(self.conn, MARKET_STATUS_SETTLED),
            "uniqueTraders": unique_traders,
            "totalVolume": str(total_volume),
            "trades24h": len(recent_rows),
            "volume24h": str(volume_24h),
            "buys24h": buys_24h,
            "sells24h": len(recent_rows) - buys_24h,
            "lastIndexedBlock": checkpoint.last_indexed_block,
            "isIndexerRunning": checkpoint.is_running,
            "recentTrades": [
                {
                    "id": f"{row['transaction_hash']}:{row['log_index']}",
                    "trader": row["trader"],
                    "isBuy": bool(row["is_buy"]),
                    "tokensDelta": row["tokens_delta"],
                    "blockTime": row["block_time"],
                    "marketId": str(row["market_id"]),
                    "outcomeIndex": str(row["outcome_index"]),
                    "impliedProbability": row["implied_probability"],
                }
                for row in latest
            ],
        }
