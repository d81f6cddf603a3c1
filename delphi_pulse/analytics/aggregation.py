"""Full-recompute jobs for the trader_stats cache and market volume columns.

Each job computes every row in memory first and then swaps the results in
with one transaction, so a failure leaves the previous cache untouched.
"""

from __future__ import annotations

from sqlite3 import Connection

from beartype import beartype

from delphi_pulse.analytics.pnl import TradeLeg, summarize_trader
from delphi_pulse.database import repository
from delphi_pulse.database.connection import transaction
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


@beartype
def recalculate_trader_stats(conn: Connection) -> int:
    """
    Rebuild ``trader_stats`` from the full trade ledger.

    Returns:
        Number of traders written
    """
    settled_outcomes = repository.get_settled_outcomes(conn)
    traders = repository.get_distinct_traders(conn)
    rows: list[dict[str, object]] = []
    flagged = 0

    with logger.timed("trader_stats"):
        for trader in traders:
            legs = [TradeLeg.from_row(row) for row in repository.get_trades_for_trader(conn, trader)]
            summary = summarize_trader(trader, legs, settled_outcomes)

            for position in summary.positions:
                if position.unmatched_sells:
                    flagged += 1
                    logger.warning(
                        f"{trader} market {position.market_id} outcome {position.outcome_index}: "
                        f"{position.unmatched_sells} sell(s) with no tracked shares, proceeds booked as profit",
                    )
                if position.oversells:
                    logger.warning(
                        f"{trader} market {position.market_id} outcome {position.outcome_index}: "
                        f"{position.oversells} sell(s) exceeded tracked shares, holdings clamped at zero",
                    )
            rows.append(summary.to_stats_row())

        with transaction(conn):
            repository.replace_trader_stats(conn, rows)

    logger.info(f"Updated stats for {len(rows)} traders ({flagged} positions with unmatched sells)")
    return len(rows)


@beartype
def update_market_volumes(conn: Connection) -> int:
    """
    Overwrite every market's cached total volume and trade count.

    Volume is the sum of absolute token deltas of the market's trades.

    Returns:
        Number of markets updated
    """
    totals: dict[int, tuple[int, int]] = {}
    for market_id, tokens_delta in repository.iter_market_token_deltas(conn):
        volume, count = totals.get(market_id, (0, 0))
        totals[market_id] = (volume + abs(int(tokens_delta)), count + 1)

    with transaction(conn):
        repository.update_market_totals(conn, totals)
        market_count = repository.get_market_count(conn)

    logger.info(f"Market volumes updated for {market_count} markets")
    return market_count
