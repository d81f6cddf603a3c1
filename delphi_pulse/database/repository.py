"""Data access layer for markets, trades and derived stats.

Functions here never commit; callers group writes with
:func:`delphi_pulse.database.connection.transaction`.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from sqlite3 import Connection

from beartype import beartype

from delphi_pulse.database.models import MARKET_STATUS_ACTIVE, MARKET_STATUS_SETTLED
from delphi_pulse.parser.event_decoder import NewMarketEvent, TradeExecutedEvent, WinnersSubmittedEvent
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)

TRADE_COLUMNS = (
    "transaction_hash, log_index, block_number, block_time, market_id, outcome_index, trader, "
    "is_buy, tokens_delta, shares_delta, new_price, new_outcome_supply, new_market_supply, "
    "implied_probability"
)


@beartype
def ensure_market(conn: Connection, market_id: int) -> bool:
    """
    Create an Active market row if the id has not been seen yet.

    Returns:
        True if a row was created
    """
    cursor = conn.execute(
        "INSERT INTO markets (market_id, status) VALUES (?, ?) ON CONFLICT(market_id) DO NOTHING",
        (market_id, MARKET_STATUS_ACTIVE),
    )
    return cursor.rowcount == 1


@beartype
def upsert_new_market(conn: Connection, event: NewMarketEvent, block_time: int) -> None:
    """Record market creation; status and winner of an existing row are left untouched."""
    conn.execute(
        """
        INSERT INTO markets (market_id, config_uri, config_uri_hash, status, created_at_block, created_at_time)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(market_id) DO UPDATE SET
            config_uri = excluded.config_uri,
            config_uri_hash = excluded.config_uri_hash,
            created_at_block = COALESCE(markets.created_at_block, excluded.created_at_block),
            created_at_time = COALESCE(markets.created_at_time, excluded.created_at_time)
        """,
        (
            event.market_id,
            event.config_uri,
            event.config_uri_hash,
            MARKET_STATUS_ACTIVE,
            event.block_number,
            block_time,
        ),
    )


@beartype
def settle_market(conn: Connection, event: WinnersSubmittedEvent, block_time: int) -> bool:
    """
    Transition a market to Settled with its winning outcome.

    A market settles once; a repeated settlement event is ignored.

    Returns:
        True if the market changed state
    """
    ensure_market(conn, event.market_id)
    cursor = conn.execute(
        """
        UPDATE markets
        SET status = ?, winning_outcome_index = ?, settled_at = ?
        WHERE market_id = ? AND status != ?
        """,
        (
            MARKET_STATUS_SETTLED,
            event.winning_outcome_index,
            block_time,
            event.market_id,
            MARKET_STATUS_SETTLED,
        ),
    )
    if cursor.rowcount == 1:
        return True

    row = conn.execute(
        "SELECT winning_outcome_index FROM markets WHERE market_id = ?", (event.market_id,),
    ).fetchone()
    if row is not None and row["winning_outcome_index"] != event.winning_outcome_index:
        logger.warning(
            f"Market {event.market_id} already settled on outcome {row['winning_outcome_index']}; "
            f"ignoring settlement on outcome {event.winning_outcome_index} "
            f"(tx {event.transaction_hash})",
        )
    return False


@beartype
def insert_trade(conn: Connection, event: TradeExecutedEvent, block_time: int) -> bool:
    """
    Insert a trade keyed by (transaction_hash, log_index).

    A re-delivered event hits the unique key and is silently skipped.

    Returns:
        True if a new row was inserted
    """
    ensure_market(conn, event.market_id)
    cursor = conn.execute(
        f"""
        INSERT INTO trades ({TRADE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(transaction_hash, log_index) DO NOTHING
        """,
        (
            event.transaction_hash,
            event.log_index,
            event.block_number,
            block_time,
            event.market_id,
            event.outcome_index,
            event.trader,
            int(event.is_buy),
            str(event.tokens_delta),
            str(event.shares_delta),
            str(event.new_price),
            str(event.new_outcome_supply),
            str(event.new_market_supply),
            event.implied_probability,
        ),
    )
    return cursor.rowcount == 1


@beartype
def get_market(conn: Connection, market_id: int) -> dict[str, object] | None:
    """Return one market row as a dict, or None."""
    row = conn.execute("SELECT * FROM markets WHERE market_id = ?", (market_id,)).fetchone()
    return dict(row) if row else None


@beartype
def get_markets(conn: Connection) -> list[dict[str, object]]:
    rows = conn.execute("SELECT * FROM markets ORDER BY market_id").fetchall()
    return [dict(row) for row in rows]


@beartype
def get_settled_outcomes(conn: Connection) -> dict[int, int]:
    """Map settled market id to its winning outcome index."""
    rows = conn.execute(
        "SELECT market_id, winning_outcome_index FROM markets WHERE status = ?",
        (MARKET_STATUS_SETTLED,),
    ).fetchall()
    return {row["market_id"]: row["winning_outcome_index"] for row in rows}


@beartype
def get_distinct_traders(conn: Connection) -> list[str]:
    rows = conn.execute("SELECT DISTINCT trader FROM trades ORDER BY trader").fetchall()
    return [row["trader"] for row in rows]


@beartype
def get_trades_for_trader(conn: Connection, trader: str) -> list[dict[str, object]]:
    """
    Retrieve a trader's full history in chain order.

    Args:
        trader: Checksummed trader address

    Returns:
        Trade dicts ordered by block number, then log index
    """
    rows = conn.execute(
        f"SELECT id, {TRADE_COLUMNS} FROM trades WHERE trader = ? ORDER BY block_number, log_index",
        (trader,),
    ).fetchall()
    return [dict(row) for row in rows]


@beartype
def get_all_trade_keys(conn: Connection) -> list[tuple[str, int]]:
    """Natural keys of every stored trade, sorted."""
    rows = conn.execute(
        "SELECT transaction_hash, log_index FROM trades ORDER BY transaction_hash, log_index",
    ).fetchall()
    return [(row["transaction_hash"], row["log_index"]) for row in rows]


@beartype
def get_trade_count(conn: Connection, market_id: int | None = None, trader: str | None = None) -> int:
    """Get the number of stored trades, optionally for one market and/or trader."""
    where, params = _trade_filters(market_id, trader)
    row = conn.execute(f"SELECT COUNT(*) FROM trades{where}", params).fetchone()
    return row[0] if row else 0


def _trade_filters(market_id: int | None, trader: str | None) -> tuple[str, tuple[object, ...]]:
    clauses: list[str] = []
    params: list[object] = []
    if market_id is not None:
        clauses.append("market_id = ?")
        params.append(market_id)
    if trader is not None:
        clauses.append("trader = ?")
        params.append(trader)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, tuple(params)


@beartype
def get_recent_trades(
    conn: Connection,
    limit: int,
    offset: int = 0,
    market_id: int | None = None,
    trader: str | None = None,
) -> list[dict[str, object]]:
    """
    Page through trades, newest first.

    Args:
        limit: Maximum rows returned
        offset: Rows skipped from the newest end
        market_id: Restrict to one market
        trader: Restrict to one checksummed trader address
    """
    where, params = _trade_filters(market_id, trader)
    rows = conn.execute(
        f"""
        SELECT id, {TRADE_COLUMNS} FROM trades{where}
        ORDER BY block_number DESC, log_index DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    return [dict(row) for row in rows]


@beartype
def get_market_count(conn: Connection, status: str | None = None) -> int:
    if status is not None:
        row = conn.execute("SELECT COUNT(*) FROM markets WHERE status = ?", (status,)).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM markets").fetchone()
    return row[0] if row else 0


@beartype
def iter_market_token_deltas(conn: Connection) -> Iterator[tuple[int, str]]:
    """Yield (market_id, tokens_delta) for every trade."""
    for row in conn.execute("SELECT market_id, tokens_delta FROM trades"):
        yield row["market_id"], row["tokens_delta"]


@beartype
def update_market_totals(conn: Connection, totals: Mapping[int, tuple[int, int]]) -> None:
    """
    Overwrite cached volume and trade count on every market.

    Args:
        totals: market_id -> (total_volume, total_trades); markets missing here are reset to zero
    """
    market_ids = [row["market_id"] for row in conn.execute("SELECT market_id FROM markets")]
    conn.executemany(
        "UPDATE markets SET total_volume = ?, total_trades = ? WHERE market_id = ?",
        [
            (str(totals.get(market_id, (0, 0))[0]), totals.get(market_id, (0, 0))[1], market_id)
            for market_id in market_ids
        ],
    )


@beartype
def replace_trader_stats(conn: Connection, rows: list[dict[str, object]]) -> None:
    """Replace the whole trader_stats table with ``rows``."""
    conn.execute("DELETE FROM trader_stats")
    conn.executemany(
        """
        INSERT INTO trader_stats (
            address, total_trades, buy_count, sell_count, total_volume, realized_pnl,
            total_cost_basis, open_positions, markets_traded, unmatched_sells,
            first_trade_at, last_trade_at
        ) VALUES (
            :address, :total_trades, :buy_count, :sell_count, :total_volume, :realized_pnl,
            :total_cost_basis, :open_positions, :markets_traded, :unmatched_sells,
            :first_trade_at, :last_trade_at
        )
        """,
        rows,
    )


@beartype
def get_trader_stats(conn: Connection, address: str | None = None) -> list[dict[str, object]]:
    """Return cached trader stats, for one address or for everyone."""
    if address is not None:
        rows = conn.execute("SELECT * FROM trader_stats WHERE address = ?", (address,)).fetchall()
    else:
        rows = conn.execute("SELECT * FROM trader_stats WHERE total_trades > 0").fetchall()
    return [dict(row) for row in rows]


@beartype
def get_markets_needing_metadata(
    conn: Connection,
    now: int,
    active_ttl: int,
    settled_ttl: int,
) -> list[dict[str, object]]:
    """
    Markets with a config URI whose metadata is missing or stale.

    Args:
        now: Current unix time
        active_ttl: Seconds before an active market's metadata is refetched
        settled_ttl: Seconds before a settled market's metadata is refetched
    """
    rows = conn.execute(
        """
        SELECT m.market_id, m.config_uri, m.status, md.fetched_at
        FROM markets m
        LEFT JOIN market_metadata md ON md.market_id = m.market_id
        WHERE m.config_uri IS NOT NULL AND m.config_uri != ''
          AND (
              md.market_id IS NULL
              OR (m.status = ? AND md.fetched_at <= ?)
              OR (m.status = ? AND md.fetched_at <= ?)
          )
        ORDER BY m.market_id
        """,
        (MARKET_STATUS_ACTIVE, now - active_ttl, MARKET_STATUS_SETTLED, now - settled_ttl),
    ).fetchall()
    return [dict(row) for row in rows]


@beartype
def upsert_market_metadata(
    conn: Connection,
    market_id: int,
    title: str | None,
    description: str | None,
    category: str | None,
    outcomes_json: str,
    fetched_at: int,
) -> None:
    conn.execute(
        """
        INSERT INTO market_metadata (market_id, title, description, category, outcomes_json, fetched_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(market_id) DO UPDATE SET
            title = excluded.title,
            description = excluded.description,
            category = excluded.category,
            outcomes_json = excluded.outcomes_json,
            fetched_at = excluded.fetched_at
        """,
        (market_id, title, description, category, outcomes_json, fetched_at),
    )


@beartype
def get_market_metadata(conn: Connection, market_id: int) -> dict[str, object] | None:
    row = conn.execute("SELECT * FROM market_metadata WHERE market_id = ?", (market_id,)).fetchone()
    return dict(row) if row else None
