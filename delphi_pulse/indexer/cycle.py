"""Entry points called by schedulers, webhooks and the operator CLI.

Both functions return plain dict payloads and never raise; failures come
back as ``{"success": False, "error": ...}``. Authorization is the caller's
responsibility.
"""

from __future__ import annotations

from sqlite3 import Connection

from delphi_pulse.analytics.aggregation import recalculate_trader_stats, update_market_volumes
from delphi_pulse.database.checkpoint import CheckpointStore
from delphi_pulse.database.connection import get_connection, initialize_database
from delphi_pulse.indexer.engine import IngestionEngine
from delphi_pulse.parser.blockchain_client import ChainReader
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


def _open_connection(conn: Connection | None) -> tuple[Connection, bool]:
    if conn is not None:
        return conn, False
    initialize_database()
    return get_connection(), True


def run_ingestion_cycle(
    batch_size: int | None = None,
    *,
    from_block: int | None = None,
    to_block: int | None = None,
    conn: Connection | None = None,
    reader: ChainReader | None = None,
) -> dict[str, object]:
    """
    Run one ingestion pass and refresh aggregates if it added trades.

    Returns:
        ``{"success", "indexed", "last_block", "busy"}`` plus ``"error"`` on failure
    """
    conn, should_close = _open_connection(conn)
    should_close_reader = reader is None
    try:
        if reader is None:
            reader = ChainReader()

        result = IngestionEngine(conn, reader).run(
            from_block=from_block, to_block=to_block, batch_size=batch_size,
        )
        payload: dict[str, object] = {"success": True, **result.to_dict()}
        if result.busy:
            logger.info("Ingestion skipped: another run holds the lock")
            return payload

        if result.indexed_count > 0:
            # Aggregate failures surface through "success" and "error"
            payload.update(recompute_aggregates(conn=conn))
        return payload

    except Exception as e:
        logger.error(f"Ingestion cycle failed: {e}")
        return {
            "success": False,
            "indexed": 0,
            "last_block": CheckpointStore(conn).get().last_indexed_block,
            "busy": False,
            "error": str(e),
        }
    finally:
        if should_close_reader and reader is not None:
            reader.close()
        if should_close:
            conn.close()


def recompute_aggregates(conn: Connection | None = None) -> dict[str, object]:
    """
    Rebuild trader stats and market volume caches from the trade ledger.

    Returns:
        ``{"success", "updated_trader_count", "updated_market_count"}`` plus ``"error"`` on failure
    """
    conn, should_close = _open_connection(conn)
    try:
        traders = recalculate_trader_stats(conn)
        markets = update_market_volumes(conn)
        return {"success": True, "updated_trader_count": traders, "updated_market_count": markets}
    except Exception as e:
        logger.exception("Aggregate recomputation failed")
        return {"success": False, "updated_trader_count": 0, "updated_market_count": 0, "error": str(e)}
    finally:
        if should_close:
            conn.close()
