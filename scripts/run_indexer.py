"""Operator CLI for the Delphi event indexer."""

from __future__ import annotations

import json
import sys
from pathlib import Path

from beartype import beartype

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from delphi_pulse.analytics.aggregation import update_market_volumes
from delphi_pulse.analytics.queries import (
    get_indexer_status,
    get_leaderboard,
    get_market_detail,
    get_markets_overview,
    get_trader_trades,
)
from delphi_pulse.database.connection import get_connection, initialize_database
from delphi_pulse.extractors.market_config import enrich_markets
from delphi_pulse.indexer.cycle import recompute_aggregates, run_ingestion_cycle
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


def _print_json(payload: dict[str, object]) -> None:
    print(json.dumps(payload, indent=2, default=str))


@beartype
def main(
    action: str,
    batch_size: int | None = None,
    from_block: int | None = None,
    to_block: int | None = None,
    sort_by: str = "pnl",
    page: int = 1,
    limit: int = 50,
    address: str | None = None,
    market_id: int | None = None,
    take: int = 50,
    skip: int = 0,
) -> int:
    """
    Run one operator action and print its JSON payload.

    Args:
        action: index, recalculate, update-volumes, status, enrich, leaderboard, trades or markets
        batch_size: Blocks per window for ``index``
        from_block: Optional explicit start block for ``index``
        to_block: Optional explicit end block for ``index``
        sort_by: Leaderboard ordering
        page: Leaderboard page
        limit: Leaderboard page size
        address: Trader address for ``trades``
        market_id: Market filter for ``trades``; single market for ``markets``
        take: Trade history page size
        skip: Trade history offset

    Returns:
        Process exit code
    """
    if action == "index":
        payload = run_ingestion_cycle(batch_size, from_block=from_block, to_block=to_block)
        _print_json(payload)
        return 0 if payload["success"] else 1

    if action == "recalculate":
        payload = recompute_aggregates()
        _print_json(payload)
        return 0 if payload["success"] else 1

    initialize_database()
    conn = get_connection()
    try:
        if action == "update-volumes":
            _print_json({"success": True, "updated_market_count": update_market_volumes(conn)})
        elif action == "status":
            _print_json(get_indexer_status(conn))
        elif action == "enrich":
            _print_json({"success": True, "enriched": enrich_markets(conn)})
        elif action == "leaderboard":
            _print_json(get_leaderboard(conn, sort_by=sort_by, page=page, limit=limit))
        elif action == "trades":
            if address is None:
                print("--address is required for trades")
                return 2
            _print_json(get_trader_trades(conn, address, take=take, skip=skip, market_id=market_id))
        elif action == "markets":
            if market_id is None:
                _print_json({"markets": get_markets_overview(conn)})
            else:
                detail = get_market_detail(conn, market_id)
                if detail is None:
                    print(f"Unknown market: {market_id}")
                    return 1
                _print_json(detail)
        else:
            print(f"Unknown action: {action}")
            return 2
    except Exception as e:
        logger.exception(f"Action {action} failed")
        _print_json({"success": False, "error": str(e)})
        return 1
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(
        description="Index Delphi market events and maintain derived trader stats",
    )
    parser.add_argument(
        "action",
        choices=["index", "recalculate", "update-volumes", "status", "enrich", "leaderboard", "trades", "markets"],
        help="What to run",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Blocks per log query (uses config if not provided)",
    )
    parser.add_argument(
        "--from-block",
        type=int,
        help="Starting block number (resumes from checkpoint if not provided)",
    )
    parser.add_argument(
        "--to-block",
        type=int,
        help="Ending block number (uses confirmed head if not provided)",
    )
    parser.add_argument(
        "--sort-by",
        choices=["pnl", "volume", "trades"],
        default="pnl",
        help="Leaderboard ordering",
    )
    parser.add_argument("--page", type=int, default=1, help="Leaderboard page")
    parser.add_argument("--limit", type=int, default=50, help="Leaderboard page size")
    parser.add_argument("--address", help="Trader address for trades")
    parser.add_argument("--market-id", type=int, help="Restrict trades to one market, or show one market")
    parser.add_argument("--take", type=int, default=50, help="Trade history page size")
    parser.add_argument("--skip", type=int, default=0, help="Trade history offset")

    args = parser.parse_args()

    sys.exit(
        main(
            action=args.action,
            batch_size=args.batch_size,
            from_block=args.from_block,
            to_block=args.to_block,
            sort_by=args.sort_by,
            page=args.page,
            limit=args.limit,
            address=args.address,
            market_id=args.market_id,
            take=args.take,
            skip=args.skip,
        )
    )
