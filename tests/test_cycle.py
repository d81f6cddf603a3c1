"""Tests for the ingestion trigger entry points."""

from __future__ import annotations

from sqlite3 import Connection
from unittest.mock import patch

from delphi_pulse.database import repository
from delphi_pulse.database.checkpoint import CheckpointStore
from delphi_pulse.indexer.cycle import recompute_aggregates, run_ingestion_cycle
from tests.conftest import ALICE, FakeChainReader, new_market_log, trade_log


def _logs() -> list[dict[str, object]]:
    return [
        new_market_log(1, block=100),
        trade_log(1, 0, ALICE, True, tokens=1000, shares=100, block=101),
        trade_log(1, 0, ALICE, False, tokens=600, shares=50, block=120),
    ]


def test_cycle_indexes_and_refreshes_aggregates(conn: Connection) -> None:
    """Test new trades trigger a trader stats and market volume refresh."""
    reader = FakeChainReader(_logs())

    payload = run_ingestion_cycle(from_block=100, to_block=130, conn=conn, reader=reader)

    assert payload["success"] is True
    assert payload["indexed"] == 2
    assert payload["last_block"] == 130
    assert payload["busy"] is False
    assert payload["updated_trader_count"] == 1
    assert payload["updated_market_count"] == 1
    assert len(repository.get_trader_stats(conn)) == 1
    # Injected resources stay open for the caller
    assert reader.closed is False


def test_cycle_without_new_trades_skips_aggregates(conn: Connection) -> None:
    """Test an empty range does not rebuild the caches."""
    payload = run_ingestion_cycle(from_block=100, to_block=130, conn=conn, reader=FakeChainReader())

    assert payload == {"success": True, "indexed": 0, "last_block": 130, "busy": False}


def test_cycle_reports_busy(conn: Connection) -> None:
    """Test a held lock comes back as a successful busy payload."""
    assert CheckpointStore(conn).acquire_lock() is not None

    payload = run_ingestion_cycle(conn=conn, reader=FakeChainReader(_logs()))

    assert payload["success"] is True
    assert payload["busy"] is True
    assert payload["indexed"] == 0


def test_cycle_failure_returns_error_payload(conn: Connection) -> None:
    """Test ingestion errors are reported instead of raised."""
    reader = FakeChainReader(_logs())
    reader.fail_at_block = 120

    payload = run_ingestion_cycle(10, from_block=100, to_block=130, conn=conn, reader=reader)

    assert payload["success"] is False
    assert payload["indexed"] == 0
    assert payload["last_block"] == 119
    assert "connection reset" in str(payload["error"])
    assert CheckpointStore(conn).get().is_running is False


def test_recompute_aggregates_failure_returns_error_payload(conn: Connection) -> None:
    """Test a failing stats job is reported with success False."""
    with patch("delphi_pulse.indexer.cycle.recalculate_trader_stats", side_effect=RuntimeError("disk full")):
        payload = recompute_aggregates(conn=conn)

    assert payload == {
        "success": False,
        "updated_trader_count": 0,
        "updated_market_count": 0,
        "error": "disk full",
    }
