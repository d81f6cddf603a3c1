"""Checkpointed, idempotent ingestion of Delphi contract events."""

from __future__ import annotations

import time
from dataclasses import dataclass
from sqlite3 import Connection

from beartype import beartype

from delphi_pulse.database import repository
from delphi_pulse.database.checkpoint import CheckpointStore, LockToken
from delphi_pulse.database.connection import transaction
from delphi_pulse.parser.blockchain_client import ChainReader
from delphi_pulse.parser.event_decoder import (
    ChainEvent,
    NewMarketEvent,
    TradeExecutedEvent,
    WinnersSubmittedEvent,
    decode_logs,
)
from delphi_pulse.utils.config import GENESIS_BLOCK, INDEXER_BATCH_SIZE, INDEXER_CONFIRMATIONS
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    indexed_count: int
    last_block: int | None
    busy: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"indexed": self.indexed_count, "last_block": self.last_block, "busy": self.busy}


@dataclass(frozen=True)
class WindowResult:
    from_block: int
    to_block: int
    events: int
    trades_inserted: int
    markets_settled: int


def split_block_range(from_block: int, to_block: int, batch_size: int) -> list[tuple[int, int]]:
    """
    Split an inclusive block range into consecutive windows.

    Args:
        from_block: Starting block
        to_block: Ending block (inclusive)
        batch_size: Maximum blocks per window

    Returns:
        List of (start_block, end_block) tuples
    """
    windows: list[tuple[int, int]] = []
    current = from_block
    while current <= to_block:
        end = min(current + batch_size - 1, to_block)
        windows.append((current, end))
        current = end + 1
    return windows


class IngestionEngine:
    """Reads contract logs window by window and persists them idempotently."""

    def __init__(
        self,
        conn: Connection,
        reader: ChainReader,
        checkpoint: CheckpointStore | None = None,
        batch_size: int = INDEXER_BATCH_SIZE,
        confirmations: int = INDEXER_CONFIRMATIONS,
        genesis_block: int = GENESIS_BLOCK,
    ) -> None:
        """
        Initialize the ingestion engine.

        Args:
            conn: Database connection (autocommit mode)
            reader: Chain reader for head block, logs and block timestamps
            checkpoint: Checkpoint store (built on conn if None)
            batch_size: Default blocks per window
            confirmations: Blocks withheld behind the head
            genesis_block: First block when no checkpoint exists
        """
        self.conn = conn
        self.reader = reader
        self.checkpoint = checkpoint or CheckpointStore(conn)
        self.batch_size = batch_size
        self.confirmations = confirmations
        self.genesis_block = genesis_block

    @beartype
    def run(
        self,
        from_block: int | None = None,
        to_block: int | None = None,
        batch_size: int | None = None,
    ) -> IngestionResult:
        """
        Index contract events up to the confirmed head.

        Args:
            from_block: First block to index (checkpoint + 1 if None)
            to_block: Last block to index (head - confirmations if None)
            batch_size: Blocks per window (engine default if None)

        Returns:
            IngestionResult; ``busy`` is set when another run holds the lock

        Raises:
            TransientRPCError: If the node stayed unreachable
            MalformedEventError: If a log in the current window cannot be decoded
        """
        window_size = batch_size or self.batch_size
        if window_size < 1:
            raise ValueError(f"batch_size must be positive, got {window_size}")

        with self.checkpoint.hold_lock() as token:
            if token is None:
                return IngestionResult(
                    indexed_count=0,
                    last_block=self.checkpoint.get().last_indexed_block,
                    busy=True,
                )
            try:
                return self._run_locked(token, from_block, to_block, window_size)
            finally:
                self.reader.clear_block_time_cache()

    def _run_locked(
        self,
        token: LockToken,
        from_block: int | None,
        to_block: int | None,
        window_size: int,
    ) -> IngestionResult:
        stored_last = self.checkpoint.get().last_indexed_block
        expected_start = stored_last + 1 if stored_last is not None else self.genesis_block

        if from_block is None:
            from_block = expected_start
        if to_block is None:
            to_block = self.reader.head_block() - self.confirmations

        if from_block > to_block:
            logger.info(f"Already caught up (from block {from_block} > target block {to_block})")
            return IngestionResult(indexed_count=0, last_block=stored_last)

        windows = split_block_range(from_block, to_block, window_size)
        logger.info(f"Indexing blocks {from_block} to {to_block} in {len(windows)} windows of {window_size}")

        # Advancing past a gap would mark un-indexed blocks as done.
        contiguous = from_block <= expected_start
        if not contiguous:
            logger.warning(
                f"Range starts at {from_block}, past next unindexed block {expected_start}; "
                "checkpoint will not advance for this run",
            )

        started = time.perf_counter()
        indexed = 0
        last_block = from_block - 1

        for number, (window_from, window_to) in enumerate(windows, start=1):
            try:
                window = self._index_window(window_from, window_to)
            except Exception:
                logger.exception(
                    f"Indexing stopped in window {window_from}-{window_to}; "
                    f"checkpoint left at {self.checkpoint.get().last_indexed_block}",
                )
                raise

            indexed += window.trades_inserted
            last_block = window_to

            if contiguous:
                self.checkpoint.advance(window_to)
            else:
                self.checkpoint.heartbeat(token)

            if window.events:
                logger.info(
                    f"  Block {window_from}-{window_to}: {window.events} events, "
                    f"+{window.trades_inserted} trades, {window.markets_settled} settlements",
                )
            logger.increment("windows_processed")
            logger.increment("events_decoded", window.events)
            logger.increment("trades_inserted", window.trades_inserted)
            logger.increment("markets_settled", window.markets_settled)
            if number % 20 == 0:
                logger.log_progress(window_to - from_block + 1, to_block - from_block + 1, "blocks")

        elapsed = time.perf_counter() - started
        if elapsed > 0:
            logger.record_metric("blocks_per_second", (to_block - from_block + 1) / elapsed)
        logger.info(f"Indexing complete: {indexed} new trades indexed, last block {last_block}")
        logger.log_summary()
        return IngestionResult(indexed_count=indexed, last_block=last_block)

    def _index_window(self, from_block: int, to_block: int) -> WindowResult:
        """Fetch, decode and persist one window in a single transaction."""
        logs = self.reader.get_logs(from_block, to_block)
        events = decode_logs(logs)
        block_times = {
            block_number: self.reader.block_time(block_number)
            for block_number in sorted({event.block_number for event in events})
        }

        inserted = settled = 0
        with transaction(self.conn):
            for event in events:
                outcome = self._apply_event(event, block_times[event.block_number])
                if isinstance(event, TradeExecutedEvent):
                    inserted += outcome
                elif isinstance(event, WinnersSubmittedEvent):
                    settled += outcome

        return WindowResult(
            from_block=from_block,
            to_block=to_block,
            events=len(events),
            trades_inserted=inserted,
            markets_settled=settled,
        )

    def _apply_event(self, event: ChainEvent, block_time: int) -> int:
        """Persist one event; returns 1 when it changed stored state that is counted."""
        if isinstance(event, TradeExecutedEvent):
            return int(repository.insert_trade(self.conn, event, block_time))
        if isinstance(event, NewMarketEvent):
            repository.upsert_new_market(self.conn, event, block_time)
            return 0
        if isinstance(event, WinnersSubmittedEvent):
            return int(repository.settle_market(self.conn, event, block_time))
        raise TypeError(f"Unhandled event type {type(event).__name__}")
