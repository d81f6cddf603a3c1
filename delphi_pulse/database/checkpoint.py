"""Durable ingestion checkpoint and cross-process run lock.

The lock lives in the ``indexer_checkpoint`` singleton row so that it holds
across processes and restarts. A lock whose ``updated_at`` heartbeat is older
than the staleness threshold is treated as abandoned by a crashed run and
taken over.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from sqlite3 import Connection

from beartype import beartype

from delphi_pulse.database.connection import transaction
from delphi_pulse.database.models import CHECKPOINT_ROW_ID
from delphi_pulse.utils.config import LOCK_STALE_SECONDS
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    last_indexed_block: int | None
    is_running: bool
    updated_at: float


@dataclass(frozen=True)
class LockToken:
    value: str
    acquired_at: float


class CheckpointStore:
    """Reads and updates the ``indexer_checkpoint`` row."""

    def __init__(
        self,
        conn: Connection,
        stale_after: float = LOCK_STALE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.conn = conn
        self.stale_after = stale_after
        self.clock = clock

    def _read(self) -> Checkpoint:
        row = self.conn.execute(
            "SELECT last_indexed_block, is_running, updated_at FROM indexer_checkpoint WHERE id = ?",
            (CHECKPOINT_ROW_ID,),
        ).fetchone()
        if row is None:
            raise RuntimeError("Checkpoint row missing; run initialize_database() first")
        return Checkpoint(
            last_indexed_block=row["last_indexed_block"],
            is_running=bool(row["is_running"]),
            updated_at=float(row["updated_at"]),
        )

    @beartype
    def get(self) -> Checkpoint:
        """Return the current checkpoint state."""
        return self._read()

    @beartype
    def acquire_lock(self) -> LockToken | None:
        """
        Try to take the run lock.

        Returns:
            A LockToken, or None if another run holds a fresh lock
        """
        with transaction(self.conn):
            current = self._read()
            now = self.clock()
            lock_age = now - current.updated_at

            if current.is_running and lock_age < self.stale_after:
                logger.info(f"Indexer already running (lock age {lock_age:.0f}s)")
                return None

            token = LockToken(value=uuid.uuid4().hex, acquired_at=now)
            cursor = self.conn.execute(
                """
                UPDATE indexer_checkpoint
                SET is_running = 1, lock_token = ?, updated_at = ?
                WHERE id = ? AND is_running = ? AND updated_at = ?
                """,
                (token.value, now, CHECKPOINT_ROW_ID, int(current.is_running), current.updated_at),
            )
            if cursor.rowcount != 1:
                return None

        if current.is_running:
            logger.warning(f"Stale indexer lock detected (age {lock_age:.0f}s), taking over")
        return token

    @beartype
    def release(self, token: LockToken) -> bool:
        """
        Release the run lock if ``token`` still owns it.

        Returns:
            False if the lock had been taken over by another run
        """
        with transaction(self.conn):
            cursor = self.conn.execute(
                """
                UPDATE indexer_checkpoint
                SET is_running = 0, lock_token = NULL, updated_at = ?
                WHERE id = ? AND lock_token = ?
                """,
                (self.clock(), CHECKPOINT_ROW_ID, token.value),
            )
        if cursor.rowcount != 1:
            logger.warning("Indexer lock was taken over by another run before release")
            return False
        return True

    @beartype
    def advance(self, to_block: int) -> int:
        """
        Move ``last_indexed_block`` forward to ``to_block``.

        Never moves it backwards. Also refreshes ``updated_at``, which keeps a
        long run's lock from looking stale.

        Returns:
            The stored last_indexed_block after the update
        """
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE indexer_checkpoint
                SET last_indexed_block = CASE
                        WHEN last_indexed_block IS NULL OR last_indexed_block < ? THEN ?
                        ELSE last_indexed_block
                    END,
                    updated_at = ?
                WHERE id = ?
                """,
                (to_block, to_block, self.clock(), CHECKPOINT_ROW_ID),
            )
            last = self._read().last_indexed_block
        return int(last)

    @beartype
    def heartbeat(self, token: LockToken) -> bool:
        """
        Refresh ``updated_at`` without touching ``last_indexed_block``.

        Used by runs that do not advance the checkpoint, so their lock does not
        go stale while they work.

        Returns:
            False if ``token`` no longer owns the lock
        """
        with transaction(self.conn):
            cursor = self.conn.execute(
                "UPDATE indexer_checkpoint SET updated_at = ? WHERE id = ? AND lock_token = ?",
                (self.clock(), CHECKPOINT_ROW_ID, token.value),
            )
        if cursor.rowcount != 1:
            logger.warning("Heartbeat skipped: indexer lock is held by another run")
            return False
        return True

    @contextmanager
    def hold_lock(self) -> Iterator[LockToken | None]:
        """
        Scoped lock acquisition.

        Yields the token, or None when busy. The lock is released on every
        exit path, including exceptions raised inside the block.
        """
        token = self.acquire_lock()
        try:
            yield token
        finally:
            if token is not None:
                self.release(token)
