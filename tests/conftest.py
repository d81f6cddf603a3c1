"""Shared fixtures: a throwaway SQLite database and an in-memory chain."""

from __future__ import annotations

from collections.abc import Iterator
from sqlite3 import Connection

import pytest
from eth_abi import encode

from delphi_pulse.database.connection import get_connection, initialize_database
from delphi_pulse.parser.event_decoder import DELPHI_EVENTS_ABI, event_topic
from delphi_pulse.utils.exceptions import TransientRPCError

NEW_MARKET_TOPIC = event_topic(DELPHI_EVENTS_ABI[0])
TRADE_EXECUTED_TOPIC = event_topic(DELPHI_EVENTS_ABI[1])
WINNERS_SUBMITTED_TOPIC = event_topic(DELPHI_EVENTS_ABI[2])

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20

BASE_TIMESTAMP = 1_700_000_000


def tx_hash(block: int, log_index: int) -> str:
    return "0x" + f"{block:032x}{log_index:032x}"


def _topic(hex_topic: str) -> bytes:
    return bytes.fromhex(hex_topic[2:])


def new_market_log(
    market_id: int,
    block: int,
    log_index: int = 0,
    config_uri: str = "ipfs://QmMarketConfig",
) -> dict[str, object]:
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": tx_hash(block, log_index),
        "topics": [_topic(NEW_MARKET_TOPIC), encode(["uint128"], [market_id])],
        "data": encode(["string", "bytes32"], [config_uri, b"\x11" * 32]),
    }


def trade_log(
    market_id: int,
    outcome_index: int,
    trader: str,
    is_buy: bool,
    tokens: int,
    shares: int,
    block: int,
    log_index: int = 0,
    price: int = 5 * 10**17,
) -> dict[str, object]:
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": tx_hash(block, log_index),
        "topics": [_topic(TRADE_EXECUTED_TOPIC)],
        "data": encode(
            ["uint128", "uint128", "address", "bool", "uint256", "uint256", "uint256", "uint256", "uint256"],
            [market_id, outcome_index, trader, is_buy, tokens, shares, price, 10**21, 10**22],
        ),
    }


def winners_log(market_id: int, winning_outcome_index: int, block: int, log_index: int = 0) -> dict[str, object]:
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": tx_hash(block, log_index),
        "topics": [_topic(WINNERS_SUBMITTED_TOPIC), encode(["uint128"], [market_id])],
        "data": encode(["uint128"], [winning_outcome_index]),
    }


def block_timestamp(block: int) -> int:
    return BASE_TIMESTAMP + block * 2


class FakeChainReader:
    """Serves prepared logs by block range; no network."""

    def __init__(self, logs: list[dict[str, object]] | None = None, head: int = 1000) -> None:
        self.logs = list(logs or [])
        self.head = head
        self.fail_at_block: int | None = None
        self.get_logs_calls: list[tuple[int, int]] = []
        self.block_time_calls: list[int] = []
        self.cache_clears = 0
        self.closed = False

    def head_block(self) -> int:
        return self.head

    def get_logs(self, from_block: int, to_block: int) -> list[dict[str, object]]:
        self.get_logs_calls.append((from_block, to_block))
        if self.fail_at_block is not None and from_block <= self.fail_at_block <= to_block:
            raise TransientRPCError("connection reset by peer", attempts=3)
        return [log for log in self.logs if from_block <= int(log["blockNumber"]) <= to_block]

    def block_time(self, block_number: int) -> int:
        self.block_time_calls.append(block_number)
        return block_timestamp(block_number)

    def clear_block_time_cache(self) -> None:
        self.cache_clears += 1

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def conn(tmp_path) -> Iterator[Connection]:
    """Initialized database in a temporary directory."""
    connection = get_connection(tmp_path / "delphi.db")
    initialize_database(connection)
    yield connection
    connection.close()


@pytest.fixture
def reader() -> FakeChainReader:
    return FakeChainReader()
