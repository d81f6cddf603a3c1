"""Tests for contract event decoding."""

from __future__ import annotations

import pytest
from eth_abi import encode
from web3 import Web3

from delphi_pulse.parser.event_decoder import (
    DELPHI_EVENTS_ABI,
    EVENT_TOPICS,
    MAX_STORABLE_ID,
    NewMarketEvent,
    TradeExecutedEvent,
    WinnersSubmittedEvent,
    decode_log,
    decode_logs,
    event_signature,
)
from delphi_pulse.utils.exceptions import MalformedEventError
from tests.conftest import ALICE, new_market_log, trade_log, tx_hash, winners_log


def test_event_signatures() -> None:
    """Test canonical signatures used for topic hashing."""
    signatures = [event_signature(abi) for abi in DELPHI_EVENTS_ABI]
    assert signatures == [
        "NewMarket(uint128,string,bytes32)",
        "TradeExecuted(uint128,uint128,address,bool,uint256,uint256,uint256,uint256,uint256)",
        "WinnersSubmitted(uint128,uint128)",
    ]
    assert len(set(EVENT_TOPICS)) == 3
    assert all(topic.startswith("0x") and len(topic) == 66 for topic in EVENT_TOPICS)


def test_decode_new_market() -> None:
    """Test decoding a NewMarket log with an indexed market id."""
    event = decode_log(new_market_log(7, block=120, log_index=3, config_uri="ipfs://QmAbc"))

    assert isinstance(event, NewMarketEvent)
    assert event.market_id == 7
    assert event.config_uri == "ipfs://QmAbc"
    assert event.config_uri_hash == "0x" + "11" * 32
    assert event.block_number == 120
    assert event.log_index == 3
    assert event.transaction_hash == tx_hash(120, 3)


def test_decode_trade_executed() -> None:
    """Test decoding a TradeExecuted log with all fields in data."""
    log = trade_log(7, 2, ALICE, True, tokens=10**18, shares=3 * 10**18, block=121, log_index=1, price=25 * 10**16)
    event = decode_log(log)

    assert isinstance(event, TradeExecutedEvent)
    assert event.market_id == 7
    assert event.outcome_index == 2
    assert event.trader == Web3.to_checksum_address(ALICE)
    assert event.is_buy is True
    assert event.tokens_delta == 10**18
    assert event.shares_delta == 3 * 10**18
    assert event.new_price == 25 * 10**16
    assert event.implied_probability == pytest.approx(25.0)


def test_decode_winners_submitted() -> None:
    """Test decoding a WinnersSubmitted log."""
    event = decode_log(winners_log(7, 1, block=130))

    assert isinstance(event, WinnersSubmittedEvent)
    assert event.market_id == 7
    assert event.winning_outcome_index == 1


def test_decode_accepts_bytes_transaction_hash() -> None:
    """Test logs whose hash is raw bytes, as web3 returns them."""
    log = winners_log(7, 1, block=130)
    log["transactionHash"] = bytes.fromhex(str(log["transactionHash"])[2:])
    assert decode_log(log).transaction_hash == tx_hash(130, 0)


def test_decode_unknown_topic_raises() -> None:
    """Test an unrecognized topic is reported as malformed."""
    log = winners_log(7, 1, block=130)
    log["topics"] = [b"\x00" * 32, encode(["uint128"], [7])]

    with pytest.raises(MalformedEventError, match="Unknown event topic"):
        decode_log(log)


def test_decode_truncated_data_raises() -> None:
    """Test data too short for the event's fields."""
    log = trade_log(7, 0, ALICE, True, tokens=1, shares=1, block=121)
    log["data"] = bytes(log["data"])[:64]

    with pytest.raises(MalformedEventError) as exc_info:
        decode_log(log)
    assert exc_info.value.log_index == 0
    assert exc_info.value.transaction_hash == tx_hash(121, 0)


def test_decode_missing_indexed_topic_raises() -> None:
    """Test NewMarket without its indexed market id topic."""
    log = new_market_log(7, block=120)
    log["topics"] = log["topics"][:1]

    with pytest.raises(MalformedEventError, match="indexed topics"):
        decode_log(log)


def test_decode_missing_location_raises() -> None:
    """Test logs without a transaction hash cannot be keyed."""
    log = winners_log(7, 1, block=130)
    del log["transactionHash"]

    with pytest.raises(MalformedEventError):
        decode_log(log)


def test_decode_no_topics_raises() -> None:
    """Test anonymous logs are rejected."""
    log = winners_log(7, 1, block=130)
    log["topics"] = []

    with pytest.raises(MalformedEventError, match="no topics"):
        decode_log(log)


def test_decode_oversized_market_id_raises() -> None:
    """Test ids above the 64-bit column range are rejected, not truncated."""
    with pytest.raises(MalformedEventError, match="64-bit"):
        decode_log(winners_log(MAX_STORABLE_ID + 1, 0, block=130))


def test_decode_logs_orders_by_block_then_log_index() -> None:
    """Test events come back in chain order regardless of input order."""
    logs = [
        winners_log(7, 1, block=130, log_index=0),
        trade_log(7, 0, ALICE, True, tokens=1, shares=1, block=121, log_index=5),
        trade_log(7, 0, ALICE, True, tokens=1, shares=1, block=121, log_index=2),
        new_market_log(7, block=120),
    ]

    events = decode_logs(logs)

    assert [event.sort_key for event in events] == [(120, 0), (121, 2), (121, 5), (130, 0)]
