"""Decoder for Delphi prediction market contract events.

The market contract emits three events that the indexer cares about:

* ``NewMarket`` when a market is created,
* ``TradeExecuted`` for every buy or sell of outcome shares,
* ``WinnersSubmitted`` when the market settles on a winning outcome.

Decoding is pure: a raw log goes in, a typed event record comes out. Block
timestamps are resolved by the caller.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from beartype import beartype
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from delphi_pulse.utils.config import PRICE_DECIMALS
from delphi_pulse.utils.exceptions import MalformedEventError

# Largest value that fits the store's INTEGER columns
MAX_STORABLE_ID = 2**63 - 1

DELPHI_EVENTS_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "newMarketId", "type": "uint128"},
            {"indexed": False, "name": "newMarketConfigUri", "type": "string"},
            {"indexed": False, "name": "newMarketConfigUriHash", "type": "bytes32"},
        ],
        "name": "NewMarket",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "marketId", "type": "uint128"},
            {"indexed": False, "name": "allowedModelIdx", "type": "uint128"},
            {"indexed": False, "name": "trader", "type": "address"},
            {"indexed": False, "name": "isBuy", "type": "bool"},
            {"indexed": False, "name": "tokensDelta", "type": "uint256"},
            {"indexed": False, "name": "modelSharesDelta", "type": "uint256"},
            {"indexed": False, "name": "modelNewPrice", "type": "uint256"},
            {"indexed": False, "name": "modelNewSupply", "type": "uint256"},
            {"indexed": False, "name": "marketNewSupply", "type": "uint256"},
        ],
        "name": "TradeExecuted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "marketId", "type": "uint128"},
            {"indexed": False, "name": "winningModelIdx", "type": "uint128"},
        ],
        "name": "WinnersSubmitted",
        "type": "event",
    },
]


@dataclass(frozen=True)
class ChainEvent:
    """Position of a decoded log in the chain."""

    block_number: int
    log_index: int
    transaction_hash: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class NewMarketEvent(ChainEvent):
    market_id: int
    config_uri: str
    config_uri_hash: str


@dataclass(frozen=True)
class TradeExecutedEvent(ChainEvent):
    market_id: int
    outcome_index: int
    trader: str
    is_buy: bool
    tokens_delta: int
    shares_delta: int
    new_price: int
    new_outcome_supply: int
    new_market_supply: int

    @property
    def implied_probability(self) -> float:
        """Outcome price as a percentage (price has 18 decimals, 1e18 == 100%)."""
        return self.new_price / 10 ** (PRICE_DECIMALS - 2)


@dataclass(frozen=True)
class WinnersSubmittedEvent(ChainEvent):
    market_id: int
    winning_outcome_index: int


def event_signature(event_abi: Mapping[str, object]) -> str:
    """Build the canonical signature, e.g. ``WinnersSubmitted(uint128,uint128)``."""
    types = ",".join(str(item["type"]) for item in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Mapping[str, object]) -> str:
    """keccak256 of the event signature as a 0x-prefixed lowercase hex string."""
    return "0x" + bytes(Web3.keccak(text=event_signature(event_abi))).hex()


EVENT_ABI_BY_TOPIC: dict[str, Mapping[str, object]] = {
    event_topic(event_abi): event_abi for event_abi in DELPHI_EVENTS_ABI
}
EVENT_TOPICS = list(EVENT_ABI_BY_TOPIC)


def _as_bytes(value: object) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    raise TypeError(f"Expected bytes or hex string, got {type(value).__name__}")


def _as_hex(value: object) -> str:
    return "0x" + _as_bytes(value).hex()


def _decode_arguments(log: Mapping[str, object], event_abi: Mapping[str, object]) -> dict[str, object]:
    """Decode indexed arguments from topics and the rest from data."""
    inputs = event_abi["inputs"]
    indexed = [item for item in inputs if item["indexed"]]
    non_indexed = [item for item in inputs if not item["indexed"]]

    topics = list(log["topics"])[1:]
    if len(topics) != len(indexed):
        raise ValueError(
            f"{event_abi['name']} expects {len(indexed)} indexed topics, got {len(topics)}",
        )

    arguments: dict[str, object] = {}
    for item, topic in zip(indexed, topics):
        (arguments[item["name"]],) = decode([item["type"]], _as_bytes(topic))

    values = decode([item["type"] for item in non_indexed], _as_bytes(log.get("data") or b""))
    for item, value in zip(non_indexed, values):
        arguments[item["name"]] = value
    return arguments


def _storable_id(value: int, field: str) -> int:
    if value > MAX_STORABLE_ID:
        raise ValueError(f"{field} {value} does not fit a 64-bit column")
    return int(value)


@beartype
def decode_log(log: Mapping[str, object]) -> ChainEvent:
    """
    Decode one raw log into a typed event record.

    Args:
        log: Log entry as returned by ``eth_getLogs``

    Returns:
        NewMarketEvent, TradeExecutedEvent or WinnersSubmittedEvent

    Raises:
        MalformedEventError: If the log does not match any known event shape
    """
    transaction_hash = log.get("transactionHash")
    log_index = log.get("logIndex")
    block_number = log.get("blockNumber")
    if transaction_hash is None or log_index is None or block_number is None:
        raise MalformedEventError("Log is missing its block number, log index or transaction hash")

    tx_hash = _as_hex(transaction_hash)
    location = {"block_number": int(block_number), "log_index": int(log_index), "transaction_hash": tx_hash}

    topics = list(log.get("topics") or [])
    if not topics:
        raise MalformedEventError("Log has no topics", tx_hash, int(log_index))

    try:
        topic0 = _as_hex(topics[0])
    except (ValueError, TypeError) as e:
        raise MalformedEventError(f"Unreadable event topic: {e}", tx_hash, int(log_index)) from e

    event_abi = EVENT_ABI_BY_TOPIC.get(topic0)
    if event_abi is None:
        raise MalformedEventError(f"Unknown event topic {topic0}", tx_hash, int(log_index))

    try:
        args = _decode_arguments(log, event_abi)

        if event_abi["name"] == "NewMarket":
            return NewMarketEvent(
                **location,
                market_id=_storable_id(args["newMarketId"], "marketId"),
                config_uri=str(args["newMarketConfigUri"]),
                config_uri_hash=_as_hex(args["newMarketConfigUriHash"]),
            )

        if event_abi["name"] == "TradeExecuted":
            return TradeExecutedEvent(
                **location,
                market_id=_storable_id(args["marketId"], "marketId"),
                outcome_index=_storable_id(args["allowedModelIdx"], "outcomeIndex"),
                trader=Web3.to_checksum_address(args["trader"]),
                is_buy=bool(args["isBuy"]),
                tokens_delta=int(args["tokensDelta"]),
                shares_delta=int(args["modelSharesDelta"]),
                new_price=int(args["modelNewPrice"]),
                new_outcome_supply=int(args["modelNewSupply"]),
                new_market_supply=int(args["marketNewSupply"]),
            )

        return WinnersSubmittedEvent(
            **location,
            market_id=_storable_id(args["marketId"], "marketId"),
            winning_outcome_index=_storable_id(args["winningModelIdx"], "winningOutcomeIndex"),
        )
    except (DecodingError, ValueError, TypeError) as e:
        raise MalformedEventError(
            f"Failed to decode {event_abi['name']}: {e}", tx_hash, int(log_index),
        ) from e


@beartype
def decode_logs(logs: Iterable[Mapping[str, object]]) -> list[ChainEvent]:
    """Decode logs and return them in chain order (block number, then log index)."""
    events = [decode_log(log) for log in logs]
    events.sort(key=lambda event: event.sort_key)
    return events
