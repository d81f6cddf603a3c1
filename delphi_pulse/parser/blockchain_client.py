"""JSON-RPC client for reading Delphi contract logs."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import TypeVar

from beartype import beartype
from web3 import Web3
from web3.exceptions import BlockNotFound

from delphi_pulse.parser.event_decoder import EVENT_TOPICS
from delphi_pulse.utils.config import (
    BLOCK_TIME_CACHE_LIMIT,
    DELPHI_CONTRACT_ADDRESS,
    INDEXER_BATCH_SIZE,
    RPC_ENDPOINTS,
    RPC_RATE_LIMIT,
    RPC_RETRY_ATTEMPTS,
    RPC_RETRY_DELAY,
    RPC_TIMEOUT,
)
from delphi_pulse.utils.exceptions import MalformedResponseError, TransientRPCError
from delphi_pulse.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_KEYWORDS = ("connection", "timeout", "timed out", "network", "refused", "reset")
RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests", "429")


def is_transient_error(error: Exception) -> bool:
    """Network, timeout and rate-limit failures are worth retrying."""
    # requests' exceptions derive from OSError
    if isinstance(error, (OSError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in TRANSIENT_ERROR_KEYWORDS + RATE_LIMIT_KEYWORDS)


class ChainReader:
    """Reads head block, contract logs and block timestamps from a JSON-RPC node."""

    def __init__(
        self,
        rpc_endpoints: Sequence[str] | None = None,
        contract_address: str = DELPHI_CONTRACT_ADDRESS,
        max_batch_size: int = INDEXER_BATCH_SIZE,
        rate_limit: float = RPC_RATE_LIMIT,
        max_retries: int = RPC_RETRY_ATTEMPTS,
        retry_delay: float = RPC_RETRY_DELAY,
        web3: Web3 | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the chain reader.

        Args:
            rpc_endpoints: RPC endpoints to rotate through (uses config if None)
            contract_address: Market contract whose logs are read
            max_batch_size: Largest block range accepted by get_logs
            rate_limit: Maximum requests per second
            max_retries: Attempts per request for transient failures
            retry_delay: Initial backoff delay in seconds, doubled per attempt
            web3: Preconfigured Web3 instance (skips endpoint setup)
            sleep: Sleep function, replaceable in tests
        """
        self.rpc_endpoints = list(rpc_endpoints) if rpc_endpoints else list(RPC_ENDPOINTS)
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.max_batch_size = max_batch_size
        self.rate_limit = rate_limit
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.current_endpoint_index = 0
        self.last_request_time = 0.0
        self._block_time_cache: dict[int, int] = {}

        self._injected_web3 = web3 is not None
        self.web3 = web3 if web3 is not None else self._connect()

    def _connect(self) -> Web3:
        """Build a Web3 client for the current endpoint."""
        if not self.rpc_endpoints:
            raise ValueError("No RPC endpoints configured. Set RPC_URL.")
        endpoint = self.rpc_endpoints[self.current_endpoint_index]
        logger.info(f"Using RPC endpoint: {endpoint}")
        return Web3(Web3.HTTPProvider(endpoint, request_kwargs={"timeout": RPC_TIMEOUT}))

    def _rotate_endpoint(self) -> None:
        """Switch to the next endpoint after a connection-level failure."""
        if self._injected_web3 or len(self.rpc_endpoints) < 2:
            return
        self.current_endpoint_index = (self.current_endpoint_index + 1) % len(self.rpc_endpoints)
        self.web3 = self._connect()

    def _wait_for_rate_limit(self) -> None:
        """Wait if necessary to respect rate limits."""
        min_interval = 1.0 / self.rate_limit
        time_since_last = time.monotonic() - self.last_request_time
        if time_since_last < min_interval:
            self.sleep(min_interval - time_since_last)
        self.last_request_time = time.monotonic()

    def _retry_request(self, description: str, func: Callable[[], T]) -> T:
        """
        Execute a request, retrying transient failures with exponential backoff.

        Args:
            description: What is being requested, for log messages
            func: Zero-argument callable performing the request

        Returns:
            Result of func

        Raises:
            TransientRPCError: If every attempt failed with a transient error
            Exception: Any non-transient error, unchanged and not retried
        """
        delay = self.retry_delay

        for attempt in range(1, self.max_retries + 1):
            try:
                self._wait_for_rate_limit()
                return func()
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt == self.max_retries:
                    raise TransientRPCError(
                        f"{description} failed after {attempt} attempts: {e}", attempts=attempt,
                    ) from e
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_retries}): {e}. "
                    f"Retrying in {delay:.1f}s...",
                )
                self._rotate_endpoint()
                self.sleep(delay)
                delay *= 2

        raise TransientRPCError(f"{description} was not attempted", attempts=0)

    @beartype
    def head_block(self) -> int:
        """
        Get the current chain head block number.

        The raw ``eth_blockNumber`` request goes straight to the provider,
        bypassing middleware and any response caching.
        """

        def _request() -> int:
            response = self.web3.provider.make_request("eth_blockNumber", [])
            if "error" in response:
                raise MalformedResponseError(f"eth_blockNumber returned error: {response['error']}")
            result = response.get("result")
            if isinstance(result, int):
                return result
            if not isinstance(result, str):
                raise MalformedResponseError(f"Unexpected eth_blockNumber result: {result!r}")
            try:
                return int(result, 16)
            except ValueError as e:
                raise MalformedResponseError(f"Unexpected eth_blockNumber result: {result!r}") from e

        return self._retry_request("eth_blockNumber", _request)

    @beartype
    def get_logs(self, from_block: int, to_block: int) -> list[dict[str, object]]:
        """
        Get Delphi events emitted in a block range.

        Args:
            from_block: Starting block number
            to_block: Ending block number (inclusive)

        Returns:
            Raw log entries for NewMarket, TradeExecuted and WinnersSubmitted

        Raises:
            ValueError: If the range is empty or wider than max_batch_size
        """
        if from_block > to_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")
        if to_block - from_block + 1 > self.max_batch_size:
            raise ValueError(
                f"Block range {from_block}-{to_block} exceeds batch size {self.max_batch_size}",
            )

        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": self.contract_address,
            "topics": [EVENT_TOPICS],
        }

        def _request() -> list[dict[str, object]]:
            logs = self.web3.eth.get_logs(filter_params)
            if not isinstance(logs, (list, tuple)):
                raise MalformedResponseError(f"Unexpected eth_getLogs result: {type(logs).__name__}")
            return [dict(log) for log in logs]

        logs = self._retry_request(f"eth_getLogs {from_block}-{to_block}", _request)
        logger.debug(f"Retrieved {len(logs)} logs from blocks {from_block}-{to_block}")
        return logs

    @beartype
    def block_time(self, block_number: int) -> int:
        """
        Get the Unix timestamp of a block, cached for the current run.

        Args:
            block_number: Block number

        Returns:
            Unix timestamp in seconds
        """
        cached = self._block_time_cache.get(block_number)
        if cached is not None:
            return cached

        def _request() -> int:
            try:
                block = self.web3.eth.get_block(block_number)
            except BlockNotFound as e:
                raise MalformedResponseError(f"Block {block_number} not found") from e
            timestamp = block.get("timestamp") if hasattr(block, "get") else None
            if timestamp is None:
                raise MalformedResponseError(f"Block {block_number} has no timestamp")
            return int(timestamp)

        timestamp = self._retry_request(f"eth_getBlockByNumber {block_number}", _request)
        if len(self._block_time_cache) >= BLOCK_TIME_CACHE_LIMIT:
            self._block_time_cache.clear()
        self._block_time_cache[block_number] = timestamp
        return timestamp

    def clear_block_time_cache(self) -> None:
        """Forget cached block timestamps; called between ingestion runs."""
        self._block_time_cache.clear()

    def close(self) -> None:
        """Release per-run state."""
        logger.debug("Closing chain reader")
        self.clear_block_time_cache()

    def __enter__(self) -> ChainReader:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()
