"""Configuration constants for the Delphi Pulse indexer."""

from __future__ import annotations

import os
from pathlib import Path

# Database configuration
DB_DIR = Path(__file__).parent.parent.parent / "data"
DB_PATH = Path(os.environ.get("DELPHI_PULSE_DB_PATH", str(DB_DIR / "delphi_pulse.db")))

# Blockchain configuration
# Gensyn testnet RPC endpoints (comma separated in RPC_URL, first one preferred)
RPC_ENDPOINTS = [
    endpoint.strip()
    for endpoint in os.environ.get("RPC_URL", "https://gensyn-testnet.g.alchemy.com/public").split(",")
    if endpoint.strip()
]

# Delphi prediction market proxy contract
DELPHI_CONTRACT_ADDRESS = os.environ.get(
    "DELPHI_CONTRACT_ADDRESS",
    "0x3B5629d3a10C13B51F3DC7d5125A5abe5C20FaF1",
)

# First block scanned when no checkpoint exists yet
GENESIS_BLOCK = int(os.environ.get("DELPHI_GENESIS_BLOCK", "9000000"))

# Ingestion settings
INDEXER_BATCH_SIZE = 50  # Blocks per eth_getLogs window
INDEXER_CONFIRMATIONS = 2  # Blocks withheld behind the chain head
LOCK_STALE_SECONDS = 5 * 60  # Run lock older than this is considered abandoned
BLOCK_TIME_CACHE_LIMIT = 500  # Block timestamps kept per run

# RPC request settings
RPC_TIMEOUT = 30.0  # Seconds per request
RPC_RATE_LIMIT = 10.0  # Requests per second
RPC_RETRY_ATTEMPTS = 3  # Attempts for transient failures
RPC_RETRY_DELAY = 1.0  # Initial delay between retries (seconds)

# Market config enrichment
IPFS_GATEWAYS = [
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://gateway.pinata.cloud/ipfs/",
]
CONFIG_FETCH_TIMEOUT = 5.0
METADATA_TTL_ACTIVE = 60 * 60  # Refetch active market configs hourly
METADATA_TTL_SETTLED = 21 * 24 * 60 * 60  # Settled configs rarely change

# Read side
STATS_CACHE_TTL = 15.0  # Seconds
LEADERBOARD_MAX_LIMIT = 100
TRADE_HISTORY_MAX_TAKE = 200
MARKET_RECENT_TRADES = 20

# On-chain prices are 18-decimal fixed point
PRICE_DECIMALS = 18
