"""Database schema definitions for markets, trades, checkpoint and derived stats."""

from __future__ import annotations

MARKET_STATUS_ACTIVE = "active"
MARKET_STATUS_SETTLED = "settled"

CHECKPOINT_ROW_ID = 1

# Token, share and price magnitudes are 18-decimal fixed point and exceed
# 64 bits, so they are stored as decimal integer text.
MARKETS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS markets (
    market_id INTEGER PRIMARY KEY,
    config_uri TEXT,
    config_uri_hash TEXT,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'settled')),
    winning_outcome_index INTEGER,
    created_at_block INTEGER,
    created_at_time INTEGER,
    settled_at INTEGER,
    total_volume TEXT NOT NULL DEFAULT '0',
    total_trades INTEGER NOT NULL DEFAULT 0,
    CHECK ((status = 'settled') = (winning_outcome_index IS NOT NULL))
)
"""

TRADES_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    block_time INTEGER NOT NULL,
    market_id INTEGER NOT NULL REFERENCES markets(market_id),
    outcome_index INTEGER NOT NULL,
    trader TEXT NOT NULL,
    is_buy INTEGER NOT NULL,
    tokens_delta TEXT NOT NULL,
    shares_delta TEXT NOT NULL,
    new_price TEXT NOT NULL,
    new_outcome_supply TEXT NOT NULL,
    new_market_supply TEXT NOT NULL,
    implied_probability REAL NOT NULL,
    UNIQUE (transaction_hash, log_index)
)
"""

CHECKPOINT_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS indexer_checkpoint (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_indexed_block INTEGER,
    is_running INTEGER NOT NULL DEFAULT 0,
    lock_token TEXT,
    updated_at REAL NOT NULL DEFAULT 0
)
"""

TRADER_STATS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS trader_stats (
    address TEXT PRIMARY KEY,
    total_trades INTEGER NOT NULL,
    buy_count INTEGER NOT NULL,
    sell_count INTEGER NOT NULL,
    total_volume TEXT NOT NULL,
    realized_pnl TEXT NOT NULL,
    total_cost_basis TEXT NOT NULL,
    open_positions INTEGER NOT NULL,
    markets_traded INTEGER NOT NULL,
    unmatched_sells INTEGER NOT NULL,
    first_trade_at INTEGER,
    last_trade_at INTEGER
)
"""

MARKET_METADATA_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS market_metadata (
    market_id INTEGER PRIMARY KEY,
    title TEXT,
    description TEXT,
    category TEXT,
    outcomes_json TEXT NOT NULL DEFAULT '[]',
    fetched_at INTEGER NOT NULL
)
"""

TABLE_SCHEMAS = [
    MARKETS_TABLE_SCHEMA,
    TRADES_TABLE_SCHEMA,
    CHECKPOINT_TABLE_SCHEMA,
    TRADER_STATS_TABLE_SCHEMA,
    MARKET_METADATA_TABLE_SCHEMA,
]

# Indexes for faster queries
TRADES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_trades_trader_order ON trades(trader, block_number, log_index)",
    "CREATE INDEX IF NOT EXISTS idx_trades_market ON trades(market_id)",
    "CREATE INDEX IF NOT EXISTS idx_trades_block_time ON trades(block_time)",
]

CHECKPOINT_SEED = (
    "INSERT OR IGNORE INTO indexer_checkpoint (id, last_indexed_block, is_running, updated_at) "
    "VALUES (1, NULL, 0, 0)"
)
